from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os

from ..moltbook_client import CREDENTIALS_PATH


DEFAULT_ORACLE_COMMAND = "claude"
DEFAULT_ORACLE_ALLOWED_TOOLS = ["WebSearch", "WebFetch"]


class ConfigError(RuntimeError):
    """Raised when configuration or prompt files are missing or unreadable."""


@dataclass
class Config:
    bot_name: str
    admin_id: str
    history_window: int
    process_interval_seconds: int
    max_retries: int
    max_notes_lines: int
    data_dir: Path
    state_path: Path
    pending_path: Path
    notes_dir: Path
    chats_config_path: Path
    prompts_dir: Path
    oracle_command: str
    oracle_timeout_seconds: int
    oracle_allowed_tools: List[str]
    moltbook_enabled: bool
    moltbook_model: str
    moltbook_state_path: Path
    moltbook_journal_path: Path
    moltbook_action_journal_path: Path
    moltbook_prompt_path: Path
    moltbook_heartbeat_seconds: int
    moltbook_first_cycle_delay_seconds: int
    moltbook_feed_limit: int
    moltbook_cycle_timeout_seconds: int
    moltbook_comment_timeout_seconds: int
    moltbook_action_delay_seconds: float
    post_cooldown_seconds: int
    comment_window_seconds: int
    max_comments_per_window: int
    max_seen_posts: int
    max_comment_timestamps: int
    max_journal_chars: int
    log_level: str
    log_path: Optional[Path]


def _parse_csv_env(env_key: str, default: Optional[List[str]] = None) -> List[str]:
    value = os.getenv(env_key)
    if value is None:
        return list(default or [])
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool_env(env_key: str, default: bool) -> bool:
    value = os.getenv(env_key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes"}


def load_config() -> Config:
    data_dir = Path(os.getenv("KLEINBOT_DATA_DIR", "data"))
    prompts_dir = Path(os.getenv("KLEINBOT_PROMPTS_DIR", "prompts"))

    bot_name = os.getenv("KLEINBOT_BOT_NAME", "Kleinbot").strip()
    admin_id = os.getenv("KLEINBOT_ADMIN_ID", "").strip()
    history_window = int(os.getenv("KLEINBOT_HISTORY_WINDOW", "50"))
    process_interval_seconds = int(os.getenv("KLEINBOT_PROCESS_INTERVAL_SECONDS", "60"))
    max_retries = int(os.getenv("KLEINBOT_MAX_RETRIES", "3"))
    max_notes_lines = int(os.getenv("KLEINBOT_MAX_NOTES_LINES", "50"))

    state_path = Path(os.getenv("KLEINBOT_STATE_PATH", str(data_dir / "state.json")))
    pending_path = Path(os.getenv("KLEINBOT_PENDING_PATH", str(data_dir / "pending.json")))
    notes_dir = Path(os.getenv("KLEINBOT_NOTES_DIR", str(data_dir / "notes")))
    chats_config_path = Path(os.getenv("KLEINBOT_CHATS_CONFIG_PATH", str(prompts_dir / "chats.json")))

    oracle_command = os.getenv("KLEINBOT_ORACLE_COMMAND", DEFAULT_ORACLE_COMMAND).strip() or DEFAULT_ORACLE_COMMAND
    oracle_timeout_seconds = int(os.getenv("KLEINBOT_ORACLE_TIMEOUT_SECONDS", "90"))
    oracle_allowed_tools = _parse_csv_env("KLEINBOT_ORACLE_ALLOWED_TOOLS", DEFAULT_ORACLE_ALLOWED_TOOLS)

    has_api_key = bool(os.getenv("MOLTBOOK_API_KEY", "").strip()) or CREDENTIALS_PATH.exists()
    moltbook_enabled = _parse_bool_env("MOLTBOOK_ENABLED", has_api_key)
    moltbook_model = os.getenv("MOLTBOOK_MODEL", "sonnet").strip() or "sonnet"
    moltbook_state_path = Path(os.getenv("MOLTBOOK_STATE_PATH", str(data_dir / "moltbook-state.json")))
    moltbook_journal_path = Path(os.getenv("MOLTBOOK_JOURNAL_PATH", str(data_dir / "moltbook-journal.md")))
    moltbook_action_journal_path = Path(
        os.getenv("MOLTBOOK_ACTION_JOURNAL_PATH", str(data_dir / "moltbook-actions.jsonl"))
    )
    moltbook_prompt_path = Path(os.getenv("MOLTBOOK_PROMPT_PATH", str(prompts_dir / "moltbook.md")))
    moltbook_heartbeat_seconds = int(os.getenv("MOLTBOOK_HEARTBEAT_SECONDS", "14400"))
    moltbook_first_cycle_delay_seconds = int(os.getenv("MOLTBOOK_FIRST_CYCLE_DELAY_SECONDS", "30"))
    moltbook_feed_limit = int(os.getenv("MOLTBOOK_FEED_LIMIT", "25"))
    moltbook_cycle_timeout_seconds = int(os.getenv("MOLTBOOK_CYCLE_TIMEOUT_SECONDS", "120"))
    moltbook_comment_timeout_seconds = int(os.getenv("MOLTBOOK_COMMENT_TIMEOUT_SECONDS", "60"))
    moltbook_action_delay_seconds = float(os.getenv("MOLTBOOK_ACTION_DELAY_SECONDS", "1"))

    # Local mirrors of the Moltbook API limits.
    post_cooldown_seconds = int(os.getenv("MOLTBOOK_POST_COOLDOWN_SECONDS", "1800"))
    comment_window_seconds = int(os.getenv("MOLTBOOK_COMMENT_WINDOW_SECONDS", "3600"))
    max_comments_per_window = int(os.getenv("MOLTBOOK_MAX_COMMENTS_PER_WINDOW", "50"))
    max_seen_posts = int(os.getenv("MOLTBOOK_MAX_SEEN_POSTS", "500"))
    max_comment_timestamps = int(os.getenv("MOLTBOOK_MAX_COMMENT_TIMESTAMPS", "100"))
    max_journal_chars = int(os.getenv("MOLTBOOK_MAX_JOURNAL_CHARS", "8000"))

    log_level = os.getenv("KLEINBOT_LOG_LEVEL", "INFO").strip().upper()
    log_path_str = os.getenv("KLEINBOT_LOG_PATH", "").strip()
    log_path = Path(log_path_str) if log_path_str else None

    return Config(
        bot_name=bot_name,
        admin_id=admin_id,
        history_window=history_window,
        process_interval_seconds=process_interval_seconds,
        max_retries=max_retries,
        max_notes_lines=max_notes_lines,
        data_dir=data_dir,
        state_path=state_path,
        pending_path=pending_path,
        notes_dir=notes_dir,
        chats_config_path=chats_config_path,
        prompts_dir=prompts_dir,
        oracle_command=oracle_command,
        oracle_timeout_seconds=oracle_timeout_seconds,
        oracle_allowed_tools=oracle_allowed_tools,
        moltbook_enabled=moltbook_enabled,
        moltbook_model=moltbook_model,
        moltbook_state_path=moltbook_state_path,
        moltbook_journal_path=moltbook_journal_path,
        moltbook_action_journal_path=moltbook_action_journal_path,
        moltbook_prompt_path=moltbook_prompt_path,
        moltbook_heartbeat_seconds=moltbook_heartbeat_seconds,
        moltbook_first_cycle_delay_seconds=moltbook_first_cycle_delay_seconds,
        moltbook_feed_limit=moltbook_feed_limit,
        moltbook_cycle_timeout_seconds=moltbook_cycle_timeout_seconds,
        moltbook_comment_timeout_seconds=moltbook_comment_timeout_seconds,
        moltbook_action_delay_seconds=moltbook_action_delay_seconds,
        post_cooldown_seconds=post_cooldown_seconds,
        comment_window_seconds=comment_window_seconds,
        max_comments_per_window=max_comments_per_window,
        max_seen_posts=max_seen_posts,
        max_comment_timestamps=max_comment_timestamps,
        max_journal_chars=max_journal_chars,
        log_level=log_level,
        log_path=log_path,
    )
