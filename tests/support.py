import json
from dataclasses import replace
from pathlib import Path

from kleinbot.agent.config import load_config


class _Logger:
    def __init__(self):
        self.records = []

    def _log(self, level, msg, *args, **kwargs):  # noqa: ARG002
        self.records.append((level, msg % args if args else msg))

    def debug(self, msg, *args, **kwargs):
        self._log("DEBUG", msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._log("INFO", msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._log("WARNING", msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._log("ERROR", msg, *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._log("ERROR", msg, *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self._log("CRITICAL", msg, *args, **kwargs)

    def messages(self, level=None):
        return [text for lvl, text in self.records if level is None or lvl == level]


def make_config(root: Path, **overrides):
    data_dir = root / "data"
    prompts_dir = root / "prompts"
    values = dict(
        bot_name="Kleinbot",
        admin_id="admin@s.whatsapp.net",
        history_window=50,
        process_interval_seconds=60,
        max_retries=3,
        max_notes_lines=50,
        data_dir=data_dir,
        state_path=data_dir / "state.json",
        pending_path=data_dir / "pending.json",
        notes_dir=data_dir / "notes",
        chats_config_path=prompts_dir / "chats.json",
        prompts_dir=prompts_dir,
        moltbook_enabled=True,
        moltbook_model="sonnet",
        moltbook_state_path=data_dir / "moltbook-state.json",
        moltbook_journal_path=data_dir / "moltbook-journal.md",
        moltbook_action_journal_path=data_dir / "moltbook-actions.jsonl",
        moltbook_prompt_path=prompts_dir / "moltbook.md",
        moltbook_feed_limit=25,
        moltbook_cycle_timeout_seconds=120,
        moltbook_comment_timeout_seconds=60,
        moltbook_action_delay_seconds=0.0,
        post_cooldown_seconds=1800,
        comment_window_seconds=3600,
        max_comments_per_window=50,
        max_seen_posts=500,
        max_comment_timestamps=100,
        max_journal_chars=8000,
        log_path=None,
    )
    values.update(overrides)
    return replace(load_config(), **values)


def write_chats(cfg, chats=None):
    cfg.chats_config_path.parent.mkdir(parents=True, exist_ok=True)
    payload = chats or {"default": {"prompt": "prompts/persona.md", "model": "sonnet", "verbosity": 3}}
    cfg.chats_config_path.write_text(json.dumps(payload), encoding="utf-8")
    return payload
