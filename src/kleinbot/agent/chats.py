from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config import ConfigError
from .models import normalize_str


DEFAULT_CHAT_KEY = "default"
DEFAULT_VERBOSITY = 3


def clamp_verbosity(value: Any) -> int:
    try:
        level = int(value)
    except (TypeError, ValueError):
        return DEFAULT_VERBOSITY
    return max(1, min(5, level))


def is_group_chat(chat_id: str) -> bool:
    return chat_id.endswith("@g.us")


def is_dm_chat(chat_id: str) -> bool:
    return chat_id.endswith("@s.whatsapp.net")


@dataclass
class ChatConfig:
    prompt: str
    model: str
    verbosity: int = DEFAULT_VERBOSITY
    description: Optional[str] = None
    context: Optional[str] = None
    moltbook: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChatConfig":
        prompt = normalize_str(payload.get("prompt")).strip()
        model = normalize_str(payload.get("model")).strip()
        if not prompt or not model:
            raise ConfigError("chat config entries need both 'prompt' and 'model'")
        return cls(
            prompt=prompt,
            model=model,
            verbosity=clamp_verbosity(payload.get("verbosity", DEFAULT_VERBOSITY)),
            description=normalize_str(payload.get("description")).strip() or None,
            context=normalize_str(payload.get("context")).strip() or None,
            moltbook=bool(payload.get("moltbook", False)),
        )


def load_chats(path: Path) -> Dict[str, Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8") as f:
            chats = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"chats config not found: {path}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"chats config unreadable: {path}: {e}") from e
    if not isinstance(chats, dict) or not isinstance(chats.get(DEFAULT_CHAT_KEY), dict):
        raise ConfigError(f"chats config {path} must contain a '{DEFAULT_CHAT_KEY}' entry")
    return chats


def save_chats(path: Path, chats: Dict[str, Dict[str, Any]]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(chats, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"chats config not writable: {path}: {e}") from e


def get_chat_config(path: Path, chat_id: str) -> ChatConfig:
    chats = load_chats(path)
    entry = chats.get(chat_id)
    if not isinstance(entry, dict):
        entry = chats[DEFAULT_CHAT_KEY]
    return ChatConfig.from_dict(entry)


def moltbook_chat_ids(path: Path) -> list:
    chats = load_chats(path)
    return [
        chat_id
        for chat_id, entry in chats.items()
        if chat_id != DEFAULT_CHAT_KEY and isinstance(entry, dict) and entry.get("moltbook")
    ]


def describe_chat_metadata(meta: Optional[Dict[str, Any]]) -> str:
    if not isinstance(meta, dict):
        return ""
    parts = []
    subject = normalize_str(meta.get("subject")).strip()
    description = normalize_str(meta.get("description")).strip()
    if subject:
        parts.append(f"Group: {subject}")
    if description:
        parts.append(description)
    return "\n".join(parts)


def ensure_chat_config(path: Path, chat_id: str, description: str = "") -> bool:
    """Create a config entry for an unseen conversation from the default entry.

    Returns True when a new entry was written.
    """
    chats = load_chats(path)
    if chat_id in chats:
        return False
    defaults = chats[DEFAULT_CHAT_KEY]
    chats[chat_id] = {
        "prompt": defaults.get("prompt"),
        "model": defaults.get("model"),
        "verbosity": clamp_verbosity(defaults.get("verbosity", DEFAULT_VERBOSITY)),
        "description": description,
    }
    save_chats(path, chats)
    return True
