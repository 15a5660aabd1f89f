from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from .models import ChatMessage


MAX_STORED_IDS = 500

logger = logging.getLogger("kleinbot")


@dataclass
class BotState:
    last_processed_timestamp: int = 0
    processed_message_ids: List[str] = field(default_factory=list)
    message_history: List[ChatMessage] = field(default_factory=list)
    allowed_dm_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "last_processed_timestamp": self.last_processed_timestamp,
            "processed_message_ids": list(self.processed_message_ids),
            "message_history": [msg.to_dict() for msg in self.message_history],
            "allowed_dm_ids": list(self.allowed_dm_ids),
        }


def trim_history_per_chat(messages: List[ChatMessage], per_chat_window: int) -> List[ChatMessage]:
    """Keep the newest ``per_chat_window`` messages of every conversation.

    Each conversation is trimmed on its own so a busy group can never push a
    quiet DM out of history. The result is sorted ascending by timestamp.
    """
    if per_chat_window <= 0:
        return []

    by_chat: Dict[str, List[ChatMessage]] = {}
    for msg in messages:
        if not msg.chat_id:
            continue
        by_chat.setdefault(msg.chat_id, []).append(msg)

    trimmed: List[ChatMessage] = []
    for queue in by_chat.values():
        queue.sort(key=lambda m: m.timestamp)
        trimmed.extend(queue[-per_chat_window:])

    trimmed.sort(key=lambda m: m.timestamp)
    return trimmed


def load_state(path: Path, history_window: int) -> BotState:
    if not path.exists():
        return BotState()
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("State file unreadable, starting fresh path=%s error=%s", path, e)
        return BotState()
    if not isinstance(raw, dict):
        return BotState()

    # Backward compatibility with the camelCase state layout.
    history_raw = raw.get("message_history", raw.get("messageHistory", []))
    ids_raw = raw.get("processed_message_ids", raw.get("processedMessageIds", []))
    allowed_raw = raw.get("allowed_dm_ids", raw.get("allowedDmJids", []))
    last_ts_raw = raw.get("last_processed_timestamp", raw.get("lastProcessedTimestamp", 0))

    history: List[ChatMessage] = []
    if isinstance(history_raw, list):
        for item in history_raw:
            if isinstance(item, dict):
                history.append(ChatMessage.from_dict(item))
    try:
        last_ts = int(last_ts_raw or 0)
    except (TypeError, ValueError):
        last_ts = 0

    return BotState(
        last_processed_timestamp=last_ts,
        processed_message_ids=[str(x) for x in ids_raw] if isinstance(ids_raw, list) else [],
        message_history=trim_history_per_chat(history, history_window),
        allowed_dm_ids=[str(x) for x in allowed_raw] if isinstance(allowed_raw, list) else [],
    )


def save_state(path: Path, state: BotState, history_window: int) -> None:
    if len(state.processed_message_ids) > MAX_STORED_IDS:
        state.processed_message_ids = state.processed_message_ids[-MAX_STORED_IDS:]
    state.message_history = trim_history_per_chat(state.message_history, history_window)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2)
    os.replace(tmp_path, path)


def is_processed(state: BotState, message_id: str) -> bool:
    # History can outlive the id cap, so both must be checked.
    if message_id in state.processed_message_ids:
        return True
    return any(msg.id == message_id for msg in state.message_history)


def mark_processed(state: BotState, msg: ChatMessage) -> None:
    state.processed_message_ids.append(msg.id)
    state.message_history.append(msg)
    if msg.timestamp > state.last_processed_timestamp:
        state.last_processed_timestamp = msg.timestamp


def chat_history(state: BotState, chat_id: str, limit: int) -> List[ChatMessage]:
    if limit <= 0:
        return []
    history = sorted(
        (msg for msg in state.message_history if msg.chat_id == chat_id),
        key=lambda m: m.timestamp,
    )
    return history[-limit:]


def is_dm_allowed(state: BotState, chat_id: str) -> bool:
    return chat_id in state.allowed_dm_ids


def allow_dm(state: BotState, chat_id: str) -> bool:
    """Approve a DM contact. Returns True when the contact was newly added."""
    if chat_id in state.allowed_dm_ids:
        return False
    state.allowed_dm_ids.append(chat_id)
    return True
