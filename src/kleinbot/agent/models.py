from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


MAX_POLL_OPTIONS = 12
MAX_POLL_OPTION_CHARS = 100
VALID_MOLTBOOK_ACTIONS = {"search", "post", "hot"}


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _optional_text(value: Any) -> Optional[str]:
    text = normalize_str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    return text


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    text = normalize_str(value).strip().lower()
    if text in {"1", "true", "yes", "y"}:
        return True
    if text in {"0", "false", "no", "n"}:
        return False
    return default


def _first_key(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


@dataclass(frozen=True)
class ChatMessage:
    id: str
    chat_id: str
    timestamp: int
    sender: str
    sender_id: str
    text: str
    quoted_text: Optional[str] = None
    mentioned_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "id": self.id,
            "chat_id": self.chat_id,
            "timestamp": self.timestamp,
            "sender": self.sender,
            "sender_id": self.sender_id,
            "text": self.text,
        }
        if self.quoted_text:
            row["quoted_text"] = self.quoted_text
        if self.mentioned_ids:
            row["mentioned_ids"] = list(self.mentioned_ids)
        return row

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChatMessage":
        # Older state files used the transport's camelCase field names.
        chat_id = normalize_str(_first_key(payload, "chat_id", "chatJid")).strip()
        sender_id = normalize_str(_first_key(payload, "sender_id", "senderJid")).strip()
        try:
            timestamp = int(float(payload.get("timestamp") or 0))
        except (TypeError, ValueError):
            timestamp = 0
        message_id = normalize_str(payload.get("id")).strip() or f"{timestamp}-{sender_id}"
        mentioned = _first_key(payload, "mentioned_ids", "mentionedJids") or []
        if not isinstance(mentioned, (list, tuple)):
            mentioned = []
        return cls(
            id=message_id,
            chat_id=chat_id,
            timestamp=timestamp,
            sender=normalize_str(payload.get("sender")),
            sender_id=sender_id,
            text=normalize_str(payload.get("text")),
            quoted_text=_optional_text(_first_key(payload, "quoted_text", "quotedText")),
            mentioned_ids=tuple(normalize_str(item) for item in mentioned if item),
        )


@dataclass
class PollData:
    question: str
    options: List[str]
    multi_select: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["PollData"]:
        """Build a sendable poll, or None when the payload cannot form one."""
        if not isinstance(payload, dict):
            return None
        question = normalize_str(payload.get("question")).strip()
        raw_options = payload.get("options")
        if not question or not isinstance(raw_options, list):
            return None
        options: List[str] = []
        for item in raw_options:
            text = normalize_str(item).strip()[:MAX_POLL_OPTION_CHARS]
            if text:
                options.append(text)
            if len(options) >= MAX_POLL_OPTIONS:
                break
        if len(options) < 2:
            return None
        multi = _first_key(payload, "multi_select", "multiSelect")
        return cls(question=question, options=options, multi_select=_coerce_bool(multi))

    @property
    def selectable_count(self) -> int:
        # 0 lets participants pick any number of options.
        return 0 if self.multi_select else 1


@dataclass
class MoltbookAction:
    type: str
    query: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    submolt: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["MoltbookAction"]:
        if not isinstance(payload, dict):
            return None
        action_type = normalize_str(payload.get("type")).strip().lower()
        if action_type not in VALID_MOLTBOOK_ACTIONS:
            return None
        return cls(
            type=action_type,
            query=_optional_text(payload.get("query")),
            title=_optional_text(payload.get("title")),
            content=_optional_text(payload.get("content")),
            submolt=_optional_text(payload.get("submolt")),
        )


@dataclass
class Decision:
    should_respond: bool = False
    response: Optional[str] = None
    notes: Optional[str] = None
    poll: Optional[PollData] = None
    moltbook_action: Optional[MoltbookAction] = None

    @classmethod
    def do_nothing(cls) -> "Decision":
        return cls()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Decision":
        should_respond = _coerce_bool(_first_key(payload, "shouldRespond", "should_respond"))
        return cls(
            should_respond=should_respond,
            response=_optional_text(payload.get("response")),
            notes=_optional_text(payload.get("notes")),
            poll=PollData.from_payload(payload.get("poll")),
            moltbook_action=MoltbookAction.from_payload(_first_key(payload, "moltbookAction", "moltbook_action")),
        )

    @property
    def reply_text(self) -> Optional[str]:
        if self.should_respond and self.response:
            return self.response
        return None


@dataclass
class CachedDecision:
    """A decision kept across a failed apply, with the effects that already ran."""

    decision: Decision
    completed: set = field(default_factory=set)
    moltbook_result: Optional[str] = None
