from __future__ import annotations

import asyncio
import itertools
import logging
import sys
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .models import MAX_POLL_OPTION_CHARS, MAX_POLL_OPTIONS, ChatMessage, PollData, normalize_str
from .ui import print_outgoing_banner, print_poll_banner


MessagesHandler = Callable[[List[ChatMessage]], None]
OutgoingDmHandler = Callable[[str], None]

DM_SUFFIX = "@s.whatsapp.net"
CONSOLE_CHAT_ID = "console@g.us"

logger = logging.getLogger("kleinbot")


class TransportError(RuntimeError):
    """A send or metadata call to the chat transport failed."""


class TransportLoggedOutError(TransportError):
    """The transport credential was revoked; re-pairing is required."""


class ChatTransport(Protocol):
    async def start(self, on_messages: MessagesHandler, on_outgoing_dm: Optional[OutgoingDmHandler] = None) -> None:
        ...

    async def stop(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    async def send_text(self, chat_id: str, text: str) -> None:
        ...

    async def send_poll(self, chat_id: str, poll: PollData) -> None:
        ...

    async def fetch_chat_metadata(self, chat_id: str) -> Optional[Dict[str, Any]]:
        ...


def _message_text(body: Dict[str, Any]) -> str:
    text = body.get("conversation")
    if text:
        return normalize_str(text)
    extended = body.get("extendedTextMessage")
    if isinstance(extended, dict):
        return normalize_str(extended.get("text"))
    return ""


def message_from_payload(raw: Dict[str, Any]) -> Optional[ChatMessage]:
    """Normalize one transport-native message record into a ChatMessage.

    Returns None for our own messages, messages without a chat id and
    anything without text (media, reactions, receipts).
    """
    key = raw.get("key") if isinstance(raw.get("key"), dict) else {}
    if key.get("fromMe"):
        return None
    chat_id = normalize_str(key.get("remoteJid")).strip()
    if not chat_id:
        return None
    body = raw.get("message") if isinstance(raw.get("message"), dict) else {}
    text = _message_text(body)
    if not text:
        return None

    try:
        timestamp = int(float(raw.get("messageTimestamp") or 0))
    except (TypeError, ValueError):
        timestamp = 0
    # In groups the participant is the sender; in DMs the chat is.
    sender_id = normalize_str(key.get("participant")).strip() or chat_id

    context: Dict[str, Any] = {}
    extended = body.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("contextInfo"), dict):
        context = extended["contextInfo"]
    quoted = context.get("quotedMessage") if isinstance(context.get("quotedMessage"), dict) else {}
    mentioned = context.get("mentionedJid") or []

    return ChatMessage(
        id=normalize_str(key.get("id")).strip() or f"{timestamp}-{sender_id}",
        chat_id=chat_id,
        timestamp=timestamp,
        sender=normalize_str(raw.get("pushName")).strip() or sender_id.split("@")[0],
        sender_id=sender_id,
        text=text,
        quoted_text=normalize_str(quoted.get("conversation")).strip() or None,
        mentioned_ids=tuple(normalize_str(m) for m in mentioned if m) if isinstance(mentioned, list) else (),
    )


def extract_messages(raw_messages: Iterable[Dict[str, Any]]) -> List[ChatMessage]:
    out = [msg for msg in (message_from_payload(raw) for raw in raw_messages if isinstance(raw, dict)) if msg]
    out.sort(key=lambda m: m.timestamp)
    return out


def outgoing_dm_ids(raw_messages: Iterable[Dict[str, Any]]) -> List[str]:
    """DM chat ids the operator wrote to from their own phone."""
    found: List[str] = []
    for raw in raw_messages:
        key = raw.get("key") if isinstance(raw, dict) and isinstance(raw.get("key"), dict) else {}
        chat_id = normalize_str(key.get("remoteJid")).strip()
        if key.get("fromMe") and chat_id.endswith(DM_SUFFIX):
            found.append(chat_id)
    return found


def poll_payload(poll: PollData) -> Dict[str, Any]:
    return {
        "name": poll.question,
        "values": [option[:MAX_POLL_OPTION_CHARS] for option in poll.options[:MAX_POLL_OPTIONS]],
        "selectableCount": poll.selectable_count,
    }


class StdioTransport:
    """Development transport: stdin lines become messages in one console group."""

    def __init__(
        self,
        sender_id: str = "operator@s.whatsapp.net",
        sender_name: str = "operator",
        chat_id: str = CONSOLE_CHAT_ID,
        subject: str = "Console",
        clock: Callable[[], float] = time.time,
    ):
        self.sender_id = sender_id
        self.sender_name = sender_name
        self.chat_id = chat_id
        self.subject = subject
        self._clock = clock
        self._counter = itertools.count(1)
        self._connected = False
        self._reader: Optional[asyncio.Task] = None
        self._on_messages: Optional[MessagesHandler] = None

    def line_to_message(self, line: str) -> Optional[ChatMessage]:
        text = line.strip()
        if not text:
            return None
        ts = int(self._clock())
        return ChatMessage(
            id=f"console-{ts}-{next(self._counter)}",
            chat_id=self.chat_id,
            timestamp=ts,
            sender=self.sender_name,
            sender_id=self.sender_id,
            text=text,
        )

    async def _read_loop(self) -> None:
        while self._connected:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                logger.info("Console input closed")
                return
            msg = self.line_to_message(line)
            if msg and self._on_messages:
                self._on_messages([msg])

    async def start(self, on_messages: MessagesHandler, on_outgoing_dm: Optional[OutgoingDmHandler] = None) -> None:
        self._on_messages = on_messages
        self._connected = True
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Console transport ready chat=%s sender=%s", self.chat_id, self.sender_id)

    async def stop(self) -> None:
        self._connected = False
        if self._reader and not self._reader.done():
            # The pending readline thread cannot be interrupted; abandon it.
            self._reader.cancel()

    def is_connected(self) -> bool:
        return self._connected

    async def send_text(self, chat_id: str, text: str) -> None:
        if not self._connected:
            raise TransportError("console transport is not connected")
        print_outgoing_banner(chat_id, text)

    async def send_poll(self, chat_id: str, poll: PollData) -> None:
        if not self._connected:
            raise TransportError("console transport is not connected")
        print_poll_banner(chat_id, poll)

    async def fetch_chat_metadata(self, chat_id: str) -> Optional[Dict[str, Any]]:
        if chat_id != self.chat_id:
            return None
        return {"subject": self.subject, "description": ""}
