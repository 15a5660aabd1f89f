from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .chats import ChatConfig
from .models import ChatMessage
from .state import BotState, allow_dm


DM_SUFFIX = "@s.whatsapp.net"

HELP_LINES = [
    "/status - bot status for this chat",
    "/notes - show bot's notes for this chat",
    "/allow <number> - approve a DM contact",
    "/allowed - list approved DM contacts",
    "/help - this message",
]


@dataclass
class AdminContext:
    state: BotState
    chat_config: Optional[ChatConfig]
    notes_text: str
    history_depth: int
    queue_depth: int


@dataclass
class AdminResult:
    text: str
    state_changed: bool = False


def is_admin_command(msg: ChatMessage, admin_id: str) -> bool:
    if not admin_id:
        return False
    return msg.sender_id == admin_id and msg.text.lstrip().startswith("/")


def normalize_dm_id(raw: str) -> str:
    value = raw.strip()
    if "@" in value:
        return value
    return f"{value.lstrip('+')}{DM_SUFFIX}"


def _status_text(ctx: AdminContext) -> str:
    cfg = ctx.chat_config
    lines = [
        f"Model: {cfg.model if cfg else '(unconfigured)'}",
        f"Verbosity: {cfg.verbosity if cfg else '-'}/5",
        f"History: {ctx.history_depth} messages",
        f"Pending: {ctx.queue_depth}",
        f"Approved DMs: {len(ctx.state.allowed_dm_ids)}",
    ]
    if cfg and cfg.description:
        lines.append(f"Description: {cfg.description}")
    return "\n".join(lines)


def handle_admin_command(msg: ChatMessage, ctx: AdminContext) -> AdminResult:
    """Answer one privileged control message.

    Only ``/allow`` mutates anything, and only the DM allow-list on
    ``ctx.state``; callers flush state when ``state_changed`` is set.
    """
    parts = msg.text.strip().split()
    cmd = parts[0].lower() if parts else ""
    args = parts[1:]

    if cmd == "/status":
        return AdminResult(_status_text(ctx))

    if cmd == "/notes":
        return AdminResult(ctx.notes_text or "(no notes)")

    if cmd == "/allow":
        if not args:
            return AdminResult("Usage: /allow <number>")
        dm_id = normalize_dm_id(args[0])
        if allow_dm(ctx.state, dm_id):
            return AdminResult(f"Approved DM: {dm_id}", state_changed=True)
        return AdminResult(f"Already approved: {dm_id}")

    if cmd == "/allowed":
        listing = "\n".join(ctx.state.allowed_dm_ids) if ctx.state.allowed_dm_ids else "(none)"
        return AdminResult(f"Approved DMs:\n{listing}")

    if cmd == "/help":
        return AdminResult("\n".join(HELP_LINES))

    return AdminResult(f"Unknown command: {cmd}. Try /help")
