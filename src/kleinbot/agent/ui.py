from __future__ import annotations

import os
import sys
import textwrap
from typing import Any, Dict, List, Tuple

from .config import Config
from .models import PollData, normalize_str


def supports_color() -> bool:
    return sys.stdout.isatty() and not bool(os.getenv("NO_COLOR"))


def _ui_palette() -> Dict[str, str]:
    if not supports_color():
        return {
            "reset": "",
            "bold": "",
            "dim": "",
            "blue": "",
            "cyan": "",
            "green": "",
            "yellow": "",
            "magenta": "",
        }
    return {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "blue": "\033[1;34m",
        "cyan": "\033[1;36m",
        "green": "\033[1;32m",
        "yellow": "\033[1;33m",
        "magenta": "\033[1;35m",
    }


def _ui_paint(text: str, tone: str = "", bold: bool = False) -> str:
    palette = _ui_palette()
    reset = palette["reset"]
    if not reset:
        return text
    chunks: List[str] = []
    if bold:
        chunks.append(palette["bold"])
    if tone:
        chunks.append(palette.get(tone, ""))
    chunks.append(text)
    chunks.append(reset)
    return "".join(chunks)


def _ui_wrap_lines(value: Any, width: int) -> List[str]:
    text = normalize_str(value).strip()
    if width < 8:
        width = 8
    if not text:
        return [""]
    out: List[str] = []
    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if not line:
            out.append("")
            continue
        wrapped = textwrap.wrap(line, width=width, break_long_words=True, break_on_hyphens=False)
        out.extend(wrapped or [""])
    return out or [""]


def _ui_print_panel(
    title: str,
    rows: List[Tuple[str, Any]],
    tone: str = "cyan",
    width: int = 74,
) -> None:
    inner = max(30, width - 4)
    border = "+" + ("-" * (inner + 2)) + "+"
    print("")
    print(_ui_paint(border, tone=tone, bold=True))
    title_text = normalize_str(title).strip() or "INFO"
    print(_ui_paint(f"| {title_text:<{inner}} |", tone=tone, bold=True))
    print(_ui_paint(border, tone=tone))
    for key, value in rows:
        label = normalize_str(key).strip()
        value_lines = _ui_wrap_lines(value, width=(inner - (len(label) + 2) if label else inner))
        for idx, line in enumerate(value_lines):
            if label:
                prefix = f"{label}: " if idx == 0 else (" " * (len(label) + 2))
            else:
                prefix = ""
            content = f"{prefix}{line}"
            print(f"| {content:<{inner}} |")
    print(_ui_paint(border, tone=tone))
    print("")


def print_runtime_banner(cfg: Config) -> None:
    _ui_print_panel(
        title="KLEINBOT",
        rows=[
            ("bot", f"{cfg.bot_name} | admin={cfg.admin_id or '-'}"),
            ("oracle", f"{cfg.oracle_command} | timeout/{cfg.oracle_timeout_seconds}s"),
            (
                "cadence",
                f"process/{cfg.process_interval_seconds}s retries/{cfg.max_retries} history/{cfg.history_window}",
            ),
            (
                "moltbook",
                f"enabled={int(cfg.moltbook_enabled)} heartbeat/{cfg.moltbook_heartbeat_seconds}s "
                f"model={cfg.moltbook_model}",
            ),
        ],
        tone="magenta",
    )


def print_outgoing_banner(chat_id: str, text: str) -> None:
    _ui_print_panel(title=f"SEND {chat_id}", rows=[("", text)], tone="cyan")


def print_poll_banner(chat_id: str, poll: PollData) -> None:
    rows: List[Tuple[str, Any]] = [("question", poll.question)]
    for idx, option in enumerate(poll.options, start=1):
        rows.append((str(idx), option))
    rows.append(("pick", "any" if poll.multi_select else "one"))
    _ui_print_panel(title=f"POLL {chat_id}", rows=rows, tone="yellow")


def print_feed_action_banner(action: str, post_id: str, title: str, url: str) -> None:
    _ui_print_panel(
        title=f"[MOLTBOOK] {action.upper()}",
        rows=[
            ("post_id", post_id),
            ("title", title),
            ("url", url),
        ],
        tone="green",
    )
