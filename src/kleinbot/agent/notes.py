from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


DEFAULT_MAX_NOTES_LINES = 50


def _safe_file_stem(chat_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9@._-]+", "_", chat_id.strip()) or "unknown"


def notes_path(notes_dir: Path, chat_id: str) -> Path:
    return notes_dir / f"{_safe_file_stem(chat_id)}.md"


def read_notes(notes_dir: Path, chat_id: str) -> str:
    path = notes_path(notes_dir, chat_id)
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def save_notes(
    notes_dir: Path,
    chat_id: str,
    new_notes: str,
    max_lines: int = DEFAULT_MAX_NOTES_LINES,
    now: Optional[datetime] = None,
) -> None:
    """Append a timestamped note line, keeping only the newest ``max_lines``."""
    text = " ".join(new_notes.split())
    if not text:
        return
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M")
    lines = [line for line in read_notes(notes_dir, chat_id).split("\n") if line.strip()]
    lines.append(f"[{stamp}] {text}")
    if max_lines > 0:
        lines = lines[-max_lines:]
    path = notes_path(notes_dir, chat_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
