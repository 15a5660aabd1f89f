from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..agent.models import normalize_str


DEFAULT_MAX_JOURNAL_CHARS = 8000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clip_text(value: Any, limit: int) -> str:
    text = normalize_str(value).strip()
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def read_journal(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return ""


def trim_journal(text: str, max_chars: int) -> str:
    """Drop whole dated sections from the front until ``text`` fits."""
    while len(text) > max_chars:
        idx = text.find("\n## ", 1)
        if idx == -1:
            break
        text = text[idx + 1 :]
    return text


def append_journal(
    path: Path,
    entry: str,
    max_chars: int = DEFAULT_MAX_JOURNAL_CHARS,
    now: Optional[datetime] = None,
) -> None:
    body = normalize_str(entry).strip()
    if not body:
        return
    day = (now or _utc_now()).date().isoformat()
    updated = trim_journal(read_journal(path) + f"## {day}\n{body}\n\n", max_chars)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(updated, encoding="utf-8")


def append_action_journal(
    path: Path,
    *,
    action_type: str,
    target_post_id: str,
    submolt: str = "",
    title: str = "",
    content: str = "",
    origin: str = "cycle",
    url: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """Append one JSONL record for a feed action that went through."""
    path.parent.mkdir(parents=True, exist_ok=True)
    row: Dict[str, Any] = {
        "ts": _utc_now().isoformat(),
        "action_type": normalize_str(action_type).strip().lower(),
        "origin": normalize_str(origin).strip().lower(),
        "target_post_id": normalize_str(target_post_id).strip(),
        "submolt": normalize_str(submolt).strip().lower(),
        "title": _clip_text(title, 400),
        "content": _clip_text(content, 5000),
    }
    if url:
        row["url"] = normalize_str(url).strip()
    if isinstance(meta, dict) and meta:
        row["meta"] = meta
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=True) + "\n")
