from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..agent.config import Config
from ..agent.models import normalize_str


logger = logging.getLogger("kleinbot")


def default_feed_state() -> Dict[str, Any]:
    return {
        "seen_post_ids": [],
        "last_cycle_ts": None,
        "last_post_ts": None,
        "comment_timestamps": [],
        "cross_pollination_queue": [],
    }


def load_feed_state(path: Path) -> Dict[str, Any]:
    state = default_feed_state()
    if not path.exists():
        return state
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Moltbook state unreadable, starting fresh path=%s error=%s", path, e)
        return state
    if not isinstance(raw, dict):
        return state
    state.update(raw)
    # Backward compatibility with the camelCase, millisecond state layout.
    if "seenPostIds" in raw and not raw.get("seen_post_ids"):
        state["seen_post_ids"] = list(raw.get("seenPostIds") or [])
    if "crossPollinationQueue" in raw and not raw.get("cross_pollination_queue"):
        state["cross_pollination_queue"] = list(raw.get("crossPollinationQueue") or [])
    if raw.get("lastPostTimestamp") and not raw.get("last_post_ts"):
        state["last_post_ts"] = float(raw["lastPostTimestamp"]) / 1000.0
    if raw.get("commentTimestamps") and not raw.get("comment_timestamps"):
        state["comment_timestamps"] = [float(t) / 1000.0 for t in raw["commentTimestamps"] if isinstance(t, (int, float))]
    for key in ("seenPostIds", "crossPollinationQueue", "lastPostTimestamp", "commentTimestamps", "lastCycleTimestamp", "lastRunDate"):
        state.pop(key, None)
    for key in ("seen_post_ids", "comment_timestamps", "cross_pollination_queue"):
        if not isinstance(state.get(key), list):
            state[key] = []
    return state


def _prune_comment_timestamps(state: Dict[str, Any], window_seconds: int, now: Optional[float] = None) -> List[float]:
    now_ts = time.time() if now is None else now
    kept: List[float] = []
    for value in state.get("comment_timestamps", []):
        if not isinstance(value, (int, float)):
            continue
        ts = float(value)
        if now_ts - ts < window_seconds:
            kept.append(ts)
    kept.sort()
    state["comment_timestamps"] = kept
    return kept


def save_feed_state(path: Path, state: Dict[str, Any], cfg: Config, now: Optional[float] = None) -> None:
    seen = state.get("seen_post_ids", [])
    if len(seen) > cfg.max_seen_posts:
        state["seen_post_ids"] = seen[-cfg.max_seen_posts :]
    kept = _prune_comment_timestamps(state, cfg.comment_window_seconds, now=now)
    if len(kept) > cfg.max_comment_timestamps:
        state["comment_timestamps"] = kept[-cfg.max_comment_timestamps :]

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


def is_post_seen(state: Dict[str, Any], post_id: str) -> bool:
    return post_id in state.get("seen_post_ids", [])


def mark_post_seen(state: Dict[str, Any], post_id: str) -> None:
    seen = state.setdefault("seen_post_ids", [])
    if post_id and post_id not in seen:
        seen.append(post_id)


def post_gate_status(state: Dict[str, Any], cfg: Config, now: Optional[float] = None) -> Tuple[bool, str]:
    now_ts = time.time() if now is None else now
    last_post = state.get("last_post_ts")
    if isinstance(last_post, (int, float)):
        if now_ts - last_post < cfg.post_cooldown_seconds:
            return False, "post_cooldown"
    return True, "ok"


def comment_gate_status(state: Dict[str, Any], cfg: Config, now: Optional[float] = None) -> Tuple[bool, str]:
    recent = _prune_comment_timestamps(state, cfg.comment_window_seconds, now=now)
    if len(recent) >= cfg.max_comments_per_window:
        return False, "comment_hourly_limit"
    return True, "ok"


def can_post(state: Dict[str, Any], cfg: Config, now: Optional[float] = None) -> bool:
    allowed, _ = post_gate_status(state, cfg, now=now)
    return allowed


def can_comment(state: Dict[str, Any], cfg: Config, now: Optional[float] = None) -> bool:
    allowed, _ = comment_gate_status(state, cfg, now=now)
    return allowed


def record_post(state: Dict[str, Any], now: Optional[float] = None) -> None:
    state["last_post_ts"] = time.time() if now is None else now


def record_comment(state: Dict[str, Any], now: Optional[float] = None) -> None:
    state.setdefault("comment_timestamps", []).append(time.time() if now is None else now)


def normalize_cross_item(raw: Any) -> Optional[Dict[str, str]]:
    if not isinstance(raw, dict):
        return None
    title = normalize_str(raw.get("title")).strip()
    if not title:
        return None
    return {
        "post_id": normalize_str(raw.get("post_id") or raw.get("postId")).strip(),
        "title": title,
        "snippet": normalize_str(raw.get("snippet")).strip(),
        "submolt": normalize_str(raw.get("submolt")).strip() or "general",
    }


def enqueue_cross_pollination(state: Dict[str, Any], items: List[Any]) -> int:
    queue = state.setdefault("cross_pollination_queue", [])
    added = 0
    for raw in items:
        item = normalize_cross_item(raw)
        if item is not None:
            queue.append(item)
            added += 1
    return added


def drain_cross_pollination(state: Dict[str, Any]) -> List[Dict[str, str]]:
    items = list(state.get("cross_pollination_queue", []))
    state["cross_pollination_queue"] = []
    return items
