from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..agent.config import Config
from ..agent.models import _first_key, _optional_text, normalize_str
from ..agent.oracle import OracleError, extract_json_object
from ..agent.ui import print_feed_action_banner
from ..moltbook_client import MoltbookApiError, MoltbookClient, flatten_comments
from .journal import append_action_journal, append_journal
from .state import (
    comment_gate_status,
    enqueue_cross_pollination,
    is_post_seen,
    load_feed_state,
    mark_post_seen,
    post_gate_status,
    record_comment,
    record_post,
    save_feed_state,
)


# Feed content is untrusted; clip it before it reaches a prompt.
MAX_CONTENT_CHARS = 500
MAX_TITLE_CHARS = 200

CYCLE_SCHEMA_HINT = (
    '{"actions": [{"type": "upvote"|"comment"|"post", "postId": "...", "parentCommentId": "...", '
    '"title": "...", "content": "...", "submolt": "..."}], '
    '"crossPollinate": [{"postId": "...", "title": "...", "snippet": "brief summary", "submolt": "..."}], '
    '"notes": "your observations"}'
)


@dataclass
class FeedCycleResult:
    status: str = "ok"
    fetched: int = 0
    new_posts: int = 0
    upvotes: int = 0
    comments: int = 0
    posts: int = 0
    skipped: List[str] = field(default_factory=list)
    cross_pollinated: int = 0


def post_url(post_id: Optional[str]) -> str:
    if not post_id:
        return "(unknown)"
    return f"https://moltbook.com/post/{post_id}"


def _truncate(value: Any, max_chars: int) -> str:
    text = normalize_str(value)
    return text if len(text) <= max_chars else text[:max_chars] + "..."


def _author_name(item: Dict[str, Any]) -> str:
    author = item.get("author")
    if isinstance(author, dict):
        return normalize_str(author.get("name")).strip() or "unknown"
    return normalize_str(author).strip() or "unknown"


def _submolt_name(post: Dict[str, Any]) -> str:
    submolt = post.get("submolt")
    if isinstance(submolt, dict):
        return normalize_str(submolt.get("name")).strip() or "general"
    return normalize_str(submolt).strip() or "general"


def format_feed_for_prompt(posts: List[Dict[str, Any]]) -> str:
    blocks: List[str] = []
    for idx, post in enumerate(posts, start=1):
        lines = [
            f"[{idx}] id={post.get('id')} r/{_submolt_name(post)} by {_author_name(post)} "
            f"({post.get('upvotes', 0)} upvotes, {post.get('comment_count', 0)} comments)",
            f'    "{_truncate(post.get("title"), MAX_TITLE_CHARS)}"',
        ]
        content = _truncate(post.get("content"), MAX_CONTENT_CHARS)
        if content:
            lines.append(f"    {content}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_comments_for_prompt(comments: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"  [{_author_name(c)}] ({c.get('upvotes', 0)} upvotes, id={c.get('id')}): "
        f"{_truncate(c.get('content'), MAX_CONTENT_CHARS)}"
        for c in flatten_comments(comments)
    )


def build_cycle_prompt(posts: List[Dict[str, Any]]) -> str:
    return "\n".join(
        [
            "Here are the latest posts on Moltbook that you haven't seen before.",
            "Decide which to upvote, comment on, or if you want to create your own post.",
            "Also pick any posts worth sharing with the WhatsApp group (cross-pollination).",
            "",
            "--- BEGIN UNTRUSTED MOLTBOOK FEED ---",
            format_feed_for_prompt(posts),
            "--- END UNTRUSTED MOLTBOOK FEED ---",
            "",
            "Reply with ONLY valid JSON (no markdown fences):",
            CYCLE_SCHEMA_HINT,
        ]
    )


def build_comment_prompt(post: Dict[str, Any], comments: List[Dict[str, Any]]) -> str:
    lines = [
        "Write a comment for this Moltbook post. Be genuine, add value, and don't repeat what others said.",
        "",
        "--- BEGIN UNTRUSTED MOLTBOOK POST ---",
        f'Post: "{_truncate(post.get("title"), MAX_TITLE_CHARS)}"',
    ]
    if post.get("content"):
        lines.append(f"Content: {_truncate(post.get('content'), MAX_CONTENT_CHARS)}")
    lines.append(f"Submolt: r/{_submolt_name(post)} | By: {_author_name(post)} | {post.get('upvotes', 0)} upvotes")
    lines.append("")
    if comments:
        lines.append(f"Existing comments:\n{format_comments_for_prompt(comments)}")
    else:
        lines.append("No comments yet.")
    lines.extend(
        [
            "--- END UNTRUSTED MOLTBOOK POST ---",
            "",
            "Reply with ONLY a JSON object:",
            '{"comment": "your comment text"}',
            "If you have nothing valuable to add, reply:",
            '{"comment": null}',
        ]
    )
    return "\n".join(lines)


def parse_cycle_decision(raw: str, logger: logging.Logger) -> Dict[str, Any]:
    """Coerce the cycle reply into actions, cross-post items and notes.

    Unusable output yields an empty plan.
    """
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("Moltbook cycle output had no usable JSON raw=%s", _truncate(raw, 300))
        return {"actions": [], "cross_pollinate": [], "notes": ""}
    actions = payload.get("actions")
    cross = _first_key(payload, "crossPollinate", "cross_pollinate")
    return {
        "actions": [a for a in actions if isinstance(a, dict)] if isinstance(actions, list) else [],
        "cross_pollinate": cross if isinstance(cross, list) else [],
        "notes": _optional_text(payload.get("notes")) or "",
    }


async def _draft_comment(
    oracle: Any,
    cfg: Config,
    post: Dict[str, Any],
    comments: List[Dict[str, Any]],
    system_prompt: str,
) -> Optional[str]:
    raw = await oracle.run(
        build_comment_prompt(post, comments),
        system_prompt,
        cfg.moltbook_model,
        timeout=cfg.moltbook_comment_timeout_seconds,
        kind="feed_comment",
    )
    payload = extract_json_object(raw)
    if payload is None:
        return None
    return _optional_text(payload.get("comment"))


async def _execute_action(
    client: MoltbookClient,
    cfg: Config,
    oracle: Any,
    state: Dict[str, Any],
    action: Dict[str, Any],
    system_prompt: str,
    logger: logging.Logger,
    result: FeedCycleResult,
    clock: Callable[[], float],
) -> None:
    action_type = normalize_str(action.get("type")).strip().lower()
    post_id = normalize_str(_first_key(action, "postId", "post_id")).strip()

    if action_type == "upvote":
        if not post_id:
            return
        await asyncio.to_thread(client.upvote_post, post_id)
        result.upvotes += 1
        logger.info("Moltbook upvoted post_id=%s", post_id)
        append_action_journal(cfg.moltbook_action_journal_path, action_type="upvote", target_post_id=post_id)
        return

    if action_type == "comment":
        if not post_id:
            return
        allowed, reason = comment_gate_status(state, cfg, now=clock())
        if not allowed:
            logger.info("Moltbook skipping comment post_id=%s reason=%s", post_id, reason)
            result.skipped.append(reason)
            return
        thread = await asyncio.to_thread(client.get_post_with_comments, post_id)
        post = thread.get("post") or {"id": post_id}
        text = await _draft_comment(oracle, cfg, post, thread.get("comments") or [], system_prompt)
        if not text:
            logger.info("Moltbook decided not to comment post_id=%s", post_id)
            return
        parent_id = _optional_text(_first_key(action, "parentCommentId", "parent_comment_id"))
        await asyncio.to_thread(client.create_comment, post_id, text, parent_id)
        record_comment(state, now=clock())
        result.comments += 1
        logger.info("Moltbook commented post_id=%s text=%s", post_id, _truncate(text, 80))
        append_action_journal(
            cfg.moltbook_action_journal_path,
            action_type="comment",
            target_post_id=post_id,
            submolt=_submolt_name(post),
            title=normalize_str(post.get("title")),
            content=text,
            url=post_url(post_id),
        )
        print_feed_action_banner("comment", post_id, normalize_str(post.get("title")), post_url(post_id))
        return

    if action_type == "post":
        title = _optional_text(action.get("title"))
        content = _optional_text(action.get("content"))
        submolt = _optional_text(action.get("submolt"))
        if not title or not content or not submolt:
            return
        allowed, reason = post_gate_status(state, cfg, now=clock())
        if not allowed:
            logger.info("Moltbook skipping post reason=%s", reason)
            result.skipped.append(reason)
            return
        created = await asyncio.to_thread(client.create_post, submolt, title, content)
        record_post(state, now=clock())
        result.posts += 1
        new_id = normalize_str(created.get("id")).strip()
        logger.info("Moltbook created post submolt=%s post_id=%s", submolt, new_id or "-")
        append_action_journal(
            cfg.moltbook_action_journal_path,
            action_type="post",
            target_post_id=new_id,
            submolt=submolt,
            title=title,
            content=content,
            url=post_url(new_id),
        )
        print_feed_action_banner("post", new_id, title, post_url(new_id))
        return

    logger.info("Moltbook ignoring unknown action type=%s", action_type or "-")


async def run_feed_cycle(
    client: MoltbookClient,
    cfg: Config,
    oracle: Any,
    logger: Optional[logging.Logger] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    state: Optional[Dict[str, Any]] = None,
) -> FeedCycleResult:
    """Run one autonomous participation pass over the hot feed.

    Pass the process-wide feed state as ``state`` when other tasks share it;
    otherwise it is loaded from disk.
    """
    logger = logger or logging.getLogger("kleinbot")
    result = FeedCycleResult()
    logger.info("Moltbook cycle starting")
    if state is None:
        state = load_feed_state(cfg.moltbook_state_path)

    try:
        system_prompt = cfg.moltbook_prompt_path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.error("Moltbook prompt missing path=%s error=%s", cfg.moltbook_prompt_path, e)
        result.status = "no_prompt"
        return result

    try:
        posts = await asyncio.to_thread(client.get_feed, "hot", cfg.moltbook_feed_limit)
    except MoltbookApiError as e:
        logger.error("Moltbook feed fetch failed error=%s", e)
        result.status = "feed_error"
        return result
    result.fetched = len(posts)

    new_posts = [p for p in posts if normalize_str(p.get("id")) and not is_post_seen(state, normalize_str(p.get("id")))]
    result.new_posts = len(new_posts)
    if not new_posts:
        logger.info("Moltbook no new posts since last cycle")
        state["last_cycle_ts"] = clock()
        save_feed_state(cfg.moltbook_state_path, state, cfg, now=clock())
        result.status = "no_new_posts"
        return result

    logger.info("Moltbook new posts to consider count=%s", len(new_posts))
    try:
        raw = await oracle.run(
            build_cycle_prompt(new_posts),
            system_prompt,
            cfg.moltbook_model,
            timeout=cfg.moltbook_cycle_timeout_seconds,
            kind="feed_cycle",
        )
    except OracleError as e:
        logger.error("Moltbook cycle oracle call failed error=%s", e)
        result.status = "oracle_error"
        return result
    plan = parse_cycle_decision(raw, logger)

    for action in plan["actions"]:
        try:
            await _execute_action(client, cfg, oracle, state, action, system_prompt, logger, result, clock)
        except (MoltbookApiError, OracleError, ValueError) as e:
            # Remote rejections are logged, not retried.
            logger.error("Moltbook action failed type=%s error=%s", action.get("type"), e)
        await sleep(cfg.moltbook_action_delay_seconds)

    for post in new_posts:
        mark_post_seen(state, normalize_str(post.get("id")))

    result.cross_pollinated = enqueue_cross_pollination(state, plan["cross_pollinate"])
    if result.cross_pollinated:
        logger.info("Moltbook queued cross-pollination items count=%s", result.cross_pollinated)

    if plan["notes"]:
        logger.info("Moltbook notes=%s", _truncate(plan["notes"], 200))
        append_journal(cfg.moltbook_journal_path, plan["notes"], max_chars=cfg.max_journal_chars)

    state["last_cycle_ts"] = clock()
    save_feed_state(cfg.moltbook_state_path, state, cfg, now=clock())
    logger.info(
        "Moltbook cycle complete upvotes=%s comments=%s posts=%s skipped=%s",
        result.upvotes,
        result.comments,
        result.posts,
        len(result.skipped),
    )
    return result
