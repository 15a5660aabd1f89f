from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..agent.chats import moltbook_chat_ids
from ..agent.config import Config, ConfigError
from ..agent.models import MoltbookAction, normalize_str
from ..agent.transport import ChatTransport, TransportLoggedOutError
from ..moltbook_client import MoltbookApiError, MoltbookClient
from .cycle import _author_name, _submolt_name, post_url
from .journal import append_action_journal
from .state import drain_cross_pollination, load_feed_state, post_gate_status, record_post, save_feed_state


NOT_CONFIGURED_TEXT = "Moltbook integration isn't configured yet."
POST_COOLDOWN_TEXT = "Posted to Moltbook recently; try again later."
CHAT_RESULT_LIMIT = 5
DEFAULT_SUBMOLT = "general"


def format_digest(items: List[Dict[str, Any]]) -> str:
    lines = [f'• "{item.get("title")}" (r/{item.get("submolt") or DEFAULT_SUBMOLT}): {item.get("snippet", "")}' for item in items]
    return "From Moltbook:\n" + "\n".join(lines)


def format_search_results(query: str, results: List[Dict[str, Any]]) -> str:
    if not results:
        return f'No results on Moltbook for "{query}".'
    lines = []
    for idx, item in enumerate(results, start=1):
        kind = normalize_str(item.get("type")).strip() or "result"
        if item.get("title"):
            lines.append(f'{idx}. "{item["title"]}" ({kind})')
        elif item.get("name"):
            lines.append(f"{idx}. {item['name']} ({kind})")
        else:
            body = normalize_str(item.get("content") or item.get("description"))[:100]
            lines.append(f"{idx}. {kind}: {body}")
    return f'Moltbook results for "{query}":\n' + "\n".join(lines)


def format_hot_posts(posts: List[Dict[str, Any]]) -> str:
    if not posts:
        return "Nothing hot on Moltbook right now."
    lines = [
        f'{idx}. "{post.get("title")}" by {_author_name(post)} in r/{_submolt_name(post)} '
        f"({post.get('upvotes', 0)} upvotes, {post.get('comment_count', 0)} comments)"
        for idx, post in enumerate(posts, start=1)
    ]
    return "Hot on Moltbook right now:\n" + "\n".join(lines)


class MoltbookBridge:
    """Chat-facing side of the Moltbook integration.

    The bridge owns the in-memory feed state for the process. The feed cycle
    is handed the same dict, so chat posts, cycle actions and the
    cross-pollination queue never overwrite each other's changes.
    """

    def __init__(
        self,
        client: Optional[MoltbookClient],
        cfg: Config,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.cfg = cfg
        self.logger = logger or logging.getLogger("kleinbot")
        self.clock = clock
        self._feed_state: Optional[Dict[str, Any]] = None

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @property
    def feed_state(self) -> Dict[str, Any]:
        if self._feed_state is None:
            self._feed_state = load_feed_state(self.cfg.moltbook_state_path)
        return self._feed_state

    def flush_feed_state(self) -> None:
        save_feed_state(self.cfg.moltbook_state_path, self.feed_state, self.cfg, now=self.clock())

    async def handle_action(self, action: MoltbookAction) -> str:
        """Run a chat-requested feed action and return the reply text.

        HTTP failures are reported as apologetic text rather than raised.
        """
        if self.client is None:
            return NOT_CONFIGURED_TEXT

        if action.type == "search":
            if not action.query:
                return "No search query provided."
            try:
                results = await asyncio.to_thread(self.client.search, action.query, CHAT_RESULT_LIMIT)
            except MoltbookApiError as e:
                self.logger.error("Moltbook search failed query=%s error=%s", action.query, e)
                return "Couldn't search Moltbook right now, sorry."
            return format_search_results(action.query, results[:CHAT_RESULT_LIMIT])

        if action.type == "hot":
            try:
                posts = await asyncio.to_thread(self.client.get_feed, "hot", CHAT_RESULT_LIMIT)
            except MoltbookApiError as e:
                self.logger.error("Moltbook feed fetch failed error=%s", e)
                return "Couldn't fetch the Moltbook feed right now, sorry."
            return format_hot_posts(posts[:CHAT_RESULT_LIMIT])

        if action.type == "post":
            if not action.title or not action.content:
                return "Need a title and content to post."
            submolt = action.submolt or DEFAULT_SUBMOLT
            state = self.feed_state
            allowed, reason = post_gate_status(state, self.cfg, now=self.clock())
            if not allowed:
                self.logger.info("Moltbook skipping chat post reason=%s", reason)
                return POST_COOLDOWN_TEXT
            try:
                post = await asyncio.to_thread(self.client.create_post, submolt, action.title, action.content)
            except MoltbookApiError as e:
                self.logger.error("Moltbook post creation failed submolt=%s error=%s", submolt, e)
                return "Couldn't post to Moltbook right now, sorry."
            record_post(state, now=self.clock())
            self.flush_feed_state()
            post_id = normalize_str(post.get("id")).strip()
            append_action_journal(
                self.cfg.moltbook_action_journal_path,
                action_type="post",
                target_post_id=post_id,
                submolt=submolt,
                title=action.title,
                content=action.content,
                origin="chat",
                url=post_url(post_id),
            )
            title = normalize_str(post.get("title")).strip() or action.title
            return f'Posted to Moltbook: "{title}" in r/{submolt}'

        return ""

    async def send_cross_pollination(self, transport: ChatTransport) -> int:
        """Deliver queued feed highlights to every moltbook-enabled chat.

        Returns the number of chats that received the digest.
        """
        if self.client is None:
            return 0
        state = self.feed_state
        if not state.get("cross_pollination_queue"):
            return 0

        try:
            targets = moltbook_chat_ids(self.cfg.chats_config_path)
        except ConfigError as e:
            # Keep the queue intact until the chats config is readable again.
            self.logger.error("Cross-pollination skipped error=%s", e)
            return 0

        items = drain_cross_pollination(state)
        digest = format_digest(items)
        delivered = 0
        for chat_id in targets:
            try:
                await transport.send_text(chat_id, digest)
            except TransportLoggedOutError:
                raise
            except Exception as e:
                self.logger.error("Cross-pollination send failed chat=%s error=%s", chat_id, e)
                continue
            delivered += 1
            self.logger.info("Cross-pollination digest sent chat=%s items=%s", chat_id, len(items))

        self.flush_feed_state()
        return delivered
