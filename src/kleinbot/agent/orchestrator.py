from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from .admin import AdminContext, handle_admin_command, is_admin_command
from .chats import (
    describe_chat_metadata,
    ensure_chat_config,
    get_chat_config,
    is_dm_chat,
    is_group_chat,
    load_chats,
)
from .config import Config, ConfigError
from .models import CachedDecision, ChatMessage, MoltbookAction
from .notes import read_notes, save_notes
from .pending import PendingQueue
from .state import (
    BotState,
    allow_dm,
    chat_history,
    is_dm_allowed,
    is_processed,
    load_state,
    mark_processed,
    save_state,
)
from .transport import ChatTransport, TransportLoggedOutError


MOLTBOOK_DISABLED_TEXT = "Moltbook isn't configured on this bot."
SELF_SENDER_ID = "self"


class FeedBridge(Protocol):
    async def handle_action(self, action: MoltbookAction) -> str:
        ...

    async def send_cross_pollination(self, transport: ChatTransport) -> int:
        ...


def _preview(text: str, limit: int = 80) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


class Orchestrator:
    """Drains pending events per conversation and turns them into actions.

    A batch is committed (marked processed and dropped from the pending
    file) only after every effect of its decision went through. On failure
    the decision is cached with the effects that already completed and the
    events go back to the front of the queue; after ``max_retries`` failures
    the batch is dropped so the conversation keeps moving.
    """

    def __init__(
        self,
        cfg: Config,
        transport: ChatTransport,
        oracle: Any,
        state: BotState,
        queue: PendingQueue,
        bridge: Optional[FeedBridge] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.cfg = cfg
        self.transport = transport
        self.oracle = oracle
        self.state = state
        self.queue = queue
        self.bridge = bridge
        self.clock = clock
        self.logger = logger or logging.getLogger("kleinbot")
        self.retry_counts: Dict[str, int] = {}
        self.cached_decisions: Dict[str, CachedDecision] = {}

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        transport: ChatTransport,
        oracle: Any,
        bridge: Optional[FeedBridge] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "Orchestrator":
        state = load_state(cfg.state_path, cfg.history_window)
        queue = PendingQueue(cfg.pending_path, lambda message_id: is_processed(state, message_id))
        queue.load()
        return cls(cfg, transport, oracle, state, queue, bridge=bridge, logger=logger)

    def is_processed(self, message_id: str) -> bool:
        return is_processed(self.state, message_id)

    def _save_state(self) -> bool:
        try:
            save_state(self.cfg.state_path, self.state, self.cfg.history_window)
        except OSError as e:
            self.logger.error("State save failed path=%s error=%s", self.cfg.state_path, e)
            return False
        return True

    def flush(self) -> None:
        self._save_state()
        self.queue.save()

    # Intake

    def _accept(self, msg: ChatMessage) -> bool:
        if self.is_processed(msg.id):
            return False
        if is_dm_chat(msg.chat_id) and msg.sender_id != self.cfg.admin_id and not is_dm_allowed(self.state, msg.chat_id):
            self.logger.info("Blocked DM from unapproved chat=%s text=%s", msg.chat_id, _preview(msg.text, 40))
            return False
        return True

    def on_new_messages(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        added = self.queue.enqueue_many(messages, accept=self._accept)
        for msg in added:
            self.logger.info("New message chat=%s sender=%s text=%s", msg.chat_id, msg.sender, _preview(msg.text))
        return added

    def on_outgoing_dm(self, chat_id: str) -> None:
        if allow_dm(self.state, chat_id):
            self.logger.info("Auto-approved DM chat=%s reason=operator_replied", chat_id)
            self._save_state()

    # Processing pass

    async def process_pending(self) -> None:
        if self.bridge is not None and self.transport.is_connected():
            try:
                await self.bridge.send_cross_pollination(self.transport)
            except TransportLoggedOutError:
                raise
            except Exception as e:
                self.logger.error("Cross-pollination failed error=%s", e)

        if not self.queue.has_queued():
            return
        if not self.transport.is_connected():
            self.logger.info("Skipping pass; transport not connected pending=%s", self.queue.total())
            return

        batches = self.queue.drain()
        for chat_id, batch in batches.items():
            await self._process_chat(chat_id, batch)

    async def _handle_admin(self, msg: ChatMessage) -> None:
        try:
            chat_config = get_chat_config(self.cfg.chats_config_path, msg.chat_id)
        except ConfigError:
            chat_config = None
        ctx = AdminContext(
            state=self.state,
            chat_config=chat_config,
            notes_text=read_notes(self.cfg.notes_dir, msg.chat_id),
            history_depth=sum(1 for m in self.state.message_history if m.chat_id == msg.chat_id),
            queue_depth=self.queue.depth(msg.chat_id),
        )
        result = handle_admin_command(msg, ctx)
        self.logger.info("Admin command chat=%s command=%s", msg.chat_id, _preview(msg.text, 40))
        if result.state_changed:
            # Allow-list changes hit disk before the reply is sent.
            self._save_state()
        try:
            await self.transport.send_text(msg.chat_id, result.text)
        except TransportLoggedOutError:
            raise
        except Exception as e:
            self.logger.error("Admin reply failed chat=%s error=%s", msg.chat_id, e)
        mark_processed(self.state, msg)

    async def _ensure_chat_config(self, chat_id: str) -> None:
        chats = load_chats(self.cfg.chats_config_path)
        if chat_id in chats:
            return
        description = ""
        if is_group_chat(chat_id):
            try:
                meta = await self.transport.fetch_chat_metadata(chat_id)
            except TransportLoggedOutError:
                raise
            except Exception as e:
                self.logger.warning("Chat metadata fetch failed chat=%s error=%s", chat_id, e)
                meta = None
            description = describe_chat_metadata(meta)
        if ensure_chat_config(self.cfg.chats_config_path, chat_id, description):
            self.logger.info("Created chat config chat=%s description=%s", chat_id, _preview(description) or "-")

    async def _process_chat(self, chat_id: str, batch: List[ChatMessage]) -> None:
        normal: List[ChatMessage] = []
        handled: List[ChatMessage] = []
        for msg in batch:
            if is_admin_command(msg, self.cfg.admin_id):
                await self._handle_admin(msg)
                handled.append(msg)
            else:
                normal.append(msg)

        if handled:
            # Admin commands are never replayed, even when the save failed.
            self._save_state()
            self.queue.complete(chat_id, handled)
        if not normal:
            return

        self.logger.info("Processing chat=%s messages=%s", chat_id, len(normal))
        cached: Optional[CachedDecision] = None
        try:
            await self._ensure_chat_config(chat_id)
            chat_config = get_chat_config(self.cfg.chats_config_path, chat_id)
            cached = self.cached_decisions.pop(chat_id, None)
            if cached is not None:
                self.logger.info(
                    "Retrying cached decision chat=%s completed=%s",
                    chat_id,
                    ",".join(sorted(cached.completed)) or "-",
                )
            else:
                history = chat_history(self.state, chat_id, self.cfg.history_window)
                notes_text = read_notes(self.cfg.notes_dir, chat_id)
                decision = await self.oracle.decide(history, normal, chat_config, notes_text)
                cached = CachedDecision(decision)
            await self._apply(chat_id, normal, cached)
        except ConfigError as e:
            self.logger.error("Config error; skipping chat this pass chat=%s error=%s", chat_id, e)
            if cached is not None:
                self.cached_decisions[chat_id] = cached
            self.queue.requeue_front(chat_id, normal)
            return
        except TransportLoggedOutError:
            raise
        except Exception as e:
            self._on_failure(chat_id, normal, cached, e)
            return

        self._commit(chat_id, normal)

    def _bot_entry(self, chat_id: str, text: str, batch: List[ChatMessage]) -> ChatMessage:
        now = self.clock()
        millis = int(now * 1000)
        while self.is_processed(f"bot-{millis}"):
            millis += 1
        newest = max((msg.timestamp for msg in batch), default=0)
        return ChatMessage(
            id=f"bot-{millis}",
            chat_id=chat_id,
            timestamp=max(int(now), newest),
            sender=self.cfg.bot_name,
            sender_id=SELF_SENDER_ID,
            text=text,
        )

    async def _apply(self, chat_id: str, batch: List[ChatMessage], cached: CachedDecision) -> None:
        decision = cached.decision
        done = cached.completed

        if decision.notes and "notes" not in done:
            try:
                save_notes(self.cfg.notes_dir, chat_id, decision.notes, max_lines=self.cfg.max_notes_lines)
            except OSError as e:
                raise ConfigError(f"notes not writable for {chat_id}: {e}") from e
            done.add("notes")

        reply = decision.reply_text
        if reply and "reply" not in done:
            self.logger.info("Responding chat=%s text=%s", chat_id, _preview(reply))
            await self.transport.send_text(chat_id, reply)
            done.add("reply")
            mark_processed(self.state, self._bot_entry(chat_id, reply, batch))
        elif not reply and decision.poll is None:
            self.logger.info("Decided not to respond chat=%s", chat_id)

        if decision.poll is not None and "poll" not in done:
            self.logger.info("Sending poll chat=%s question=%s", chat_id, _preview(decision.poll.question))
            await self.transport.send_poll(chat_id, decision.poll)
            done.add("poll")

        action = decision.moltbook_action
        if action is not None:
            if "moltbook_action" not in done:
                self.logger.info("Moltbook action from chat chat=%s type=%s", chat_id, action.type)
                if self.bridge is None:
                    cached.moltbook_result = MOLTBOOK_DISABLED_TEXT
                else:
                    cached.moltbook_result = await self.bridge.handle_action(action)
                done.add("moltbook_action")
            if cached.moltbook_result and "moltbook_reply" not in done:
                await self.transport.send_text(chat_id, cached.moltbook_result)
                done.add("moltbook_reply")

    def _finish(self, chat_id: str, batch: List[ChatMessage]) -> None:
        for msg in batch:
            mark_processed(self.state, msg)
        self.retry_counts.pop(chat_id, None)
        self.cached_decisions.pop(chat_id, None)
        # Leave the batch in the pending file if state could not be written,
        # so a restart replays it instead of losing it.
        if self._save_state():
            self.queue.complete(chat_id, batch)

    def _commit(self, chat_id: str, batch: List[ChatMessage]) -> None:
        self._finish(chat_id, batch)
        self.logger.info("Committed chat=%s messages=%s", chat_id, len(batch))

    def _on_failure(
        self,
        chat_id: str,
        batch: List[ChatMessage],
        cached: Optional[CachedDecision],
        error: Exception,
    ) -> None:
        retries = self.retry_counts.get(chat_id, 0) + 1
        if retries >= self.cfg.max_retries:
            self.logger.warning(
                "Dropping chat=%s messages=%s after failures=%s error=%s",
                chat_id,
                len(batch),
                retries,
                error,
            )
            self._finish(chat_id, batch)
            return

        self.retry_counts[chat_id] = retries
        self.logger.error(
            "Chat processing failed chat=%s retry=%s/%s error=%s",
            chat_id,
            retries,
            self.cfg.max_retries,
            error,
        )
        if cached is not None:
            self.cached_decisions[chat_id] = cached
        self.queue.requeue_front(chat_id, batch)
