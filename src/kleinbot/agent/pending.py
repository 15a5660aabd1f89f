from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from .models import ChatMessage


logger = logging.getLogger("kleinbot")

PendingByChat = Dict[str, List[ChatMessage]]


class PendingQueue:
    """Per-conversation FIFO of events that still need a decision.

    Drained batches are tracked as in flight and stay in the persisted file
    until they are completed or requeued, so a crash mid-pass replays them.
    """

    def __init__(self, path: Path, is_processed: Callable[[str], bool]):
        self.path = path
        self._is_processed = is_processed
        self._queues: PendingByChat = {}
        self._in_flight: PendingByChat = {}
        self._ids: Set[str] = set()

    @property
    def pending_ids(self) -> Set[str]:
        return set(self._ids)

    def load(self) -> None:
        self._queues = {}
        self._in_flight = {}
        record = self._read_file()
        for chat_id, rows in record.items():
            if not isinstance(rows, list):
                continue
            queue = [ChatMessage.from_dict(row) for row in rows if isinstance(row, dict)]
            if queue:
                self._queues[str(chat_id)] = queue
        self.prune()

    def _read_file(self) -> Dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Pending file unreadable, starting empty path=%s error=%s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self) -> None:
        record: Dict[str, List[Dict[str, object]]] = {}
        for chat_id in set(self._in_flight) | set(self._queues):
            rows = self._in_flight.get(chat_id, []) + self._queues.get(chat_id, [])
            if rows:
                record[chat_id] = [msg.to_dict() for msg in rows]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        os.replace(tmp_path, self.path)

    def _rebuild_ids(self) -> None:
        self._ids = set()
        for source in (self._queues, self._in_flight):
            for queue in source.values():
                for msg in queue:
                    self._ids.add(msg.id)

    def prune(self) -> None:
        """Drop queued events that were processed in an earlier run."""
        for chat_id in list(self._queues):
            kept = [msg for msg in self._queues[chat_id] if not self._is_processed(msg.id)]
            if kept:
                self._queues[chat_id] = kept
            else:
                del self._queues[chat_id]
        self._rebuild_ids()
        self.save()

    def _insert(self, msg: ChatMessage) -> bool:
        if msg.id in self._ids or self._is_processed(msg.id):
            return False
        self._ids.add(msg.id)
        self._queues.setdefault(msg.chat_id, []).append(msg)
        return True

    def enqueue(self, msg: ChatMessage) -> bool:
        added = self._insert(msg)
        if added:
            self.save()
        return added

    def enqueue_many(self, messages: Iterable[ChatMessage], accept: Optional[Callable[[ChatMessage], bool]] = None) -> List[ChatMessage]:
        """Enqueue a delivery burst and flush once. Returns the accepted events."""
        added: List[ChatMessage] = []
        for msg in messages:
            if accept is not None and not accept(msg):
                continue
            if self._insert(msg):
                added.append(msg)
        if added:
            self.save()
        return added

    def drain(self) -> PendingByChat:
        batches = self._queues
        self._queues = {}
        for chat_id, queue in batches.items():
            self._in_flight.setdefault(chat_id, []).extend(queue)
        return {chat_id: list(queue) for chat_id, queue in batches.items()}

    def requeue_front(self, chat_id: str, messages: List[ChatMessage]) -> None:
        self._forget_in_flight(chat_id, messages)
        existing = self._queues.get(chat_id, [])
        front_ids = {msg.id for msg in messages}
        self._queues[chat_id] = list(messages) + [msg for msg in existing if msg.id not in front_ids]
        for msg in messages:
            self._ids.add(msg.id)
        self.save()

    def complete(self, chat_id: str, messages: List[ChatMessage]) -> None:
        self._forget_in_flight(chat_id, messages)
        for msg in messages:
            self._ids.discard(msg.id)
        self.save()

    def _forget_in_flight(self, chat_id: str, messages: List[ChatMessage]) -> None:
        done = {msg.id for msg in messages}
        remaining = [msg for msg in self._in_flight.get(chat_id, []) if msg.id not in done]
        if remaining:
            self._in_flight[chat_id] = remaining
        else:
            self._in_flight.pop(chat_id, None)

    def depth(self, chat_id: str) -> int:
        return len(self._queues.get(chat_id, [])) + len(self._in_flight.get(chat_id, []))

    def total(self) -> int:
        return len(self._ids)

    def has_queued(self) -> bool:
        return any(self._queues.values())
