from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set

from .notification_types import NotificationRequest, Priority

logger = logging.getLogger(__name__)

Processor = Callable[["QueueEntry"], Awaitable[object]]


@dataclass(order=True)
class QueueEntry:
    rank: int
    seq: int
    id: str = field(compare=False)
    request: NotificationRequest = field(compare=False)
    enqueued_at: datetime = field(compare=False, default_factory=datetime.utcnow)

    @property
    def priority(self) -> Priority:
        return self.request.priority


def _new_queue_id() -> str:
    return f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class NotificationQueue:
    """
    In-memory priority queue drained by a background task.

    High priority drains before normal, normal before low, FIFO within a
    tier. Failed entries are not re-enqueued here; the processor decides.
    """

    def __init__(
        self,
        processor: Processor,
        interval_ms: int = 100,
        max_concurrent: int = 5,
    ) -> None:
        self._processor = processor
        self._interval = interval_ms / 1000.0
        self._max_concurrent = max(1, max_concurrent)
        self._heap: List[QueueEntry] = []
        self._seq = itertools.count()
        self._active: Set[asyncio.Task] = set()
        self._worker: Optional[asyncio.Task] = None
        self._processing = False

    def enqueue(self, request: NotificationRequest) -> str:
        entry = QueueEntry(
            rank=request.priority.rank,
            seq=next(self._seq),
            id=_new_queue_id(),
            request=request,
        )
        heapq.heappush(self._heap, entry)
        logger.info("[queue] queued %s with priority %s", entry.id, request.priority.value)
        self._ensure_worker()
        return entry.id

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet; start() picks the backlog up
            return
        self._worker = loop.create_task(self._drain())

    def start(self) -> None:
        self._ensure_worker()

    async def _drain(self) -> None:
        self._processing = True
        logger.debug("[queue] drain started")
        try:
            while self._heap or self._active:
                while self._heap and len(self._active) < self._max_concurrent:
                    entry = heapq.heappop(self._heap)
                    task = asyncio.get_running_loop().create_task(self._process(entry))
                    self._active.add(task)
                    task.add_done_callback(self._active.discard)

                # wake on the first completion or after one interval
                await asyncio.wait(
                    set(self._active),
                    timeout=self._interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
        finally:
            self._processing = False
            logger.debug("[queue] drain finished")

    async def _process(self, entry: QueueEntry) -> None:
        logger.debug("[queue] processing %s", entry.id)
        try:
            await self._processor(entry)
        except Exception:
            logger.exception("[queue] error processing %s", entry.id)

    def get_status(self) -> dict:
        return {
            "queue_length": len(self._heap),
            "processing": self._processing,
            "active_count": len(self._active),
        }

    def clear(self) -> None:
        """Drop pending entries. In-flight sends are left alone."""
        self._heap.clear()
        logger.info("[queue] cleared")

    async def stop(self) -> None:
        tasks = list(self._active)
        if self._worker is not None:
            tasks.append(self._worker)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None
        self._active.clear()
        self._processing = False
