from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


@dataclass(order=True)
class ScheduledTask:
    due: float
    seq: int
    key: Hashable = field(compare=False)
    callback: Callback = field(compare=False, repr=False)
    scheduled_at: datetime = field(compare=False)
    attempt_number: int = field(compare=False, default=1)
    cancelled: bool = field(compare=False, default=False)


class DelayedTaskScheduler:
    """
    Single min-heap of due times drained by one asyncio task.
    At most one live entry per key; scheduling a key again replaces it.
    """

    def __init__(self) -> None:
        self._heap: List[ScheduledTask] = []
        self._entries: Dict[Hashable, ScheduledTask] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._closed = False

    def schedule(
        self,
        key: Hashable,
        delay_sec: float,
        callback: Callback,
        attempt_number: int = 1,
    ) -> ScheduledTask:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        loop = asyncio.get_running_loop()

        previous = self._entries.pop(key, None)
        if previous is not None:
            previous.cancelled = True

        task = ScheduledTask(
            due=loop.time() + delay_sec,
            seq=next(self._seq),
            key=key,
            callback=callback,
            scheduled_at=datetime.utcnow() + timedelta(seconds=delay_sec),
            attempt_number=attempt_number,
        )
        heapq.heappush(self._heap, task)
        self._entries[key] = task

        if self._runner is None or self._runner.done():
            self._runner = loop.create_task(self._run())
        self._wakeup.set()
        return task

    def cancel(self, key: Hashable) -> bool:
        task = self._entries.pop(key, None)
        if task is None:
            return False
        task.cancelled = True
        return True

    def cancel_all(self) -> int:
        """Drop every pending entry. In-flight callbacks keep running."""
        count = len(self._entries)
        self._entries.clear()
        self._heap.clear()
        self._wakeup.set()
        return count

    def pending(self) -> List[ScheduledTask]:
        return sorted(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed:
            self._wakeup.clear()

            while self._heap and self._heap[0].cancelled:
                heapq.heappop(self._heap)

            if self._heap and self._heap[0].due <= loop.time():
                task = heapq.heappop(self._heap)
                if self._entries.get(task.key) is task:
                    del self._entries[task.key]
                self._spawn(task)
                continue

            # park on the event only; the head's due time arms a timer that sets it
            timer = loop.call_at(self._heap[0].due, self._wakeup.set) if self._heap else None
            try:
                await self._wakeup.wait()
            finally:
                if timer is not None:
                    timer.cancel()

    def _spawn(self, task: ScheduledTask) -> None:
        async def _invoke() -> None:
            try:
                await task.callback()
            except Exception:
                logger.exception("[scheduler] task %s failed", task.key)

        running = asyncio.get_running_loop().create_task(_invoke())
        self._inflight.add(running)
        running.add_done_callback(self._inflight.discard)

    async def aclose(self) -> None:
        """Stop the runner, then drop pending entries and cancel in-flight callbacks."""
        self._closed = True
        if self._runner is not None:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None

        self.cancel_all()
        tasks = list(self._inflight)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
