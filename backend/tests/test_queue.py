"""Tests for the in-memory priority notification queue."""

import asyncio

import pytest
from pydantic import ValidationError

from pushrelay.config import Settings
from pushrelay.core.notification_types import (
    NotificationPayload,
    NotificationRequest,
    Priority,
    UserTarget,
)
from pushrelay.core.queue import NotificationQueue


def _request(label, priority=Priority.NORMAL):
    return NotificationRequest(
        target=UserTarget((f"user-{label}",)),
        payload=NotificationPayload(label, f"body {label}"),
        priority=priority,
    )


class TestNotificationQueue:
    @pytest.mark.asyncio
    async def test_high_priority_drains_first_fifo_within_tier(self, wait_until):
        processed = []

        async def processor(entry):
            processed.append(entry.request.payload.title)

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=1)
        try:
            queue.enqueue(_request("n1"))
            queue.enqueue(_request("h1", Priority.HIGH))
            queue.enqueue(_request("n2"))
            queue.enqueue(_request("h2", Priority.HIGH))
            queue.enqueue(_request("n3"))

            assert await wait_until(lambda: len(processed) == 5)
            assert processed == ["h1", "h2", "n1", "n2", "n3"]
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_low_priority_drains_last(self, wait_until):
        processed = []

        async def processor(entry):
            processed.append(entry.request.payload.title)

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=1)
        try:
            queue.enqueue(_request("l1", Priority.LOW))
            queue.enqueue(_request("n1"))
            queue.enqueue(_request("h1", Priority.HIGH))

            assert await wait_until(lambda: len(processed) == 3)
            assert processed == ["h1", "n1", "l1"]
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_enqueue_returns_unique_ids_immediately(self):
        release = asyncio.Event()

        async def processor(entry):
            await release.wait()

        queue = NotificationQueue(processor, interval_ms=5)
        try:
            ids = {queue.enqueue(_request(str(i))) for i in range(3)}
            assert len(ids) == 3
            assert all(i.startswith("notif_") for i in ids)
        finally:
            release.set()
            await queue.stop()

    @pytest.mark.asyncio
    async def test_status_reports_length_and_active(self, wait_until):
        release = asyncio.Event()

        async def processor(entry):
            await release.wait()

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=2)
        try:
            for i in range(5):
                queue.enqueue(_request(str(i)))

            assert await wait_until(lambda: queue.get_status()["active_count"] == 2)
            status = queue.get_status()
            assert status == {"queue_length": 3, "processing": True, "active_count": 2}

            release.set()
            assert await wait_until(lambda: not queue.get_status()["processing"])
            assert queue.get_status() == {"queue_length": 0, "processing": False, "active_count": 0}
        finally:
            release.set()
            await queue.stop()

    @pytest.mark.asyncio
    async def test_clear_drops_pending_but_not_in_flight(self, wait_until):
        release = asyncio.Event()
        finished = []

        async def processor(entry):
            await release.wait()
            finished.append(entry.id)

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=1)
        try:
            first = queue.enqueue(_request("a"))
            queue.enqueue(_request("b"))
            queue.enqueue(_request("c"))
            assert await wait_until(lambda: queue.get_status()["active_count"] == 1)

            queue.clear()
            assert queue.get_status()["queue_length"] == 0

            release.set()
            assert await wait_until(lambda: finished == [first])
        finally:
            release.set()
            await queue.stop()

    @pytest.mark.asyncio
    async def test_processor_errors_do_not_stop_draining(self, wait_until):
        processed = []

        async def processor(entry):
            if entry.request.payload.title == "bad":
                raise RuntimeError("backend exploded")
            processed.append(entry.request.payload.title)

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=1)
        try:
            queue.enqueue(_request("bad"))
            queue.enqueue(_request("good"))
            assert await wait_until(lambda: processed == ["good"])
        finally:
            await queue.stop()

    def test_enqueue_without_running_loop_waits_for_start(self):
        queue = NotificationQueue(lambda entry: None)
        queue_id = queue.enqueue(_request("later"))
        assert queue_id.startswith("notif_")
        assert queue.get_status() == {"queue_length": 1, "processing": False, "active_count": 0}

    @pytest.mark.asyncio
    async def test_non_positive_concurrency_still_drains(self, wait_until):
        processed = []

        async def processor(entry):
            processed.append(entry.request.payload.title)

        queue = NotificationQueue(processor, interval_ms=5, max_concurrent=0)
        try:
            queue.enqueue(_request("a"))
            queue.enqueue(_request("b"))
            assert await wait_until(lambda: processed == ["a", "b"])
        finally:
            await queue.stop()


class TestQueueSettings:
    @pytest.mark.parametrize("value", [0, -1])
    def test_max_concurrent_must_be_positive(self, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, queue_max_concurrent=value)

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, queue_interval_ms=0)
