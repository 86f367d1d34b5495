"""Tests for the delayed-task scheduler behind tracker retries."""

import asyncio

import pytest

from pushrelay.core.scheduler import DelayedTaskScheduler


def _recorder(fired, label):
    async def _cb():
        fired.append(label)

    return _cb


class TestDelayedTaskScheduler:
    @pytest.mark.asyncio
    async def test_fires_in_due_order(self, wait_until):
        scheduler = DelayedTaskScheduler()
        fired = []
        try:
            scheduler.schedule("late", 0.05, _recorder(fired, "late"))
            scheduler.schedule("early", 0.01, _recorder(fired, "early"))
            scheduler.schedule("middle", 0.03, _recorder(fired, "middle"))

            assert await wait_until(lambda: len(fired) == 3)
            assert fired == ["early", "middle", "late"]
            assert len(scheduler) == 0
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_rescheduling_a_key_replaces_the_entry(self, wait_until):
        scheduler = DelayedTaskScheduler()
        fired = []
        try:
            scheduler.schedule(1, 0.01, _recorder(fired, "first"))
            scheduler.schedule(1, 0.02, _recorder(fired, "second"))
            assert len(scheduler) == 1

            assert await wait_until(lambda: fired)
            await asyncio.sleep(0.03)
            assert fired == ["second"]
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_cancel_all_prevents_firing(self):
        scheduler = DelayedTaskScheduler()
        fired = []
        try:
            scheduler.schedule(1, 0.02, _recorder(fired, 1))
            scheduler.schedule(2, 0.02, _recorder(fired, 2))

            assert scheduler.cancel_all() == 2
            assert scheduler.pending() == []

            await asyncio.sleep(0.05)
            assert fired == []
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_cancel_single_key(self, wait_until):
        scheduler = DelayedTaskScheduler()
        fired = []
        try:
            scheduler.schedule("keep", 0.01, _recorder(fired, "keep"))
            scheduler.schedule("drop", 0.01, _recorder(fired, "drop"))

            assert scheduler.cancel("drop") is True
            assert scheduler.cancel("missing") is False

            assert await wait_until(lambda: fired)
            await asyncio.sleep(0.02)
            assert fired == ["keep"]
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_runner(self, wait_until):
        scheduler = DelayedTaskScheduler()
        fired = []

        async def _boom():
            raise RuntimeError("boom")

        try:
            scheduler.schedule("bad", 0.01, _boom)
            scheduler.schedule("good", 0.02, _recorder(fired, "good"))
            assert await wait_until(lambda: fired == ["good"])
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_pending_exposes_attempt_numbers(self):
        scheduler = DelayedTaskScheduler()
        try:
            scheduler.schedule(7, 10, _recorder([], 7), attempt_number=2)
            (task,) = scheduler.pending()
            assert task.key == 7
            assert task.attempt_number == 2
            assert task.scheduled_at is not None
        finally:
            await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_aclose_returns_while_runner_is_parked(self):
        scheduler = DelayedTaskScheduler()
        scheduler.schedule("far", 30, _recorder([], "far"))
        # let the runner arm its timer and wait
        await asyncio.sleep(0.01)

        await asyncio.wait_for(scheduler.aclose(), timeout=2)
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_aclose_after_wakeup_is_set(self):
        scheduler = DelayedTaskScheduler()
        scheduler.schedule("a", 30, _recorder([], "a"))
        await asyncio.sleep(0.01)
        # the wakeup is pending when close arrives
        scheduler.cancel_all()

        await asyncio.wait_for(scheduler.aclose(), timeout=2)

    @pytest.mark.asyncio
    async def test_schedule_after_close_is_rejected(self):
        scheduler = DelayedTaskScheduler()
        await scheduler.aclose()
        with pytest.raises(RuntimeError):
            scheduler.schedule("late", 0.01, _recorder([], "late"))
