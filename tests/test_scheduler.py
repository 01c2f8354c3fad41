"""
Tests for the manual clock and periodic scheduler.
"""

import pytest

from market_fusion.continuous.scheduler import ManualClock, Scheduler

T0 = 1_000_000


class TestManualClock:
    def test_advance_and_set(self):
        clock = ManualClock(T0)
        clock.advance(500)
        assert clock.now() == T0 + 500
        clock.set(T0 + 1000)
        assert clock.now() == T0 + 1000

    def test_cannot_move_backwards(self):
        clock = ManualClock(T0)
        with pytest.raises(ValueError):
            clock.set(T0 - 1)

    @pytest.mark.asyncio
    async def test_sleep_advances(self):
        clock = ManualClock(T0)
        await clock.sleep(250)
        assert clock.now() == T0 + 250


class TestScheduler:
    """Due-job selection, anchoring and error isolation."""

    @pytest.mark.asyncio
    async def test_run_immediately(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        calls = []
        scheduler.schedule("a", 1000, lambda: calls.append("a"), run_immediately=True)
        scheduler.schedule("b", 1000, lambda: calls.append("b"))
        assert await scheduler.run_pending() == ["a"]
        clock.advance(1000)
        assert sorted(await scheduler.run_pending()) == ["a", "b"]
        assert calls.count("a") == 2

    @pytest.mark.asyncio
    async def test_async_jobs_are_awaited(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        calls = []

        async def job():
            calls.append(clock.now())

        scheduler.schedule("job", 1000, job, run_immediately=True)
        await scheduler.run_pending()
        assert calls == [T0]

    @pytest.mark.asyncio
    async def test_missed_slots_are_skipped(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        scheduler.schedule("job", 1000, lambda: None, run_immediately=True)
        clock.advance(3500)
        await scheduler.run_pending()
        job = scheduler.jobs["job"]
        # anchored to T0: next slot after T0 + 3500 is T0 + 4000
        assert job.next_run_ms == T0 + 4000
        assert job.stats.skipped == 3
        assert job.stats.runs == 1

    @pytest.mark.asyncio
    async def test_overrunning_job_skips_slots(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        scheduler.schedule("slow", 1000, lambda: clock.advance(2500), run_immediately=True)
        await scheduler.run_pending()
        assert scheduler.jobs["slow"].next_run_ms == T0 + 3000

    @pytest.mark.asyncio
    async def test_failing_job_is_isolated(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        errors = []
        scheduler.on_error(lambda name, e: errors.append((name, str(e))))
        calls = []

        def boom():
            raise RuntimeError("boom")

        scheduler.schedule("bad", 1000, boom, run_immediately=True)
        scheduler.schedule("good", 1000, lambda: calls.append(1), run_immediately=True)
        ran = await scheduler.run_pending()

        assert set(ran) == {"bad", "good"}
        assert calls == [1]
        assert errors == [("bad", "boom")]
        status = scheduler.get_status()["bad"]
        assert status["error_count"] == 1
        assert status["last_error"] == "boom"
        assert status["next_run_ms"] == T0 + 1000

    @pytest.mark.asyncio
    async def test_trigger_makes_job_due(self):
        clock = ManualClock(T0)
        scheduler = Scheduler(clock)
        scheduler.schedule("job", 60_000, lambda: None)
        assert await scheduler.run_pending() == []
        scheduler.trigger("job")
        assert await scheduler.run_pending() == ["job"]

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            Scheduler(ManualClock(T0)).schedule("x", 0, lambda: None)
