"""
Clock & Scheduler.

All jobs run on one logical timeline. Run times are anchored to the
schedule (not to when the previous run finished), so jitter does not drift
the cadence. A run that overshoots its interval causes the missed slots to be
skipped rather than run back-to-back.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..logging_config import log_exception

logger = logging.getLogger(__name__)

JobFn = Callable[[], Union[None, Awaitable[None]]]


class SystemClock:
    """Wall-clock milliseconds."""

    def now(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000)


class ManualClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, start_ms: int = 0):
        self._now = start_ms

    def now(self) -> int:
        return self._now

    def set(self, ms: int) -> None:
        if ms < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = ms

    def advance(self, ms: int) -> int:
        self._now += ms
        return self._now

    async def sleep(self, ms: int) -> None:
        self._now += max(0, ms)
        await asyncio.sleep(0)


@dataclass
class JobStats:
    """Run statistics for one job."""

    runs: int = 0
    skipped: int = 0
    error_count: int = 0
    last_run_ms: Optional[int] = None
    last_duration_ms: float = 0.0
    last_error: Optional[str] = None


@dataclass
class Job:
    name: str
    interval_ms: int
    fn: JobFn
    next_run_ms: int
    stats: JobStats = field(default_factory=JobStats)
    enabled: bool = True
    running: bool = False


class Scheduler:
    """
    Periodic job runner.

    Usage:
        scheduler = Scheduler(SystemClock())
        scheduler.schedule("signal.evaluate", 60_000, evaluate, run_immediately=True)
        await scheduler.run_pending()   # run whatever is due now
        await scheduler.run_forever()   # loop until stop()
    """

    def __init__(self, clock=None, idle_sleep_ms: int = 1000):
        self.clock = clock or SystemClock()
        self._jobs: Dict[str, Job] = {}
        self._running = False
        self._idle_sleep_ms = idle_sleep_ms
        self._on_error: List[Callable[[str, Exception], Any]] = []

    def now(self) -> int:
        return self.clock.now()

    def schedule(
        self,
        name: str,
        interval_ms: int,
        fn: JobFn,
        run_immediately: bool = False,
    ) -> Job:
        """Register (or replace) a periodic job."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        now = self.now()
        job = Job(
            name=name,
            interval_ms=interval_ms,
            fn=fn,
            next_run_ms=now if run_immediately else now + interval_ms,
        )
        self._jobs[name] = job
        return job

    def unschedule(self, name: str) -> None:
        self._jobs.pop(name, None)

    def trigger(self, name: str) -> None:
        """Make a job due on the next pass."""
        job = self._jobs.get(name)
        if job is not None:
            job.next_run_ms = min(job.next_run_ms, self.now())

    def on_error(self, callback: Callable[[str, Exception], Any]) -> None:
        self._on_error.append(callback)

    @property
    def jobs(self) -> Dict[str, Job]:
        return dict(self._jobs)

    def next_due_ms(self) -> Optional[int]:
        enabled = [j.next_run_ms for j in self._jobs.values() if j.enabled]
        return min(enabled) if enabled else None

    async def run_pending(self) -> List[str]:
        """Run every due job once, in due order. Returns the names run."""
        now = self.now()
        due = sorted(
            (j for j in self._jobs.values() if j.enabled and j.next_run_ms <= now),
            key=lambda j: (j.next_run_ms, j.name),
        )
        ran = []
        for job in due:
            if job.running:
                job.stats.skipped += 1
                continue
            await self._run_job(job)
            ran.append(job.name)
        return ran

    async def _run_job(self, job: Job) -> None:
        scheduled = job.next_run_ms
        started = self.now()
        job.running = True
        perf_start = time.perf_counter()
        try:
            result = job.fn()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.stats.error_count += 1
            job.stats.last_error = str(e)
            log_exception(logger, e, f"Job {job.name} failed")
            for callback in self._on_error:
                try:
                    callback(job.name, e)
                except Exception as cb_error:
                    logger.error(f"Job error callback error: {cb_error}")
        finally:
            job.running = False
            job.stats.runs += 1
            job.stats.last_run_ms = started
            job.stats.last_duration_ms = (time.perf_counter() - perf_start) * 1000

        # Anchor to the schedule; skip slots that passed while the job ran.
        next_run = scheduled + job.interval_ms
        finished = self.now()
        skipped = 0
        while next_run <= finished:
            next_run += job.interval_ms
            skipped += 1
        job.next_run_ms = next_run
        if skipped:
            job.stats.skipped += skipped
            logger.debug(f"Job {job.name} skipped {skipped} run(s), next at {next_run}")

    async def run_forever(self, before_pass: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        """Loop until stop(); `before_pass` runs ahead of each scheduling pass."""
        self._running = True
        while self._running:
            try:
                if before_pass is not None:
                    await before_pass()
                await self.run_pending()

                next_due = self.next_due_ms()
                wait_ms = self._idle_sleep_ms
                if next_due is not None:
                    wait_ms = min(wait_ms, max(0, next_due - self.now()))
                await self.clock.sleep(wait_ms)
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_exception(logger, e, "Scheduler loop error")
                await self.clock.sleep(self._idle_sleep_ms)

    def stop(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "interval_ms": job.interval_ms,
                "next_run_ms": job.next_run_ms,
                "runs": job.stats.runs,
                "skipped": job.stats.skipped,
                "error_count": job.stats.error_count,
                "last_run_ms": job.stats.last_run_ms,
                "last_duration_ms": round(job.stats.last_duration_ms, 3),
                "last_error": job.stats.last_error,
            }
            for name, job in self._jobs.items()
        }
