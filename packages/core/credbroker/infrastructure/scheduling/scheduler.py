"""SweepScheduler: runs periodic maintenance coroutines on the event loop."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class SweepJob:
    """One periodic job.

    A job never overlaps with itself: the lock is held for the whole run,
    and a tick that finds the previous run still in progress is skipped.
    """

    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[Any]]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    failures: int = 0
    skipped: int = 0


class SweepScheduler:
    """Owns one asyncio task per registered job.

    Example:
        ```python
        scheduler = SweepScheduler()
        scheduler.add_job("rate_limits", 60, limiter.sweep)
        scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(self) -> None:
        self._jobs: dict[str, SweepJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def running(self) -> bool:
        """Whether job tasks are currently scheduled."""
        return bool(self._tasks)

    @property
    def jobs(self) -> list[SweepJob]:
        """Registered jobs."""
        return list(self._jobs.values())

    def add_job(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[Any]]) -> SweepJob:
        """Register a job.

        Args:
            name: Unique job name.
            interval_seconds: Delay between runs.
            func: Coroutine function invoked on each run.

        Returns:
            The registered SweepJob.

        Raises:
            ValueError: If the name is taken, the interval is not positive,
                or the scheduler is already running.
        """
        if self._tasks:
            raise ValueError("Cannot add jobs while the scheduler is running")
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        if interval_seconds <= 0:
            raise ValueError(f"Job interval must be positive, got {interval_seconds}")
        job = SweepJob(name=name, interval_seconds=interval_seconds, func=func)
        self._jobs[name] = job
        return job

    async def run_once(self, name: str) -> bool:
        """Run a job immediately.

        Returns:
            True if the job ran, False if a previous run was still in progress.

        Raises:
            KeyError: If no job has that name.
        """
        job = self._jobs[name]
        if job.lock.locked():
            job.skipped += 1
            logger.debug("sweep_job_skipped", job=name)
            return False
        async with job.lock:
            try:
                await job.func()
                job.runs += 1
            except Exception as e:
                job.failures += 1
                logger.error("sweep_job_failed", job=name, error=str(e), error_type=type(e).__name__)
        return True

    async def _loop(self, job: SweepJob) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self.run_once(job.name)

    def start(self) -> None:
        """Schedule all registered jobs on the running event loop."""
        if self._tasks:
            return
        for job in self._jobs.values():
            self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"sweep:{job.name}")
        logger.info("sweep_scheduler_started", jobs=list(self._jobs))

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("sweep_scheduler_stopped", jobs=len(tasks))
