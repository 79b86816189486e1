"""Recurring triggers (every N minutes, daily at HH:MM) for the pipeline's sweeps."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import schedule

logger = logging.getLogger(__name__)

SweepJob = Callable[[], Awaitable[Any]]


class RecurringScheduler:
    """
    Thin async wrapper over a `schedule.Scheduler`.

    Registered jobs are coroutine functions; each trigger spawns a task so a slow
    sweep never blocks the next tick. A sweep that is still running when its next
    trigger fires is skipped rather than overlapped.
    """

    def __init__(self, tick_seconds: float = 30):
        self.scheduler = schedule.Scheduler()
        self.tick_seconds = tick_seconds
        self._running: dict[str, asyncio.Task] = {}
        self._stopped = asyncio.Event()

    def every_minutes(self, minutes: int, name: str, job: SweepJob) -> schedule.Job:
        return self.scheduler.every(minutes).minutes.do(self._spawn, name, job).tag(name)

    def daily_at(self, at: str, name: str, job: SweepJob) -> schedule.Job:
        return self.scheduler.every().day.at(at).do(self._spawn, name, job).tag(name)

    def job_names(self) -> list[str]:
        return sorted({tag for job in self.scheduler.get_jobs() for tag in job.tags})

    def run_pending(self) -> None:
        self.scheduler.run_pending()

    async def trigger(self, name: str) -> None:
        """Run a registered sweep right now and wait for it."""
        for job in self.scheduler.get_jobs(name):
            job.run()
        task = self._running.get(name)
        if task is not None:
            await task

    async def run_forever(self) -> None:
        logger.info(f"Starting recurring scheduler with jobs: {', '.join(self.job_names())}")
        while not self._stopped.is_set():
            self.run_pending()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                continue

    async def stop(self) -> None:
        self._stopped.set()
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.scheduler.clear()

    def _spawn(self, name: str, job: SweepJob) -> None:
        current: Optional[asyncio.Task] = self._running.get(name)
        if current is not None and not current.done():
            logger.warning(f"Sweep '{name}' still running, skipping this trigger")
            return
        task = asyncio.get_running_loop().create_task(self._run(name, job))
        self._running[name] = task

    async def _run(self, name: str, job: SweepJob) -> None:
        logger.info(f"Running sweep '{name}'")
        try:
            result = await job()
            logger.info(f"Sweep '{name}' finished: {result}")
        except Exception as e:
            logger.error(f"Sweep '{name}' failed: {type(e).__name__}: {e}")
