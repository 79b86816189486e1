"""
Bounded-parallelism work pools with delayed jobs, cancellation and completion callbacks.

Each named pool keeps a time-ordered min-heap of pending jobs (FIFO among equal
run times) and never runs more than `max_parallelism` jobs at once. Jobs are
single-attempt; `on_complete(handle, outcome, context)` fires exactly once per
job with outcome "success", "failed" or "canceled".
Inside a running job, `current_job_handle()` returns that job's own handle.
"""
import asyncio
import heapq
import inspect
import itertools
import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from cachetools import TTLCache

from event_digest.errors import PipelineError
from event_digest.models import JobStatus, new_id

logger = logging.getLogger(__name__)

SCRAPE_POOL = "scrape"
EMBEDDING_POOL = "embedding"
MATCHING_POOL = "matching"

Job = Callable[[], Awaitable[Any]]
OnComplete = Callable[[str, str, Any], Any]

_current_handle: ContextVar[Optional[str]] = ContextVar("current_job_handle", default=None)


class JobNotFoundError(PipelineError):
    """The handle is unknown, or the job already ran or was cancelled."""


class JobQueue(Protocol):
    def enqueue(
        self,
        pool: str,
        job: Job,
        *,
        delay: float = 0.0,
        on_complete: Optional[OnComplete] = None,
        context: Any = None,
    ) -> str: ...

    def cancel(self, handle: str) -> None: ...

    def status(self, handle: str) -> JobStatus: ...


def current_job_handle() -> Optional[str]:
    """Handle of the job running in this task, or None outside a work pool job."""
    return _current_handle.get()


def cancel_quietly(queue: JobQueue, handle: Optional[str]) -> bool:
    """Cancel a job, treating "already ran / not found" as a no-op. Other errors propagate."""
    if not handle:
        return False
    try:
        queue.cancel(handle)
        return True
    except JobNotFoundError:
        logger.debug(f"Job {handle} already finished or unknown, nothing to cancel")
        return False


@dataclass(order=True)
class _QueuedJob:
    run_at: float
    seq: int
    handle: str = field(compare=False)
    pool: str = field(compare=False)
    job: Job = field(compare=False)
    on_complete: Optional[OnComplete] = field(compare=False, default=None)
    context: Any = field(compare=False, default=None)
    state: str = field(compare=False, default="pending")


class WorkPool:
    def __init__(self, name: str, max_parallelism: int):
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")
        self.name = name
        self.max_parallelism = max_parallelism
        self.heap: list[_QueuedJob] = []
        self.running = 0

    def position(self, handle: str) -> Optional[int]:
        live = sorted(j for j in self.heap if j.state == "pending")
        for index, queued in enumerate(live):
            if queued.handle == handle:
                return index
        return None


class WorkPoolQueue:
    """In-process reference implementation of the JobQueue contract."""

    def __init__(
        self,
        pools: dict[str, int],
        clock: Callable[[], float] = time.monotonic,
        finished_ttl: float = 3600,
    ):
        self.pools = {name: WorkPool(name, parallelism) for name, parallelism in pools.items()}
        self.clock = clock
        self._seq = itertools.count()
        self._jobs: dict[str, _QueuedJob] = {}
        self._finished: TTLCache = TTLCache(maxsize=10_000, ttl=finished_ttl)
        self._tasks: set[asyncio.Task] = set()
        self._timers: list[asyncio.TimerHandle] = []

    def enqueue(
        self,
        pool: str,
        job: Job,
        *,
        delay: float = 0.0,
        on_complete: Optional[OnComplete] = None,
        context: Any = None,
    ) -> str:
        if pool not in self.pools:
            raise ValueError(f"Unknown work pool: {pool}")
        delay = max(0.0, delay)
        queued = _QueuedJob(
            run_at=self.clock() + delay,
            seq=next(self._seq),
            handle=new_id("job"),
            pool=pool,
            job=job,
            on_complete=on_complete,
            context=context,
        )
        heapq.heappush(self.pools[pool].heap, queued)
        self._jobs[queued.handle] = queued
        logger.debug(f"Enqueued {queued.handle} on {pool} pool (delay {delay:.0f}s)")

        loop = self._loop()
        if loop is not None:
            if delay > 0:
                self._timers = [t for t in self._timers if t.when() > loop.time()]
                self._timers.append(loop.call_later(delay, self.pump))
            self.pump()
        return queued.handle

    def cancel(self, handle: str) -> None:
        queued = self._jobs.get(handle)
        if queued is None or queued.state != "pending":
            raise JobNotFoundError(f"Job {handle} is not pending")
        queued.state = "canceled"
        logger.info(f"Cancelled job {handle} on {queued.pool} pool")
        self._finish(queued, "canceled")

    def status(self, handle: str) -> JobStatus:
        queued = self._jobs.get(handle)
        if queued is not None:
            if queued.state == "running":
                return JobStatus(state="running")
            return JobStatus(state="pending", queue_position=self.pools[queued.pool].position(handle))
        outcome = self._finished.get(handle)
        if outcome is None:
            raise JobNotFoundError(f"Job {handle} not found")
        return JobStatus(state={"success": "finished"}.get(outcome, outcome))

    def pending_count(self, pool: Optional[str] = None) -> int:
        return sum(
            1 for j in self._jobs.values()
            if j.state == "pending" and (pool is None or j.pool == pool)
        )

    def running_count(self, pool: str) -> int:
        return self.pools[pool].running

    def pump(self) -> None:
        """Start every due job that fits under its pool's parallelism cap."""
        loop = self._loop()
        if loop is None:
            return
        now = self.clock()
        for pool in self.pools.values():
            while pool.heap and pool.running < pool.max_parallelism:
                head = pool.heap[0]
                if head.state != "pending":
                    heapq.heappop(pool.heap)
                    continue
                if head.run_at > now:
                    break
                heapq.heappop(pool.heap)
                head.state = "running"
                pool.running += 1
                self._track(loop.create_task(self._run(head)))

    async def join(self) -> None:
        """Wait until every started job and callback has settled. Future-dated jobs are not awaited."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, queued: _QueuedJob) -> None:
        outcome = "failed"
        try:
            _current_handle.set(queued.handle)
            await queued.job()
            outcome = "success"
        except asyncio.CancelledError:
            outcome = "canceled"
            raise
        except Exception as e:
            logger.error(f"Job {queued.handle} on {queued.pool} pool failed: {type(e).__name__}: {e}")
        finally:
            self.pools[queued.pool].running -= 1
            self._finish(queued, outcome)
            self.pump()

    def _finish(self, queued: _QueuedJob, outcome: str) -> None:
        self._jobs.pop(queued.handle, None)
        self._finished[queued.handle] = outcome
        if queued.on_complete is None:
            return
        loop = self._loop()
        if loop is None:
            logger.warning(f"No running loop, dropping completion callback for {queued.handle}")
            return
        self._track(loop.create_task(self._notify(queued, outcome)))

    async def _notify(self, queued: _QueuedJob, outcome: str) -> None:
        try:
            result = queued.on_complete(queued.handle, outcome, queued.context)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Completion callback for {queued.handle} failed: {type(e).__name__}: {e}")

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None
