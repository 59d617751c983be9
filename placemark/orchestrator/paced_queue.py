"""Single-worker job queue that paces work for a rate-limited service."""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Union

import structlog

from placemark.observability.metrics import MetricsRegistry
from placemark.orchestrator.jobs import JobState, PacedJob

LOGGER = structlog.get_logger(__name__)

DEFAULT_PACE_COUNT = 5
DEFAULT_PACING_DELAY_SECONDS = 5.0

SleepFn = Callable[[float], Awaitable[None]]


class _Barrier:
    __slots__ = ("after",)

    def __init__(self, after: int) -> None:
        self.after = after


class PacedQueue:
    """Run submitted jobs strictly one at a time, pausing after every N submissions.

    The submission counter is monotonic for the lifetime of the queue and counts
    retries like any other submission. Each time it reaches a multiple of
    ``pace_count`` a barrier is placed right behind that job; when the worker
    reaches it, it sleeps ``pacing_delay`` seconds before starting anything
    else.

    All state is mutated by synchronous code on the event loop, so concurrent
    submitters cannot interleave a counter update. The worker task is created
    lazily on the first ``enqueue``.
    """

    def __init__(
        self,
        *,
        pace_count: int = DEFAULT_PACE_COUNT,
        pacing_delay: float = DEFAULT_PACING_DELAY_SECONDS,
        metrics: Optional[MetricsRegistry] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if pace_count < 1:
            raise ValueError("pace_count must be at least 1")
        if pacing_delay < 0:
            raise ValueError("pacing_delay must not be negative")
        self.pace_count = pace_count
        self.pacing_delay = pacing_delay
        self._metrics = metrics or MetricsRegistry()
        self._sleep = sleep
        self._pending: Deque[Union[PacedJob, _Barrier]] = deque()
        self._submitted = 0
        self._barriers = 0
        self._current: Optional[PacedJob] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self._wakeup = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def barriers(self) -> int:
        """Number of barrier pauses completed so far."""
        return self._barriers

    @property
    def suspended(self) -> bool:
        return not self._resumed.is_set()

    @property
    def pending_count(self) -> int:
        """Jobs waiting to start, excluding cancelled ones."""
        return sum(1 for entry in self._pending if isinstance(entry, PacedJob) and not entry.finished)

    @property
    def current(self) -> Optional[PacedJob]:
        return self._current

    @property
    def idle(self) -> bool:
        return self._idle.is_set()

    def enqueue(self, job: PacedJob) -> None:
        """Append ``job`` and return immediately; it runs on the worker task."""
        if job.state is not JobState.QUEUED:
            raise ValueError(f"Job {job.job_id} is {job.state.value}; submit a new job instead")
        self._pending.append(job)
        self._submitted += 1
        if self._submitted % self.pace_count == 0:
            self._pending.append(_Barrier(after=self._submitted))
        LOGGER.debug("job_enqueued", job_id=job.job_id, name=job.name, submitted=self._submitted)
        self._idle.clear()
        self._wakeup.set()
        self._ensure_worker()

    def cancel(self, job: PacedJob) -> None:
        """Cancel ``job``; a queued job never starts, a running one finishes unobserved."""
        was_running = job.state is JobState.RUNNING
        job.cancel()
        LOGGER.debug("job_cancelled", job_id=job.job_id, running=was_running)

    def suspend(self) -> None:
        """Stop starting new work; whatever is running is left to finish."""
        if self._resumed.is_set():
            self._resumed.clear()
            LOGGER.info("queue_suspended", pending=self.pending_count)

    def resume(self) -> None:
        if not self._resumed.is_set():
            self._resumed.set()
            LOGGER.info("queue_resumed", pending=self.pending_count)

    async def join(self) -> None:
        """Wait until no job is pending or running."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop the worker and drop every pending job."""
        for entry in self._pending:
            if isinstance(entry, PacedJob):
                entry.cancel()
        self._pending.clear()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._idle.set()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            loop = asyncio.get_running_loop()
            self._worker = loop.create_task(self._run(), name="paced-queue-worker")

    async def _run(self) -> None:
        while True:
            if not self._pending:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._resumed.wait()
            entry = self._pending.popleft()
            if isinstance(entry, _Barrier):
                await self._pause(entry)
                continue
            if entry.finished:
                continue
            await self._execute(entry)

    async def _pause(self, barrier: _Barrier) -> None:
        LOGGER.info("barrier_start", after=barrier.after, pending=self.pending_count, delay=self.pacing_delay)
        await self._sleep(self.pacing_delay)
        self._barriers += 1
        self._metrics.incr("barriers")
        LOGGER.info("barrier_done", after=barrier.after)

    async def _execute(self, job: PacedJob) -> None:
        self._current = job
        job.mark_started()
        try:
            await job.perform(job)
        except Exception:  # job bodies report their own failures
            LOGGER.exception("job_body_failed", job_id=job.job_id, name=job.name)
        finally:
            job.mark_finished()
            self._current = None
