"""Coordinate resolution: cache first, then the paced queue with bounded retry."""
from __future__ import annotations

import asyncio
import enum
import functools
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

import structlog

from placemark.cache.store import PlacemarkCache
from placemark.errors import NoResultsError, ResolutionError, RetriesExhausted, TerminalResolutionError
from placemark.fetch.geocoder import ReverseGeocoder
from placemark.models.place import Coordinate, PlaceRecord
from placemark.observability.metrics import MetricsRegistry
from placemark.observability.tracing import clear_context, log_geocode_result, log_retry, set_context, span
from placemark.orchestrator.jobs import PacedJob
from placemark.orchestrator.paced_queue import PacedQueue, SleepFn
from placemark.resolve.backoff import BackoffPolicy, FailureKind, RetryAfter, classify
from placemark.resolve.selection import DEFAULT_LANGUAGE, DEFAULT_LOCALE, select_candidate

LOGGER = structlog.get_logger(__name__)


class ResolutionState(str, enum.Enum):
    REQUESTED = "requested"
    CACHE_CHECK = "cache_check"
    QUERYING = "querying"
    RETRY_SCHEDULED = "retry_scheduled"
    RESOLVED = "resolved"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Resolution:
    """The single terminal event delivered for a submission."""

    coordinate: Coordinate
    place: Optional[PlaceRecord] = None
    locale: Optional[str] = None
    error: Optional[ResolutionError] = None
    attempts: int = 0
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.place is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinate": [self.coordinate.latitude, self.coordinate.longitude],
            "ok": self.ok,
            "place": self.place.to_dict() if self.place else None,
            "address": self.place.formatted_street_address if self.place else None,
            "locale": self.locale,
            "error": str(self.error) if self.error else None,
            "error_kind": self.error.failure_kind if self.error else None,
            "attempts": self.attempts,
            "from_cache": self.from_cache,
        }


class Subscription:
    """Handle returned by :meth:`Resolver.submit`; await it for the outcome."""

    def __init__(self, coordinate: Coordinate, language: str, future: "asyncio.Future[Resolution]") -> None:
        self.request_id = uuid.uuid4().hex
        self.coordinate = coordinate
        self.language = language
        self.state = ResolutionState.REQUESTED
        self.attempts = 0
        self.job: Optional[GeocodeJob] = None
        self._future = future
        self._cancelled = False
        self._retry_task: Optional[asyncio.Task[None]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self._future.cancelled()

    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> Resolution:
        """Return the resolution; raises ``CancelledError`` if cancelled."""
        return await self._future

    def __await__(self):
        return self._future.__await__()

    def add_done_callback(self, callback: Callable[[Resolution], None]) -> None:
        """Invoke ``callback`` with the resolution; never called when cancelled."""

        def _deliver(future: "asyncio.Future[Resolution]") -> None:
            if not future.cancelled():
                callback(future.result())

        self._future.add_done_callback(_deliver)

    def _settle(self, resolution: Resolution) -> bool:
        if self.cancelled or self._future.done():
            return False
        self.state = ResolutionState.RESOLVED if resolution.ok else ResolutionState.FAILED
        self._future.set_result(resolution)
        return True

    def _mark_cancelled(self) -> bool:
        if self._cancelled or (self._future.done() and not self._future.cancelled()):
            return False
        self._cancelled = True
        self.state = ResolutionState.CANCELLED
        self._set_retry(None)
        self._future.cancel()
        return True

    def _set_retry(self, task: Optional["asyncio.Task[None]"]) -> None:
        """Swap the pending retry timer, cancelling the one it replaces."""
        previous, self._retry_task = self._retry_task, task
        if previous is not None and previous is not asyncio.current_task() and not previous.done():
            previous.cancel()


@dataclass(eq=False)
class GeocodeJob:
    """One attempt at resolving a coordinate; retries are new instances."""

    coordinate: Coordinate
    attempt: int
    subscription: Subscription
    paced: Optional[PacedJob] = None


class Resolver:
    """Resolve coordinates into places through the cache and the paced queue.

    One instance is meant to live for the whole process and to be shared by
    every caller so that they all go through the same queue. ``submit`` and
    ``cancel`` must be called from the event loop that owns the queue.
    """

    def __init__(
        self,
        *,
        geocoder: ReverseGeocoder,
        cache: PlacemarkCache,
        queue: Optional[PacedQueue] = None,
        policy: Optional[BackoffPolicy] = None,
        language: str = DEFAULT_LANGUAGE,
        default_locale: str = DEFAULT_LOCALE,
        locales: Optional[Iterable[str]] = None,
        metrics: Optional[MetricsRegistry] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.metrics = metrics or MetricsRegistry()
        self.geocoder = geocoder
        self.cache = cache
        self.queue = queue or PacedQueue(metrics=self.metrics)
        self.policy = policy or BackoffPolicy()
        self.language = language
        self.default_locale = default_locale
        self._locales = frozenset(locales) if locales is not None else None
        self._sleep = sleep
        self._retry_tasks: Set[asyncio.Task[None]] = set()
        self._live: Set[Subscription] = set()

    async def __aenter__(self) -> "Resolver":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def submit(self, coordinate: Coordinate, language: Optional[str] = None) -> Subscription:
        """Request resolution of ``coordinate``; returns without waiting."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(coordinate, language or self.language, loop.create_future())
        subscription.state = ResolutionState.CACHE_CHECK
        self._live.add(subscription)
        cached = self.cache.get(coordinate)
        if cached is not None and cached.iso_country_code:
            self.metrics.incr("cache_hits")
            _, locale = self._select([cached], subscription.language)
            LOGGER.debug("cache_hit", coordinate=str(coordinate))
            self._publish(subscription, Resolution(coordinate, place=cached, locale=locale, from_cache=True))
            return subscription
        if cached is not None:
            LOGGER.info("cache_entry_stale", coordinate=str(coordinate), reason="missing iso_country_code")
        self.metrics.incr("cache_misses")
        self._enqueue(GeocodeJob(coordinate=coordinate, attempt=0, subscription=subscription))
        return subscription

    def cancel(self, subscription: Subscription) -> bool:
        """Suppress the outcome of ``subscription``; False if it already completed."""
        if not subscription._mark_cancelled():
            return False
        self._live.discard(subscription)
        if subscription.job is not None and subscription.job.paced is not None:
            self.queue.cancel(subscription.job.paced)
        self.metrics.incr("cancelled")
        LOGGER.info("resolution_cancelled", coordinate=str(subscription.coordinate), request_id=subscription.request_id)
        return True

    def reset_cache(self, coordinate: Coordinate) -> bool:
        return self.cache.reset(coordinate)

    def delete_all_cache(self) -> int:
        return self.cache.delete_cache()

    def refresh(self, coordinate: Coordinate, language: Optional[str] = None) -> Subscription:
        """Forget any cached place for ``coordinate`` and resolve it again."""
        self.reset_cache(coordinate)
        return self.submit(coordinate, language)

    async def drain(self) -> None:
        """Wait until the queue is idle and no retry is waiting to be submitted."""
        while True:
            await self.queue.join()
            if self._retry_tasks:
                await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
                continue
            if self.queue.idle:
                return

    async def close(self) -> None:
        """Cancel outstanding requests, stop the queue and release the geocoder."""
        if self._live:
            LOGGER.info("resolver_closing", outstanding=len(self._live))
        for subscription in list(self._live):
            self.cancel(subscription)
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.queue.close()
        await self.geocoder.aclose()

    def _select(self, candidates, language: str):
        return select_candidate(
            candidates,
            language=language,
            locales=self._locales,
            default_locale=self.default_locale,
        )

    def _enqueue(self, job: GeocodeJob) -> None:
        paced = PacedJob(perform=functools.partial(self._perform, job), name=str(job.coordinate))
        job.paced = paced
        job.subscription.job = job
        job.subscription.state = ResolutionState.QUERYING
        self.queue.enqueue(paced)

    async def _perform(self, job: GeocodeJob, paced: PacedJob) -> None:
        subscription = job.subscription
        if subscription.cancelled:
            return
        subscription.attempts = job.attempt + 1
        coordinate = str(job.coordinate)
        set_context(request_id=subscription.request_id, coordinate=coordinate, attempt=subscription.attempts)
        try:
            self.metrics.incr("geocode_calls")
            error: Optional[ResolutionError] = None
            candidates = []
            start = time.perf_counter()
            try:
                with span(name="reverse_geocode", coordinate=coordinate):
                    candidates = await self.geocoder.reverse(job.coordinate, language=subscription.language)
                if not candidates:
                    raise NoResultsError(f"No place found for {coordinate}")
            except ResolutionError as exc:
                error = exc
            except Exception as exc:
                error = TerminalResolutionError(f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc

            if subscription.cancelled or paced.cancelled:
                LOGGER.info("result_discarded", coordinate=coordinate, attempt=subscription.attempts)
                return
            if error is not None:
                self._handle_failure(job, error)
                return
            log_geocode_result(
                coordinate=coordinate,
                candidates=len(candidates),
                elapsed_ms=int((time.perf_counter() - start) * 1000),
            )
            await self._complete(job, candidates)
        finally:
            clear_context()

    async def _complete(self, job: GeocodeJob, candidates) -> None:
        subscription = job.subscription
        place, locale = self._select(candidates, subscription.language)
        written = await asyncio.to_thread(self.cache.put, job.coordinate, place)
        if not written:
            self.metrics.incr("cache_write_failures")
        self._publish(
            subscription,
            Resolution(job.coordinate, place=place, locale=locale, attempts=job.attempt + 1),
        )

    def _handle_failure(self, job: GeocodeJob, error: ResolutionError) -> None:
        subscription = job.subscription
        attempts = job.attempt + 1
        kind = classify(error)
        decision = self.policy.decide(kind, attempts)
        if isinstance(decision, RetryAfter):
            self.metrics.incr("retries")
            log_retry(attempts, coordinate=str(job.coordinate), delay=decision.delay, reason=str(error))
            subscription.state = ResolutionState.RETRY_SCHEDULED
            task = asyncio.get_running_loop().create_task(self._retry_later(job, decision.delay))
            subscription._set_retry(task)
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return
        if kind is FailureKind.TRANSIENT:
            error = RetriesExhausted(error, attempts)
        LOGGER.warning("resolution_failed", coordinate=str(job.coordinate), attempts=attempts, error=str(error))
        self._publish(subscription, Resolution(job.coordinate, error=error, attempts=attempts))

    async def _retry_later(self, job: GeocodeJob, delay: float) -> None:
        await self._sleep(delay)
        subscription = job.subscription
        subscription._set_retry(None)
        if subscription.cancelled:
            return
        self._enqueue(GeocodeJob(coordinate=job.coordinate, attempt=job.attempt + 1, subscription=subscription))

    def _publish(self, subscription: Subscription, resolution: Resolution) -> bool:
        if not subscription._settle(resolution):
            return False
        self._live.discard(subscription)
        self.metrics.incr("resolved" if resolution.ok else "failed")
        return True
