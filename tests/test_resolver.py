import asyncio

import pytest

from placemark.cache.store import PlacemarkCache
from placemark.errors import NoResultsError, RetriesExhausted, TerminalResolutionError, TransientNetworkError
from placemark.fetch.geocoder import ReverseGeocoder
from placemark.models.place import Coordinate, PlaceRecord
from placemark.observability.metrics import MetricsRegistry
from placemark.orchestrator.paced_queue import PacedQueue
from placemark.resolve.backoff import BackoffPolicy
from placemark.resolve.resolver import ResolutionState, Resolver

LOCALES = {"en_US", "en_CA", "fr_CA", "fr_FR", "en_AU"}
DALLAS = Coordinate(32.78, -96.81)
PARIS = Coordinate(48.856613, 2.352222)
BRISBANE = Coordinate(-27.467778, 153.028056)

DALLAS_PLACE = PlaceRecord(
    name="Dealey Plaza",
    thoroughfare="Elm Street",
    locality="Dallas",
    administrative_area="Texas",
    postal_code="75202",
    country="United States",
    iso_country_code="US",
    street_address="411 Elm Street",
)


class ScriptedGeocoder(ReverseGeocoder):
    """Replays queued outcomes; falls back to a place named after the coordinate."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.closed = False

    async def reverse(self, coordinate, *, language):
        self.calls.append((coordinate, language))
        await asyncio.sleep(0)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = [PlaceRecord(name=str(coordinate), iso_country_code="US")]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def get_source_name(self):
        return "scripted"

    async def aclose(self):
        self.closed = True


class GatedGeocoder(ScriptedGeocoder):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def reverse(self, coordinate, *, language):
        self.calls.append((coordinate, language))
        self.entered.set()
        await self.release.wait()
        return [DALLAS_PLACE]


class Delays:
    def __init__(self):
        self.values = []

    async def __call__(self, delay):
        self.values.append(delay)
        await asyncio.sleep(0)


def _resolver(tmp_path, geocoder, *, pace_count=5, cache=None, **kwargs):
    metrics = MetricsRegistry()
    barrier_delays = Delays()
    queue = PacedQueue(pace_count=pace_count, pacing_delay=5.0, metrics=metrics, sleep=barrier_delays)
    return Resolver(
        geocoder=geocoder,
        cache=cache or PlacemarkCache(tmp_path / "placemarks"),
        queue=queue,
        policy=BackoffPolicy(max_retries=4, base_delay=0.1),
        locales=LOCALES,
        metrics=metrics,
        **kwargs,
    )


def test_identical_coordinates_issue_one_external_call(tmp_path):
    geocoder = ScriptedGeocoder([[DALLAS_PLACE]])

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            first = await resolver.submit(Coordinate(32.78, -96.81))
            second_sub = resolver.submit(Coordinate(32.78, -96.81))
            assert second_sub.done()
            assert resolver.queue.submitted == 1
            second = await second_sub
            return resolver, first, second

    resolver, first, second = asyncio.run(_run())
    assert len(geocoder.calls) == 1
    assert first.ok and second.ok
    assert first.place == second.place == DALLAS_PLACE
    assert first.from_cache is False and second.from_cache is True
    assert first.locale == second.locale == "en_US"
    assert resolver.metrics.get("cache_hits") == 1
    assert resolver.metrics.get("cache_misses") == 1
    assert resolver.metrics.get("resolved") == 2
    assert geocoder.closed


def test_jobs_without_failures_complete_in_submission_order(tmp_path):
    geocoder = ScriptedGeocoder()
    completed = []

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            subscriptions = [resolver.submit(coordinate) for coordinate in (DALLAS, PARIS, BRISBANE)]
            for subscription in subscriptions:
                subscription.add_done_callback(lambda resolution: completed.append(resolution.coordinate))
            await asyncio.gather(*(subscription.wait() for subscription in subscriptions))

    asyncio.run(_run())
    assert [coordinate for coordinate, _ in geocoder.calls] == [DALLAS, PARIS, BRISBANE]
    assert completed == [DALLAS, PARIS, BRISBANE]


def test_transient_failures_then_success(tmp_path):
    offline = TransientNetworkError("offline")
    geocoder = ScriptedGeocoder([offline, offline, offline, [DALLAS_PLACE]])
    delays = Delays()

    async def _run():
        async with _resolver(tmp_path, geocoder, sleep=delays) as resolver:
            resolution = await resolver.submit(DALLAS)
            return resolver, resolution

    resolver, resolution = asyncio.run(_run())
    assert resolution.ok
    assert resolution.attempts == 4
    assert len(geocoder.calls) == 4
    assert delays.values == pytest.approx([0.1, 0.2, 0.3])
    assert resolver.metrics.get("retries") == 3
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) == DALLAS_PLACE


def test_persistent_transient_failure_stops_after_four_attempts(tmp_path):
    geocoder = ScriptedGeocoder([TransientNetworkError("offline")] * 10)
    delays = Delays()

    async def _run():
        async with _resolver(tmp_path, geocoder, sleep=delays) as resolver:
            subscription = resolver.submit(DALLAS)
            resolution = await subscription
            await resolver.drain()
            return resolver, subscription, resolution

    resolver, subscription, resolution = asyncio.run(_run())
    assert not resolution.ok
    assert isinstance(resolution.error, RetriesExhausted)
    assert isinstance(resolution.error.last_error, TransientNetworkError)
    assert resolution.error.attempts == 4
    assert resolution.attempts == 4
    assert len(geocoder.calls) == 4
    assert delays.values == pytest.approx([0.1, 0.2, 0.3])
    assert subscription.state is ResolutionState.FAILED
    assert resolver.metrics.get("failed") == 1
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) is None


def test_terminal_failure_is_not_retried(tmp_path):
    geocoder = ScriptedGeocoder([TerminalResolutionError("denied")])
    delays = Delays()

    async def _run():
        async with _resolver(tmp_path, geocoder, sleep=delays) as resolver:
            resolution = await resolver.submit(DALLAS)
            await resolver.drain()
            return resolver, resolution

    resolver, resolution = asyncio.run(_run())
    assert isinstance(resolution.error, TerminalResolutionError)
    assert resolution.attempts == 1
    assert len(geocoder.calls) == 1
    assert delays.values == []
    assert resolver.metrics.get("retries") == 0


def test_empty_answer_and_unexpected_errors_are_terminal(tmp_path):
    geocoder = ScriptedGeocoder([[], KeyError("address")])

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            empty = await resolver.submit(DALLAS)
            broken = await resolver.submit(PARIS)
            return empty, broken

    empty, broken = asyncio.run(_run())
    assert isinstance(empty.error, NoResultsError)
    assert type(broken.error) is TerminalResolutionError
    assert isinstance(broken.error.__cause__, KeyError)
    assert len(geocoder.calls) == 2


def test_cancelled_queued_request_never_runs(tmp_path):
    geocoder = ScriptedGeocoder()

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            resolver.queue.suspend()
            subscription = resolver.submit(DALLAS)
            assert resolver.cancel(subscription) is True
            assert resolver.cancel(subscription) is False
            resolver.queue.resume()
            await resolver.drain()
            with pytest.raises(asyncio.CancelledError):
                await subscription.wait()
            return resolver, subscription

    resolver, subscription = asyncio.run(_run())
    assert geocoder.calls == []
    assert subscription.state is ResolutionState.CANCELLED
    assert resolver.metrics.get("cancelled") == 1
    assert resolver.metrics.get("resolved") == 0
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) is None


def test_cancelled_running_request_discards_result(tmp_path):
    async def _run():
        geocoder = GatedGeocoder()
        async with _resolver(tmp_path, geocoder) as resolver:
            subscription = resolver.submit(DALLAS)
            await geocoder.entered.wait()
            resolver.cancel(subscription)
            geocoder.release.set()
            await resolver.drain()
            return resolver, geocoder, subscription

    resolver, geocoder, subscription = asyncio.run(_run())
    assert len(geocoder.calls) == 1
    assert subscription.cancelled
    assert resolver.metrics.get("resolved") == 0
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) is None


def test_cancel_during_retry_delay_stops_resubmission(tmp_path):
    geocoder = ScriptedGeocoder([TransientNetworkError("offline")])
    async def _run():
        release = asyncio.Event()

        async def blocking_sleep(delay):
            await release.wait()

        async with _resolver(tmp_path, geocoder, sleep=blocking_sleep) as resolver:
            subscription = resolver.submit(DALLAS)
            while subscription.state is not ResolutionState.RETRY_SCHEDULED:
                await asyncio.sleep(0)
            resolver.cancel(subscription)
            release.set()
            await resolver.drain()
            return resolver

    resolver = asyncio.run(_run())
    assert len(geocoder.calls) == 1
    assert resolver.queue.submitted == 1


def test_pacing_counts_every_submission(tmp_path):
    geocoder = ScriptedGeocoder()
    coordinates = [Coordinate(10.0 + idx, 20.0) for idx in range(9)]

    async def _run():
        async with _resolver(tmp_path, geocoder, pace_count=5) as resolver:
            subscriptions = [resolver.submit(coordinate) for coordinate in coordinates]
            await asyncio.gather(*(subscription.wait() for subscription in subscriptions))
            await resolver.drain()
            return resolver

    resolver = asyncio.run(_run())
    assert resolver.queue.submitted == 9
    assert resolver.queue.barriers == 1
    assert resolver.metrics.get("barriers") == 1


def test_language_drives_candidate_and_locale(tmp_path):
    candidates = [
        PlaceRecord(name="Akwesasne", iso_country_code="US"),
        PlaceRecord(name="Montréal", iso_country_code="CA"),
    ]
    geocoder = ScriptedGeocoder([list(candidates)])

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            return await resolver.submit(Coordinate(45.508889, -73.553167), language="fr-CA")

    resolution = asyncio.run(_run())
    assert resolution.place.name == "Montréal"
    assert resolution.locale == "fr_CA"
    assert geocoder.calls[0][1] == "fr-CA"


def test_cached_entry_without_country_is_refetched(tmp_path):
    cache = PlacemarkCache(tmp_path / "placemarks")
    cache.put(DALLAS, PlaceRecord(name="Somewhere"))
    geocoder = ScriptedGeocoder([[DALLAS_PLACE]])

    async def _run():
        async with _resolver(tmp_path, geocoder, cache=cache) as resolver:
            return await resolver.submit(DALLAS)

    resolution = asyncio.run(_run())
    assert resolution.from_cache is False
    assert len(geocoder.calls) == 1
    assert cache.get(DALLAS) == DALLAS_PLACE


def test_refresh_and_cache_management(tmp_path):
    geocoder = ScriptedGeocoder([[DALLAS_PLACE], [DALLAS_PLACE], [PlaceRecord(locality="Paris", iso_country_code="FR")]])

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            await resolver.submit(DALLAS)
            refreshed = await resolver.refresh(DALLAS)
            await resolver.submit(PARIS)
            assert resolver.reset_cache(PARIS) is True
            assert resolver.reset_cache(PARIS) is False
            removed = resolver.delete_all_cache()
            return refreshed, removed

    refreshed, removed = asyncio.run(_run())
    assert refreshed.from_cache is False
    assert len(geocoder.calls) == 3
    assert removed == 1
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) is None


def test_cache_write_failure_still_publishes(tmp_path):
    class ReadOnlyCache(PlacemarkCache):
        def put(self, coordinate, record):
            return False

    geocoder = ScriptedGeocoder([[DALLAS_PLACE]])

    async def _run():
        cache = ReadOnlyCache(tmp_path / "placemarks")
        async with _resolver(tmp_path, geocoder, cache=cache) as resolver:
            return resolver, await resolver.submit(DALLAS)

    resolver, resolution = asyncio.run(_run())
    assert resolution.ok
    assert resolver.metrics.get("cache_write_failures") == 1


def test_resolution_report_shape(tmp_path):
    geocoder = ScriptedGeocoder([[DALLAS_PLACE]])

    async def _run():
        async with _resolver(tmp_path, geocoder) as resolver:
            return await resolver.submit(DALLAS)

    report = asyncio.run(_run()).to_dict()
    assert report["ok"] is True
    assert report["coordinate"] == [32.78, -96.81]
    assert report["address"] == "411 Elm Street, Dallas, Texas 75202 US"
    assert report["error"] is None


def test_retry_goes_behind_later_submissions(tmp_path):
    geocoder = ScriptedGeocoder([TransientNetworkError("offline"), [DALLAS_PLACE], [PlaceRecord(locality="Paris", iso_country_code="FR")]])

    async def _run():
        async with _resolver(tmp_path, geocoder, sleep=Delays()) as resolver:
            first = resolver.submit(PARIS)
            second = resolver.submit(DALLAS)
            return await first, await second

    first, second = asyncio.run(_run())
    assert [coordinate for coordinate, _ in geocoder.calls] == [PARIS, DALLAS, PARIS]
    assert first.attempts == 2 and first.place.locality == "Paris"
    assert second.attempts == 1


def test_close_cancels_queued_requests(tmp_path):
    geocoder = ScriptedGeocoder()

    async def _run():
        resolver = _resolver(tmp_path, geocoder)
        resolver.queue.suspend()
        subscription = resolver.submit(DALLAS)
        await resolver.close()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(subscription.wait(), timeout=1)
        return resolver, subscription

    resolver, subscription = asyncio.run(_run())
    assert subscription.state is ResolutionState.CANCELLED
    assert geocoder.calls == []
    assert resolver.metrics.get("cancelled") == 1


def test_close_cancels_requests_waiting_to_retry(tmp_path):
    geocoder = ScriptedGeocoder([TransientNetworkError("offline")])

    async def _run():
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        resolver = _resolver(tmp_path, geocoder, sleep=blocking_sleep)
        subscription = resolver.submit(DALLAS)
        while subscription.state is not ResolutionState.RETRY_SCHEDULED:
            await asyncio.sleep(0)
        await resolver.close()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(subscription.wait(), timeout=1)
        return subscription

    subscription = asyncio.run(_run())
    assert subscription.cancelled
    assert len(geocoder.calls) == 1


def test_close_cancels_running_request(tmp_path):
    async def _run():
        geocoder = GatedGeocoder()
        resolver = _resolver(tmp_path, geocoder)
        subscription = resolver.submit(DALLAS)
        await geocoder.entered.wait()
        await resolver.close()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(subscription.wait(), timeout=1)
        return geocoder

    geocoder = asyncio.run(_run())
    assert geocoder.closed
    assert PlacemarkCache(tmp_path / "placemarks").get(DALLAS) is None
