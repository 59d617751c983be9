"""Command-line entrypoints for the placemark resolver."""
from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from placemark.cache.store import PlacemarkCache
from placemark.fetch.geocoder import NominatimGeocoder, ReverseGeocoder
from placemark.models.place import Coordinate
from placemark.observability.log import configure_logging
from placemark.observability.metrics import MetricsRegistry, record_duration
from placemark.orchestrator.paced_queue import PacedQueue
from placemark.resolve.backoff import BackoffPolicy
from placemark.resolve.resolver import Resolver
from placemark.settings import Settings, load_settings

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
DEFAULT_LOGGING_PATH = Path("config/logging.yaml")


def _coordinate(text: str) -> Coordinate:
    try:
        return Coordinate.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="placemark", description="Paced, cached reverse geocoding")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH), help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve one or more LAT,LON coordinates")
    resolve.add_argument("coordinates", nargs="+", type=_coordinate, metavar="LAT,LON")
    resolve.add_argument("--language", help="Preferred language for names and locale selection")
    resolve.add_argument("--refresh", action="store_true", help="Ignore cached entries and query again")

    reset = sub.add_parser("reset-cache", help="Forget the cached place for coordinates")
    reset.add_argument("coordinates", nargs="+", type=_coordinate, metavar="LAT,LON")

    sub.add_parser("delete-cache", help="Remove every cached place")
    sub.add_parser("status", help="Summarise the cache contents")

    return parser


def build_resolver(
    settings: Settings,
    *,
    metrics: Optional[MetricsRegistry] = None,
    geocoder: Optional[ReverseGeocoder] = None,
) -> Resolver:
    """Wire a resolver from settings; the geocoder can be swapped for tests."""
    metrics = metrics or MetricsRegistry()
    geocoder = geocoder or NominatimGeocoder(
        email=settings.geocoder.email,
        user_agent=settings.geocoder.user_agent,
        base_url=settings.geocoder.base_url,
        timeout=settings.geocoder.timeout_seconds,
    )
    queue = PacedQueue(
        pace_count=settings.queue.pace_count,
        pacing_delay=settings.queue.pacing_delay_seconds,
        metrics=metrics,
    )
    policy = BackoffPolicy(
        max_retries=settings.retry.max_retries,
        base_delay=settings.retry.base_delay_seconds,
    )
    return Resolver(
        geocoder=geocoder,
        cache=PlacemarkCache(settings.app.cache_dir),
        queue=queue,
        policy=policy,
        language=settings.geocoder.language,
        default_locale=settings.geocoder.default_locale,
        metrics=metrics,
    )


async def run_resolve(
    args: argparse.Namespace,
    settings: Settings,
    *,
    geocoder: Optional[ReverseGeocoder] = None,
) -> List[dict]:
    """Execute the resolve command and print one JSON object per coordinate."""
    metrics = MetricsRegistry()
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    with record_duration(metrics, "run_duration_ms"):
        async with build_resolver(settings, metrics=metrics, geocoder=geocoder) as resolver:
            submit = resolver.refresh if args.refresh else resolver.submit
            subscriptions = [submit(coordinate, args.language) for coordinate in args.coordinates]
            resolutions = await asyncio.gather(*(subscription.wait() for subscription in subscriptions))
    report = [resolution.to_dict() for resolution in resolutions]
    print(json.dumps(report, indent=2, ensure_ascii=False))
    metrics.export(path=settings.app.metrics_dir / f"run_{run_id}.json", run_id=run_id)
    return report


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(Path(args.settings))
    except ValueError as exc:
        raise SystemExit(f"Failed to load settings: {exc}")
    configure_logging(DEFAULT_LOGGING_PATH)

    if args.command == "resolve":
        report = asyncio.run(run_resolve(args, settings))
        if not all(item["ok"] for item in report):
            raise SystemExit(1)
        return

    cache = PlacemarkCache(settings.app.cache_dir)

    if args.command == "reset-cache":
        removed = [str(coordinate) for coordinate in args.coordinates if cache.reset(coordinate)]
        print(json.dumps({"removed": removed}, indent=2))
        return

    if args.command == "delete-cache":
        print(json.dumps({"removed": cache.delete_cache()}, indent=2))
        return

    if args.command == "status":
        print(json.dumps({"cache_dir": str(cache.cache_dir), **cache.stats()}, indent=2))
        return


if __name__ == "__main__":
    main()
