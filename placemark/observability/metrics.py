"""Process-local counters and timings for resolver runs."""
from __future__ import annotations

import contextlib
import json
import time
from pathlib import Path
from typing import Dict, Iterator

import structlog

LOGGER = structlog.get_logger(__name__)

COUNTERS = (
    "cache_hits",
    "cache_misses",
    "cache_write_failures",
    "geocode_calls",
    "retries",
    "barriers",
    "resolved",
    "failed",
    "cancelled",
)
TIMINGS = ("run_duration_ms",)


class MetricsRegistry:
    """Monotonic counters plus last-value timings, exported as one JSON document."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self._timings: Dict[str, int] = dict.fromkeys(TIMINGS, 0)

    def incr(self, name: str, value: int = 1) -> None:
        if value < 0:
            raise ValueError(f"Counter {name} cannot decrease")
        self._counters[name] = self._counters.get(name, 0) + value

    def set_timing(self, name: str, millis: int) -> None:
        """Record the latest duration for ``name``, replacing any earlier value."""
        self._timings[name] = millis

    def get(self, name: str) -> int:
        if name in self._timings:
            return self._timings[name]
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        return {**self._counters, **self._timings}

    def cache_hit_ratio(self) -> float:
        lookups = self._counters["cache_hits"] + self._counters["cache_misses"]
        return self._counters["cache_hits"] / lookups if lookups else 0.0

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write counters and timings for ``run_id`` to ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "counters": dict(self._counters),
            "timings_ms": dict(self._timings),
            "cache_hit_ratio": round(self.cache_hit_ratio(), 4),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        LOGGER.info("metrics_exported", path=str(path), run_id=run_id)
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Time the block and store the elapsed milliseconds as ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.set_timing(metric_name, elapsed_ms)
        LOGGER.info("timer_stop", metric=metric_name, duration_ms=elapsed_ms)
