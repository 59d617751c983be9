"""Tracing helpers for queue and geocoding stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("placemark.trace")


def set_context(*, request_id: str, coordinate: str, attempt: int) -> None:
    bind_contextvars(request_id=request_id, coordinate=coordinate, attempt=attempt)
    _logger().debug("trace_context", request_id=request_id, coordinate=coordinate, attempt=attempt)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, coordinate: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, coordinate=coordinate, elapsed_ms=elapsed_ms)


def log_retry(attempt: int, *, coordinate: str, delay: float, reason: str) -> None:
    _logger().warning("retry_scheduled", attempt=attempt, coordinate=coordinate, delay=delay, reason=reason)


def log_geocode_result(*, coordinate: str, candidates: int, elapsed_ms: int) -> None:
    _logger().info(
        "geocode_result",
        coordinate=coordinate,
        candidates=candidates,
        elapsed_ms=elapsed_ms,
    )
