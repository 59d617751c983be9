"""Exception taxonomy for coordinate resolution."""
from __future__ import annotations

from typing import Optional


class PlacemarkError(Exception):
    """Base class for all errors raised by the placemark package."""


class CacheIOError(PlacemarkError):
    """Raised internally when a cache entry cannot be read or written."""


class ResolutionError(PlacemarkError):
    """A failure while resolving a coordinate against the external service."""

    failure_kind = "terminal"


class TransientNetworkError(ResolutionError):
    """The service could not be reached; the request may succeed if retried."""

    failure_kind = "transient"


class TerminalResolutionError(ResolutionError):
    """Any non-network failure reported by the reverse geocoder."""

    failure_kind = "terminal"


class NoResultsError(TerminalResolutionError):
    """The reverse geocoder answered without any candidate place."""


class RetriesExhausted(ResolutionError):
    """Transient failures persisted past the configured retry budget."""

    failure_kind = "transient"

    def __init__(self, last_error: Optional[BaseException], attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} attempts. Last error: {last_error}")
