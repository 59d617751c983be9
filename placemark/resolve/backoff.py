"""Retry decisions for failed reverse-geocoding attempts."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from placemark.errors import TransientNetworkError

DEFAULT_MAX_RETRIES = 4
DEFAULT_BASE_DELAY_SECONDS = 0.1


class FailureKind(str, enum.Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class RetryAfter:
    delay: float


@dataclass(frozen=True, slots=True)
class GiveUp:
    pass


Decision = Union[RetryAfter, GiveUp]


def classify(error: BaseException) -> FailureKind:
    """Only network reachability failures are worth another attempt."""
    if isinstance(error, TransientNetworkError):
        return FailureKind.TRANSIENT
    return FailureKind.TERMINAL


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Bounded linear backoff.

    ``attempt_count`` is the number of attempts that have failed so far
    (1 after the first failure). Transient failures are retried after
    ``attempt_count * base_delay`` seconds while ``attempt_count < max_retries``;
    the delay grows linearly, matching the pacing the upstream service
    tolerates. Terminal failures are never retried.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def decide(self, kind: FailureKind, attempt_count: int) -> Decision:
        if kind is FailureKind.TERMINAL:
            return GiveUp()
        if attempt_count < self.max_retries:
            return RetryAfter(delay=attempt_count * self.base_delay)
        return GiveUp()
