"""Definitions for paced jobs and their lifecycle."""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class PacedJob:
    """A unit of work sequenced by the paced queue.

    The queue knows nothing about what ``perform`` does; it awaits it once the
    job reaches the head of the line.
    """

    perform: Callable[["PacedJob"], Awaitable[None]]
    name: str = ""
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.QUEUED
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.CANCELLED)

    @property
    def cancelled(self) -> bool:
        return self.cancel_requested

    def mark_started(self) -> None:
        """Transition the job into the running state."""
        self.state = JobState.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def mark_finished(self) -> None:
        """Move a running job into its terminal state."""
        self.state = JobState.CANCELLED if self.cancel_requested else JobState.COMPLETED
        self.finished_at = datetime.now(timezone.utc)

    def cancel(self) -> None:
        """Request cancellation; queued jobs become terminal immediately."""
        if self.finished:
            return
        self.cancel_requested = True
        if self.state is JobState.QUEUED:
            self.state = JobState.CANCELLED
            self.finished_at = datetime.now(timezone.utc)
