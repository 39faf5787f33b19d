"""Domain models for the durable job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_ATTEMPTS = 3


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class JobKind(str, Enum):
    """Closed set of job kinds a handler can be registered for."""

    NORMALIZE = "normalize"
    EMBED = "embed"
    INSIGHT = "insight"
    EXTRACT_CONTACTS = "extract_contacts"
    GOOGLE_GMAIL_SYNC = "google_gmail_sync"
    GOOGLE_CALENDAR_SYNC = "google_calendar_sync"
    NORMALIZE_GOOGLE_EMAIL = "normalize_google_email"
    NORMALIZE_GOOGLE_EVENT = "normalize_google_event"


class JobHandlerError(Exception):
    """Failure signaled by a job handler.

    The runner only looks at ``retryable`` and the message; what went wrong
    is the handler's business.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    owner_id: str
    kind: JobKind | str
    payload: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for the runner, handlers and CLI."""

    job_id: str
    owner_id: str
    kind: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    batch_id: str | None
    last_error: str | None
    claim_token: str | None
    runner_id: str | None
    claimed_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class BatchStatus:
    """Aggregate counts for jobs sharing one batch id."""

    batch_id: str
    queued: int = 0
    in_progress: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.in_progress + self.succeeded + self.failed + self.canceled

    def as_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "in_progress": self.in_progress,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "canceled": self.canceled,
        }


@dataclass(slots=True)
class RunSummary:
    """Aggregate runner counters for trigger callers and CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    recovered_stale: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: RunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.recovered_stale += other.recovered_stale
        self.errors.extend(other.errors)
