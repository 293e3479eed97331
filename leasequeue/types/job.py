"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from leasequeue.constants import JobState


@dataclass(frozen=True)
class JobRecord:
    """
    Immutable snapshot of one persisted job.

    Returned by store reads and held by a lease as the view of the row taken
    at checkout time.
    """

    id: str
    queue: str
    job_type: str
    payload: bytes
    retry_count: int
    priority: int
    scheduled_at: datetime
    enqueued_at: datetime
    leased_at: datetime | None = None
    lease_expires_at: datetime | None = None

    @property
    def state(self) -> JobState:
        return JobState.WAITING if self.leased_at is None else JobState.LEASED

    def is_eligible(self, now: datetime) -> bool:
        """Check if the record could be checked out at ``now``, ignoring type filters."""
        return self.leased_at is None and self.scheduled_at <= now


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the decoded payload.
    """

    job_id: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: Any
    enqueued_at: datetime
    lease_expires_at: datetime | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
