"""
SQLAlchemy database models.
Defines the live queue table and the dead-letter table.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from leasequeue.constants import DEAD_JOBS_TABLE, DEFAULT_QUEUE, JOBS_TABLE, JobState
from leasequeue.types.job import JobRecord


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobColumnsMixin:
    """
    Columns shared by the live queue and the dead-letter store.

    Timestamps are stored as naive UTC. ``leased_at`` is the whole state
    machine: NULL means waiting, a value means leased.
    """

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False, default=DEFAULT_QUEUE)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    leased_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def to_record(self) -> JobRecord:
        """Take an immutable snapshot of this row."""
        return JobRecord(
            id=self.id,
            queue=self.queue,
            job_type=self.job_type,
            payload=self.payload,
            retry_count=self.retry_count,
            priority=self.priority,
            scheduled_at=self.scheduled_at,
            enqueued_at=self.enqueued_at,
            leased_at=self.leased_at,
            lease_expires_at=self.lease_expires_at,
        )


class Job(JobColumnsMixin, Base):
    """
    A waiting or leased job in the live queue.

    Key constraints:
    - checkout only ever writes rows whose ``leased_at`` is NULL
    - lease resolution only ever writes rows matching the lease's
      ``(id, retry_count)`` that are still leased
    """

    __tablename__ = JOBS_TABLE

    __table_args__ = (
        # Index for queue polling
        Index("ix_jobs_queue_poll", "queue", "leased_at", "scheduled_at", "priority"),
        # Index for lease expiry checks
        Index("ix_jobs_lease_expiry", "lease_expires_at"),
    )

    @property
    def state(self) -> JobState:
        return JobState.WAITING if self.leased_at is None else JobState.LEASED

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, "
            f"state={self.state}, retries={self.retry_count})"
        )


class DeadJob(JobColumnsMixin, Base):
    """
    A permanently failed job. Inert: never eligible for checkout, and its
    ``leased_at`` is always NULL.
    """

    __tablename__ = DEAD_JOBS_TABLE

    @classmethod
    def from_record(cls, record: JobRecord) -> "DeadJob":
        """Build the dead-letter row equivalent to a live record."""
        return cls(
            id=record.id,
            queue=record.queue,
            job_type=record.job_type,
            payload=record.payload,
            retry_count=record.retry_count,
            priority=record.priority,
            scheduled_at=record.scheduled_at,
            enqueued_at=record.enqueued_at,
            leased_at=None,
            lease_expires_at=None,
        )

    def __repr__(self) -> str:
        return f"DeadJob(id={self.id}, type={self.job_type}, retries={self.retry_count})"
