"""
Queue store for the live job collection.

Every operation runs in its own session and commits before returning. No
in-process lock is involved: each mutation of a row is a single conditional
statement, or a single transaction for the moves between the live queue and
the dead-letter store, so correctness holds across independent processes.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.codec import decode_payload, encode_payload
from leasequeue.config import Settings, get_settings
from leasequeue.constants import (
    DEFAULT_CHECKOUT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE,
    SPAN_CANCEL,
    SPAN_CHECKOUT,
    SPAN_COMPLETE,
    SPAN_DEAD_LETTER,
    SPAN_ENQUEUE,
    SPAN_FAIL,
    SPAN_REAP,
    SPAN_RETRY_DEAD,
    SPAN_UNSCHEDULE,
    Outcome,
)
from leasequeue.db.lease import Lease
from leasequeue.db.models import DeadJob, Job
from leasequeue.errors import (
    EncodingError,
    JobNotFound,
    LeaseLost,
    PersistenceError,
    StoreUnavailable,
    TransactionFailed,
)
from leasequeue.observability.metrics import get_metrics
from leasequeue.observability.tracing import get_tracer
from leasequeue.types.job import JobRecord
from leasequeue.utils import new_job_id, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

jobs_table = Job.__table__
dead_jobs_table = DeadJob.__table__


class QueueStore:
    """
    Store for one logical queue.

    Implements atomic operations for:
    - Enqueue of new waiting jobs
    - Checkout (lease acquisition) with a conditional write on ``leased_at``
    - Cancel / unschedule of waiting jobs
    - Lease resolution (complete, fail, dead-letter), called through ``Lease``
    - Lease expiry recovery and dead-letter retry
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue_name: str = DEFAULT_QUEUE,
        lease_duration: timedelta | None = None,
        checkout_max_attempts: int = DEFAULT_CHECKOUT_MAX_ATTEMPTS,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for async sessions bound to the backing store.
            queue_name: The queue partition this store reads and writes.
            lease_duration: How long a lease is held before the reaper may
                recover it. ``None`` means leases never expire.
            checkout_max_attempts: Upper bound on selection retries after losing
                a checkout race.
        """
        if checkout_max_attempts < 1:
            raise ValueError("checkout_max_attempts must be at least 1")
        self._session_factory = session_factory
        self.queue_name = queue_name
        self.lease_duration = lease_duration
        self.checkout_max_attempts = checkout_max_attempts
        self._metrics = get_metrics()
        self._tracer = get_tracer()

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> "QueueStore":
        """Build a store configured from application settings."""
        settings = settings or get_settings()
        lease_duration = (
            timedelta(seconds=settings.lease_duration_seconds)
            if settings.lease_duration_seconds > 0
            else None
        )
        return cls(
            session_factory,
            queue_name=settings.queue_name,
            lease_duration=lease_duration,
            checkout_max_attempts=settings.checkout_max_attempts,
        )

    @asynccontextmanager
    async def _transaction(
        self,
        action: str,
        error_cls: type[PersistenceError] = StoreUnavailable,
    ) -> AsyncIterator[AsyncSession]:
        """
        Run the body in one transaction, committed on exit.

        Database errors (including a failed commit) are raised as ``error_cls``.
        Any exception rolls the transaction back.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to {action}",
                extra={"queue": self.queue_name, "error": str(e)},
            )
            raise error_cls(f"Failed to {action}: {e}") from e

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        payload: bytes,
        job_type: str,
        scheduled_at: datetime | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """
        Add a waiting job to the queue.

        Args:
            payload: Encoded payload; never interpreted by the store.
            job_type: Tag of the handler that must process the payload.
            scheduled_at: Earliest checkout time. Defaults to now.
            priority: Higher values are checked out first.

        Returns:
            The new job id.

        Raises:
            StoreUnavailable: If the insert could not be committed.
        """
        if not isinstance(payload, bytes):
            raise EncodingError("Payload must be bytes; use schedule() for typed payloads")

        now = utcnow()
        job_id = new_job_id()
        scheduled_at = to_naive_utc(scheduled_at) if scheduled_at is not None else now

        with self._tracer.start_as_current_span(SPAN_ENQUEUE) as span:
            span.set_attribute("job_type", job_type)
            span.set_attribute("payload_size", len(payload))

            async with self._transaction("add job to the queue") as session:
                session.add(
                    Job(
                        id=job_id,
                        queue=self.queue_name,
                        job_type=job_type,
                        payload=payload,
                        retry_count=0,
                        priority=priority,
                        scheduled_at=scheduled_at,
                        enqueued_at=now,
                        leased_at=None,
                        lease_expires_at=None,
                    )
                )

        self._metrics.record_job_enqueued(self.queue_name, job_type)
        logger.info(
            "Enqueued job",
            extra={"job_id": job_id, "job_type": job_type, "priority": priority},
        )
        return job_id

    async def schedule(
        self,
        job_type: str,
        payload: Any,
        *,
        priority: int = DEFAULT_PRIORITY,
        scheduled_at: datetime | None = None,
    ) -> str:
        """Encode a typed payload and enqueue it."""
        return await self.enqueue(encode_payload(payload), job_type, scheduled_at, priority)

    async def schedule_in(
        self,
        job_type: str,
        payload: Any,
        delay: timedelta,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Enqueue a typed payload to become eligible after ``delay``."""
        return await self.schedule(
            job_type, payload, priority=priority, scheduled_at=utcnow() + delay
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _candidate_query(self, job_types: Sequence[str], now: datetime):
        # FOR UPDATE SKIP LOCKED is dropped by dialects that lack it (SQLite);
        # the conditional UPDATE below is what rules out double leasing.
        return (
            select(Job.id)
            .where(
                Job.queue == self.queue_name,
                Job.leased_at.is_(None),
                Job.scheduled_at <= now,
                Job.job_type.in_(list(job_types)),
            )
            .order_by(Job.priority.desc(), Job.enqueued_at.asc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

    async def checkout(
        self,
        job_types: Sequence[str],
        now: datetime | None = None,
    ) -> Lease | None:
        """
        Lease the highest-priority eligible job.

        A job is eligible when it is waiting, its ``scheduled_at`` is not after
        ``now`` and its type is one of ``job_types``. Ties on priority go to
        the earliest enqueued job.

        Selection and the marking write share one transaction; the write only
        matches while ``leased_at`` is still NULL. If a concurrent poller won
        the row, selection is retried up to ``checkout_max_attempts`` times.

        Args:
            job_types: Job types this poller can handle.
            now: Evaluation instant. Defaults to the current time.

        Returns:
            A Lease with the post-increment retry count, or None when nothing
            is eligible.

        Raises:
            StoreUnavailable: If the store could not be queried or the lease
                could not be committed.
        """
        if not job_types:
            return None
        now = to_naive_utc(now) if now is not None else utcnow()
        expires_at = now + self.lease_duration if self.lease_duration is not None else None

        with self._tracer.start_as_current_span(SPAN_CHECKOUT) as span:
            span.set_attribute("job_types", list(job_types))

            for attempt in range(1, self.checkout_max_attempts + 1):
                async with self._transaction("check out a job from the queue") as session:
                    candidate_id = await session.scalar(self._candidate_query(job_types, now))
                    if candidate_id is None:
                        return None

                    stmt = (
                        update(Job)
                        .where(Job.id == candidate_id, Job.leased_at.is_(None))
                        .values(
                            leased_at=now,
                            lease_expires_at=expires_at,
                            retry_count=Job.retry_count + 1,
                        )
                        .returning(Job)
                    )
                    result = await session.execute(stmt)
                    leased = result.scalar_one_or_none()
                    record = leased.to_record() if leased is not None else None

                if record is not None:
                    span.set_attribute("job_id", record.id)
                    span.set_attribute("retry_count", record.retry_count)
                    self._metrics.record_lease_acquired(self.queue_name, record.job_type)
                    logger.info(
                        "Leased job",
                        extra={
                            "job_id": record.id,
                            "job_type": record.job_type,
                            "retry_count": record.retry_count,
                        },
                    )
                    return Lease(self, record)

                self._metrics.record_checkout_conflict(self.queue_name)
                logger.debug(
                    "Lost checkout race, retrying",
                    extra={"job_id": candidate_id, "attempt": attempt},
                )

        logger.warning(
            f"Gave up checkout after {self.checkout_max_attempts} conflicting attempts",
            extra={"queue": self.queue_name},
        )
        return None

    # ------------------------------------------------------------------
    # Cancel / unschedule
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> None:
        """
        Delete a waiting job.

        Leased jobs are in flight and are never matched.

        Raises:
            JobNotFound: If no waiting job has this id.
        """
        with self._tracer.start_as_current_span(SPAN_CANCEL) as span:
            span.set_attribute("job_id", job_id)
            async with self._transaction("remove job from the queue") as session:
                result = await session.execute(
                    delete(Job).where(
                        Job.id == job_id,
                        Job.queue == self.queue_name,
                        Job.leased_at.is_(None),
                    )
                )
                deleted = result.rowcount

        if deleted == 0:
            raise JobNotFound(job_id)
        logger.info("Cancelled job", extra={"job_id": job_id})

    async def unschedule(
        self,
        job_id: str,
        job_type: str,
        payload_type: Any = None,
    ) -> Any:
        """
        Withdraw a waiting job and hand its payload back.

        The delete and the read of the payload are a single statement, so at
        most one of unschedule and checkout can win the row.

        Args:
            job_id: The job id.
            job_type: Must match the stored job type.
            payload_type: Type to decode the payload into. Raw bytes are
                returned when omitted.

        Raises:
            JobNotFound: If no waiting job matches the id and type.
            EncodingError: If the payload does not decode; the job is kept.
        """
        with self._tracer.start_as_current_span(SPAN_UNSCHEDULE) as span:
            span.set_attribute("job_id", job_id)
            span.set_attribute("job_type", job_type)
            async with self._transaction("unschedule job") as session:
                result = await session.execute(
                    delete(jobs_table)
                    .where(
                        jobs_table.c.id == job_id,
                        jobs_table.c.queue == self.queue_name,
                        jobs_table.c.job_type == job_type,
                        jobs_table.c.leased_at.is_(None),
                    )
                    .returning(jobs_table.c.payload)
                )
                data = result.scalar_one_or_none()
                if data is None:
                    raise JobNotFound(job_id)
                # Decoding inside the transaction keeps the row on failure
                payload = decode_payload(data, payload_type) if payload_type is not None else data

        logger.info("Unscheduled job", extra={"job_id": job_id, "job_type": job_type})
        return payload

    # ------------------------------------------------------------------
    # Lease resolution (called through Lease)
    # ------------------------------------------------------------------

    @staticmethod
    def _held_by(table, record: JobRecord) -> tuple:
        # A lease owns the row while the retry count it incremented is current
        return (
            table.c.id == record.id,
            table.c.retry_count == record.retry_count,
            table.c.leased_at.is_not(None),
        )

    async def _complete(self, record: JobRecord) -> None:
        with self._tracer.start_as_current_span(SPAN_COMPLETE) as span:
            span.set_attribute("job_id", record.id)
            async with self._transaction("mark job as completed") as session:
                result = await session.execute(
                    delete(jobs_table).where(*self._held_by(jobs_table, record))
                )
                if result.rowcount == 0:
                    raise LeaseLost(record.id)

        self._metrics.record_job_resolved(self.queue_name, record.job_type, Outcome.COMPLETED)
        logger.info("Job completed", extra={"job_id": record.id})

    async def _fail(self, record: JobRecord) -> None:
        with self._tracer.start_as_current_span(SPAN_FAIL) as span:
            span.set_attribute("job_id", record.id)
            async with self._transaction("mark job as failed") as session:
                result = await session.execute(
                    update(jobs_table)
                    .where(*self._held_by(jobs_table, record))
                    .values(leased_at=None, lease_expires_at=None)
                )
                if result.rowcount == 0:
                    raise LeaseLost(record.id)

        self._metrics.record_job_resolved(self.queue_name, record.job_type, Outcome.FAILED)
        logger.info(
            "Job returned to queue",
            extra={"job_id": record.id, "retry_count": record.retry_count},
        )

    async def _dead_letter(self, record: JobRecord) -> None:
        with self._tracer.start_as_current_span(SPAN_DEAD_LETTER) as span:
            span.set_attribute("job_id", record.id)
            async with self._transaction("move job to the dead queue", TransactionFailed) as session:
                result = await session.execute(
                    delete(jobs_table)
                    .where(*self._held_by(jobs_table, record))
                    .returning(*jobs_table.c)
                )
                row = result.mappings().one_or_none()
                if row is None:
                    raise LeaseLost(record.id)

                session.add(DeadJob.from_record(JobRecord(**row)))
                await session.flush()

        self._metrics.record_job_resolved(self.queue_name, record.job_type, Outcome.DEAD)
        logger.warning(
            f"Job moved to dead queue after {record.retry_count} attempts",
            extra={"job_id": record.id, "job_type": record.job_type},
        )

    async def _extend(self, record: JobRecord, expires_at: datetime) -> bool:
        async with self._transaction("extend lease") as session:
            result = await session.execute(
                update(jobs_table)
                .where(*self._held_by(jobs_table, record))
                .values(lease_expires_at=expires_at)
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lease expiry and dead-letter maintenance
    # ------------------------------------------------------------------

    async def reap_expired_leases(self, now: datetime | None = None) -> int:
        """
        Return jobs whose lease expired to the waiting state.

        Called by the reaper to recover from worker crashes. The retry count
        keeps the increment from the abandoned attempt.

        Returns:
            Number of recovered jobs.
        """
        now = to_naive_utc(now) if now is not None else utcnow()

        with self._tracer.start_as_current_span(SPAN_REAP):
            async with self._transaction("recover expired leases") as session:
                result = await session.execute(
                    update(jobs_table)
                    .where(
                        jobs_table.c.queue == self.queue_name,
                        jobs_table.c.leased_at.is_not(None),
                        jobs_table.c.lease_expires_at.is_not(None),
                        jobs_table.c.lease_expires_at < now,
                    )
                    .values(leased_at=None, lease_expires_at=None)
                )
                count = result.rowcount

        if count > 0:
            self._metrics.record_lease_expired(self.queue_name, count)
            logger.info(f"Recovered {count} jobs with expired leases")
        return count

    async def retry_dead_job(
        self,
        job_id: str,
        reset_retries: bool = True,
        now: datetime | None = None,
    ) -> JobRecord:
        """
        Move a job from the dead-letter store back to the live queue.

        Args:
            job_id: The job id.
            reset_retries: Whether to reset the retry counter.
            now: New ``scheduled_at``. Defaults to the current time.

        Returns:
            The waiting record as re-inserted.

        Raises:
            JobNotFound: If the dead-letter store has no such job.
            TransactionFailed: If the move could not commit.
        """
        now = to_naive_utc(now) if now is not None else utcnow()

        with self._tracer.start_as_current_span(SPAN_RETRY_DEAD) as span:
            span.set_attribute("job_id", job_id)
            async with self._transaction("retry job from the dead queue", TransactionFailed) as session:
                result = await session.execute(
                    delete(dead_jobs_table)
                    .where(
                        dead_jobs_table.c.id == job_id,
                        dead_jobs_table.c.queue == self.queue_name,
                    )
                    .returning(*dead_jobs_table.c)
                )
                row = result.mappings().one_or_none()
                if row is None:
                    raise JobNotFound(job_id)

                job = Job(**row)
                job.scheduled_at = now
                job.leased_at = None
                job.lease_expires_at = None
                if reset_retries:
                    job.retry_count = 0
                session.add(job)
                await session.flush()
                record = job.to_record()

        logger.info("Job retried from dead queue", extra={"job_id": job_id})
        return record

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Get a live job by id."""
        async with self._transaction("load job") as session:
            job = await session.get(Job, job_id)
            return job.to_record() if job is not None else None

    async def get_dead_job(self, job_id: str) -> JobRecord | None:
        """Get a dead-lettered job by id."""
        async with self._transaction("load dead job") as session:
            job = await session.get(DeadJob, job_id)
            return job.to_record() if job is not None else None

    async def list_dead_jobs(self, limit: int = 50, offset: int = 0) -> list[JobRecord]:
        """List dead-lettered jobs of this queue, newest first."""
        async with self._transaction("list dead jobs") as session:
            result = await session.scalars(
                select(DeadJob)
                .where(DeadJob.queue == self.queue_name)
                .order_by(DeadJob.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [job.to_record() for job in result.all()]

    async def count_waiting(self, now: datetime | None = None) -> int:
        """
        Get the number of waiting jobs and publish it as the queue depth gauge.

        Args:
            now: When given, only jobs already eligible at this instant are
                counted. Otherwise future-scheduled jobs are included.
        """
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(Job.queue == self.queue_name, Job.leased_at.is_(None))
        )
        if now is not None:
            stmt = stmt.where(Job.scheduled_at <= to_naive_utc(now))

        async with self._transaction("count waiting jobs") as session:
            depth = await session.scalar(stmt)
        depth = depth or 0
        self._metrics.update_queue_depth(self.queue_name, depth)
        return depth
