"""
Lease handle over one checked-out job.
"""

from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from leasequeue.errors import LeaseAlreadyResolved, LeaseLost
from leasequeue.types.job import JobRecord
from leasequeue.utils import utcnow

if TYPE_CHECKING:
    from leasequeue.db.store import QueueStore


class Lease:
    """
    Single-use capability over one leased job.

    Holds the snapshot taken at checkout. Exactly one of ``complete``,
    ``fail`` or ``dead_letter`` may succeed; any later resolution raises
    ``LeaseAlreadyResolved``. A resolution that raises a store error leaves
    the lease unresolved so it can be retried. ``LeaseLost`` is final.
    """

    def __init__(self, store: "QueueStore", record: JobRecord):
        self._store = store
        self._record = record
        self._resolved = False
        self._in_progress = False

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def job_type(self) -> str:
        return self._record.job_type

    @property
    def payload(self) -> bytes:
        return self._record.payload

    @property
    def retry_count(self) -> int:
        """Attempt number of this lease, counting from 1."""
        return self._record.retry_count

    @property
    def lease_expires_at(self) -> datetime | None:
        return self._record.lease_expires_at

    @property
    def record(self) -> JobRecord:
        return self._record

    @property
    def resolved(self) -> bool:
        return self._resolved

    def _check_open(self) -> None:
        if self._resolved or self._in_progress:
            raise LeaseAlreadyResolved(self.id)

    async def _resolve(self, operation: Callable[[JobRecord], Awaitable[None]]) -> None:
        self._check_open()
        self._in_progress = True
        try:
            await operation(self._record)
        except LeaseLost:
            self._resolved = True
            raise
        finally:
            self._in_progress = False
        self._resolved = True

    async def complete(self) -> None:
        """
        Remove the job from the queue.

        Raises:
            StoreUnavailable: If the delete was not confirmed. The job may be
                delivered again.
            LeaseLost: If the lease was already recovered by the reaper.
        """
        await self._resolve(self._store._complete)

    async def fail(self) -> None:
        """
        Return the job to the waiting state, immediately eligible again.

        The retry count keeps this attempt's increment and ``scheduled_at``
        is left alone; backoff is up to the caller.
        """
        await self._resolve(self._store._fail)

    async def dead_letter(self) -> None:
        """
        Atomically move the job to the dead-letter store.

        Raises:
            TransactionFailed: If the move could not commit. The job stays
                leased and unchanged in the live queue; call again to retry.
        """
        await self._resolve(self._store._dead_letter)

    async def extend(self, duration: timedelta | None = None) -> bool:
        """
        Push the lease expiry forward (heartbeat).

        Args:
            duration: New lifetime from now. Defaults to the store's lease duration.

        Returns:
            True if the lease is still held and was extended.
        """
        self._check_open()
        if duration is None:
            duration = self._store.lease_duration
        if duration is None:
            raise ValueError("No lease duration configured")

        expires_at = utcnow() + duration
        extended = await self._store._extend(self._record, expires_at)
        if extended:
            self._record = replace(self._record, lease_expires_at=expires_at)
        return extended

    def __repr__(self) -> str:
        state = "resolved" if self._resolved else "held"
        return f"Lease(id={self.id}, type={self.job_type}, attempt={self.retry_count}, {state})"
