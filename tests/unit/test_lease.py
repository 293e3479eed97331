"""
Unit tests for lease resolution, lease expiry and the dead-letter store.
"""

from datetime import timedelta

import pytest

from leasequeue.db import DeadJob, QueueStore
from leasequeue.errors import (
    JobNotFound,
    LeaseAlreadyResolved,
    LeaseLost,
    StoreUnavailable,
    TransactionFailed,
)
from leasequeue.utils import utcnow


class TestLeaseResolution:
    """Tests for complete / fail / dead_letter."""

    async def test_complete_removes_job(self, store: QueueStore):
        """Test that completion deletes the record."""
        job_id = await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])

        await lease.complete()

        assert lease.resolved is True
        assert await store.get_job(job_id) is None
        assert await store.get_dead_job(job_id) is None

    async def test_fail_returns_job_to_queue(self, store: QueueStore):
        """Test that a failed job is immediately eligible again with its retry count kept."""
        scheduled = utcnow() - timedelta(minutes=1)
        job_id = await store.enqueue(b"x", "echo", scheduled_at=scheduled)
        lease = await store.checkout(["echo"])

        await lease.fail()

        record = await store.get_job(job_id)
        assert record.leased_at is None
        assert record.retry_count == 1
        assert record.scheduled_at == scheduled

        again = await store.checkout(["echo"])
        assert again.id == job_id
        assert again.retry_count == 2

    async def test_dead_letter_moves_job(self, store: QueueStore):
        """Test that dead-lettering moves the record between stores intact."""
        scheduled = utcnow() - timedelta(seconds=5)
        job_id = await store.enqueue(b"payload", "echo", scheduled_at=scheduled, priority=7)
        lease = await store.checkout(["echo"])
        await lease.fail()
        lease = await store.checkout(["echo"])

        await lease.dead_letter()

        assert await store.get_job(job_id) is None
        dead = await store.get_dead_job(job_id)
        assert dead is not None
        assert dead.id == job_id
        assert dead.job_type == "echo"
        assert dead.payload == b"payload"
        assert dead.retry_count == 2
        assert dead.priority == 7
        assert dead.scheduled_at == scheduled
        assert dead.enqueued_at == lease.record.enqueued_at
        assert dead.leased_at is None
        assert dead.lease_expires_at is None

    async def test_dead_job_is_never_checked_out(self, store: QueueStore):
        """Test that the dead-letter store is inert."""
        await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])
        await lease.dead_letter()

        assert await store.checkout(["echo"]) is None
        assert await store.count_waiting() == 0

    async def test_dead_letter_failure_leaves_job_untouched(
        self,
        store: QueueStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that a failed dead-letter transaction changes nothing."""
        job_id = await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])
        before = await store.get_job(job_id)

        # A row missing NOT NULL columns makes the insert, and the transaction, fail
        monkeypatch.setattr(DeadJob, "from_record", classmethod(lambda cls, record: cls(id=record.id)))

        with pytest.raises(TransactionFailed):
            await lease.dead_letter()

        assert await store.get_job(job_id) == before
        assert await store.get_dead_job(job_id) is None
        assert lease.resolved is False

        # The lease is still usable once the store recovers
        monkeypatch.undo()
        await lease.dead_letter()

        assert await store.get_job(job_id) is None
        assert (await store.get_dead_job(job_id)).retry_count == 1

    async def test_second_resolution_is_rejected(self, store: QueueStore):
        """Test that a lease resolves exactly once."""
        job_id = await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])
        await lease.fail()

        with pytest.raises(LeaseAlreadyResolved):
            await lease.complete()
        with pytest.raises(LeaseAlreadyResolved):
            await lease.dead_letter()
        with pytest.raises(LeaseAlreadyResolved):
            await lease.fail()

        # The rejected calls did not touch the record
        record = await store.get_job(job_id)
        assert record.leased_at is None
        assert record.retry_count == 1

    async def test_store_error_keeps_lease_open(
        self,
        store: QueueStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that a resolution that raised can be retried."""
        job_id = await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])

        async def unavailable(record):
            raise StoreUnavailable("connection refused")

        monkeypatch.setattr(store, "_complete", unavailable)
        with pytest.raises(StoreUnavailable):
            await lease.complete()
        assert lease.resolved is False

        monkeypatch.undo()
        await lease.complete()
        assert await store.get_job(job_id) is None


class TestLeaseExpiry:
    """Tests for heartbeats and the reaper."""

    async def test_reap_expired_leases(self, expiring_store: QueueStore):
        """Test that only expired leases are recovered."""
        job_id = await expiring_store.enqueue(b"x", "echo")
        now = utcnow()
        await expiring_store.checkout(["echo"], now=now)

        assert await expiring_store.reap_expired_leases(now + timedelta(seconds=10)) == 0

        assert await expiring_store.reap_expired_leases(now + timedelta(seconds=31)) == 1
        record = await expiring_store.get_job(job_id)
        assert record.leased_at is None
        assert record.lease_expires_at is None
        assert record.retry_count == 1

    async def test_leases_without_expiry_are_never_reaped(self, store: QueueStore):
        """Test that a store without a lease duration keeps leases forever."""
        job_id = await store.enqueue(b"x", "echo")
        await store.checkout(["echo"])

        assert await store.reap_expired_leases(utcnow() + timedelta(days=365)) == 0
        assert (await store.get_job(job_id)).leased_at is not None

    async def test_reaped_lease_cannot_resolve_new_attempt(self, expiring_store: QueueStore):
        """Test that a stale lease never resolves the attempt that replaced it."""
        job_id = await expiring_store.enqueue(b"x", "echo")
        now = utcnow()
        stale = await expiring_store.checkout(["echo"], now=now)
        await expiring_store.reap_expired_leases(now + timedelta(minutes=1))

        current = await expiring_store.checkout(["echo"], now=now + timedelta(minutes=1))
        assert current.id == job_id
        assert current.retry_count == 2

        with pytest.raises(LeaseLost):
            await stale.complete()
        assert stale.resolved is True

        record = await expiring_store.get_job(job_id)
        assert record.leased_at is not None
        await current.complete()
        assert await expiring_store.get_job(job_id) is None

    async def test_dead_letter_after_reap_is_lost(self, expiring_store: QueueStore):
        """Test that a recovered job is not dead-lettered by its stale lease."""
        job_id = await expiring_store.enqueue(b"x", "echo")
        now = utcnow()
        stale = await expiring_store.checkout(["echo"], now=now)
        await expiring_store.reap_expired_leases(now + timedelta(minutes=1))

        with pytest.raises(LeaseLost):
            await stale.dead_letter()

        assert await expiring_store.get_job(job_id) is not None
        assert await expiring_store.get_dead_job(job_id) is None

    async def test_extend_pushes_expiry(self, expiring_store: QueueStore):
        """Test that a heartbeat keeps the reaper away."""
        job_id = await expiring_store.enqueue(b"x", "echo")
        now = utcnow()
        lease = await expiring_store.checkout(["echo"], now=now)

        assert await lease.extend(timedelta(hours=1)) is True
        assert lease.lease_expires_at > now + timedelta(minutes=59)

        assert await expiring_store.reap_expired_leases(now + timedelta(seconds=31)) == 0
        assert (await expiring_store.get_job(job_id)).leased_at is not None

    async def test_extend_with_zero_duration(self, expiring_store: QueueStore):
        """Test that an explicit zero duration expires the lease now, not after the default."""
        job_id = await expiring_store.enqueue(b"x", "echo")
        lease = await expiring_store.checkout(["echo"])

        assert await lease.extend(timedelta(0)) is True
        assert lease.lease_expires_at <= utcnow()

        assert await expiring_store.reap_expired_leases(utcnow() + timedelta(seconds=1)) == 1
        assert (await expiring_store.get_job(job_id)).leased_at is None

    async def test_extend_after_reap_reports_loss(self, expiring_store: QueueStore):
        """Test that extending a recovered lease returns False."""
        await expiring_store.enqueue(b"x", "echo")
        now = utcnow()
        lease = await expiring_store.checkout(["echo"], now=now)
        await expiring_store.reap_expired_leases(now + timedelta(minutes=1))

        assert await lease.extend() is False

    async def test_extend_without_duration(self, store: QueueStore):
        """Test that extending needs a duration from somewhere."""
        await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])

        with pytest.raises(ValueError):
            await lease.extend()


class TestDeadLetterStore:
    """Tests for retrying and listing dead jobs."""

    async def test_retry_dead_job(self, store: QueueStore):
        """Test that a dead job can be moved back to the live queue."""
        job_id = await store.enqueue(b"x", "echo", priority=4)
        lease = await store.checkout(["echo"])
        await lease.dead_letter()

        record = await store.retry_dead_job(job_id)

        assert record.id == job_id
        assert record.retry_count == 0
        assert record.priority == 4
        assert record.leased_at is None
        assert await store.get_dead_job(job_id) is None

        again = await store.checkout(["echo"])
        assert again.id == job_id
        assert again.retry_count == 1

    async def test_retry_dead_job_keeps_retries(self, store: QueueStore):
        """Test that the retry counter can be preserved."""
        job_id = await store.enqueue(b"x", "echo")
        lease = await store.checkout(["echo"])
        await lease.dead_letter()

        record = await store.retry_dead_job(job_id, reset_retries=False)

        assert record.retry_count == 1

    async def test_retry_dead_job_not_found(self, store: QueueStore):
        """Test retrying a job that is not dead."""
        job_id = await store.enqueue(b"x", "echo")

        with pytest.raises(JobNotFound):
            await store.retry_dead_job(job_id)

    async def test_list_dead_jobs(self, store: QueueStore):
        """Test that dead jobs are listed newest first."""
        ids = [await store.enqueue(b"x", "echo") for _ in range(3)]
        for _ in ids:
            lease = await store.checkout(["echo"])
            await lease.dead_letter()

        dead = await store.list_dead_jobs()

        assert [record.id for record in dead] == list(reversed(ids))
        assert [record.id for record in await store.list_dead_jobs(limit=1, offset=1)] == [ids[1]]
