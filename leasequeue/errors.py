"""
Exception hierarchy for queue operations.

Store failures are translated from SQLAlchemy at the store boundary and
chained, so the driver error stays reachable through ``__cause__``.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class PersistenceError(QueueError):
    """A write to the backing store could not be confirmed."""


class StoreUnavailable(PersistenceError):
    """The backing store is unreachable or did not commit the write."""


class TransactionFailed(PersistenceError):
    """A multi-row transition could not commit; nothing was changed."""


class EncodingError(QueueError):
    """A payload could not be encoded or decoded."""

    def __init__(self, message: str, data: bytes | None = None):
        super().__init__(message)
        self.data = data


class JobNotFound(QueueError):
    """No record exists in the state the operation requires."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class LeaseLost(QueueError):
    """The lease no longer holds its record, e.g. after the reaper recovered it."""

    def __init__(self, job_id: str):
        super().__init__(f"Lease on job {job_id} is no longer held")
        self.job_id = job_id


class LeaseAlreadyResolved(QueueError):
    """A lease was resolved twice."""

    def __init__(self, job_id: str):
        super().__init__(f"Lease on job {job_id} was already resolved")
        self.job_id = job_id
