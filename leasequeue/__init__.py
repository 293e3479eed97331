"""
leasequeue

Durable storage engine for a distributed job queue: atomic lease checkout,
retry tracking, priority and delayed scheduling, and a transactional
dead-letter store, on top of SQLAlchemy.
"""

__version__ = "1.0.0"

from leasequeue.db import Lease, QueueStore  # noqa: E402
from leasequeue.errors import (  # noqa: E402
    EncodingError,
    JobNotFound,
    LeaseAlreadyResolved,
    LeaseLost,
    PersistenceError,
    QueueError,
    StoreUnavailable,
    TransactionFailed,
)
from leasequeue.types.job import JobRecord  # noqa: E402

__all__ = [
    "QueueStore",
    "Lease",
    "JobRecord",
    "QueueError",
    "PersistenceError",
    "StoreUnavailable",
    "TransactionFailed",
    "EncodingError",
    "JobNotFound",
    "LeaseLost",
    "LeaseAlreadyResolved",
]
