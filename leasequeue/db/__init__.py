"""
Database module.
Contains database connection, models, the queue store and leases.
"""

from leasequeue.db.connection import (
    close_db,
    create_session_factory,
    create_tables,
    drop_tables,
    get_engine,
    init_db,
)
from leasequeue.db.lease import Lease
from leasequeue.db.models import Base, DeadJob, Job
from leasequeue.db.store import QueueStore

__all__ = [
    "get_engine",
    "init_db",
    "close_db",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "Base",
    "Job",
    "DeadJob",
    "Lease",
    "QueueStore",
]
