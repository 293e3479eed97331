"""
Type definitions for the job queue.
"""

from leasequeue.types.job import (
    JobContext,
    JobRecord,
    JobResult,
)

__all__ = [
    "JobRecord",
    "JobResult",
    "JobContext",
]
