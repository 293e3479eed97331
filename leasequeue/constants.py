"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Live job states, derived from the nullability of ``leased_at``.

    State transitions:
    - WAITING -> LEASED (checkout)
    - LEASED -> WAITING (fail, or lease expired and reaped)
    - LEASED -> removed (complete)
    - LEASED -> dead-letter store (dead_letter)
    - WAITING -> removed (cancel, unschedule)
    """

    WAITING = "waiting"
    LEASED = "leased"


class Outcome(StrEnum):
    """How a lease was resolved."""

    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# Default values
DEFAULT_QUEUE = "default"
DEFAULT_PRIORITY = 0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CHECKOUT_MAX_ATTEMPTS = 10
DEAD_LETTER_ATTEMPTS = 3
DEAD_LETTER_RETRY_DELAY_SECONDS = 0.5

# Table names
JOBS_TABLE = "jobs"
DEAD_JOBS_TABLE = "dead_jobs"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_RESOLVED = "jobs_resolved_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_LEASE_ACQUIRED = "leases_acquired_total"
METRIC_CHECKOUT_CONFLICTS = "checkout_conflicts_total"

# Trace span names
SPAN_ENQUEUE = "enqueue"
SPAN_CHECKOUT = "checkout"
SPAN_CANCEL = "cancel"
SPAN_UNSCHEDULE = "unschedule"
SPAN_COMPLETE = "complete"
SPAN_FAIL = "fail"
SPAN_DEAD_LETTER = "dead_letter"
SPAN_REAP = "reap_expired_leases"
SPAN_RETRY_DEAD = "retry_dead_job"
SPAN_EXECUTE_JOB = "execute_job"
