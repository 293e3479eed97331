"""
Time and identifier helpers shared by the store and the worker.
"""

import itertools
import os
import secrets
import threading
import time
from datetime import UTC, datetime

# Per-process counter, seeded randomly so ids from sibling processes interleave
_counter = itertools.count(secrets.randbelow(1 << 24))
_counter_lock = threading.Lock()
_process_tag = secrets.token_hex(3)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC. Naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def new_job_id() -> str:
    """
    Generate a globally unique, time-sortable job id.

    Layout (32 hex chars): 12 chars of milliseconds since the epoch, 6 chars
    of a per-process counter, 6 chars identifying the process, 8 random chars.
    The counter keeps ids from one process ordered within a millisecond.
    """
    millis = time.time_ns() // 1_000_000
    with _counter_lock:
        count = next(_counter) & 0xFFFFFF
    return f"{millis:012x}{count:06x}{_process_tag}{secrets.token_hex(4)}"


def default_worker_id() -> str:
    """Hostname plus PID."""
    return f"{os.uname().nodename}-{os.getpid()}"
