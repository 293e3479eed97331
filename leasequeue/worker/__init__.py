"""
Worker module.
Contains the handler registry and the polling worker.
"""

from leasequeue.worker.handlers import (
    HandlerSpec,
    execute_job,
    get_handler,
    list_handlers,
    register_handler,
)
from leasequeue.worker.main import Worker, run

__all__ = [
    "HandlerSpec",
    "register_handler",
    "get_handler",
    "list_handlers",
    "execute_job",
    "Worker",
    "run",
]
