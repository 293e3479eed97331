"""
Job handler registry.

Handlers are keyed by job type and resolved once when the worker starts.
Job handlers must be idempotent: delivery is at-least-once, so a handler may
run more than once for the same job after a crash or a lost completion.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from leasequeue.constants import DEFAULT_MAX_ATTEMPTS
from leasequeue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions. Returning None counts as success.
JobHandler = Callable[[JobContext], Awaitable[JobResult | None]]


@dataclass(frozen=True)
class HandlerSpec:
    """A registered handler and how its jobs are decoded and retried."""

    job_type: str
    handler: JobHandler
    payload_type: Any = dict
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float | None = None


# Handler registry
_handlers: dict[str, HandlerSpec] = {}


def register_handler(
    job_type: str,
    payload_type: Any = dict,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.
        payload_type: Type the stored payload is decoded into (a pydantic
            model, dataclass, dict, ... or ``bytes`` for the raw payload).
        max_attempts: Attempts before a failing job is dead-lettered.
        timeout: Seconds before a running handler is cancelled and the
            attempt counted as failed.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email", payload_type=EmailPayload, max_attempts=5)
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(handler: JobHandler) -> JobHandler:
        if job_type in _handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        _handlers[job_type] = HandlerSpec(
            job_type=job_type,
            handler=handler,
            payload_type=payload_type,
            max_attempts=max_attempts,
            timeout=timeout,
        )
        logger.info(f"Registered handler for job type: {job_type}")
        return handler

    return decorator


def unregister_handler(job_type: str) -> None:
    _handlers.pop(job_type, None)


def get_handler(job_type: str) -> HandlerSpec | None:
    """
    Get the handler registered for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler spec or None if not found.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    Handler exceptions and timeouts are turned into failed results.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    spec = get_handler(context.job_type)

    if spec is None:
        logger.error(
            f"No handler for job type: {context.job_type}",
            extra={"job_id": context.job_id},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {context.job_type}",
        )

    try:
        if spec.timeout is not None:
            result = await asyncio.wait_for(spec.handler(context), timeout=spec.timeout)
        else:
            result = await spec.handler(context)
    except TimeoutError:
        logger.warning(
            f"Handler timed out after {spec.timeout}s",
            extra={"job_id": context.job_id},
        )
        return JobResult(success=False, error=f"Handler timed out after {spec.timeout}s")
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
        )

    return result if result is not None else JobResult(success=True)
