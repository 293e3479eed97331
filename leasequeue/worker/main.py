"""
Worker process for executing jobs.

The worker checks out leases for every registered job type, runs the
handlers, and resolves each lease according to the result.
"""

import asyncio
import importlib
import logging
import signal
import time
from collections.abc import Sequence

from leasequeue.codec import decode_payload
from leasequeue.config import get_settings
from leasequeue.constants import (
    DEAD_LETTER_ATTEMPTS,
    DEAD_LETTER_RETRY_DELAY_SECONDS,
    SPAN_EXECUTE_JOB,
    Outcome,
)
from leasequeue.db import QueueStore, close_db, get_engine, init_db
from leasequeue.db.lease import Lease
from leasequeue.errors import (
    EncodingError,
    LeaseAlreadyResolved,
    LeaseLost,
    QueueError,
    TransactionFailed,
)
from leasequeue.observability.logging import bind_job_context, clear_job_context, setup_logging
from leasequeue.observability.metrics import get_metrics
from leasequeue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from leasequeue.types.job import JobContext
from leasequeue.utils import default_worker_id
from leasequeue.worker.handlers import execute_job, get_handler, list_handlers

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic lease acquisition through ``QueueStore.checkout``
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT
    - Retry and dead-letter handling per handler ``max_attempts``

    A dead-letter move that keeps failing is given up after a few attempts.
    The lease then stays held; with lease expiry disabled nothing recovers it.
    """

    def __init__(
        self,
        store: QueueStore,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        job_types: Sequence[str] | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The queue store to poll.
            worker_id: Worker identifier for logs. Defaults to hostname + PID.
            batch_size: Maximum leases held at once.
            poll_interval: Seconds between polls when the queue is empty.
            job_types: Job types to poll for. Defaults to all registered handlers.
        """
        settings = get_settings()

        self.store = store
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds
        self.job_types = list(job_types) if job_types is not None else None

        self._running = False
        self._current_leases: dict[str, Lease] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker and poll until stopped."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "batch_size": self.batch_size,
                "job_types": self._job_types(),
            },
        )

        self._running = True

        if self.store.lease_duration is not None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while self._running:
            try:
                jobs_processed = await self.run_once()

                # If no jobs were processed, wait before polling again
                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except QueueError as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the current batch."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    def _job_types(self) -> list[str]:
        registered = list_handlers()
        if self.job_types is None:
            return registered
        # Types with no handler stay waiting for a worker that can run them
        return [job_type for job_type in self.job_types if job_type in registered]

    async def run_once(self) -> int:
        """
        Check out up to ``batch_size`` leases and execute them concurrently.

        Returns:
            Number of jobs processed.
        """
        job_types = self._job_types()
        leases: list[Lease] = []
        while len(leases) < self.batch_size:
            lease = await self.store.checkout(job_types)
            if lease is None:
                break
            leases.append(lease)

        if not leases:
            return 0

        logger.info(
            f"Acquired {len(leases)} jobs",
            extra={"worker_id": self.worker_id},
        )

        for lease in leases:
            self._current_leases[lease.id] = lease
        await asyncio.gather(*(self._execute_job(lease) for lease in leases))

        return len(leases)

    async def _execute_job(self, lease: Lease) -> None:
        """
        Execute a single job and resolve its lease.

        - success -> complete
        - failure with attempts left -> fail (job is eligible again)
        - failure on the last attempt, an undecodable payload, or no handler
          -> dead_letter

        Args:
            lease: The lease to execute.
        """
        start_time = time.monotonic()
        bind_job_context(lease.id, lease.job_type, lease.retry_count)

        try:
            spec = get_handler(lease.job_type)
            if spec is None:
                # Handler was unregistered after checkout
                logger.error("Leased a job with no registered handler, moving to dead queue")
                await self._dead_letter(lease)
                return

            try:
                payload = decode_payload(lease.payload, spec.payload_type)
            except EncodingError as e:
                logger.error(f"Undecodable payload, moving to dead queue: {e}")
                await self._dead_letter(lease)
                return

            context = JobContext(
                job_id=lease.id,
                job_type=lease.job_type,
                attempt=lease.retry_count,
                max_attempts=spec.max_attempts,
                payload=payload,
                enqueued_at=lease.record.enqueued_at,
                lease_expires_at=lease.lease_expires_at,
            )

            logger.info("Executing job", extra={"worker_id": self.worker_id})

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", lease.id)
                span.set_attribute("job_type", lease.job_type)
                span.set_attribute("attempt", lease.retry_count)

                result = await execute_job(context)

            duration = time.monotonic() - start_time

            if result.success:
                await lease.complete()
                outcome = Outcome.COMPLETED
                logger.info(
                    "Job completed successfully",
                    extra={"duration": f"{duration:.2f}s"},
                )
            elif context.is_last_attempt:
                await self._dead_letter(lease)
                outcome = Outcome.DEAD
                logger.warning("Job failed on its last attempt", extra={"error": result.error})
            else:
                await lease.fail()
                outcome = Outcome.FAILED
                logger.warning(
                    "Job failed, will retry",
                    extra={"error": result.error, "remaining": context.remaining_attempts},
                )

            self._metrics.record_job_duration(lease.job_type, outcome, duration)

        except LeaseLost:
            logger.warning("Lease was recovered before the job was resolved")
        except QueueError:
            # The lease stays held; the reaper returns it to the queue once it expires
            logger.exception("Failed to resolve lease")
        finally:
            self._current_leases.pop(lease.id, None)
            clear_job_context()

    async def _dead_letter(self, lease: Lease) -> None:
        """
        Move a job to the dead queue, retrying a failed transaction.

        A failed move leaves the job leased and unchanged, so the same lease
        is retried. After the last attempt the error propagates and the lease
        stays held until the reaper recovers it.
        """
        for attempt in range(1, DEAD_LETTER_ATTEMPTS + 1):
            try:
                await lease.dead_letter()
                return
            except TransactionFailed:
                if attempt == DEAD_LETTER_ATTEMPTS:
                    raise
                logger.warning(
                    "Dead-letter transaction failed, retrying",
                    extra={"job_id": lease.id, "attempt": attempt},
                )
                await asyncio.sleep(DEAD_LETTER_RETRY_DELAY_SECONDS * attempt)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs so the reaper leaves them alone.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for lease in list(self._current_leases.values()):
                    try:
                        extended = await lease.extend()
                    except LeaseAlreadyResolved:
                        continue
                    if not extended:
                        logger.warning("Lease lost before heartbeat", extra={"job_id": lease.id})
                    else:
                        logger.debug("Extended lease", extra={"job_id": lease.id})

            except asyncio.CancelledError:
                break
            except QueueError as e:
                logger.exception(f"Error in heartbeat loop: {e}")


def load_handler_modules(modules: Sequence[str]) -> None:
    """Import the modules whose ``register_handler`` decorators fill the registry."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded handler module: {module}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    if settings.metrics_port:
        get_metrics().start_server(settings.metrics_port)
    load_handler_modules(settings.worker_handler_modules)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine())
    store = QueueStore.from_settings(session_factory, settings)
    worker = Worker(store)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
