"""
Lease reaper for recovering expired job leases.

A worker that crashes between checkout and resolution leaves its job leased.
The reaper runs periodically, finds leases whose ``lease_expires_at`` has
passed and returns those jobs to the waiting state, which keeps delivery
at-least-once.
"""

import asyncio
import logging
import signal

from leasequeue.config import get_settings
from leasequeue.db import QueueStore, close_db, get_engine, init_db
from leasequeue.errors import QueueError
from leasequeue.observability.logging import setup_logging
from leasequeue.observability.metrics import get_metrics
from leasequeue.observability.tracing import instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Find leased jobs with an expired ``lease_expires_at``
    2. Return them to the waiting state for reprocessing
    3. Refresh the queue depth gauge
    """

    def __init__(self, store: QueueStore, interval_seconds: int | None = None):
        """
        Initialize the reaper.

        Args:
            store: The queue store to sweep.
            interval_seconds: Seconds between reaper runs.
        """
        settings = get_settings()
        self.store = store
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        if self.store.lease_duration is None:
            logger.warning("Lease expiry is disabled; the reaper will not find expired leases")

        while self._running:
            try:
                await self.run_once()
            except QueueError as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        recovered = await self.store.reap_expired_leases()
        await self.store.count_waiting()
        return recovered


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    if settings.metrics_port:
        get_metrics().start_server(settings.metrics_port)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine())
    reaper = Reaper(QueueStore.from_settings(session_factory, settings))

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
