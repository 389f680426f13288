"""
Reconciliation background worker.

Runs two periodic sweeps:
- order sync repair: marks paid any order whose payment completed but whose
  update failed
- stale pending sweep: re-polls pending payments the gateway never told us
  about, so a lost webhook still resolves
"""
import argparse
import asyncio
import signal
import time
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from pos_payments.config import Settings, get_settings
from pos_payments.core.order_sync import OrderSynchronizer
from pos_payments.core.poller import StatusPoller
from pos_payments.core.reconciliation import ReconciliationEngine
from pos_payments.database.connection import (
    close_db,
    create_engine,
    create_session_factory,
)
from pos_payments.database.models import PaymentStatus
from pos_payments.database.repository import PaymentRepository, utcnow
from pos_payments.exceptions import PaymentSystemError
from pos_payments.integrations.pesapal_client import PesapalClient
from pos_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class ReconciliationWorker:
    """Schedules the order sync repair and stale pending sweeps."""

    def __init__(
        self,
        repository: PaymentRepository,
        order_synchronizer: OrderSynchronizer,
        poller: StatusPoller,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.order_synchronizer = order_synchronizer
        self.poller = poller
        self.settings = settings or get_settings()
        self.running = False

    async def run_order_sync(self) -> Dict[str, int]:
        """Run one order sync repair sweep."""
        return await self.order_synchronizer.repair_unsynced(
            self.settings.order_sync_batch_size
        )

    async def sweep_stale_pending(self) -> Dict[str, int]:
        """
        Re-poll pending payments older than ``pending_sweep_min_age_seconds``.

        Returns:
            Dict[str, int]: Counts of scanned and resolved payments
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.pending_sweep_min_age_seconds)
        payments = await self.repository.list_stale_pending_payments(
            cutoff, limit=self.settings.pending_sweep_batch_size
        )

        resolved = 0
        for payment in payments:
            try:
                refreshed = await self.poller.refresh(payment)
            except PaymentSystemError as e:
                logger.error(
                    "stale_payment_refresh_failed",
                    payment_id=str(payment.id),
                    reference_number=payment.reference_number,
                    error=str(e),
                )
                continue
            if refreshed.status != PaymentStatus.PENDING.value:
                resolved += 1

        logger.info(
            "stale_pending_sweep_completed",
            scanned=len(payments),
            resolved=resolved,
        )
        return {"scanned": len(payments), "resolved": resolved}

    async def run_once(self) -> Dict[str, Dict[str, int]]:
        """Run both sweeps once."""
        return {
            "order_sync": await self.run_order_sync(),
            "stale_pending": await self.sweep_stale_pending(),
        }

    async def run_forever(self) -> None:
        """Run the sweeps on their intervals until ``stop`` is called."""
        self.running = True
        next_order_sync = time.monotonic()
        next_pending_sweep = time.monotonic()

        while self.running:
            now = time.monotonic()

            if now >= next_order_sync:
                try:
                    await self.run_order_sync()
                except PaymentSystemError as e:
                    logger.error("order_sync_sweep_error", error=str(e))
                next_order_sync = now + self.settings.order_sync_interval_seconds

            if now >= next_pending_sweep:
                try:
                    await self.sweep_stale_pending()
                except PaymentSystemError as e:
                    logger.error("stale_pending_sweep_error", error=str(e))
                next_pending_sweep = now + self.settings.pending_sweep_interval_seconds

            # Wake at least every second to notice shutdown
            wait = min(next_order_sync, next_pending_sweep) - time.monotonic()
            await asyncio.sleep(min(max(wait, 0.0), 1.0))

    def stop(self) -> None:
        self.running = False


async def start_reconciliation_worker(
    settings: Optional[Settings] = None, once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Optional settings (loaded from the environment if omitted)
        once: Run both sweeps a single time and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)

    db_engine = create_engine(settings)
    repository = PaymentRepository(create_session_factory(db_engine))
    gateway = PesapalClient(settings)
    order_synchronizer = OrderSynchronizer(repository, settings)
    poller = StatusPoller(
        repository,
        gateway,
        ReconciliationEngine(repository, order_synchronizer),
        success_code=settings.gateway_success_code,
    )
    worker = ReconciliationWorker(repository, order_synchronizer, poller, settings)

    logger.info(
        "reconciliation_worker_starting",
        once=once,
        order_sync_interval_seconds=settings.order_sync_interval_seconds,
        pending_sweep_interval_seconds=settings.pending_sweep_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            await worker.run_once()
        else:
            await worker.run_forever()
    finally:
        await gateway.close()
        await close_db(db_engine)
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--once", action="store_true", help="Run each sweep once and exit"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(once=args.once))


if __name__ == "__main__":
    main()
