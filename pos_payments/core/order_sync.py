"""
Order synchronization.

Applies the order-side effect of a completed payment and repairs orders
whose update failed after the payment transition had already committed.
"""
import uuid
from typing import Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pos_payments.config import Settings, get_settings
from pos_payments.database.models import Order, Payment
from pos_payments.database.repository import PaymentRepository
from pos_payments.exceptions import NotFoundError, StorageError
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderSynchronizer:
    """
    Keeps ``order.payment_status`` in line with its payment.

    ``mark_paid`` is a single idempotent conditional update, so the live
    reconciliation path and the repair sweep can both call it freely.
    """

    def __init__(self, repository: PaymentRepository, settings: Optional[Settings] = None):
        self.repository = repository
        self.settings = settings or get_settings()

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        payment_id: uuid.UUID,
        correlation_id: uuid.UUID,
    ) -> Order:
        """
        Mark an order paid and confirm it if it has not moved past submission.

        Raises:
            NotFoundError: If the order does not exist
            StorageError: If the store rejects the update
        """
        order = await self.repository.mark_order_paid(order_id, payment_id, correlation_id)
        logger.info(
            "order_marked_paid",
            order_id=str(order_id),
            payment_id=str(payment_id),
            order_status=order.status,
            correlation_id=str(correlation_id),
        )
        return order

    async def _mark_paid_with_retry(self, payment: Payment) -> Order:
        correlation_id = uuid.uuid4()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StorageError),
            stop=stop_after_attempt(self.settings.order_sync_max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                return await self.mark_paid(payment.order_id, payment.id, correlation_id)
        raise AssertionError("unreachable")

    async def repair_unsynced(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Re-apply ``mark_paid`` for completed payments whose order is still unpaid.

        The payment's terminal state is taken as recorded; the gateway is not
        consulted.

        Args:
            limit: Max payments to repair (defaults to ``order_sync_batch_size``)

        Returns:
            Dict[str, int]: Counts of scanned, repaired and failed orders
        """
        limit = limit or self.settings.order_sync_batch_size
        payments = await self.repository.list_unsynced_paid_payments(limit=limit)

        repaired = 0
        failed = 0
        for payment in payments:
            try:
                await self._mark_paid_with_retry(payment)
                repaired += 1
            except (NotFoundError, StorageError) as e:
                failed += 1
                logger.error(
                    "order_sync_repair_failed",
                    order_id=str(payment.order_id),
                    payment_id=str(payment.id),
                    reference_number=payment.reference_number,
                    error=str(e),
                )

        metrics.record_order_sync_sweep(repaired, failed)
        logger.info(
            "order_sync_sweep_completed",
            scanned=len(payments),
            repaired=repaired,
            failed=failed,
        )
        return {"scanned": len(payments), "repaired": repaired, "failed": failed}
