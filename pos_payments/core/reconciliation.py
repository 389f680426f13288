"""
Reconciliation core.

The single decision point for moving a payment out of ``pending``. Both the
webhook and the status poller feed their classified gateway outcome through
``ReconciliationEngine.reconcile``:

- terminal payments are never touched again
- a ``pending`` outcome changes nothing
- the transition itself is a compare-and-set on ``status = 'pending'``,
  so concurrent callers produce exactly one winner
- a ``completed`` transition is followed by the order update
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog

from pos_payments.core.order_sync import OrderSynchronizer
from pos_payments.core.status import TransitionDetails
from pos_payments.database.models import Payment, PaymentStatus
from pos_payments.database.repository import PaymentRepository
from pos_payments.exceptions import (
    NotFoundError,
    OrderSyncError,
    PaymentSystemError,
    StorageConflict,
)
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of a reconcile call: whether this call changed the payment, and its current state."""

    applied: bool
    payment: Payment


class ReconciliationEngine:
    """Idempotent, monotonic application of gateway outcomes to payments."""

    def __init__(self, repository: PaymentRepository, order_synchronizer: OrderSynchronizer):
        """
        Initialize reconciliation engine.

        Args:
            repository: Payment record store
            order_synchronizer: Applies the order side of a completed payment
        """
        self.repository = repository
        self.order_synchronizer = order_synchronizer

    async def reconcile(
        self,
        reference_number: str,
        outcome: PaymentStatus,
        details: Optional[TransitionDetails] = None,
        channel: str = "webhook",
        correlation_id: Optional[uuid.UUID] = None,
    ) -> ReconciliationResult:
        """
        Apply a classified gateway outcome to the payment with this reference.

        Args:
            reference_number: Merchant reference of the payment
            outcome: Classified gateway status
            details: Confirmation code, transaction id and metadata to stamp
            channel: Which channel observed the outcome (webhook, poll, initiation)
            correlation_id: Id tying the audit events of this call together

        Returns:
            ReconciliationResult: ``applied`` is True only for the call that
            performed the transition

        Raises:
            NotFoundError: If no payment has this reference
            OrderSyncError: If the payment completed but the order update failed
            StorageError: If the store is unavailable
        """
        correlation_id = correlation_id or uuid.uuid4()
        log = logger.bind(
            reference_number=reference_number,
            outcome=outcome.value,
            channel=channel,
            correlation_id=str(correlation_id),
        )

        payment = await self.repository.get_payment_by_reference(reference_number)
        if payment is None:
            log.warning("reconcile_unknown_reference")
            raise NotFoundError("Payment", "reference_number", reference_number)

        if PaymentStatus(payment.status).is_terminal:
            log.info("payment_already_terminal", current_status=payment.status)
            metrics.record_reconciliation(channel, "already_terminal")
            return ReconciliationResult(applied=False, payment=payment)

        if outcome is PaymentStatus.PENDING:
            log.info("payment_still_pending")
            metrics.record_reconciliation(channel, "still_pending")
            return ReconciliationResult(applied=False, payment=payment)

        details = details or TransitionDetails()
        try:
            updated = await self.repository.transition_status(
                reference_number,
                outcome,
                correlation_id,
                confirmation_code=details.confirmation_code,
                transaction_id=details.transaction_id,
                metadata=details.metadata,
            )
        except StorageConflict:
            current = await self.repository.get_payment_by_reference(reference_number)
            log.info(
                "payment_transition_lost_race",
                current_status=current.status if current else None,
            )
            metrics.record_reconciliation(channel, "lost_race")
            return ReconciliationResult(applied=False, payment=current or payment)

        log.info(
            "payment_transition_applied",
            payment_id=str(updated.id),
            confirmation_code=updated.confirmation_code,
        )
        metrics.record_reconciliation(channel, "applied")
        result = ReconciliationResult(applied=True, payment=updated)

        if outcome is PaymentStatus.COMPLETED:
            try:
                await self.order_synchronizer.mark_paid(
                    updated.order_id, updated.id, correlation_id
                )
            except PaymentSystemError as e:
                log.error(
                    "order_sync_failed",
                    order_id=str(updated.order_id),
                    error=str(e),
                )
                metrics.record_order_sync_failure()
                raise OrderSyncError(updated.order_id, result, original_error=e) from e

        return result
