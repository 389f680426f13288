"""
Status poller (pull channel).

Clients asking for a payment's status trigger a gateway query while the
payment is still pending. Gateway trouble never fails the poll: the caller
gets the last stored state instead.
"""
import uuid

import structlog

from pos_payments.core.reconciliation import ReconciliationEngine
from pos_payments.core.status import classify_gateway_status, details_from_gateway
from pos_payments.database.models import Payment, PaymentStatus
from pos_payments.database.repository import PaymentRepository
from pos_payments.exceptions import NotFoundError, OrderSyncError, StorageError
from pos_payments.integrations.pesapal_client import GatewayError, PesapalClient
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StatusPoller:
    """Refreshes pending payments from the gateway on demand."""

    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PesapalClient,
        engine: ReconciliationEngine,
        success_code: str = "1",
    ):
        self.repository = repository
        self.gateway = gateway
        self.engine = engine
        self.success_code = success_code

    async def poll(self, payment_id: uuid.UUID) -> Payment:
        """
        Return the best-known state of a payment, refreshing it if pending.

        Raises:
            NotFoundError: If no payment has this id
            StorageError: If the initial lookup fails
        """
        payment = await self.repository.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment", "id", payment_id)
        return await self.refresh(payment)

    async def poll_by_tracking_id(self, tracking_id: str) -> Payment:
        """Same as ``poll`` but looked up by gateway tracking id."""
        payment = await self.repository.get_payment_by_tracking_id(tracking_id)
        if payment is None:
            raise NotFoundError("Payment", "tracking_id", tracking_id)
        return await self.refresh(payment)

    async def refresh(self, payment: Payment) -> Payment:
        """
        Query the gateway for a pending payment and reconcile the answer.

        Terminal payments, and payments the gateway never accepted, are
        returned as stored.
        """
        if payment.status != PaymentStatus.PENDING.value or not payment.gateway_tracking_id:
            metrics.record_status_poll("stored")
            return payment

        tracking_id = payment.gateway_tracking_id
        try:
            status = await self.gateway.query_status(tracking_id)
        except GatewayError as e:
            logger.warning(
                "status_poll_gateway_unavailable",
                payment_id=str(payment.id),
                tracking_id=tracking_id,
                error_type=e.error_type.value,
                error=str(e),
            )
            metrics.record_status_poll("degraded")
            return payment

        outcome = classify_gateway_status(
            status.payment_status_code,
            status.payment_status_description,
            success_code=self.success_code,
        )

        try:
            result = await self.engine.reconcile(
                payment.reference_number,
                outcome,
                details_from_gateway(status, tracking_id),
                channel="poll",
            )
        except OrderSyncError as e:
            # Payment side committed; the repair sweep owns the order now
            metrics.record_status_poll("refreshed")
            return e.result.payment
        except StorageError as e:
            logger.warning(
                "status_poll_storage_unavailable",
                payment_id=str(payment.id),
                error=str(e),
            )
            metrics.record_status_poll("degraded")
            return payment

        metrics.record_status_poll("refreshed")
        return result.payment
