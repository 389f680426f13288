"""
Pesapal IPN handler (push channel).

The notification only says *which* transaction changed. The handler asks the
gateway for the authoritative status and hands the classified outcome to the
reconciliation core. Redeliveries are harmless: the core ignores payments that
are already terminal.
"""
import time
import uuid
from typing import Any, Dict, Optional

import structlog

from pos_payments.config import Settings, get_settings
from pos_payments.core.reconciliation import ReconciliationEngine, ReconciliationResult
from pos_payments.core.status import classify_gateway_status, details_from_gateway
from pos_payments.database.models import Payment
from pos_payments.exceptions import (
    NotFoundError,
    OrderSyncError,
    StorageError,
    ValidationError,
)
from pos_payments.integrations.pesapal_client import (
    GatewayError,
    PesapalClient,
    TransactionStatus,
)
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookHandler:
    """
    Handles gateway payment notifications.

    Answers with the acknowledgement body the gateway expects whenever the
    notification was processed, including when nothing changed. Any failure
    that a redelivery could fix propagates so the endpoint answers 500.
    """

    def __init__(
        self,
        gateway: PesapalClient,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            gateway: Gateway client used to fetch authoritative status
            engine: Reconciliation core
            settings: Optional settings (loaded from the environment if omitted)
        """
        self.gateway = gateway
        self.engine = engine
        self.settings = settings or get_settings()

        logger.info("webhook_handler_initialized")

    async def handle_notification(
        self,
        tracking_id: Optional[str],
        reference_number: Optional[str],
        notification_type: str = "IPNCHANGE",
    ) -> Dict[str, Any]:
        """
        Process one IPN delivery.

        Args:
            tracking_id: OrderTrackingId from the notification
            reference_number: OrderMerchantReference from the notification
            notification_type: OrderNotificationType echoed in the acknowledgement

        Returns:
            Dict[str, Any]: Acknowledgement body

        Raises:
            ValidationError: If either identifier is missing
            GatewayError: If the gateway status query fails
            NotFoundError: If no payment has this reference
            StorageError: If the store is unavailable
        """
        start_time = time.time()

        if not tracking_id or not reference_number:
            logger.warning(
                "webhook_missing_parameters",
                tracking_id=tracking_id,
                reference_number=reference_number,
            )
            metrics.record_webhook("rejected", time.time() - start_time)
            raise ValidationError("Missing OrderTrackingId or OrderMerchantReference")

        log = logger.bind(tracking_id=tracking_id, reference_number=reference_number)
        log.info("webhook_received", notification_type=notification_type)

        try:
            payment = await self.engine.repository.get_payment_by_reference(reference_number)
        except StorageError:
            metrics.record_webhook("error", time.time() - start_time)
            raise
        if payment is None:
            log.warning("webhook_payment_not_found")
            metrics.record_webhook("not_found", time.time() - start_time)
            raise NotFoundError("Payment", "reference_number", reference_number)

        if payment.gateway_tracking_id and payment.gateway_tracking_id != tracking_id:
            self._reject(
                log,
                start_time,
                "tracking_id_mismatch",
                stored_tracking_id=payment.gateway_tracking_id,
            )

        try:
            status = await self.gateway.query_status(tracking_id)
        except GatewayError as e:
            log.error(
                "webhook_status_query_failed",
                error_type=e.error_type.value,
                error=str(e),
            )
            metrics.record_webhook("error", time.time() - start_time)
            raise

        try:
            await self._verify_correlation(payment, tracking_id, status, log, start_time)
        except StorageError:
            metrics.record_webhook("error", time.time() - start_time)
            raise

        outcome = classify_gateway_status(
            status.payment_status_code,
            status.payment_status_description,
            success_code=self.settings.gateway_success_code,
        )

        order_synced = True
        try:
            result: ReconciliationResult = await self.engine.reconcile(
                reference_number,
                outcome,
                details_from_gateway(status, tracking_id),
                channel="webhook",
            )
        except OrderSyncError as e:
            # Redelivery would be a no-op now; the repair sweep finishes the order
            result = e.result
            order_synced = False
        except NotFoundError:
            metrics.record_webhook("not_found", time.time() - start_time)
            raise
        except StorageError:
            metrics.record_webhook("error", time.time() - start_time)
            raise

        metrics.record_webhook(
            "applied" if result.applied else "noop", time.time() - start_time
        )
        log.info(
            "webhook_processed",
            outcome=outcome.value,
            applied=result.applied,
            payment_status=result.payment.status,
            order_synced=order_synced,
        )

        return {
            "orderNotificationType": notification_type,
            "orderTrackingId": tracking_id,
            "orderMerchantReference": reference_number,
            "status": 200,
            "applied": result.applied,
            "paymentStatus": result.payment.status,
            "orderSynced": order_synced,
        }

    async def _verify_correlation(
        self,
        payment: Payment,
        tracking_id: str,
        status: TransactionStatus,
        log: Any,
        start_time: float,
    ) -> None:
        """
        Check that the tracking id really belongs to this payment.

        The gateway's merchant reference must match when reported. A payment
        with no stored tracking id (its initiation timed out) adopts this one,
        but only when the gateway vouches for the pairing.
        """
        reported = status.merchant_reference
        if reported is not None and reported != payment.reference_number:
            self._reject(
                log, start_time, "merchant_reference_mismatch", gateway_reference=reported
            )

        if payment.gateway_tracking_id is not None:
            return
        if reported is None:
            self._reject(log, start_time, "tracking_id_unverified")

        assigned = await self.engine.repository.assign_tracking_id(
            payment.id, tracking_id, uuid.uuid4()
        )
        if assigned:
            payment.gateway_tracking_id = tracking_id
            log.info("webhook_tracking_id_recorded", payment_id=str(payment.id))
            return

        current = await self.engine.repository.get_payment(payment.id)
        if current is None or current.gateway_tracking_id != tracking_id:
            self._reject(
                log,
                start_time,
                "tracking_id_mismatch",
                stored_tracking_id=current.gateway_tracking_id if current else None,
            )

    @staticmethod
    def _reject(log: Any, start_time: float, reason: str, **context: Any) -> None:
        log.warning("webhook_correlation_rejected", reason=reason, **context)
        metrics.record_webhook("rejected", time.time() - start_time)
        raise ValidationError(
            "OrderTrackingId does not belong to OrderMerchantReference", reason=reason
        )
