"""Mapping of gateway-reported transaction state onto local payment status."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pos_payments.database.models import PaymentStatus
from pos_payments.integrations.pesapal_client import TransactionStatus

FAILED_DESCRIPTIONS = frozenset({"failed", "cancelled", "canceled"})
FAILED_STATUS_CODE = "2"


def classify_gateway_status(
    payment_status_code: Optional[str],
    description: Optional[str],
    success_code: str = "1",
) -> PaymentStatus:
    """
    Classify a gateway transaction state.

    Anything the gateway does not explicitly report as completed or failed
    (including invalid or reversed transactions) stays pending.
    """
    code = str(payment_status_code) if payment_status_code is not None else None
    normalized = (description or "").strip().lower()

    if code == success_code or normalized == "completed":
        return PaymentStatus.COMPLETED
    if normalized in FAILED_DESCRIPTIONS or code == FAILED_STATUS_CODE:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


@dataclass
class TransitionDetails:
    """Fields stamped on a payment when it leaves ``pending``."""

    confirmation_code: Optional[str] = None
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def details_from_gateway(status: TransactionStatus, tracking_id: str) -> TransitionDetails:
    """Build transition details from a gateway status response."""
    return TransitionDetails(
        confirmation_code=status.confirmation_code,
        transaction_id=tracking_id,
        metadata={
            "payment_method": status.payment_method,
            "payment_account": status.payment_account,
            "status_code": status.status_code,
            "payment_status_code": status.payment_status_code,
            "payment_status_description": status.payment_status_description,
        },
    )
