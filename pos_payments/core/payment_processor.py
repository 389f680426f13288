"""
Payment initiation.

Flow:
1. Validate method, amount, currency and phone number
2. Load the order
3. Insert the pending payment under a fresh merchant reference
4. Submit the order to the gateway
5. Record the gateway tracking id

A gateway rejection is reconciled to ``failed`` through the reconciliation
core; an unreachable gateway leaves the payment pending without a tracking
id. The order itself is never touched here.
"""
import re
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog

from pos_payments.config import Settings, get_settings
from pos_payments.core.reconciliation import ReconciliationEngine
from pos_payments.core.status import TransitionDetails
from pos_payments.database.models import OrderPaymentStatus, Payment, PaymentStatus
from pos_payments.database.repository import PaymentRepository
from pos_payments.exceptions import NotFoundError, ValidationError
from pos_payments.integrations.pesapal_client import (
    BillingAddress,
    GatewayError,
    InitiationRequest,
    PesapalClient,
)
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

METHOD_LABELS = {
    "mtn_momo": "MTN Mobile Money",
    "airtel_money": "Airtel Money",
    "card": "Card",
    "pesapal": "Pesapal",
}

# Network prefixes of the 9-digit national number
MOBILE_MONEY_PREFIXES = {
    "airtel_money": ("70", "75"),
    "mtn_momo": ("76", "77", "78"),
}

_PHONE_SEPARATORS = re.compile(r"[\s\-()]")


def format_uganda_phone(phone_number: str) -> str:
    """
    Normalise a Ugandan phone number to ``+256XXXXXXXXX``.

    Raises:
        ValidationError: If nine digits do not remain after stripping the prefix
    """
    cleaned = _PHONE_SEPARATORS.sub("", phone_number or "")
    if cleaned.startswith("+256"):
        cleaned = cleaned[4:]
    elif cleaned.startswith("256"):
        cleaned = cleaned[3:]
    elif cleaned.startswith("0"):
        cleaned = cleaned[1:]

    if len(cleaned) != 9 or not cleaned.isdigit():
        raise ValidationError("Invalid phone number format")
    return f"+256{cleaned}"


def phone_matches_method(formatted_phone: str, method: str) -> bool:
    """Check that a normalised number belongs to the network of ``method``."""
    prefixes = MOBILE_MONEY_PREFIXES.get(method)
    if prefixes is None:
        return True
    return formatted_phone[4:6] in prefixes


def generate_reference(order_id: uuid.UUID, prefix: str = "ORD") -> str:
    """Merchant reference: ``<prefix>-<epoch millis>-<order id[:8]>-<6 random hex chars>``."""
    return f"{prefix}-{int(time.time() * 1000)}-{str(order_id)[:8]}-{uuid.uuid4().hex[:6]}"


@dataclass
class InitiationResult:
    payment: Payment
    tracking_id: str
    redirect_url: Optional[str]


class PaymentProcessor:
    """Starts gateway payments for orders."""

    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PesapalClient,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment processor.

        Args:
            repository: Payment record store
            gateway: Gateway client
            engine: Reconciliation core, used to fail rejected initiations
            settings: Optional settings (loaded from the environment if omitted)
        """
        self.repository = repository
        self.gateway = gateway
        self.engine = engine
        self.settings = settings or get_settings()

        logger.info("payment_processor_initialized")

    def _validate_request(
        self,
        amount: Decimal,
        method: str,
        currency: str,
        phone_number: Optional[str],
    ) -> Optional[str]:
        """
        Validate initiation parameters.

        Returns:
            Optional[str]: The normalised phone number, if one was given

        Raises:
            ValidationError: If validation fails
        """
        if method not in METHOD_LABELS:
            raise ValidationError(
                f"Unsupported payment method '{method}'. "
                f"Must be one of: {', '.join(METHOD_LABELS)}"
            )

        if amount <= 0:
            raise ValidationError("Amount must be positive")

        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be 3-letter code")

        if method in MOBILE_MONEY_PREFIXES:
            if not phone_number:
                raise ValidationError("Phone number required for mobile money payment")
            formatted = format_uganda_phone(phone_number)
            if not phone_matches_method(formatted, method):
                expected = ", ".join(f"0{p}" for p in MOBILE_MONEY_PREFIXES[method])
                raise ValidationError(
                    f"Invalid phone number for {method}. Expected a number starting with {expected}"
                )
            return formatted

        if phone_number:
            return format_uganda_phone(phone_number)
        return None

    async def initiate_payment(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        method: str,
        phone_number: Optional[str] = None,
        currency: Optional[str] = None,
        description: Optional[str] = None,
    ) -> InitiationResult:
        """
        Create a pending payment for an order and submit it to the gateway.

        Args:
            order_id: Order being paid
            amount: Amount to charge
            method: One of mtn_momo, airtel_money, card, pesapal
            phone_number: Payer phone, required for mobile money
            currency: ISO currency code (defaults to ``default_currency``)
            description: Checkout description (defaults to order number and method)

        Returns:
            InitiationResult: Stored payment, tracking id and checkout redirect

        Raises:
            ValidationError: If input validation fails
            NotFoundError: If the order does not exist
            GatewayError: If the gateway rejects the order (payment failed)
                or cannot be reached (payment left pending)
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError("Amount must be a number") from e
        currency = (currency or self.settings.default_currency).upper()
        formatted_phone = self._validate_request(amount, method, currency, phone_number)

        order = await self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", "id", order_id)
        if order.payment_status == OrderPaymentStatus.PAID.value:
            raise ValidationError("Order is already paid")

        correlation_id = uuid.uuid4()
        reference_number = generate_reference(order_id, self.settings.reference_prefix)
        description = (
            description or f"{order.order_number} - {METHOD_LABELS[method]} payment"
        )[:100]

        log = logger.bind(
            order_id=str(order_id),
            reference_number=reference_number,
            method=method,
            correlation_id=str(correlation_id),
        )

        payment = await self.repository.create_payment(
            order_id=order_id,
            reference_number=reference_number,
            amount=amount,
            currency=currency,
            method=method,
            correlation_id=correlation_id,
            phone_number=formatted_phone,
            description=description,
        )
        log.info("payment_record_created", payment_id=str(payment.id), amount=str(amount))

        request = InitiationRequest(
            id=reference_number,
            currency=currency,
            amount=float(amount),
            description=description,
            callback_url=self.settings.pesapal_callback_url,
            notification_id=self.settings.pesapal_ipn_id,
            billing_address=BillingAddress(phone_number=formatted_phone, country_code="UG"),
        )

        try:
            response = await self.gateway.initiate(request)
        except GatewayError as e:
            if e.is_transient:
                log.error("payment_initiation_gateway_unavailable", error=str(e))
                metrics.record_initiation(method, "gateway_unavailable")
                raise

            log.warning("payment_initiation_rejected", error=str(e))
            metrics.record_initiation(method, "rejected")
            await self.engine.reconcile(
                reference_number,
                PaymentStatus.FAILED,
                TransitionDetails(metadata={"initiation_error": str(e)}),
                channel="initiation",
                correlation_id=correlation_id,
            )
            raise

        await self.repository.assign_tracking_id(
            payment.id, response.order_tracking_id, correlation_id
        )
        payment.gateway_tracking_id = response.order_tracking_id

        metrics.record_initiation(method, "accepted")
        log.info(
            "payment_initiated",
            payment_id=str(payment.id),
            tracking_id=response.order_tracking_id,
        )

        return InitiationResult(
            payment=payment,
            tracking_id=response.order_tracking_id,
            redirect_url=response.redirect_url,
        )
