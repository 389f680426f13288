"""
Pydantic schemas for API request/response models.

Client-facing bodies use camelCase keys, matching the POS front end and the
gateway's notification format.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pos_payments.database.models import Payment


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiatePaymentRequest(CamelModel):
    """Request schema for initiating a payment."""

    order_id: UUID = Field(..., description="Order being paid")
    amount: Decimal = Field(..., description="Amount to charge")
    method: str = Field(..., description="mtn_momo, airtel_money, card or pesapal")
    phone_number: Optional[str] = Field(
        default=None, description="Payer phone number (required for mobile money)"
    )
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., UGX)"
    )
    description: Optional[str] = Field(default=None, description="Checkout description")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "orderId": "3f2c1b7e-9a4d-4e5f-8b6a-1c2d3e4f5a6b",
                    "amount": 25000,
                    "method": "mtn_momo",
                    "phoneNumber": "0772123456",
                }
            ]
        },
    )


class InitiatePaymentResponse(CamelModel):
    """Response schema for payment initiation."""

    success: bool = Field(default=True)
    payment_id: str = Field(..., description="Payment ID")
    tracking_id: str = Field(..., description="Gateway order tracking id")
    reference_number: str = Field(..., description="Merchant reference")
    redirect_url: Optional[str] = Field(default=None, description="Gateway checkout URL")
    status: str = Field(..., description="Payment status")


class PaymentStatusResponse(CamelModel):
    """Best-known state of a payment."""

    payment_id: str = Field(..., description="Payment ID")
    status: str = Field(..., description="pending, completed or failed")
    method: str = Field(..., description="Payment method")
    amount: float = Field(..., description="Payment amount")
    currency: str = Field(..., description="Currency code")
    reference_number: str = Field(..., description="Merchant reference")
    tracking_id: Optional[str] = Field(default=None, description="Gateway order tracking id")
    confirmation_code: Optional[str] = Field(default=None, description="Gateway confirmation code")
    payment_date: Optional[datetime] = Field(default=None, description="Completion timestamp")
    phone_number: Optional[str] = Field(default=None, description="Payer phone number")

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentStatusResponse":
        return cls(
            payment_id=str(payment.id),
            status=payment.status,
            method=payment.method,
            amount=float(payment.amount),
            currency=payment.currency,
            reference_number=payment.reference_number,
            tracking_id=payment.gateway_tracking_id,
            confirmation_code=payment.confirmation_code,
            payment_date=payment.payment_date,
            phone_number=payment.phone_number,
        )


class PesapalNotification(BaseModel):
    """IPN body sent by the gateway in POST notification mode."""

    order_tracking_id: Optional[str] = Field(default=None, alias="OrderTrackingId")
    order_merchant_reference: Optional[str] = Field(
        default=None, alias="OrderMerchantReference"
    )
    order_notification_type: str = Field(default="IPNCHANGE", alias="OrderNotificationType")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WebhookAckResponse(CamelModel):
    """Acknowledgement returned to the gateway."""

    order_notification_type: str
    order_tracking_id: str
    order_merchant_reference: str
    status: int
    applied: bool
    payment_status: str
    order_synced: bool


class OrderSyncResponse(BaseModel):
    """Result of an order sync repair sweep."""

    scanned: int = Field(..., description="Unsynced orders found")
    repaired: int = Field(..., description="Orders marked paid")
    failed: int = Field(..., description="Orders still unsynced")


class RegisterIpnRequest(CamelModel):
    """Request schema for registering the IPN URL."""

    url: Optional[str] = Field(
        default=None, description="Webhook URL (defaults to the configured IPN URL)"
    )
    notification_type: str = Field(default="GET", pattern="^(GET|POST)$")


class RegisterIpnResponse(CamelModel):
    ipn_id: str
    url: str


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
