"""SQLAlchemy database models for POS payment reconciliation."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PaymentStatus(str, Enum):
    """Lifecycle of a payment: pending until exactly one terminal state."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class OrderPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class OrderStatus(str, Enum):
    """Kitchen/front-of-house workflow state of an order."""

    DRAFT = "draft"
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    CANCELLED = "cancelled"


# Orders still in one of these states are moved to CONFIRMED once paid
PRE_CONFIRMATION_STATUSES = (
    OrderStatus.DRAFT.value,
    OrderStatus.PENDING.value,
    OrderStatus.SUBMITTED.value,
)


def _in_clause(values: Any) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Customer orders.

    Only the payment-related columns are written by this service;
    the rest of the order is owned by the POS front end.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.SUBMITTED.value
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderPaymentStatus.UNPAID.value, index=True
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause(OrderStatus)})", name="valid_order_status"
        ),
        CheckConstraint(
            f"payment_status IN ({_in_clause(OrderPaymentStatus)})",
            name="valid_order_payment_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class Payment(Base):
    """
    Payment records table.

    One row per payment attempt against an order. ``reference_number`` is the
    merchant reference echoed back by the gateway; ``gateway_tracking_id`` is
    assigned by the gateway once initiation succeeds. Terminal columns are
    written only by the status transition out of ``pending``.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    reference_number: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    gateway_tracking_id: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="UGX")
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    confirmation_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            f"status IN ({_in_clause(PaymentStatus)})", name="valid_status"
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, reference={self.reference_number}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores all events related to a payment for complete audit trail.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
