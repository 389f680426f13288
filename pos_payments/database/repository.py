"""
Payment record store.

Every write that can race is a single guarded UPDATE whose WHERE clause pins
the state the caller observed; the affected row count tells the caller
whether it won. Audit events are appended in the same transaction as the
change they describe.
"""
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import case, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pos_payments.database.models import (
    PRE_CONFIRMATION_STATUSES,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
)
from pos_payments.exceptions import NotFoundError, StorageConflict, StorageError

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentRepository:
    """
    Durable keyed storage for payments and their orders.

    Each public method runs in its own short transaction. Store faults are
    raised as ``StorageError``; lost conditional writes as ``StorageConflict``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize repository.

        Args:
            session_factory: Async session factory bound to the payments database
        """
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as e:
            logger.error("storage_operation_failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}", original_error=e) from e

    @staticmethod
    def _event(
        payment_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> PaymentEvent:
        return PaymentEvent(
            payment_id=payment_id,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            created_at=utcnow(),
        )

    # ---------- reads ----------

    async def get_payment(self, payment_id: uuid.UUID) -> Optional[Payment]:
        """Get a payment by its primary id."""
        async with self._transaction("get_payment") as db:
            return await db.get(Payment, payment_id)

    async def get_payment_by_reference(self, reference_number: str) -> Optional[Payment]:
        """Get a payment by the merchant reference echoed back by the gateway."""
        async with self._transaction("get_payment_by_reference") as db:
            result = await db.execute(
                select(Payment).where(Payment.reference_number == reference_number)
            )
            return result.scalar_one_or_none()

    async def get_payment_by_tracking_id(self, tracking_id: str) -> Optional[Payment]:
        """Get a payment by its gateway tracking id."""
        async with self._transaction("get_payment_by_tracking_id") as db:
            result = await db.execute(
                select(Payment).where(Payment.gateway_tracking_id == tracking_id)
            )
            return result.scalar_one_or_none()

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Get an order by id."""
        async with self._transaction("get_order") as db:
            return await db.get(Order, order_id)

    async def list_unsynced_paid_payments(self, limit: int = 100) -> List[Payment]:
        """
        Completed payments whose order has not been marked paid yet.

        These are the leftovers of an order update that failed after the
        payment transition committed.
        """
        async with self._transaction("list_unsynced_paid_payments") as db:
            stmt = (
                select(Payment)
                .join(Order, Order.id == Payment.order_id)
                .where(
                    Payment.status == PaymentStatus.COMPLETED.value,
                    Order.payment_status == OrderPaymentStatus.UNPAID.value,
                )
                .order_by(Payment.updated_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_stale_pending_payments(
        self, older_than: datetime, limit: int = 50
    ) -> List[Payment]:
        """Pending payments with a tracking id created before ``older_than``."""
        async with self._transaction("list_stale_pending_payments") as db:
            stmt = (
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.gateway_tracking_id.isnot(None),
                    Payment.created_at < older_than,
                )
                .order_by(Payment.created_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def ping(self) -> None:
        """Round-trip a trivial query."""
        async with self._transaction("ping") as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()

    # ---------- writes ----------

    async def create_payment(
        self,
        order_id: uuid.UUID,
        reference_number: str,
        amount: Decimal,
        currency: str,
        method: str,
        correlation_id: uuid.UUID,
        phone_number: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Payment:
        """
        Insert a new ``pending`` payment with no tracking id or terminal fields.

        Returns:
            Payment: The stored record
        """
        now = utcnow()
        payment = Payment(
            id=uuid.uuid4(),
            order_id=order_id,
            reference_number=reference_number,
            amount=amount,
            currency=currency,
            method=method,
            phone_number=phone_number,
            description=description,
            status=PaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self._transaction("create_payment") as db:
            db.add(payment)
            await db.flush()
            db.add(
                self._event(
                    payment.id,
                    "payment.initiated",
                    {
                        "reference_number": reference_number,
                        "amount": str(amount),
                        "currency": currency,
                        "method": method,
                    },
                    correlation_id,
                )
            )
        return payment

    async def assign_tracking_id(
        self, payment_id: uuid.UUID, tracking_id: str, correlation_id: uuid.UUID
    ) -> bool:
        """
        Record the gateway tracking id once.

        Returns:
            bool: False if the payment already had a tracking id
        """
        async with self._transaction("assign_tracking_id") as db:
            stmt = (
                update(Payment)
                .where(Payment.id == payment_id, Payment.gateway_tracking_id.is_(None))
                .values(gateway_tracking_id=tracking_id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return False
            db.add(
                self._event(
                    payment_id,
                    "payment.tracking_assigned",
                    {"gateway_tracking_id": tracking_id},
                    correlation_id,
                )
            )
            return True

    async def transition_status(
        self,
        reference_number: str,
        new_status: PaymentStatus,
        correlation_id: uuid.UUID,
        confirmation_code: Optional[str] = None,
        transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Move a payment out of ``pending`` with a compare-and-set.

        The UPDATE only matches while the stored status is still ``pending``,
        so of any number of concurrent callers exactly one sees a row updated.

        Returns:
            Payment: The updated record

        Raises:
            StorageConflict: If the payment was no longer pending at write time
        """
        if not new_status.is_terminal:
            raise ValueError(f"Cannot transition to non-terminal status {new_status.value}")

        now = utcnow()
        values: Dict[str, Any] = {
            "status": new_status.value,
            "confirmation_code": confirmation_code,
            "transaction_id": transaction_id,
            "gateway_metadata": metadata,
            "updated_at": now,
        }
        if new_status is PaymentStatus.COMPLETED:
            values["payment_date"] = now

        async with self._transaction("transition_status") as db:
            stmt = (
                update(Payment)
                .where(
                    Payment.reference_number == reference_number,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise StorageConflict(reference_number, PaymentStatus.PENDING.value)

            row = await db.execute(
                select(Payment).where(Payment.reference_number == reference_number)
            )
            payment = row.scalar_one()
            db.add(
                self._event(
                    payment.id,
                    f"payment.{new_status.value}",
                    {
                        "status": new_status.value,
                        "confirmation_code": confirmation_code,
                        "transaction_id": transaction_id,
                    },
                    correlation_id,
                )
            )
        return payment

    async def mark_order_paid(
        self, order_id: uuid.UUID, payment_id: uuid.UUID, correlation_id: uuid.UUID
    ) -> Order:
        """
        Set ``payment_status = paid`` and confirm orders not yet past submission.

        A single UPDATE; orders already preparing, served or cancelled keep
        their workflow status. Safe to repeat.

        Raises:
            NotFoundError: If the order does not exist
        """
        async with self._transaction("mark_order_paid") as db:
            stmt = (
                update(Order)
                .where(Order.id == order_id)
                .values(
                    payment_status=OrderPaymentStatus.PAID.value,
                    status=case(
                        (
                            Order.status.in_(PRE_CONFIRMATION_STATUSES),
                            OrderStatus.CONFIRMED.value,
                        ),
                        else_=Order.status,
                    ),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError("Order", "id", order_id)

            order = (
                await db.execute(select(Order).where(Order.id == order_id))
            ).scalar_one()
            db.add(
                self._event(
                    payment_id,
                    "order.marked_paid",
                    {"order_id": str(order_id), "order_status": order.status},
                    correlation_id,
                )
            )
        return order

    async def list_events(self, payment_id: uuid.UUID) -> List[PaymentEvent]:
        """Audit trail of a payment, oldest first."""
        async with self._transaction("list_events") as db:
            result = await db.execute(
                select(PaymentEvent)
                .where(PaymentEvent.payment_id == payment_id)
                .order_by(PaymentEvent.id)
            )
            return list(result.scalars().all())
