"""
Reconciliation core tests.

Covers the gateway status classification and the properties every
reconcile call must keep: idempotence, monotonicity, inert pending
outcomes and order derivation.
"""
import pytest

from pos_payments.core.status import TransitionDetails, classify_gateway_status
from pos_payments.database.models import OrderPaymentStatus, OrderStatus, PaymentStatus
from pos_payments.exceptions import NotFoundError, OrderSyncError, StorageError


class TestClassifyGatewayStatus:
    """Mapping of gateway codes and descriptions onto payment status."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "code,description,expected",
        [
            ("1", "Completed", PaymentStatus.COMPLETED),
            ("1", "", PaymentStatus.COMPLETED),
            (None, "COMPLETED", PaymentStatus.COMPLETED),
            ("2", "Failed", PaymentStatus.FAILED),
            ("2", "", PaymentStatus.FAILED),
            (None, "failed", PaymentStatus.FAILED),
            (None, "Cancelled", PaymentStatus.FAILED),
            (None, "canceled", PaymentStatus.FAILED),
            ("0", "INVALID", PaymentStatus.PENDING),
            ("3", "REVERSED", PaymentStatus.PENDING),
            (None, "", PaymentStatus.PENDING),
            (None, None, PaymentStatus.PENDING),
        ],
    )
    def test_classification(self, code, description, expected) -> None:
        assert classify_gateway_status(code, description) is expected

    @pytest.mark.unit
    def test_configured_success_code(self) -> None:
        """The success code is configurable; '1' then means nothing special."""
        assert classify_gateway_status("200", "", success_code="200") is PaymentStatus.COMPLETED
        assert classify_gateway_status("1", "", success_code="200") is PaymentStatus.PENDING


class TestReconcile:
    """Behaviour of ReconciliationEngine.reconcile against the store."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_transition_stamps_terminal_fields(
        self, reconciler, repository, create_payment
    ) -> None:
        payment = await create_payment(reference_number="REF-100", tracking_id="TRK-100")

        result = await reconciler.reconcile(
            "REF-100",
            PaymentStatus.COMPLETED,
            TransitionDetails(
                confirmation_code="ABC123",
                transaction_id="TRK-100",
                metadata={"payment_method": "MTN UG"},
            ),
        )

        assert result.applied is True
        stored = await repository.get_payment(payment.id)
        assert stored.status == PaymentStatus.COMPLETED.value
        assert stored.confirmation_code == "ABC123"
        assert stored.transaction_id == "TRK-100"
        assert stored.gateway_metadata == {"payment_method": "MTN UG"}
        assert stored.payment_date is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_transition_has_no_payment_date(
        self, reconciler, repository, create_payment
    ) -> None:
        payment = await create_payment(reference_number="REF-101")

        result = await reconciler.reconcile("REF-101", PaymentStatus.FAILED)

        assert result.applied is True
        stored = await repository.get_payment(payment.id)
        assert stored.status == PaymentStatus.FAILED.value
        assert stored.payment_date is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_reconcile_is_noop(
        self, reconciler, repository, create_payment
    ) -> None:
        """Applying the same outcome twice changes nothing the second time."""
        payment = await create_payment(reference_number="REF-102")
        details = TransitionDetails(confirmation_code="ABC123", transaction_id="TRK-001")

        first = await reconciler.reconcile("REF-102", PaymentStatus.COMPLETED, details)
        after_first = await repository.get_payment(payment.id)
        second = await reconciler.reconcile(
            "REF-102",
            PaymentStatus.COMPLETED,
            TransitionDetails(confirmation_code="OTHER", transaction_id="TRK-001"),
        )
        after_second = await repository.get_payment(payment.id)

        assert first.applied is True
        assert second.applied is False
        assert after_second.confirmation_code == "ABC123"
        assert after_second.updated_at == after_first.updated_at

        events = [e.event_type for e in await repository.list_events(payment.id)]
        assert events.count("payment.completed") == 1
        assert events.count("order.marked_paid") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_status_never_changes(
        self, reconciler, repository, create_payment
    ) -> None:
        """A completed payment stays completed when a failure arrives later."""
        payment = await create_payment(reference_number="REF-103")

        await reconciler.reconcile("REF-103", PaymentStatus.COMPLETED)
        result = await reconciler.reconcile("REF-103", PaymentStatus.FAILED)

        assert result.applied is False
        assert result.payment.status == PaymentStatus.COMPLETED.value
        stored = await repository.get_payment(payment.id)
        assert stored.status == PaymentStatus.COMPLETED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_outcome_is_inert(
        self, reconciler, repository, create_payment
    ) -> None:
        payment = await create_payment(reference_number="REF-104")
        before = await repository.get_payment(payment.id)

        result = await reconciler.reconcile("REF-104", PaymentStatus.PENDING)

        assert result.applied is False
        after = await repository.get_payment(payment.id)
        assert after.status == PaymentStatus.PENDING.value
        assert after.updated_at == before.updated_at
        events = [e.event_type for e in await repository.list_events(payment.id)]
        assert events == ["payment.initiated", "payment.tracking_assigned"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference_raises_not_found(self, reconciler) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await reconciler.reconcile("REF-MISSING", PaymentStatus.COMPLETED)

        assert exc_info.value.http_status == 404


class TestOrderDerivation:
    """The order follows its payment: paid exactly when the payment completed."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_payment_confirms_submitted_order(
        self, reconciler, repository, create_order, create_payment
    ) -> None:
        order = await create_order(status=OrderStatus.SUBMITTED)
        await create_payment(reference_number="REF-200", order=order)

        await reconciler.reconcile("REF-200", PaymentStatus.COMPLETED)

        stored = await repository.get_order(order.id)
        assert stored.payment_status == OrderPaymentStatus.PAID.value
        assert stored.status == OrderStatus.CONFIRMED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_past_submission_keeps_workflow_status(
        self, reconciler, repository, create_order, create_payment
    ) -> None:
        order = await create_order(status=OrderStatus.PREPARING)
        await create_payment(reference_number="REF-201", order=order)

        await reconciler.reconcile("REF-201", PaymentStatus.COMPLETED)

        stored = await repository.get_order(order.id)
        assert stored.payment_status == OrderPaymentStatus.PAID.value
        assert stored.status == OrderStatus.PREPARING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_leaves_order_unpaid(
        self, reconciler, repository, create_order, create_payment
    ) -> None:
        order = await create_order()
        await create_payment(reference_number="REF-202", order=order)

        await reconciler.reconcile("REF-202", PaymentStatus.FAILED)

        stored = await repository.get_order(order.id)
        assert stored.payment_status == OrderPaymentStatus.UNPAID.value
        assert stored.status == OrderStatus.SUBMITTED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_sync_failure_keeps_payment_and_is_repaired(
        self, reconciler, order_synchronizer, repository, create_order, create_payment, mocker
    ) -> None:
        """The payment transition stands even when the order update fails."""
        order = await create_order()
        payment = await create_payment(reference_number="REF-203", order=order)
        patched = mocker.patch.object(
            order_synchronizer, "mark_paid", side_effect=StorageError("database is locked")
        )

        with pytest.raises(OrderSyncError) as exc_info:
            await reconciler.reconcile("REF-203", PaymentStatus.COMPLETED)

        assert exc_info.value.result.applied is True
        assert exc_info.value.result.payment.status == PaymentStatus.COMPLETED.value
        assert (await repository.get_payment(payment.id)).status == PaymentStatus.COMPLETED.value
        assert (await repository.get_order(order.id)).payment_status == OrderPaymentStatus.UNPAID.value

        # Redelivery is a no-op; the repair sweep owns the order from here
        mocker.stop(patched)
        again = await reconciler.reconcile("REF-203", PaymentStatus.COMPLETED)
        assert again.applied is False

        summary = await order_synchronizer.repair_unsynced()
        assert summary == {"scanned": 1, "repaired": 1, "failed": 0}
        repaired = await repository.get_order(order.id)
        assert repaired.payment_status == OrderPaymentStatus.PAID.value
        assert repaired.status == OrderStatus.CONFIRMED.value
