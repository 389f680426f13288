"""
Payment initiation tests.
"""
import re
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pos_payments.core.payment_processor import (
    PaymentProcessor,
    format_uganda_phone,
    generate_reference,
    phone_matches_method,
)
from pos_payments.database.models import OrderPaymentStatus, OrderStatus, Payment, PaymentStatus
from pos_payments.exceptions import NotFoundError, ValidationError
from pos_payments.integrations.pesapal_client import GatewayError, GatewayErrorType


@pytest.fixture
def processor(repository, fake_gateway, reconciler, test_settings) -> PaymentProcessor:
    return PaymentProcessor(repository, fake_gateway, reconciler, test_settings)


class TestPhoneFormatting:
    """Ugandan phone number normalisation."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("0772123456", "+256772123456"),
            ("0772 123 456", "+256772123456"),
            ("256701234567", "+256701234567"),
            ("+256-75-1234567", "+256751234567"),
            ("(0)78 1234567", "+256781234567"),
            ("772123456", "+256772123456"),
        ],
    )
    def test_normalises_to_international_format(self, raw, expected) -> None:
        assert format_uganda_phone(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["12345", "07721234567", "0772abc456", ""])
    def test_rejects_malformed_numbers(self, raw) -> None:
        with pytest.raises(ValidationError):
            format_uganda_phone(raw)

    @pytest.mark.unit
    def test_network_prefixes(self) -> None:
        assert phone_matches_method("+256701234567", "airtel_money")
        assert phone_matches_method("+256751234567", "airtel_money")
        assert not phone_matches_method("+256772123456", "airtel_money")
        assert phone_matches_method("+256761234567", "mtn_momo")
        assert phone_matches_method("+256781234567", "mtn_momo")
        assert not phone_matches_method("+256701234567", "mtn_momo")
        assert phone_matches_method("+256701234567", "card")


class TestReferenceGeneration:
    @pytest.mark.unit
    def test_reference_format(self) -> None:
        order_id = uuid.UUID("3f2c1b7e-9a4d-4e5f-8b6a-1c2d3e4f5a6b")

        reference = generate_reference(order_id)

        assert re.fullmatch(r"ORD-\d{13}-3f2c1b7e-[0-9a-f]{6}", reference)

    @pytest.mark.unit
    def test_reference_prefix(self) -> None:
        assert generate_reference(uuid.uuid4(), prefix="POS").startswith("POS-")

    @pytest.mark.unit
    def test_references_differ_within_the_same_millisecond(self, mocker) -> None:
        mocker.patch("pos_payments.core.payment_processor.time.time", return_value=1760868000.0)
        order_id = uuid.uuid4()

        references = {generate_reference(order_id) for _ in range(20)}

        assert len(references) == 20


class TestInitiatePayment:
    """Test suite for PaymentProcessor.initiate_payment."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mobile_money_initiation(
        self, processor, repository, fake_gateway, create_order
    ) -> None:
        order = await create_order()

        result = await processor.initiate_payment(
            order_id=order.id,
            amount=Decimal("25000"),
            method="mtn_momo",
            phone_number="0772 123 456",
        )

        stored = await repository.get_payment(result.payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.gateway_tracking_id == result.tracking_id
        assert stored.phone_number == "+256772123456"
        assert stored.currency == "UGX"
        assert stored.amount == Decimal("25000")
        assert re.fullmatch(
            rf"ORD-\d{{13}}-{str(order.id)[:8]}-[0-9a-f]{{6}}", stored.reference_number
        )

        request = fake_gateway.initiate_calls[0]
        assert request.id == stored.reference_number
        assert request.notification_id == "ipn-test-001"
        assert request.amount == 25000.0
        assert request.billing_address.phone_number == "+256772123456"
        assert order.order_number in request.description

        # Initiation never touches the order
        stored_order = await repository.get_order(order.id)
        assert stored_order.status == OrderStatus.SUBMITTED.value
        assert stored_order.payment_status == OrderPaymentStatus.UNPAID.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_payment_needs_no_phone(self, processor, create_order) -> None:
        order = await create_order()

        result = await processor.initiate_payment(
            order_id=order.id, amount=Decimal("18000"), method="card"
        )

        assert result.payment.phone_number is None
        assert result.redirect_url is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,phone,amount",
        [
            ("airtel_money", "0772123456", Decimal("1000")),  # MTN number on Airtel
            ("mtn_momo", None, Decimal("1000")),
            ("cash", None, Decimal("1000")),
            ("card", None, Decimal("0")),
            ("card", None, Decimal("-5")),
        ],
    )
    async def test_invalid_requests_are_rejected_before_any_write(
        self, processor, session_factory, fake_gateway, create_order, method, phone, amount
    ) -> None:
        order = await create_order()

        with pytest.raises(ValidationError):
            await processor.initiate_payment(
                order_id=order.id, amount=amount, method=method, phone_number=phone
            )

        assert fake_gateway.initiate_calls == []
        async with session_factory() as db:
            count = await db.scalar(select(func.count()).select_from(Payment))
        assert count == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, processor, fake_gateway) -> None:
        with pytest.raises(NotFoundError):
            await processor.initiate_payment(
                order_id=uuid.uuid4(), amount=Decimal("1000"), method="card"
            )

        assert fake_gateway.initiate_calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_order_is_rejected(self, processor, create_order) -> None:
        order = await create_order(payment_status=OrderPaymentStatus.PAID)

        with pytest.raises(ValidationError):
            await processor.initiate_payment(
                order_id=order.id, amount=Decimal("1000"), method="card"
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_payment(
        self, processor, repository, fake_gateway, create_order
    ) -> None:
        order = await create_order()
        fake_gateway.initiate_error = GatewayError(
            "Invalid amount", GatewayErrorType.PERMANENT, status_code=400
        )

        with pytest.raises(GatewayError):
            await processor.initiate_payment(
                order_id=order.id, amount=Decimal("1000"), method="card"
            )

        reference = fake_gateway.initiate_calls[0].id
        stored = await repository.get_payment_by_reference(reference)
        assert stored.status == PaymentStatus.FAILED.value
        assert stored.gateway_tracking_id is None
        assert stored.gateway_metadata == {"initiation_error": "Invalid amount"}
        assert (await repository.get_order(order.id)).payment_status == OrderPaymentStatus.UNPAID.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unreachable_gateway_leaves_payment_pending(
        self, processor, repository, fake_gateway, create_order
    ) -> None:
        order = await create_order()
        fake_gateway.initiate_error = GatewayError("initiate timed out", GatewayErrorType.TRANSIENT)

        with pytest.raises(GatewayError):
            await processor.initiate_payment(
                order_id=order.id, amount=Decimal("1000"), method="card"
            )

        reference = fake_gateway.initiate_calls[0].id
        stored = await repository.get_payment_by_reference(reference)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.gateway_tracking_id is None


class TestInitiateEndpoint:
    """Test suite for POST /payments/initiate."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_success(self, client, create_order) -> None:
        order = await create_order()

        response = await client.post(
            "/payments/initiate",
            json={
                "orderId": str(order.id),
                "amount": 25000,
                "method": "airtel_money",
                "phoneNumber": "0701234567",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "pending"
        assert body["trackingId"] == f"TRK-{body['referenceNumber']}"
        assert body["redirectUrl"].startswith("https://")
        uuid.UUID(body["paymentId"])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_rejection_returns_400(self, client, fake_gateway, create_order) -> None:
        order = await create_order()
        fake_gateway.initiate_error = GatewayError("Invalid amount", GatewayErrorType.PERMANENT)

        response = await client.post(
            "/payments/initiate",
            json={"orderId": str(order.id), "amount": 1000, "method": "card"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "gateway_rejected"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_unavailable_returns_502(
        self, client, fake_gateway, create_order
    ) -> None:
        order = await create_order()
        fake_gateway.initiate_error = GatewayError("initiate timed out", GatewayErrorType.TRANSIENT)

        response = await client.post(
            "/payments/initiate",
            json={"orderId": str(order.id), "amount": 1000, "method": "card"},
        )

        assert response.status_code == 502
        assert response.json()["code"] == "gateway_unavailable"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_returns_404(self, client) -> None:
        response = await client.post(
            "/payments/initiate",
            json={"orderId": str(uuid.uuid4()), "amount": 1000, "method": "card"},
        )

        assert response.status_code == 404
        assert response.json()["code"] == "order_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"amount": 1000, "method": "card"},
            {"orderId": "not-a-uuid", "amount": 1000, "method": "card"},
            {"orderId": "3f2c1b7e-9a4d-4e5f-8b6a-1c2d3e4f5a6b", "amount": 1000, "method": "bitcoin"},
        ],
    )
    async def test_invalid_payload_returns_400(self, client, payload) -> None:
        response = await client.post("/payments/initiate", json=payload)

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
