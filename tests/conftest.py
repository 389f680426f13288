"""
Pytest configuration and fixtures.

Tests run against a temp-file SQLite database (each session gets its own
connection, so concurrent tests really interleave) and a fake gateway.
"""
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pos_payments.api.main import create_app
from pos_payments.config import Settings
from pos_payments.core.order_sync import OrderSynchronizer
from pos_payments.core.poller import StatusPoller
from pos_payments.core.reconciliation import ReconciliationEngine
from pos_payments.database.connection import create_session_factory, init_db
from pos_payments.database.models import Order, OrderPaymentStatus, OrderStatus, Payment
from pos_payments.database.repository import PaymentRepository, utcnow
from pos_payments.integrations.pesapal_client import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    InitiationRequest,
    InitiationResponse,
    TransactionStatus,
)


class FakeGateway:
    """In-process stand-in for ``PesapalClient``."""

    def __init__(self) -> None:
        self.statuses: Dict[str, Union[TransactionStatus, Exception]] = {}
        self.initiate_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self.query_calls: List[str] = []
        self.initiate_calls: List[InitiationRequest] = []
        self.ipn_registrations: List[Dict[str, str]] = []
        self.circuit_breaker = CircuitBreaker()

    def set_status(
        self,
        tracking_id: str,
        code: Optional[str],
        description: str,
        confirmation_code: Optional[str] = None,
        merchant_reference: Optional[str] = None,
    ) -> None:
        self.statuses[tracking_id] = TransactionStatus(
            payment_status_code=code,
            payment_status_description=description,
            confirmation_code=confirmation_code,
            merchant_reference=merchant_reference,
            payment_method="MTN UG",
            payment_account="256772123456",
            status_code=200,
        )

    def fail_status(
        self, tracking_id: str, error_type: GatewayErrorType = GatewayErrorType.TRANSIENT
    ) -> None:
        self.statuses[tracking_id] = GatewayError("query_status timed out", error_type)

    async def query_status(self, tracking_id: str) -> TransactionStatus:
        self.query_calls.append(tracking_id)
        result = self.statuses.get(tracking_id)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise GatewayError("Unknown tracking id", GatewayErrorType.PERMANENT)
        return result

    async def initiate(self, request: InitiationRequest) -> InitiationResponse:
        self.initiate_calls.append(request)
        if self.initiate_error is not None:
            raise self.initiate_error
        return InitiationResponse(
            order_tracking_id=f"TRK-{request.id}",
            merchant_reference=request.id,
            redirect_url="https://cybqa.pesapal.com/iframe?OrderTrackingId=test",
        )

    async def register_ipn(self, url: str, notification_type: str = "GET") -> str:
        self.ipn_registrations.append({"url": url, "notification_type": notification_type})
        return "ipn-registered-001"

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def close(self) -> None:
        pass


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        pesapal_consumer_key="test_consumer_key",
        pesapal_consumer_secret="test_consumer_secret",
        pesapal_api_url="https://cybqa.pesapal.com/pesapalv3",
        pesapal_ipn_id="ipn-test-001",
        pesapal_ipn_url="https://pos.test/webhooks/pesapal",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        app_name="pos-payments-test",
        app_env="test",
        log_level="DEBUG",
        order_sync_max_attempts=2,
        gateway_circuit_failure_threshold=2,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database with all tables."""
    engine = create_async_engine(
        test_settings.database_url,
        connect_args={"timeout": 30},  # sqlite busy timeout; concurrent writers queue
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> PaymentRepository:
    return PaymentRepository(session_factory)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def order_synchronizer(
    repository: PaymentRepository, test_settings: Settings
) -> OrderSynchronizer:
    return OrderSynchronizer(repository, test_settings)


@pytest.fixture
def reconciler(
    repository: PaymentRepository, order_synchronizer: OrderSynchronizer
) -> ReconciliationEngine:
    return ReconciliationEngine(repository, order_synchronizer)


@pytest.fixture
def poller(
    repository: PaymentRepository,
    fake_gateway: FakeGateway,
    reconciler: ReconciliationEngine,
) -> StatusPoller:
    return StatusPoller(repository, fake_gateway, reconciler)


@pytest.fixture
def create_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """Factory inserting an order."""

    async def _create(
        status: OrderStatus = OrderStatus.SUBMITTED,
        payment_status: OrderPaymentStatus = OrderPaymentStatus.UNPAID,
        total_amount: Decimal = Decimal("25000.00"),
    ) -> Order:
        now = utcnow()
        order = Order(
            id=uuid.uuid4(),
            order_number=f"T-{uuid.uuid4().hex[:8]}",
            status=status.value,
            payment_status=payment_status.value,
            total_amount=total_amount,
            created_at=now,
            updated_at=now,
        )
        async with session_factory() as db:
            async with db.begin():
                db.add(order)
        return order

    return _create


@pytest.fixture
def create_payment(
    repository: PaymentRepository,
    create_order: Callable[..., Awaitable[Order]],
) -> Callable[..., Awaitable[Payment]]:
    """Factory inserting a pending payment, optionally with a tracking id."""

    async def _create(
        reference_number: Optional[str] = None,
        tracking_id: Optional[str] = "TRK-001",
        order: Optional[Order] = None,
        amount: Decimal = Decimal("25000.00"),
        method: str = "mtn_momo",
    ) -> Payment:
        order = order or await create_order()
        payment = await repository.create_payment(
            order_id=order.id,
            reference_number=reference_number or f"REF-{uuid.uuid4().hex[:8]}",
            amount=amount,
            currency="UGX",
            method=method,
            correlation_id=uuid.uuid4(),
            phone_number="+256772123456",
        )
        if tracking_id:
            await repository.assign_tracking_id(payment.id, tracking_id, uuid.uuid4())
            payment.gateway_tracking_id = tracking_id
        return payment

    return _create


@pytest.fixture
def app(
    test_settings: Settings,
    fake_gateway: FakeGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    return create_app(
        settings=test_settings, gateway=fake_gateway, session_factory=session_factory
    )


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
