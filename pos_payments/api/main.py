"""
Main FastAPI application.

POS payment reconciliation API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pos_payments import __version__
from pos_payments.config import Settings, get_settings
from pos_payments.core.order_sync import OrderSynchronizer
from pos_payments.core.payment_processor import PaymentProcessor
from pos_payments.core.poller import StatusPoller
from pos_payments.core.reconciliation import ReconciliationEngine
from pos_payments.database.connection import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
)
from pos_payments.database.repository import PaymentRepository
from pos_payments.exceptions import PaymentSystemError
from pos_payments.integrations.pesapal_client import PesapalClient
from pos_payments.integrations.webhook_handler import WebhookHandler
from pos_payments.monitoring.health import HealthCheck
from pos_payments.monitoring.logging import setup_logging

from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PesapalClient] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    """
    Build the application and wire its services.

    Args:
        settings: Optional settings (loaded from the environment if omitted)
        gateway: Optional gateway client (tests pass a fake)
        session_factory: Optional session factory; when omitted the app owns
            its engine, creating tables on startup and disposing on shutdown

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    db_engine = None
    if session_factory is None:
        db_engine = create_engine(settings)
        session_factory = create_session_factory(db_engine)

    owns_gateway = gateway is None
    gateway = gateway or PesapalClient(settings)

    repository = PaymentRepository(session_factory)
    order_synchronizer = OrderSynchronizer(repository, settings)
    reconciler = ReconciliationEngine(repository, order_synchronizer)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            sandbox=settings.is_sandbox,
        )

        if db_engine is not None:
            try:
                await init_db(db_engine)
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if owns_gateway:
            await gateway.close()
        if db_engine is not None:
            await close_db(db_engine)
            logger.info("database_connections_closed")

    app = FastAPI(
        title="POS Payment Reconciliation",
        description=(
            "Payment initiation and status reconciliation against the Pesapal gateway. "
            "Webhook and status-poll channels share one idempotent reconciliation core."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.state.settings = settings
    app.state.gateway = gateway
    app.state.repository = repository
    app.state.order_synchronizer = order_synchronizer
    app.state.reconciliation_engine = reconciler
    app.state.payment_processor = PaymentProcessor(repository, gateway, reconciler, settings)
    app.state.status_poller = StatusPoller(
        repository, gateway, reconciler, success_code=settings.gateway_success_code
    )
    app.state.webhook_handler = WebhookHandler(gateway, reconciler, settings)
    app.state.health_check = HealthCheck(repository, gateway)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentSystemError)
    async def payment_system_error_handler(
        request: Request, exc: PaymentSystemError
    ) -> JSONResponse:
        """Map domain errors to their HTTP status."""
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "request_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed requests answer 400 like every other validation failure."""
        details = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", path=request.url.path, details=details)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "code": "validation_error", "details": details},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "code": "internal_error",
            },
        )

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "sandbox": settings.is_sandbox,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pos_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
