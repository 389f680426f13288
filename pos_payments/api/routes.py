"""
API routes for payment initiation and status reconciliation.

Services are built once by ``create_app`` and read from ``request.app.state``.
"""
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError as PydanticValidationError

from pos_payments.exceptions import ValidationError
from pos_payments.integrations.pesapal_client import GatewayError

from .schemas import (
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    OrderSyncResponse,
    PaymentStatusResponse,
    PesapalNotification,
    RegisterIpnRequest,
    RegisterIpnResponse,
    WebhookAckResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


@payment_router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    summary="Initiate a payment",
    description="Create a pending payment for an order and submit it to the gateway",
)
async def initiate_payment(body: InitiatePaymentRequest, request: Request) -> Any:
    """
    Initiate a payment.

    A gateway rejection fails the payment and answers 400; an unreachable
    gateway leaves it pending and answers 502.
    """
    logger.info(
        "api_initiate_payment_request",
        order_id=str(body.order_id),
        amount=str(body.amount),
        method=body.method,
    )

    try:
        result = await request.app.state.payment_processor.initiate_payment(
            order_id=body.order_id,
            amount=body.amount,
            method=body.method,
            phone_number=body.phone_number,
            currency=body.currency,
            description=body.description,
        )
    except GatewayError as e:
        if e.is_transient:
            logger.error("api_initiate_payment_gateway_unavailable", error=str(e))
            return _error_response(
                status.HTTP_502_BAD_GATEWAY,
                "Payment gateway unavailable, please retry",
                "gateway_unavailable",
            )
        logger.warning("api_initiate_payment_rejected", error=str(e))
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            f"Payment rejected by gateway: {e}",
            "gateway_rejected",
        )

    return InitiatePaymentResponse(
        payment_id=str(result.payment.id),
        tracking_id=result.tracking_id,
        reference_number=result.payment.reference_number,
        redirect_url=result.redirect_url,
        status=result.payment.status,
    )


@payment_router.get(
    "/status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Return the best-known payment state, refreshing pending payments from the gateway",
)
async def get_payment_status(
    request: Request,
    payment_id: Optional[UUID] = Query(default=None, alias="paymentId"),
    tracking_id: Optional[str] = Query(default=None, alias="trackingId"),
) -> PaymentStatusResponse:
    """Get payment status by payment id or gateway tracking id."""
    poller = request.app.state.status_poller

    if payment_id is not None:
        payment = await poller.poll(payment_id)
    elif tracking_id:
        payment = await poller.poll_by_tracking_id(tracking_id)
    else:
        raise ValidationError("paymentId or trackingId is required")

    return PaymentStatusResponse.from_payment(payment)


@webhook_router.api_route(
    "/pesapal",
    methods=["GET", "POST"],
    response_model=WebhookAckResponse,
    summary="Pesapal IPN endpoint",
    description="Handle gateway payment notifications",
)
async def pesapal_webhook(
    request: Request,
    order_tracking_id: Optional[str] = Query(default=None, alias="OrderTrackingId"),
    order_merchant_reference: Optional[str] = Query(
        default=None, alias="OrderMerchantReference"
    ),
    order_notification_type: Optional[str] = Query(
        default=None, alias="OrderNotificationType"
    ),
) -> Any:
    """
    Handle Pesapal IPN deliveries.

    Identifiers come from the query string, or from a JSON body when the IPN
    is registered in POST mode.
    """
    if request.method == "POST" and not (order_tracking_id and order_merchant_reference):
        raw_body = await request.body()
        if raw_body:
            try:
                notification = PesapalNotification.model_validate_json(raw_body)
            except PydanticValidationError:
                logger.warning("api_webhook_unparseable_body")
            else:
                order_tracking_id = order_tracking_id or notification.order_tracking_id
                order_merchant_reference = (
                    order_merchant_reference or notification.order_merchant_reference
                )
                order_notification_type = (
                    order_notification_type or notification.order_notification_type
                )

    try:
        return await request.app.state.webhook_handler.handle_notification(
            order_tracking_id,
            order_merchant_reference,
            notification_type=order_notification_type or "IPNCHANGE",
        )
    except GatewayError as e:
        logger.error("api_webhook_gateway_error", error=str(e))
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Unable to verify payment status with gateway",
            "gateway_error",
        )


@admin_router.post(
    "/order-sync",
    response_model=OrderSyncResponse,
    summary="Run order sync repair",
    description="Mark paid any order whose payment completed but whose update failed",
)
async def run_order_sync(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
) -> Dict[str, int]:
    """Run the order sync repair sweep now."""
    logger.info("api_order_sync_started", limit=limit)
    return await request.app.state.order_synchronizer.repair_unsynced(limit)


@admin_router.post(
    "/gateway/ipn",
    response_model=RegisterIpnResponse,
    summary="Register IPN URL",
    description="Register the webhook URL with the gateway and return its notification id",
)
async def register_ipn(
    request: Request, body: Optional[RegisterIpnRequest] = None
) -> Any:
    """Register the IPN URL with the gateway."""
    body = body or RegisterIpnRequest()
    url = body.url or request.app.state.settings.pesapal_ipn_url
    if not url:
        raise ValidationError("No IPN URL given and none configured")

    try:
        ipn_id = await request.app.state.gateway.register_ipn(url, body.notification_type)
    except GatewayError as e:
        logger.error("api_register_ipn_error", error=str(e))
        if e.is_transient:
            return _error_response(
                status.HTTP_502_BAD_GATEWAY, "Payment gateway unavailable", "gateway_unavailable"
            )
        return _error_response(
            status.HTTP_400_BAD_REQUEST, f"IPN registration rejected: {e}", "gateway_rejected"
        )

    return RegisterIpnResponse(ipn_id=ipn_id, url=url)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(request: Request) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await request.app.state.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(request: Request) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await request.app.state.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(request: Request) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await request.app.state.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
