"""
Pesapal v3 API client.

Thin adapter over the gateway's HTTP API:
- Bearer token acquisition and reuse
- Order submission (payment initiation)
- Transaction status queries
- IPN URL registration
- Error classification into transient and permanent failures
- Circuit breaker so a dead gateway fails fast

No retries and no response caching happen here; callers own retry policy.
"""
import asyncio
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, NoReturn, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pos_payments.config import Settings, get_settings
from pos_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry decisions."""

    TRANSIENT = "transient"  # Network, timeout, 5xx: try again later
    PERMANENT = "permanent"  # Rejected request: retrying will not help


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Underlying exception, if any
            status_code: HTTP status returned by the gateway, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.error_type is GatewayErrorType.TRANSIENT


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Opens after ``failure_threshold`` consecutive transient failures and
    rejects calls until ``timeout`` seconds have passed. Permanent errors mean
    the gateway answered, so they count as successes here.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.is_transient:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class BillingAddress(BaseModel):
    """Customer contact block of an order submission."""

    phone_number: Optional[str] = None
    email_address: Optional[str] = None
    country_code: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class InitiationRequest(BaseModel):
    """SubmitOrderRequest payload. ``id`` is the merchant reference."""

    id: str
    currency: str
    amount: float
    description: str = Field(..., max_length=100)
    callback_url: str
    notification_id: str
    billing_address: BillingAddress


class InitiationResponse(BaseModel):
    """Gateway acknowledgement of an order submission."""

    model_config = ConfigDict(extra="ignore")

    order_tracking_id: str
    merchant_reference: Optional[str] = None
    redirect_url: Optional[str] = None


class TransactionStatus(BaseModel):
    """GetTransactionStatus response."""

    model_config = ConfigDict(extra="ignore")

    payment_status_code: Optional[str] = None
    payment_status_description: str = ""
    confirmation_code: Optional[str] = None
    payment_method: Optional[str] = None
    payment_account: Optional[str] = None
    status_code: Optional[int] = None
    merchant_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    created_date: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None

    @field_validator("payment_status_code", mode="before")
    @classmethod
    def stringify_code(cls, v: Any) -> Optional[str]:
        """The gateway sends this code as a string or a number."""
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("payment_status_description", mode="before")
    @classmethod
    def empty_description(cls, v: Any) -> str:
        return v or ""


def _error_message(body: Any) -> Optional[str]:
    """Extract a gateway error message; null-filled error objects mean success."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        if error.get("message") or error.get("code"):
            return error.get("message") or error.get("code")
        return None
    if error:
        return body.get("message") or str(error)
    return None


class PesapalClient:
    """
    Async client for the Pesapal v3 API.

    Every request is bounded by ``gateway_timeout_seconds``. Timeouts,
    transport errors and 5xx responses raise transient ``GatewayError``s;
    4xx responses and error bodies raise permanent ones.
    """

    TOKEN_TTL_SECONDS = 240  # tokens live 5 minutes; refresh a minute early

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Pesapal client.

        Args:
            settings: Optional settings (loaded from the environment if omitted)
            http_client: Optional pre-built HTTP client (tests pass a mock transport)
        """
        self.settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.settings.gateway_circuit_failure_threshold,
            timeout=self.settings.gateway_circuit_timeout_seconds,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            "pesapal_client_initialized",
            api_url=self.settings.pesapal_api_url,
            sandbox=self.settings.is_sandbox,
        )

    def _raise(
        self,
        operation: str,
        message: str,
        error_type: GatewayErrorType,
        duration: float,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ) -> NoReturn:
        logger.error(
            "gateway_api_error",
            operation=operation,
            error_type=error_type.value,
            status_code=status_code,
            error_message=message,
        )
        metrics.record_gateway_call(operation, "error", duration)
        metrics.record_gateway_error(error_type.value)
        raise GatewayError(
            message,
            error_type,
            original_error=original_error,
            status_code=status_code,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {await self._get_access_token()}"

        url = f"{self.settings.pesapal_api_url}{path}"
        start_time = time.time()

        try:
            response = await self._http.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.settings.gateway_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            self._raise(
                operation,
                f"{operation} timed out after {self.settings.gateway_timeout_seconds}s",
                GatewayErrorType.TRANSIENT,
                time.time() - start_time,
                original_error=e,
            )
        except httpx.HTTPError as e:
            self._raise(
                operation,
                f"{operation} failed: {e}",
                GatewayErrorType.TRANSIENT,
                time.time() - start_time,
                original_error=e,
            )

        duration = time.time() - start_time

        if response.status_code >= 500:
            self._raise(
                operation,
                f"{operation} returned {response.status_code}",
                GatewayErrorType.TRANSIENT,
                duration,
                status_code=response.status_code,
            )
        if response.status_code == 401:
            # Force a fresh token on the next call
            self._access_token = None

        try:
            body = response.json()
        except ValueError as e:
            error_type = (
                GatewayErrorType.PERMANENT
                if response.status_code >= 400
                else GatewayErrorType.TRANSIENT
            )
            self._raise(
                operation,
                f"{operation} returned a non-JSON body",
                error_type,
                duration,
                original_error=e,
                status_code=response.status_code,
            )

        error_message = _error_message(body)
        if response.status_code >= 400 or error_message:
            self._raise(
                operation,
                error_message or f"{operation} returned {response.status_code}",
                GatewayErrorType.PERMANENT,
                duration,
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            self._raise(
                operation,
                f"{operation} returned an unexpected body",
                GatewayErrorType.TRANSIENT,
                duration,
                status_code=response.status_code,
            )

        metrics.record_gateway_call(operation, "success", duration)
        return body

    async def _get_access_token(self) -> str:
        """Return a bearer token, requesting a new one when the cached one is stale."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            data = await self._send(
                "auth",
                "POST",
                "/api/Auth/RequestToken",
                json={
                    "consumer_key": self.settings.pesapal_consumer_key,
                    "consumer_secret": self.settings.pesapal_consumer_secret,
                },
                authenticated=False,
            )
            token = data.get("token")
            if not token:
                raise GatewayError(
                    data.get("message") or "Gateway returned no access token",
                    GatewayErrorType.PERMANENT,
                )

            self._access_token = token
            self._token_expires_at = time.monotonic() + self.TOKEN_TTL_SECONDS
            logger.info("gateway_token_refreshed")
            return token

    async def initiate(self, request: InitiationRequest) -> InitiationResponse:
        """
        Submit an order to the gateway.

        Args:
            request: Order submission payload

        Returns:
            InitiationResponse: Tracking id and checkout redirect

        Raises:
            GatewayError: If the gateway rejects the order or cannot be reached
        """
        logger.info(
            "initiating_gateway_payment",
            merchant_reference=request.id,
            amount=request.amount,
            currency=request.currency,
        )

        data = await self.circuit_breaker.call(
            self._send,
            "initiate",
            "POST",
            "/api/Transactions/SubmitOrderRequest",
            json=request.model_dump(exclude_none=True),
        )
        if not data.get("order_tracking_id"):
            raise GatewayError(
                "Gateway accepted the order but returned no tracking id",
                GatewayErrorType.PERMANENT,
            )

        response = InitiationResponse.model_validate(data)
        logger.info(
            "gateway_payment_initiated",
            merchant_reference=response.merchant_reference,
            tracking_id=response.order_tracking_id,
        )
        return response

    async def query_status(self, tracking_id: str) -> TransactionStatus:
        """
        Fetch the authoritative status of a transaction.

        Args:
            tracking_id: Gateway order tracking id

        Returns:
            TransactionStatus: Status as reported by the gateway

        Raises:
            GatewayError: If the status cannot be obtained
        """
        logger.info("querying_gateway_status", tracking_id=tracking_id)

        data = await self.circuit_breaker.call(
            self._send,
            "query_status",
            "GET",
            "/api/Transactions/GetTransactionStatus",
            params={"orderTrackingId": tracking_id},
        )
        status = TransactionStatus.model_validate(data)

        logger.info(
            "gateway_status_received",
            tracking_id=tracking_id,
            payment_status_code=status.payment_status_code,
            payment_status_description=status.payment_status_description,
        )
        return status

    async def register_ipn(self, url: str, notification_type: str = "GET") -> str:
        """
        Register the IPN endpoint with the gateway.

        Args:
            url: Public URL of the webhook endpoint
            notification_type: 'GET' or 'POST'

        Returns:
            str: The notification id to send with every order
        """
        logger.info("registering_ipn_url", url=url, notification_type=notification_type)

        data = await self.circuit_breaker.call(
            self._send,
            "register_ipn",
            "POST",
            "/api/URLSetup/RegisterIPN",
            json={"url": url, "ipn_notification_type": notification_type},
        )
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise GatewayError(
                data.get("message") or "Gateway returned no IPN id",
                GatewayErrorType.PERMANENT,
            )

        logger.info("ipn_url_registered", ipn_id=ipn_id)
        return ipn_id

    async def ping(self) -> None:
        """Check that the gateway accepts our credentials."""
        await self.circuit_breaker.call(self._get_access_token)

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()
