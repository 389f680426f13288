"""External integrations package."""
from .pesapal_client import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    InitiationRequest,
    InitiationResponse,
    PesapalClient,
    TransactionStatus,
)

__all__ = [
    "CircuitBreaker",
    "GatewayError",
    "GatewayErrorType",
    "InitiationRequest",
    "InitiationResponse",
    "PesapalClient",
    "TransactionStatus",
]
