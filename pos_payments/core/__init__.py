"""Core reconciliation logic package."""
from .order_sync import OrderSynchronizer
from .payment_processor import PaymentProcessor
from .poller import StatusPoller
from .reconciliation import ReconciliationEngine, ReconciliationResult
from .status import TransitionDetails, classify_gateway_status

__all__ = [
    "OrderSynchronizer",
    "PaymentProcessor",
    "ReconciliationEngine",
    "ReconciliationResult",
    "StatusPoller",
    "TransitionDetails",
    "classify_gateway_status",
]
