"""
Exception classes shared by the payment reconciliation service.

Every domain error carries:
- an error code (for client handling)
- a user message (safe to show to callers)
- the HTTP status it maps to
"""
from typing import Any, Dict, Optional


class PaymentSystemError(Exception):
    """Base exception for all reconciliation errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        user_message: Optional[str] = None,
        http_status: int = 500,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or message
        self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": self.user_message,
            "code": self.error_code,
        }


class ValidationError(PaymentSystemError):
    """Missing or malformed input. Not retried."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="validation_error",
            http_status=400,
            **kwargs,
        )


class NotFoundError(PaymentSystemError):
    """
    Referenced payment or order does not exist.

    On the webhook path this points at a correlation or data-integrity bug,
    so it is logged and never auto-retried.
    """

    def __init__(self, entity: str, key: str, value: Any, **kwargs: Any):
        super().__init__(
            message=f"{entity} not found ({key}={value})",
            error_code=f"{entity.lower()}_not_found",
            user_message=f"{entity} not found",
            http_status=404,
            **kwargs,
        )
        self.entity = entity
        self.key = key
        self.value = value


class StorageError(PaymentSystemError):
    """The underlying store is unavailable or rejected a write."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="storage_error",
            user_message="Storage temporarily unavailable",
            http_status=500,
            **kwargs,
        )
        self.original_error = original_error


class StorageConflict(PaymentSystemError):
    """
    A conditional write found the row no longer in the expected state.

    Raised by the repository when another writer won the race; callers
    resolve it by re-reading, never by surfacing it.
    """

    def __init__(self, reference_number: str, expected_status: str):
        super().__init__(
            message=(
                f"Payment {reference_number} is no longer {expected_status}"
            ),
            error_code="storage_conflict",
            http_status=409,
        )
        self.reference_number = reference_number
        self.expected_status = expected_status


class OrderSyncError(PaymentSystemError):
    """
    The payment transition committed but the order update did not.

    Carries the committed reconciliation result so callers can still answer
    with the payment's new state. The repair sweep retries the order side.
    """

    def __init__(self, order_id: Any, result: Any, original_error: Optional[Exception] = None):
        super().__init__(
            message=f"Failed to mark order {order_id} as paid: {original_error}",
            error_code="order_sync_failed",
            user_message="Payment recorded; order update pending",
            http_status=500,
        )
        self.order_id = order_id
        self.result = result
        self.original_error = original_error
