"""
Error taxonomy for the fulfillment core.

Every domain failure derives from FulfillmentError and carries a stable
machine-readable code plus structured context for logging. The API layer
maps these to HTTP responses; services never raise HTTPException.
"""

from typing import Any, Optional


class FulfillmentError(Exception):
    """Base exception for fulfillment errors."""

    code = "FULFILLMENT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context


class InsufficientStock(FulfillmentError):
    """Raised when a reservation asks for more units than the stock row holds."""

    code = "INSUFFICIENT_STOCK"


class InvalidTransition(FulfillmentError):
    """Raised when an order event is not allowed from the order's current state."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        event: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.current_state = current_state
        self.event = event


class QRMismatch(FulfillmentError):
    """Raised when a scanned code does not match the order's handoff token."""

    code = "QR_MISMATCH"


class DriverUnavailable(FulfillmentError):
    """Raised when no eligible driver could be claimed for an order."""

    code = "DRIVER_UNAVAILABLE"


class AlreadyCleared(FulfillmentError):
    """Raised when clearing a ledger entry that is no longer pending."""

    code = "ALREADY_CLEARED"


class MirrorSyncFailure(FulfillmentError):
    """Raised by mirror adapters when the external sheet cannot be reached."""

    code = "MIRROR_SYNC_FAILURE"


class OrderNotFound(FulfillmentError):
    code = "ORDER_NOT_FOUND"


class EntryNotFound(FulfillmentError):
    code = "ENTRY_NOT_FOUND"


class ResourceNotFound(FulfillmentError):
    """Raised for missing warehouses, cylinders and parties."""

    code = "RESOURCE_NOT_FOUND"


class PaymentDeclined(FulfillmentError):
    code = "PAYMENT_DECLINED"


class RatingExists(FulfillmentError):
    code = "RATING_EXISTS"


class CylinderVerificationError(FulfillmentError):
    """Raised when a driver's cylinder verification does not cover the order."""

    code = "CYLINDER_VERIFICATION_FAILED"


class InvalidOrderRequest(FulfillmentError):
    code = "INVALID_ORDER_REQUEST"


class Forbidden(FulfillmentError):
    """Raised when the caller is not a participant allowed to act on a resource."""

    code = "FORBIDDEN"
