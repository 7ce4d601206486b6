"""
Payment Service Domain Exceptions

All exceptions raised by the settlement coordinator. Each one also derives
from the matching core category so callers can map it generically.
"""

from app.core.exceptions import (
    Conflict,
    EngineError,
    NotFound,
    RemoteServiceUnavailable,
    ValidationError,
)


class PaymentServiceError(EngineError):
    """Base exception for payment service errors"""
    pass


class PaymentNotFoundError(PaymentServiceError, NotFound):
    """Payment (or its client) does not exist"""
    pass


class PaymentStateError(PaymentServiceError, Conflict):
    """Requested transition is not allowed from the payment's current status"""
    pass


class InvalidPurchaseError(PaymentServiceError, ValidationError):
    """Purchase is malformed, unknown or not allowed for the chosen funding"""
    pass


class PaymentGatewayError(PaymentServiceError, RemoteServiceUnavailable):
    """Gateway is not configured or failed to create the transaction"""
    pass
