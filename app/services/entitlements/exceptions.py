"""
Entitlement Service Domain Exceptions
"""

from app.core.exceptions import Conflict, EngineError, NotFound, ValidationError


class EntitlementServiceError(EngineError):
    """Base exception for entitlement service errors"""
    pass


class EntitlementNotApplicableError(EntitlementServiceError, ValidationError):
    """Payment has no entitlement of the requested kind, or the client cannot receive it"""
    pass


class EntitlementSourceNotFoundError(EntitlementServiceError, NotFound):
    """Payment, client or tariff referenced by the apply step is missing"""
    pass


class PaymentNotPaidError(EntitlementServiceError, Conflict):
    """Apply requested for a payment that is not PAID"""
    pass


class ApplyInProgressError(EntitlementServiceError, Conflict):
    """Another worker holds a fresh apply claim for the payment"""
    pass
