"""
Payment Settlement Service Layer

Checkout, balance purchases and the PENDING → PAID / FAILED transitions with
their post-commit side effects (entitlement, referrals, notifications).
"""

from app.services.payments.service import (
    Purchase,
    PricedPurchase,
    SettlementResult,
    CheckoutResult,
    price_purchase,
    mark_paid,
    mark_paid_by_external_id,
    mark_failed,
    pay_from_balance,
    create_checkout,
    retry_entitlement,
    retry_unapplied_entitlements,
    redistribute_referrals,
)

from app.services.payments.exceptions import (
    PaymentServiceError,
    PaymentNotFoundError,
    PaymentStateError,
    InvalidPurchaseError,
    PaymentGatewayError,
)

__all__ = [
    "Purchase",
    "PricedPurchase",
    "SettlementResult",
    "CheckoutResult",
    "price_purchase",
    "mark_paid",
    "mark_paid_by_external_id",
    "mark_failed",
    "pay_from_balance",
    "create_checkout",
    "retry_entitlement",
    "retry_unapplied_entitlements",
    "redistribute_referrals",
    "PaymentServiceError",
    "PaymentNotFoundError",
    "PaymentStateError",
    "InvalidPurchaseError",
    "PaymentGatewayError",
]
