"""
Promo Service Layer

Validation and redemption of promo groups and promo codes.
"""

from app.services.promo.service import (
    validate_group,
    validate_code,
    apply_discount,
    check_promo_code,
    get_discount_code,
    activate_promo_group,
    activate_promo_code,
    PromoValidation,
    PromoPreview,
    PROMO_TYPE_DISCOUNT,
    PROMO_TYPE_FREE_DAYS,
)

from app.services.promo.exceptions import (
    PromoServiceError,
    PromoNotFoundError,
    PromoExpiredError,
    PromoTypeError,
    PromoExhaustedError,
    PromoAlreadyUsedError,
)

__all__ = [
    "validate_group",
    "validate_code",
    "apply_discount",
    "check_promo_code",
    "get_discount_code",
    "activate_promo_group",
    "activate_promo_code",
    "PromoValidation",
    "PromoPreview",
    "PROMO_TYPE_DISCOUNT",
    "PROMO_TYPE_FREE_DAYS",
    "PromoServiceError",
    "PromoNotFoundError",
    "PromoExpiredError",
    "PromoTypeError",
    "PromoExhaustedError",
    "PromoAlreadyUsedError",
]
