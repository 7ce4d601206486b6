"""
Entitlement Service Layer

Grant arithmetic (calculator) and its application on the VPN panel (service).
"""

from app.services.entitlements.calculator import (
    Entitlement,
    EntitlementGrant,
    CurrentState,
    ExtraOption,
    next_expire_at,
    merge_squads,
    build_grant,
    extra_option_grant,
)

from app.services.entitlements.service import (
    apply_entitlement,
    apply_tariff_by_payment,
    apply_extra_option_by_payment,
    ApplyResult,
)

from app.services.entitlements.exceptions import (
    EntitlementServiceError,
    EntitlementNotApplicableError,
    EntitlementSourceNotFoundError,
    PaymentNotPaidError,
    ApplyInProgressError,
)

__all__ = [
    "Entitlement",
    "EntitlementGrant",
    "CurrentState",
    "ExtraOption",
    "next_expire_at",
    "merge_squads",
    "build_grant",
    "extra_option_grant",
    "apply_entitlement",
    "apply_tariff_by_payment",
    "apply_extra_option_by_payment",
    "ApplyResult",
    "EntitlementServiceError",
    "EntitlementNotApplicableError",
    "EntitlementSourceNotFoundError",
    "PaymentNotPaidError",
    "ApplyInProgressError",
]
