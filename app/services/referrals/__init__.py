"""
Referral Service Layer

Idempotent, multi-level referral commission per paid payment.
"""

from app.services.referrals.service import (
    distribute,
    build_referral_chain,
    calculate_credit,
    get_referral_percents,
    CreditResult,
    ReferralCredit,
)

__all__ = [
    "distribute",
    "build_referral_chain",
    "calculate_credit",
    "get_referral_percents",
    "CreditResult",
    "ReferralCredit",
]
