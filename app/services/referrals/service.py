"""
Referral Reward Distributor

Pays up to three levels of commission for a PAID payment.

Rules:
- level 1: payer's referrer, percent = payer.referral_percent, with NULL or 0
  meaning default_referral_percent
- level 2: level-1 referrer's referrer, referral_percent_level_2
- level 3: level-2 referrer's referrer, referral_percent_level_3
- credit = round(amount * percent / 100, 2); zero credits are skipped
- the chain stops at the first missing referrer or when it loops back
- idempotent per payment: existing credits are returned unchanged, the amount is
  never re-validated on a re-run
- nothing for non-PAID payments or top-ups funded from balance
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import database

logger = logging.getLogger(__name__)

MAX_LEVELS = 3

DEFAULT_PERCENTS = {
    "default_referral_percent": Decimal("30"),
    "referral_percent_level_2": Decimal("10"),
    "referral_percent_level_3": Decimal("10"),
}

_CENT = Decimal("0.01")


@dataclass
class ReferralCredit:
    referrer_id: int
    level: int
    amount: Decimal


@dataclass
class CreditResult:
    """Credits attached to a payment after distribution"""
    payment_id: int
    credits: List[ReferralCredit] = field(default_factory=list)
    created: bool = False
    skipped_reason: Optional[str] = None


def calculate_credit(amount: Decimal, percent: Decimal) -> Decimal:
    return (Decimal(amount) * Decimal(percent) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


def _to_percent(value: Any, fallback: Decimal) -> Decimal:
    if value is None or value == "":
        return fallback
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"REFERRAL_PERCENT_INVALID [value={value!r}, fallback={fallback}]")
        return fallback


async def get_referral_percents() -> Dict[str, Decimal]:
    config = await database.get_system_config(DEFAULT_PERCENTS.keys())
    return {key: _to_percent(config.get(key), default) for key, default in DEFAULT_PERCENTS.items()}


async def build_referral_chain(payer: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Referrers of `payer`, nearest first, at most three, without repeats."""
    chain: List[Dict[str, Any]] = []
    seen = {payer["id"]}
    referrer_id = payer.get("referrer_id")
    while referrer_id is not None and len(chain) < MAX_LEVELS:
        if referrer_id in seen:
            logger.warning(f"REFERRAL_CHAIN_LOOP [payer_id={payer['id']}, referrer_id={referrer_id}]")
            break
        referrer = await database.get_client(referrer_id)
        if referrer is None:
            break
        chain.append(referrer)
        seen.add(referrer_id)
        referrer_id = referrer.get("referrer_id")
    return chain


def _credits_from_rows(rows: List[Dict[str, Any]]) -> List[ReferralCredit]:
    return [ReferralCredit(r["referrer_id"], r["level"], r["amount"]) for r in rows]


async def distribute(payment_id: int) -> CreditResult:
    """
    Credit referrers for a PAID payment (idempotent).

    Returns:
        CreditResult with the credits that exist for the payment afterwards
    """
    existing = await database.get_referral_credits(payment_id)
    if existing:
        return CreditResult(payment_id, _credits_from_rows(existing), created=False)

    payment = await database.get_payment(payment_id)
    if payment is None:
        return CreditResult(payment_id, skipped_reason="payment_not_found")
    if payment["status"] != database.PAYMENT_PAID:
        return CreditResult(payment_id, skipped_reason="payment_not_paid")
    if payment["provider"] == "balance" and database.is_top_up(payment):
        return CreditResult(payment_id, skipped_reason="balance_funded_top_up")

    payer = await database.get_client(payment["client_id"])
    if payer is None:
        return CreditResult(payment_id, skipped_reason="client_not_found")

    chain = await build_referral_chain(payer)
    if not chain:
        return CreditResult(payment_id, skipped_reason="no_referrer")

    percents = await get_referral_percents()
    # a stored 0 is "no override", same as NULL
    level_percents = [
        _to_percent(payer.get("referral_percent"), percents["default_referral_percent"])
        or percents["default_referral_percent"],
        percents["referral_percent_level_2"],
        percents["referral_percent_level_3"],
    ]

    planned: List[Tuple[int, int, Decimal]] = []
    for level, (referrer, percent) in enumerate(zip(chain, level_percents), start=1):
        credit = calculate_credit(payment["amount"], percent)
        if credit > 0:
            planned.append((referrer["id"], level, credit))

    if not planned:
        return CreditResult(payment_id, skipped_reason="zero_credit")

    rows, created = await database.record_referral_credits(payment_id, planned)
    if created:
        logger.info(
            f"REFERRAL_CREDITS_RECORDED [payment_id={payment_id}, payer_id={payer['id']}, "
            f"levels={len(rows)}, total={sum(r['amount'] for r in rows)}]"
        )
    return CreditResult(payment_id, _credits_from_rows(rows), created=created)
