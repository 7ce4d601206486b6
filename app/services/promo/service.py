"""
Promo Redemption Service

Validation order for both promo groups and promo codes:
    1. exists and active
    2. not expired (promo codes only)
    3. global cap (max_activations / max_uses, 0 = unlimited)
    4. per-client cap (one activation per group; max_uses_per_client for codes)

The checks run before any side effect, but they are advisory: the ledger
decides concurrent redemptions (UNIQUE(promo_group_id, client_id) for groups,
the capped conditional insert for codes). A rejected write maps to Conflict.
Rows are written only after the panel grant succeeded.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import database
from app.services.entitlements import calculator
from app.services.entitlements import service as entitlement_service
from app.services.entitlements.service import ApplyResult
from app.services.promo.exceptions import (
    PromoAlreadyUsedError,
    PromoExhaustedError,
    PromoExpiredError,
    PromoNotFoundError,
    PromoServiceError,
    PromoTypeError,
)
from app.core.exceptions import NotFound

logger = logging.getLogger(__name__)

PROMO_TYPE_DISCOUNT = "DISCOUNT"
PROMO_TYPE_FREE_DAYS = "FREE_DAYS"

_CENT = Decimal("0.01")

_REASON_ERRORS = {
    "not_found": PromoNotFoundError,
    "inactive": PromoNotFoundError,
    "expired": PromoExpiredError,
    "wrong_type": PromoTypeError,
    "exhausted": PromoExhaustedError,
    "already_used": PromoAlreadyUsedError,
}


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class PromoValidation:
    ok: bool
    promo: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    def raise_for_reason(self) -> None:
        if self.ok:
            return
        error_cls = _REASON_ERRORS.get(self.reason, PromoServiceError)
        raise error_cls(f"Promo rejected: {self.reason}")


@dataclass
class PromoPreview:
    """What a promo code would give, without redeeming it"""
    code: str
    type: str
    discount_percent: Optional[Decimal]
    discount_fixed: Optional[Decimal]
    duration_days: Optional[int]


# ====================================================================================
# Validation
# ====================================================================================

async def validate_group(code: str, client_id: int) -> PromoValidation:
    group = await database.get_promo_group_by_code(code)
    if group is None:
        return PromoValidation(False, reason="not_found")
    if not group["is_active"]:
        return PromoValidation(False, group, "inactive")

    max_activations = group.get("max_activations") or 0
    if max_activations > 0:
        used = await database.count_promo_group_activations(group["id"])
        if used >= max_activations:
            return PromoValidation(False, group, "exhausted")

    if await database.has_promo_group_activation(group["id"], client_id):
        return PromoValidation(False, group, "already_used")
    return PromoValidation(True, group)


async def validate_code(
    code: str,
    client_id: int,
    now: Optional[datetime] = None,
) -> PromoValidation:
    promo = await database.get_promo_code_by_code(code)
    if promo is None:
        return PromoValidation(False, reason="not_found")
    if not promo["is_active"]:
        return PromoValidation(False, promo, "inactive")

    now = now or datetime.now(timezone.utc)
    if promo.get("expires_at") is not None and promo["expires_at"] < now:
        return PromoValidation(False, promo, "expired")

    max_uses = promo.get("max_uses") or 0
    if max_uses > 0:
        used = await database.count_promo_code_usages(promo["id"])
        if used >= max_uses:
            return PromoValidation(False, promo, "exhausted")

    per_client = promo.get("max_uses_per_client") or 0
    if per_client > 0:
        used_by_client = await database.count_promo_code_usages(promo["id"], client_id)
        if used_by_client >= per_client:
            return PromoValidation(False, promo, "already_used")
    return PromoValidation(True, promo)


def apply_discount(price: Decimal, promo: Dict[str, Any]) -> Decimal:
    """Percent first, then the fixed amount; never below zero; rounded to cents."""
    result = Decimal(price)
    percent = promo.get("discount_percent")
    if percent:
        result = max(Decimal(0), result - result * Decimal(percent) / Decimal(100))
    fixed = promo.get("discount_fixed")
    if fixed:
        result = max(Decimal(0), result - Decimal(fixed))
    return result.quantize(_CENT, rounding=ROUND_HALF_UP)


async def check_promo_code(code: str, client_id: int) -> PromoPreview:
    """Read-only preview of a promo code. Raises the validation error when unusable."""
    validation = await validate_code(code, client_id)
    validation.raise_for_reason()
    promo = validation.promo
    return PromoPreview(
        code=promo["code"],
        type=promo["type"],
        discount_percent=promo.get("discount_percent"),
        discount_fixed=promo.get("discount_fixed"),
        duration_days=promo.get("duration_days"),
    )


async def get_discount_code(code: str, client_id: int) -> Dict[str, Any]:
    """Validated DISCOUNT promo code row for checkout."""
    validation = await validate_code(code, client_id)
    validation.raise_for_reason()
    if validation.promo["type"] != PROMO_TYPE_DISCOUNT:
        raise PromoTypeError(f"Promo code {code} is not a discount code")
    return validation.promo


# ====================================================================================
# Redemption
# ====================================================================================

async def _load_client(client_id: int) -> Dict[str, Any]:
    client = await database.get_client(client_id)
    if client is None:
        raise NotFound(f"Client {client_id} not found")
    return client


async def activate_promo_group(client_id: int, code: str) -> ApplyResult:
    """
    Grant a promo group's entitlement once per client.

    Raises:
        PromoNotFoundError, PromoExhaustedError, PromoAlreadyUsedError
        RemoteServiceUnavailable: panel unreachable, no activation recorded
    """
    validation = await validate_group(code, client_id)
    validation.raise_for_reason()
    group = validation.promo
    client = await _load_client(client_id)

    result = await entitlement_service.apply_entitlement(client, calculator.entitlement_from_row(group))

    activation = await database.create_promo_group_activation(
        group["id"], client_id, group.get("max_activations") or 0
    )
    if activation is None:
        logger.warning(f"PROMO_GROUP_ACTIVATION_REJECTED [group_id={group['id']}, client_id={client_id}]")
        raise PromoAlreadyUsedError(f"Promo {code} is no longer available for client {client_id}")

    logger.info(f"PROMO_GROUP_ACTIVATED [group_id={group['id']}, client_id={client_id}]")
    return result


async def activate_promo_code(client_id: int, code: str) -> ApplyResult:
    """
    Redeem a FREE_DAYS promo code.

    Raises:
        PromoNotFoundError, PromoExpiredError, PromoTypeError,
        PromoExhaustedError, PromoAlreadyUsedError
        RemoteServiceUnavailable: panel unreachable, no usage recorded
    """
    validation = await validate_code(code, client_id)
    validation.raise_for_reason()
    promo = validation.promo
    if promo["type"] != PROMO_TYPE_FREE_DAYS or not promo.get("duration_days"):
        raise PromoTypeError(f"Promo code {code} cannot be activated directly")

    client = await _load_client(client_id)
    result = await entitlement_service.apply_entitlement(client, calculator.entitlement_from_row(promo))

    usage = await database.record_promo_code_usage(
        promo["id"], client_id,
        max_uses=promo.get("max_uses") or 0,
        max_uses_per_client=promo.get("max_uses_per_client") or 0,
    )
    if usage is None:
        logger.warning(f"PROMO_CODE_USAGE_REJECTED [promo_code_id={promo['id']}, client_id={client_id}]")
        raise PromoExhaustedError(f"Promo code {code} is no longer available")

    logger.info(f"PROMO_CODE_ACTIVATED [promo_code_id={promo['id']}, client_id={client_id}]")
    return result
