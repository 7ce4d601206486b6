"""
Payment Settlement Coordinator

Moves a Payment through PENDING → PAID / FAILED and runs the derived side
effects after the PAID flip has committed:

    tariff        → entitlement applier
    proxy tariff  → proxy slots
    extra option  → entitlement applier (extra option)
    top-up        → balance only (credited inside the PAID transaction)

then referral distribution and the client notification.

EXTERNAL DEPENDENCIES POLICY:
- Balance debit and the PAID flip share one transaction; InsufficientFunds is
  raised before any remote call
- A remote failure while applying surfaces to the caller, the payment stays
  PAID and retry_entitlement() re-runs the apply step idempotently
- Referral and notification failures are logged and swallowed
- A PAID payment is never reverted to PENDING
"""

import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

import config
import database
from app.core.exceptions import EngineError
from app.core.structured_logger import log_event
from app.services.entitlements import service as entitlement_service
from app.services.entitlements.exceptions import ApplyInProgressError
from app.services.notifications import service as notification_service
from app.services.payments.exceptions import (
    InvalidPurchaseError,
    PaymentGatewayError,
    PaymentNotFoundError,
    PaymentStateError,
)
from app.services.promo import service as promo_service
from app.services.proxy import service as proxy_service
from app.services.referrals import service as referral_service
from payments import platega, yookassa, yoomoney
from payments.common import GatewayError

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

GATEWAYS = {
    "yookassa": yookassa,
    "platega": platega,
    "yoomoney": yoomoney,
}

EXTRA_OPTION_KINDS = ("traffic", "devices", "servers")


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass(frozen=True)
class Purchase:
    """What the client pays for. Exactly one field is set."""
    tariff_id: Optional[int] = None
    proxy_tariff_id: Optional[int] = None
    extra_option_id: Optional[str] = None
    top_up_amount: Optional[Decimal] = None

    @property
    def is_top_up(self) -> bool:
        return self.top_up_amount is not None


@dataclass
class PricedPurchase:
    amount: Decimal
    currency: str
    description: str
    tariff_id: Optional[int] = None
    proxy_tariff_id: Optional[int] = None
    extra_option: Optional[Dict[str, Any]] = None


@dataclass
class SettlementResult:
    """Outcome of a PAID payment's settlement"""
    payment_id: int
    client_id: int
    transitioned: bool
    top_up: bool
    new_balance: Optional[Decimal] = None
    entitlement: Any = None  # ApplyResult | ProxySlotsResult | None
    referrals: Optional[referral_service.CreditResult] = None


@dataclass
class CheckoutResult:
    payment_id: int
    provider: str
    payment_url: str
    amount: Decimal
    currency: str


# ====================================================================================
# Pricing
# ====================================================================================

def _round_money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidPurchaseError(f"Invalid amount: {value!r}")


async def get_extra_option_products() -> List[Dict[str, Any]]:
    raw = await database.get_setting("extra_option_products", "[]")
    try:
        products = json.loads(raw or "[]")
    except ValueError:
        logger.error("EXTRA_OPTION_PRODUCTS_INVALID_JSON")
        return []
    return [p for p in products if isinstance(p, dict) and p.get("kind") in EXTRA_OPTION_KINDS]


def extra_option_payload(product: Dict[str, Any]) -> Dict[str, Any]:
    """Catalog product → the extra_option stored on the payment."""
    kind = product["kind"]
    traffic_bytes = int(round(float(product.get("traffic_gb") or 0) * 1024 ** 3))
    if kind == "traffic":
        if traffic_bytes <= 0:
            raise InvalidPurchaseError(f"Extra option {product.get('id')} has no traffic")
        return {"kind": "traffic", "traffic_bytes": traffic_bytes}
    if kind == "devices":
        device_count = int(product.get("device_count") or 0)
        if device_count <= 0:
            raise InvalidPurchaseError(f"Extra option {product.get('id')} has no devices")
        return {"kind": "devices", "device_count": device_count}
    squad_uuid = product.get("squad_uuid")
    if not squad_uuid:
        raise InvalidPurchaseError(f"Extra option {product.get('id')} has no squad")
    payload: Dict[str, Any] = {"kind": "servers", "squad_uuid": squad_uuid}
    if traffic_bytes > 0:
        payload["traffic_bytes"] = traffic_bytes
    return payload


async def price_purchase(purchase: Purchase) -> PricedPurchase:
    """
    Resolve the amount and stored purpose of a purchase from the catalog.

    Raises:
        InvalidPurchaseError: not exactly one purpose, unknown or disabled item
    """
    chosen = [
        value for value in (
            purchase.tariff_id, purchase.proxy_tariff_id,
            purchase.extra_option_id, purchase.top_up_amount,
        )
        if value is not None
    ]
    if len(chosen) != 1:
        raise InvalidPurchaseError("Exactly one of tariff, proxy tariff, extra option or top-up is required")

    service_name = await database.get_setting("service_name", "VPN") or "VPN"

    if purchase.tariff_id is not None:
        tariff = await database.get_tariff(purchase.tariff_id)
        if tariff is None or not tariff.get("enabled", True):
            raise InvalidPurchaseError(f"Tariff {purchase.tariff_id} not found")
        return PricedPurchase(
            amount=_round_money(tariff["price"]),
            currency=tariff.get("currency") or "RUB",
            description=f"Тариф {service_name}: {tariff['name']}",
            tariff_id=tariff["id"],
        )

    if purchase.proxy_tariff_id is not None:
        proxy_tariff = await database.get_proxy_tariff(purchase.proxy_tariff_id)
        if proxy_tariff is None or not proxy_tariff.get("enabled", True):
            raise InvalidPurchaseError(f"Proxy tariff {purchase.proxy_tariff_id} not found")
        return PricedPurchase(
            amount=_round_money(proxy_tariff["price"]),
            currency=proxy_tariff.get("currency") or "RUB",
            description=f"Прокси {service_name}: {proxy_tariff['name']}",
            proxy_tariff_id=proxy_tariff["id"],
        )

    if purchase.extra_option_id is not None:
        products = await get_extra_option_products()
        product = next((p for p in products if str(p.get("id")) == str(purchase.extra_option_id)), None)
        if product is None:
            raise InvalidPurchaseError(f"Extra option {purchase.extra_option_id} not found")
        return PricedPurchase(
            amount=_round_money(product.get("price", 0)),
            currency=(product.get("currency") or "RUB").upper(),
            description=f"Опция {service_name}: {product['kind']}",
            extra_option=extra_option_payload(product),
        )

    amount = _round_money(purchase.top_up_amount)
    if amount <= 0:
        raise InvalidPurchaseError("Top-up amount must be positive")
    return PricedPurchase(
        amount=amount,
        currency="RUB",
        description=f"Пополнение баланса {service_name}",
    )


# ====================================================================================
# Post-commit side effects
# ====================================================================================

async def _dispatch_entitlement(payment: Dict[str, Any]) -> Any:
    if payment.get("tariff_id") is not None:
        return await entitlement_service.apply_tariff_by_payment(payment["id"])
    if payment.get("proxy_tariff_id") is not None:
        return await proxy_service.create_slots_by_payment(payment["id"])
    if payment.get("extra_option") is not None:
        return await entitlement_service.apply_extra_option_by_payment(payment["id"])
    return None


async def _distribute_referrals(payment_id: int) -> Optional[referral_service.CreditResult]:
    try:
        result = await referral_service.distribute(payment_id)
    except Exception as e:
        logger.exception(f"REFERRAL_DISTRIBUTION_FAILED [payment_id={payment_id}, error={e}]")
        return None

    if result.created:
        for credit in result.credits:
            await notification_service.notify_referral_credit(credit.referrer_id, credit.level, credit.amount)
    return result


async def _settle(payment: Dict[str, Any], transitioned: bool) -> SettlementResult:
    """
    Side effects of a committed PAID payment. Safe to run again for the same payment.

    Raises:
        EngineError from the apply step, after referrals ran
    """
    payment_id = payment["id"]
    top_up = database.is_top_up(payment)
    result = SettlementResult(
        payment_id=payment_id,
        client_id=payment["client_id"],
        transitioned=transitioned,
        top_up=top_up,
        new_balance=payment.get("new_balance"),
    )

    apply_error: Optional[EngineError] = None
    if not top_up:
        try:
            result.entitlement = await _dispatch_entitlement(payment)
        except ApplyInProgressError:
            logger.info(f"SETTLEMENT_APPLY_IN_PROGRESS [payment_id={payment_id}]")
        except EngineError as e:
            apply_error = e
            logger.error(
                f"SETTLEMENT_APPLY_FAILED [payment_id={payment_id}, client_id={payment['client_id']}, "
                f"error_type={type(e).__name__}, error={e}]"
            )

    result.referrals = await _distribute_referrals(payment_id)

    if apply_error is not None:
        if transitioned:
            await notification_service.notify_entitlement_delayed(payment["client_id"])
        raise apply_error

    if transitioned:
        await notification_service.notify_payment_paid(payment)
    return result


# ====================================================================================
# Operations
# ====================================================================================

async def mark_paid(
    payment_id: int,
    external_id: Optional[str] = None,
    source: str = "admin",
) -> SettlementResult:
    """
    Gateway confirmation or admin action: PENDING → PAID, then settle.

    Re-invoking on a PAID payment credits nothing again; the apply step runs only
    while the payment is unapplied and referral distribution is idempotent.

    Raises:
        PaymentNotFoundError: unknown payment
        PaymentStateError: the payment is FAILED
        RemoteServiceUnavailable: apply failed, the payment stays PAID
    """
    payment, transitioned = await database.mark_payment_paid(payment_id, external_id=external_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    if payment["status"] == database.PAYMENT_FAILED:
        raise PaymentStateError(f"Payment {payment_id} is FAILED and cannot be paid")

    log_event(
        logger,
        component="payments",
        operation="mark_paid",
        outcome="success" if transitioned else "already_paid",
        reason=f"source={source}, payment_id={payment_id}",
    )
    return await _settle(payment, transitioned)


async def mark_paid_by_external_id(provider: str, external_id: str, source: str = "webhook") -> SettlementResult:
    payment = await database.get_payment_by_external_id(provider, external_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {provider}:{external_id} not found")
    return await mark_paid(payment["id"], external_id=external_id, source=source)


async def mark_failed(payment_id: int) -> Dict[str, Any]:
    """
    PENDING → FAILED. Repeating it on a FAILED payment is a no-op.

    Raises:
        PaymentNotFoundError, PaymentStateError (payment is PAID)
    """
    payment = await database.mark_payment_failed(payment_id)
    if payment is not None:
        return payment

    payment = await database.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    if payment["status"] == database.PAYMENT_PAID:
        raise PaymentStateError(f"Payment {payment_id} is PAID and cannot fail")
    return payment


async def pay_from_balance(
    client_id: int,
    purchase: Purchase,
    promo_code: Optional[str] = None,
) -> SettlementResult:
    """
    Buy with the internal balance: debit and PAID payment in one transaction, then settle.

    Raises:
        InvalidPurchaseError: top-up from balance or unknown item
        NotFound / ValidationError / Conflict: promo code rejected
        InsufficientFunds: nothing debited, no remote call made
        RemoteServiceUnavailable: apply failed, the debit stays and the payment is PAID
    """
    if purchase.is_top_up:
        raise InvalidPurchaseError("Balance cannot be topped up from balance")

    priced = await price_purchase(purchase)
    promo = None
    amount = priced.amount
    if promo_code:
        promo = await promo_service.get_discount_code(promo_code, client_id)
        amount = promo_service.apply_discount(amount, promo)

    payment = await database.create_balance_payment(
        client_id,
        amount,
        currency=priced.currency,
        tariff_id=priced.tariff_id,
        proxy_tariff_id=priced.proxy_tariff_id,
        extra_option=priced.extra_option,
        promo_code=promo,
        metadata={"promo_code": promo["code"]} if promo else None,
    )
    return await _settle(payment, transitioned=True)


def _return_url(public_app_url: Optional[str], provider: str) -> str:
    base = (public_app_url or config.PUBLIC_APP_URL or "").rstrip("/")
    return f"{base}/cabinet?{provider}=success" if base else ""


async def create_checkout(
    client_id: int,
    purchase: Purchase,
    provider: str,
    promo_code: Optional[str] = None,
) -> CheckoutResult:
    """
    Create a PENDING payment and the gateway transaction that will pay it.

    A gateway failure marks the payment FAILED.

    Raises:
        InvalidPurchaseError, PaymentNotFoundError (client), PaymentGatewayError
    """
    gateway = GATEWAYS.get(provider)
    if gateway is None:
        raise InvalidPurchaseError(f"Unknown payment provider: {provider}")
    if not gateway.is_enabled():
        raise PaymentGatewayError(f"Payment provider {provider} is not configured")

    client = await database.get_client(client_id)
    if client is None:
        raise PaymentNotFoundError(f"Client {client_id} not found")

    priced = await price_purchase(purchase)
    if provider == "yookassa" and priced.currency != "RUB":
        raise InvalidPurchaseError("YooKassa accepts RUB only")

    promo = None
    amount = priced.amount
    if promo_code:
        if purchase.is_top_up:
            raise InvalidPurchaseError("Promo codes do not apply to top-ups")
        promo = await promo_service.get_discount_code(promo_code, client_id)
        amount = promo_service.apply_discount(amount, promo)

    payment = await database.create_payment(
        client_id,
        amount,
        provider,
        currency=priced.currency,
        tariff_id=priced.tariff_id,
        proxy_tariff_id=priced.proxy_tariff_id,
        extra_option=priced.extra_option,
        promo_code_id=promo["id"] if promo else None,
        metadata={"promo_code": promo["code"]} if promo else None,
    )

    public_app_url = await database.get_setting("public_app_url")
    try:
        transaction = await gateway.create_transaction(
            payment,
            description=f"{priced.description} #{payment['id']}",
            return_url=_return_url(public_app_url, provider),
            customer_email=client.get("email"),
        )
    except (GatewayError, httpx.HTTPError) as e:
        await database.mark_payment_failed(payment["id"])
        logger.error(
            f"CHECKOUT_GATEWAY_FAILED [payment_id={payment['id']}, provider={provider}, "
            f"error_type={type(e).__name__}, error={e}]"
        )
        raise PaymentGatewayError(f"{provider} could not create the payment") from e

    if transaction.external_id:
        await database.set_payment_external_id(payment["id"], transaction.external_id)

    logger.info(
        f"CHECKOUT_CREATED [payment_id={payment['id']}, client_id={client_id}, provider={provider}, "
        f"amount={amount}, currency={priced.currency}]"
    )
    return CheckoutResult(
        payment_id=payment["id"],
        provider=provider,
        payment_url=transaction.payment_url,
        amount=amount,
        currency=priced.currency,
    )


async def retry_entitlement(payment_id: int) -> Any:
    """
    Operator re-run of the apply step for a PAID payment.

    Already applied payments come back with already_applied=True and nothing
    is written; the balance is never touched.

    Raises:
        PaymentNotFoundError, PaymentStateError (not PAID),
        InvalidPurchaseError (top-up: nothing to apply),
        RemoteServiceUnavailable (apply failed again)
    """
    payment = await database.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    if payment["status"] != database.PAYMENT_PAID:
        raise PaymentStateError(f"Payment {payment_id} is {payment['status']}")
    if database.is_top_up(payment):
        raise InvalidPurchaseError(f"Payment {payment_id} is a top-up; nothing to apply")

    result = await _dispatch_entitlement(payment)
    logger.info(f"ENTITLEMENT_RETRY_DONE [payment_id={payment_id}]")
    return result


async def retry_unapplied_entitlements(limit: int = 100) -> Dict[str, int]:
    """Retry every PAID-but-unapplied payment once; failures are counted, not raised."""
    payments = await database.get_unapplied_paid_payments(limit)
    applied = 0
    failed = 0
    for payment in payments:
        try:
            await retry_entitlement(payment["id"])
            applied += 1
        except EngineError as e:
            failed += 1
            logger.warning(
                f"ENTITLEMENT_RETRY_FAILED [payment_id={payment['id']}, "
                f"error_type={type(e).__name__}, error={e}]"
            )
    logger.info(f"ENTITLEMENT_RETRY_BATCH [total={len(payments)}, applied={applied}, failed={failed}]")
    return {"total": len(payments), "applied": applied, "failed": failed}


async def redistribute_referrals(payment_id: int) -> referral_service.CreditResult:
    """Operator re-run of referral distribution. Errors propagate."""
    result = await referral_service.distribute(payment_id)
    if result.skipped_reason == "payment_not_found":
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    return result
