"""
Entitlement Applier

Writes a computed grant to the VPN panel and records the outcome locally.

Order of effects for every path:
    1. resolve the panel subscriber (may create one)
    2. one full-replace update: expiry, traffic limit, device limit, squad set
    3. persist the remote id on first resolution
    4. caller commits its dependent flag (trial_used, promo row, applied marker)

A failure in 1 or 2 raises RemoteServiceUnavailable and leaves local state as is.
Squads are assigned per subscriber only; the panel's bulk squad endpoint is never used.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import database
from app.services import vpn_client
from app.services.entitlements import calculator
from app.services.entitlements.calculator import CurrentState, Entitlement, EntitlementGrant
from app.services.entitlements.exceptions import (
    ApplyInProgressError,
    EntitlementNotApplicableError,
    EntitlementSourceNotFoundError,
    PaymentNotPaidError,
)
from app.services.identity import service as identity_service
from app.services.vpn_client import RemoteSubscriber

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class ApplyResult:
    """Outcome of one apply step"""
    client_id: int
    remote_id: Optional[str]
    grant: Optional[EntitlementGrant]
    already_applied: bool = False


def _current_state(subscriber: RemoteSubscriber) -> CurrentState:
    return CurrentState(
        expire_at=subscriber.expire_at,
        traffic_limit_bytes=subscriber.traffic_limit_bytes,
        device_limit=subscriber.device_limit,
        squad_uuids=list(subscriber.squad_uuids),
    )


async def _write_grant(uuid: str, grant: EntitlementGrant) -> None:
    await vpn_client.update_subscriber(
        uuid,
        expire_at=grant.expire_at,
        traffic_limit_bytes=grant.traffic_limit_bytes,
        device_limit=grant.device_limit,
        squad_uuids=grant.squad_uuids,
    )


async def _persist_remote_id(client: Dict[str, Any], remote_id: str) -> None:
    stored = client.get("remote_subscriber_id")
    if stored == remote_id:
        return
    await database.set_client_remote_id(client["id"], remote_id, expected_current=stored)
    client["remote_subscriber_id"] = remote_id


# ====================================================================================
# Direct apply (trial, promo, tariff)
# ====================================================================================

async def apply_entitlement(
    client: Dict[str, Any],
    entitlement: Entitlement,
    now: Optional[datetime] = None,
) -> ApplyResult:
    """
    Grant `entitlement` to `client` on the panel.

    Raises:
        RemoteServiceUnavailable: panel unreachable; nothing persisted
    """
    now = now or datetime.now(timezone.utc)
    identity = await identity_service.resolve(client, now=now)
    subscriber = identity.subscriber

    grant = calculator.build_grant(_current_state(subscriber), entitlement, now)
    await _write_grant(subscriber.uuid, grant)
    await _persist_remote_id(client, subscriber.uuid)

    logger.info(
        f"ENTITLEMENT_APPLIED [client_id={client['id']}, remote_id={subscriber.uuid}, "
        f"expire_at={grant.expire_at.isoformat()}, squads={len(grant.squad_uuids)}, "
        f"identity_source={identity.source}]"
    )
    return ApplyResult(client_id=client["id"], remote_id=subscriber.uuid, grant=grant)


# ====================================================================================
# Payment-driven apply (idempotent per payment)
# ====================================================================================

async def load_paid_payment(payment_id: int) -> Dict[str, Any]:
    payment = await database.get_payment(payment_id)
    if payment is None:
        raise EntitlementSourceNotFoundError(f"Payment {payment_id} not found")
    if payment["status"] != database.PAYMENT_PAID:
        raise PaymentNotPaidError(f"Payment {payment_id} is {payment['status']}")
    return payment


async def run_once_per_payment(
    payment: Dict[str, Any],
    step: Callable[[], Awaitable[T]],
) -> Optional[T]:
    """
    Run `step` at most once to completion for a PAID payment.

    Returns None when the payment was already applied. The claim is released when
    `step` fails so an operator retry can take it again.

    Raises:
        ApplyInProgressError: another worker holds a fresh claim
    """
    if payment.get("entitlement_applied_at") is not None:
        return None
    if not await database.claim_entitlement_apply(payment["id"]):
        refreshed = await database.get_payment(payment["id"])
        if refreshed and refreshed.get("entitlement_applied_at") is not None:
            return None
        raise ApplyInProgressError(f"Payment {payment['id']} apply is already in progress")

    try:
        result = await step()
    except Exception:
        await database.release_entitlement_claim(payment["id"])
        raise
    await database.mark_entitlement_applied(payment["id"])
    return result


async def _load_client(client_id: int) -> Dict[str, Any]:
    client = await database.get_client(client_id)
    if client is None:
        raise EntitlementSourceNotFoundError(f"Client {client_id} not found")
    return client


async def apply_tariff_by_payment(payment_id: int, now: Optional[datetime] = None) -> ApplyResult:
    """Grant the paid tariff. Re-running against an applied payment changes nothing."""
    payment = await load_paid_payment(payment_id)
    if payment.get("tariff_id") is None:
        raise EntitlementNotApplicableError(f"Payment {payment_id} is not a tariff payment")

    tariff = await database.get_tariff(payment["tariff_id"])
    if tariff is None:
        raise EntitlementSourceNotFoundError(f"Tariff {payment['tariff_id']} not found")
    client = await _load_client(payment["client_id"])

    result = await run_once_per_payment(
        payment,
        lambda: apply_entitlement(client, calculator.entitlement_from_row(tariff), now=now),
    )
    if result is None:
        logger.info(f"TARIFF_ALREADY_APPLIED [payment_id={payment_id}]")
        return ApplyResult(
            client_id=client["id"],
            remote_id=client.get("remote_subscriber_id"),
            grant=None,
            already_applied=True,
        )
    return result


async def apply_extra_option_by_payment(payment_id: int, now: Optional[datetime] = None) -> ApplyResult:
    """
    Add a purchased option (traffic, devices, server squad) to the client's subscriber.

    The client must already be linked to a panel subscriber.
    """
    payment = await load_paid_payment(payment_id)
    option = calculator.extra_option_from_metadata(payment.get("extra_option"))
    if option is None:
        raise EntitlementNotApplicableError(f"Payment {payment_id} is not an extra option purchase")

    client = await _load_client(payment["client_id"])
    remote_id = client.get("remote_subscriber_id")
    if not remote_id:
        raise EntitlementNotApplicableError(
            f"Client {client['id']} has no VPN subscription; buy a tariff first"
        )

    async def _apply() -> ApplyResult:
        subscriber = await vpn_client.get_subscriber(remote_id)
        if subscriber is None:
            raise EntitlementSourceNotFoundError(f"Panel subscriber {remote_id} not found")
        grant = calculator.extra_option_grant(
            _current_state(subscriber), option, now or datetime.now(timezone.utc)
        )
        await _write_grant(remote_id, grant)
        logger.info(
            f"EXTRA_OPTION_APPLIED [payment_id={payment_id}, client_id={client['id']}, kind={option.kind}]"
        )
        return ApplyResult(client_id=client["id"], remote_id=remote_id, grant=grant)

    result = await run_once_per_payment(payment, _apply)
    if result is None:
        logger.info(f"EXTRA_OPTION_ALREADY_APPLIED [payment_id={payment_id}]")
        return ApplyResult(client_id=client["id"], remote_id=remote_id, grant=None, already_applied=True)
    return result
