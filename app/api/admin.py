"""
Operator endpoints. Every route requires the X-Admin-Key header.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

import auto_broadcast_scheduler
import database
from app.api.auth import require_admin
from app.api.schemas import CronRequest, MarkPaidRequest
from app.core import session_store
from app.core.exceptions import NotFound, ValidationError
from app.services import vpn_client
from app.services import payments as payment_service
from app.services.auto_broadcast import service as auto_broadcast_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


# ====================================================================================
# Payments
# ====================================================================================

@router.post("/payments/{payment_id}/paid")
async def mark_payment_paid(payment_id: int, body: Optional[MarkPaidRequest] = None):
    return await payment_service.mark_paid(
        payment_id,
        external_id=body.external_id if body else None,
        source="admin",
    )


@router.post("/payments/{payment_id}/failed")
async def mark_payment_failed(payment_id: int):
    payment = await payment_service.mark_failed(payment_id)
    return {"payment_id": payment["id"], "status": payment["status"]}


@router.post("/payments/{payment_id}/retry-entitlement")
async def retry_entitlement(payment_id: int):
    return await payment_service.retry_entitlement(payment_id)


@router.post("/payments/retry-unapplied")
async def retry_unapplied(limit: int = Query(default=100, ge=1, le=1000)):
    return await payment_service.retry_unapplied_entitlements(limit)


@router.post("/payments/{payment_id}/referrals")
async def redistribute_referrals(payment_id: int):
    return await payment_service.redistribute_referrals(payment_id)


# ====================================================================================
# Auto broadcast
# ====================================================================================

@router.post("/auto-broadcast/rules/{rule_id}/run")
async def run_rule(rule_id: int):
    return await auto_broadcast_service.run_rule(rule_id)


@router.post("/auto-broadcast/run")
async def run_all_rules():
    return await auto_broadcast_service.run_all_rules()


@router.get("/auto-broadcast/rules/{rule_id}/eligible")
async def eligible_count(rule_id: int):
    client_ids = await auto_broadcast_service.get_eligible_client_ids(rule_id)
    return {"rule_id": rule_id, "count": len(client_ids)}


@router.post("/auto-broadcast/scheduler/restart")
async def restart_scheduler():
    cron = await auto_broadcast_scheduler.restart()
    return {"running": auto_broadcast_scheduler.is_running(), "cron": cron}


@router.put("/auto-broadcast/scheduler/cron")
async def set_scheduler_cron(body: CronRequest):
    expression = body.cron.strip()
    _, effective = auto_broadcast_scheduler.parse_cron(expression)
    if effective != expression:
        raise ValidationError(f"Invalid crontab expression: {expression!r}")
    await database.set_setting("auto_broadcast_cron", expression)
    logger.info(f"AUTO_BROADCAST_CRON_UPDATED [cron={expression}]")
    cron = await auto_broadcast_scheduler.restart()
    return {"running": auto_broadcast_scheduler.is_running(), "cron": cron}


# ====================================================================================
# Clients
# ====================================================================================

@router.put("/clients/{client_id}/blocked")
async def set_client_blocked(client_id: int, blocked: bool = Query(default=True)):
    if not await database.set_client_blocked(client_id, blocked):
        raise NotFound(f"Client {client_id} not found")
    return {"client_id": client_id, "blocked": blocked}


@router.post("/clients/{client_id}/revoke")
async def revoke_subscription(client_id: int):
    """Rotate the client's subscription link on the panel. Expiry and limits are kept."""
    client = await database.get_client(client_id)
    if client is None:
        raise NotFound(f"Client {client_id} not found")
    remote_id = client.get("remote_subscriber_id")
    if not remote_id:
        raise NotFound(f"Client {client_id} has no VPN subscription")
    await vpn_client.revoke_subscription(remote_id)
    logger.info(f"SUBSCRIPTION_REVOKED [client_id={client_id}, remote_id={remote_id}]")
    return {"client_id": client_id, "remote_id": remote_id}


# ====================================================================================
# Sessions
# ====================================================================================

@router.post("/clients/{client_id}/sessions")
async def issue_session(client_id: int):
    """Token for a client authenticated elsewhere (bot, cabinet login)."""
    token = await session_store.create_session(client_id)
    return {"client_id": client_id, "token": token}
