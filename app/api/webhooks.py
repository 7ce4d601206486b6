"""
Payment gateway webhooks.

Each webhook is reduced to a single mark_paid / mark_failed call on the local
payment. Unknown payments and non-final statuses are acknowledged with 200 so
the gateway stops retrying; a failed apply step answers 503 so it retries
(mark_paid is idempotent).

- YooKassa: the notification body is not trusted, the payment object is
  re-read from the API by id.
- Platega: authenticated by the X-MerchantId / X-Secret headers.
- YooMoney: form-encoded notification checked against its sha1_hash; the
  label carries the local payment id.
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import APIRouter, Header, HTTPException, Request

import database
from app.services import payments as payment_service
from payments import platega, yookassa, yoomoney
from payments.common import GatewayError, GatewayInvalidResponseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return body


async def _find_payment(provider: str, external_id: Optional[str], local_id: Optional[int]) -> Optional[dict]:
    payment = None
    if external_id:
        payment = await database.get_payment_by_external_id(provider, external_id)
    if payment is None and local_id is not None:
        payment = await database.get_payment(local_id)
        if payment is not None and payment["provider"] != provider:
            logger.warning(
                f"WEBHOOK_PROVIDER_MISMATCH [provider={provider}, payment_id={local_id}, "
                f"payment_provider={payment['provider']}]"
            )
            payment = None
    return payment


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _apply_status(provider: str, payment: dict, status: str, external_id: Optional[str]) -> Dict[str, Any]:
    if status == "paid":
        result = await payment_service.mark_paid(payment["id"], external_id=external_id, source=provider)
        return {"ok": True, "payment_id": payment["id"], "status": "PAID", "transitioned": result.transitioned}
    if status == "failed":
        if payment["status"] == database.PAYMENT_PAID:
            logger.warning(f"WEBHOOK_FAILED_AFTER_PAID [provider={provider}, payment_id={payment['id']}]")
            return {"ok": True, "payment_id": payment["id"], "status": "PAID"}
        failed = await payment_service.mark_failed(payment["id"])
        return {"ok": True, "payment_id": payment["id"], "status": failed["status"]}
    return {"ok": True, "payment_id": payment["id"], "status": payment["status"]}


@router.post("/yookassa")
async def yookassa_webhook(request: Request):
    body = await _json_body(request)
    notified = body.get("object") or {}
    external_id = notified.get("id")
    if not external_id:
        raise HTTPException(status_code=400, detail="Missing payment id")

    # Source of truth is the API, not the notification
    try:
        payment_object = await yookassa.get_transaction(external_id)
    except GatewayInvalidResponseError:
        logger.warning(f"YOOKASSA_WEBHOOK_UNKNOWN_TRANSACTION [external_id={external_id}]")
        return {"ok": True, "ignored": "unknown_transaction"}
    except (GatewayError, httpx.HTTPError) as e:
        logger.error(f"YOOKASSA_WEBHOOK_VERIFY_FAILED [external_id={external_id}, error={e}]")
        raise HTTPException(status_code=503, detail="YooKassa unavailable")
    raw_status = payment_object.get("status")
    status = {
        yookassa.STATUS_SUCCEEDED: "paid",
        yookassa.STATUS_CANCELED: "failed",
    }.get(raw_status, "pending")

    payment = await _find_payment("yookassa", external_id, yookassa.local_payment_id(payment_object))
    if payment is None:
        logger.warning(f"YOOKASSA_WEBHOOK_UNKNOWN_PAYMENT [external_id={external_id}]")
        return {"ok": True, "ignored": "unknown_payment"}

    logger.info(
        f"YOOKASSA_WEBHOOK [payment_id={payment['id']}, external_id={external_id}, "
        f"event={body.get('event')}, status={raw_status}]"
    )
    return await _apply_status("yookassa", payment, status, external_id)


@router.post("/platega")
async def platega_webhook(
    request: Request,
    x_merchantid: Optional[str] = Header(default=None, alias="X-MerchantId"),
    x_secret: Optional[str] = Header(default=None, alias="X-Secret"),
):
    if not platega.verify_webhook_headers(x_merchantid, x_secret):
        logger.warning("PLATEGA_WEBHOOK_AUTH_FAILED")
        raise HTTPException(status_code=403, detail="Forbidden")

    body = await _json_body(request)
    external_id = body.get("id") or body.get("transactionId")
    external_id = str(external_id) if external_id else None
    status = platega.normalize_status(body.get("status"))

    payment = await _find_payment("platega", external_id, _int_or_none(body.get("payload")))
    if payment is None:
        logger.warning(f"PLATEGA_WEBHOOK_UNKNOWN_PAYMENT [external_id={external_id}]")
        return {"ok": True, "ignored": "unknown_payment"}

    logger.info(
        f"PLATEGA_WEBHOOK [payment_id={payment['id']}, external_id={external_id}, "
        f"status={body.get('status')}]"
    )
    return await _apply_status("platega", payment, status, external_id)


@router.post("/yoomoney")
async def yoomoney_webhook(request: Request):
    fields = dict(parse_qsl((await request.body()).decode("utf-8"), keep_blank_values=True))
    if not fields.get("operation_id") or not fields.get("sha1_hash"):
        raise HTTPException(status_code=400, detail="Missing required fields")
    if not yoomoney.verify_notification(fields):
        logger.warning(f"YOOMONEY_WEBHOOK_AUTH_FAILED [operation_id={fields['operation_id']}]")
        raise HTTPException(status_code=403, detail="Invalid signature")

    external_id = fields["operation_id"]
    if not yoomoney.is_settled_transfer(fields):
        logger.info(f"YOOMONEY_WEBHOOK_NOT_SETTLED [operation_id={external_id}]")
        return {"ok": True, "ignored": "not_settled"}

    payment = await _find_payment("yoomoney", external_id, _int_or_none(fields.get("label")))
    if payment is None:
        logger.warning(f"YOOMONEY_WEBHOOK_UNKNOWN_PAYMENT [operation_id={external_id}, label={fields.get('label')}]")
        return {"ok": True, "ignored": "unknown_payment"}

    amount = yoomoney.paid_amount(fields)
    if amount is None or amount < payment["amount"]:
        logger.error(
            f"YOOMONEY_WEBHOOK_AMOUNT_MISMATCH [payment_id={payment['id']}, expected={payment['amount']}, "
            f"received={amount}]"
        )
        return {"ok": True, "ignored": "amount_mismatch", "payment_id": payment["id"]}

    logger.info(f"YOOMONEY_WEBHOOK [payment_id={payment['id']}, operation_id={external_id}, amount={amount}]")
    return await _apply_status("yoomoney", payment, "paid", external_id)
