"""
YooKassa Integration

Creates redirect payments through the YooKassa v3 API and reads their status
back for webhook verification. The local payment id travels in
metadata.payment_id; the YooKassa payment id becomes the external id.
"""
import logging
from typing import Any, Dict, Optional

import httpx

import config
from payments.common import (
    GatewayInvalidResponseError,
    GatewayNotConfiguredError,
    GatewayTransaction,
    format_amount,
    post_json,
    request_json,
)

logger = logging.getLogger(__name__)

GATEWAY = "YooKassa"

# YooKassa payment.status values
STATUS_SUCCEEDED = "succeeded"
STATUS_CANCELED = "canceled"


def is_enabled() -> bool:
    if not config.YOOKASSA_SHOP_ID or not config.YOOKASSA_SECRET_KEY:
        logger.warning("YOOKASSA_DISABLED_NO_CREDENTIALS")
        return False
    return True


def _auth() -> httpx.BasicAuth:
    return httpx.BasicAuth(config.YOOKASSA_SHOP_ID, config.YOOKASSA_SECRET_KEY)


async def create_transaction(
    payment: Dict[str, Any],
    *,
    description: str,
    return_url: str,
    customer_email: Optional[str] = None,
) -> GatewayTransaction:
    """
    Create a YooKassa payment for a pending local payment.

    The Idempotence-Key is derived from the local payment id, so a repeated
    call for the same payment returns the same YooKassa payment.
    """
    if not is_enabled():
        raise GatewayNotConfiguredError("YooKassa not configured")

    body: Dict[str, Any] = {
        "amount": {
            "value": format_amount(payment["amount"]),
            "currency": payment.get("currency") or "RUB",
        },
        "capture": True,
        "confirmation": {"type": "redirect", "return_url": return_url},
        "description": (description or "VPN")[:128],
        "metadata": {"payment_id": str(payment["id"])},
    }
    if customer_email:
        body["receipt"] = {
            "customer": {"email": customer_email},
            "items": [{
                "description": (description or "VPN")[:128],
                "quantity": "1.00",
                "amount": body["amount"],
                "vat_code": 1,
            }],
        }

    headers = {
        "Idempotence-Key": f"payment-{payment['id']}",
        "Content-Type": "application/json",
    }
    data = await post_json(
        GATEWAY, f"{config.YOOKASSA_API_URL}/payments", headers=headers, body=body, auth=_auth()
    )

    external_id = data.get("id")
    confirmation_url = (data.get("confirmation") or {}).get("confirmation_url")
    if not external_id or not confirmation_url:
        raise GatewayInvalidResponseError("YooKassa response missing id or confirmation_url")

    logger.info(
        f"YOOKASSA_PAYMENT_CREATED [payment_id={payment['id']}, external_id={external_id}, "
        f"amount={body['amount']['value']}]"
    )
    return GatewayTransaction(payment_url=confirmation_url, external_id=external_id)


async def get_transaction(external_id: str) -> Dict[str, Any]:
    """Fetch a YooKassa payment object by its id."""
    if not is_enabled():
        raise GatewayNotConfiguredError("YooKassa not configured")
    return await request_json(
        GATEWAY, "GET", f"{config.YOOKASSA_API_URL}/payments/{external_id}",
        headers={"Content-Type": "application/json"}, auth=_auth(),
    )


def local_payment_id(payment_object: Dict[str, Any]) -> Optional[int]:
    """metadata.payment_id of a YooKassa payment object, if it is ours."""
    raw = (payment_object.get("metadata") or {}).get("payment_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
