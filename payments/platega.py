"""
Platega Integration

Merchant-authenticated transactions: X-MerchantId / X-Secret headers on every
request. The local payment id is sent as `payload`; Platega's transactionId
becomes the external id. Webhooks carry the same headers, which is how they
are authenticated.
"""
import hmac
import logging
import uuid
from typing import Any, Dict, Optional

import config
from payments.common import (
    GatewayInvalidResponseError,
    GatewayNotConfiguredError,
    GatewayTransaction,
    format_amount,
    post_json,
)

logger = logging.getLogger(__name__)

GATEWAY = "Platega"

SUCCESS_STATUSES = frozenset({
    "CONFIRMED", "PAID", "SUCCESS", "SUCCEEDED", "COMPLETED", "SUCCESSFUL", "APPROVED",
})
FAILED_STATUSES = frozenset({
    "CANCELED", "CANCELLED", "FAILED", "DECLINED", "REJECTED", "ERROR",
    "EXPIRED", "CHARGEBACK", "CHARGEBACKED",
})


def is_enabled() -> bool:
    if not config.PLATEGA_MERCHANT_ID or not config.PLATEGA_SECRET:
        logger.warning("PLATEGA_DISABLED_NO_CREDENTIALS")
        return False
    return True


def _get_auth_headers() -> Dict[str, str]:
    return {
        "X-MerchantId": config.PLATEGA_MERCHANT_ID,
        "X-Secret": config.PLATEGA_SECRET,
        "Content-Type": "application/json",
    }


def normalize_status(raw_status: Optional[str]) -> str:
    """Platega status → "paid" | "failed" | "pending"."""
    status = (raw_status or "").strip().upper()
    if status in SUCCESS_STATUSES:
        return "paid"
    if status in FAILED_STATUSES:
        return "failed"
    return "pending"


def verify_webhook_headers(merchant_id: Optional[str], secret: Optional[str]) -> bool:
    if not is_enabled() or not merchant_id or not secret:
        return False
    return (
        hmac.compare_digest(merchant_id, config.PLATEGA_MERCHANT_ID)
        and hmac.compare_digest(secret, config.PLATEGA_SECRET)
    )


async def create_transaction(
    payment: Dict[str, Any],
    *,
    description: str,
    return_url: str,
    customer_email: Optional[str] = None,
) -> GatewayTransaction:
    if not is_enabled():
        raise GatewayNotConfiguredError("Platega not configured")

    body = {
        "paymentMethod": config.PLATEGA_PAYMENT_METHOD,
        "id": str(uuid.uuid4()),
        "paymentDetails": {
            "amount": float(format_amount(payment["amount"])),
            "currency": payment.get("currency") or "RUB",
        },
        "description": (description or "VPN")[:250],
        "return": return_url,
        "failedUrl": return_url,
        "payload": str(payment["id"]),
    }
    data = await post_json(
        GATEWAY, f"{config.PLATEGA_API_URL}/transaction/process",
        headers=_get_auth_headers(), body=body,
    )

    external_id = data.get("transactionId") or data.get("id")
    payment_url = data.get("redirect") or data.get("url")
    if not external_id or not payment_url:
        raise GatewayInvalidResponseError("Platega response missing transactionId or redirect")

    logger.info(
        f"PLATEGA_TRANSACTION_CREATED [payment_id={payment['id']}, external_id={external_id}]"
    )
    return GatewayTransaction(payment_url=payment_url, external_id=str(external_id))
