"""
YooMoney quickpay links and HTTP notifications.

No API call: the payment form URL is built locally and the local payment id
is passed as `label`. YooMoney confirms the transfer with a form-encoded
notification signed by sha1_hash over the fields listed in NOTIFICATION_FIELDS
plus the notification secret; its operation_id becomes the external id.
"""
import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import config
from payments.common import GatewayNotConfiguredError, GatewayTransaction, format_amount

logger = logging.getLogger(__name__)

QUICKPAY_URL = "https://yoomoney.ru/quickpay/confirm.xml"

# Order matters; the secret goes between codepro and label
NOTIFICATION_FIELDS = ("notification_type", "operation_id", "amount", "currency", "datetime", "sender", "codepro")


def is_enabled() -> bool:
    if not config.YOOMONEY_RECEIVER_WALLET:
        logger.warning("YOOMONEY_DISABLED_NO_WALLET")
        return False
    return True


async def create_transaction(
    payment: Dict[str, Any],
    *,
    description: str,
    return_url: str,
    customer_email: Optional[str] = None,
) -> GatewayTransaction:
    if not is_enabled():
        raise GatewayNotConfiguredError("YooMoney not configured")

    params = {
        "receiver": config.YOOMONEY_RECEIVER_WALLET,
        "quickpay-form": "button",
        "targets": (description or "VPN")[:150],
        "paymentType": "AC",
        "sum": format_amount(payment["amount"]),
        "label": str(payment["id"]),
    }
    if return_url:
        params["successURL"] = return_url

    logger.info(f"YOOMONEY_LINK_CREATED [payment_id={payment['id']}]")
    return GatewayTransaction(payment_url=f"{QUICKPAY_URL}?{urlencode(params)}", external_id=None)


def notification_hash(fields: Mapping[str, str], secret: str) -> str:
    parts = [fields.get(name, "") for name in NOTIFICATION_FIELDS]
    parts += [secret, fields.get("label", "")]
    return hashlib.sha1("&".join(parts).encode("utf-8")).hexdigest()


def verify_notification(fields: Mapping[str, str]) -> bool:
    secret = config.YOOMONEY_NOTIFICATION_SECRET
    if not secret:
        logger.warning("YOOMONEY_NOTIFICATION_SECRET_NOT_SET")
        return False
    received = (fields.get("sha1_hash") or "").lower()
    return hmac.compare_digest(notification_hash(fields, secret), received)


def is_settled_transfer(fields: Mapping[str, str]) -> bool:
    """Protected (codepro) and held (unaccepted) transfers have not reached the wallet."""
    if fields.get("codepro", "false").lower() == "true":
        return False
    return fields.get("unaccepted", "false").lower() in ("", "false")


def paid_amount(fields: Mapping[str, str]) -> Optional[Decimal]:
    """What the payer was charged: withdraw_amount, falling back to the credited amount."""
    raw = fields.get("withdraw_amount") or fields.get("amount")
    try:
        amount = Decimal(raw)
    except (TypeError, InvalidOperation):
        return None
    return amount if amount.is_finite() and amount > 0 else None
