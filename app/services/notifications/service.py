"""
Notification Service Layer

Best-effort messages to clients about settlement events. Every public
notify_* coroutine logs and swallows its own failures: a notification can
never undo or block a payment, an entitlement or a referral credit.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from aiogram import Bot

import config
import database
from app.services.notifications import mail
from app.utils.telegram_safe import safe_send_message

logger = logging.getLogger(__name__)

_bot: Optional[Bot] = None


def set_bot(bot: Optional[Bot]) -> None:
    """Use an already created Bot (main.py owns its session)."""
    global _bot
    _bot = bot


def get_bot() -> Optional[Bot]:
    global _bot
    if _bot is None and config.BOT_TOKEN:
        _bot = Bot(token=config.BOT_TOKEN)
    return _bot


async def close_bot() -> None:
    global _bot
    if _bot is not None:
        await _bot.session.close()
        _bot = None


# ====================================================================================
# Channels
# ====================================================================================

async def send_telegram(telegram_id: Optional[int], text: str) -> bool:
    if not telegram_id:
        return False
    bot = get_bot()
    if bot is None:
        logger.debug("TELEGRAM_SKIPPED [reason=bot_not_configured]")
        return False
    return await safe_send_message(
        bot, telegram_id, text, parse_mode="HTML", disable_web_page_preview=True
    )


async def send_email(email: Optional[str], subject: str, text: str) -> bool:
    if not email:
        return False
    return await mail.send_email(email, subject, text)


# ====================================================================================
# Settlement notifications
# ====================================================================================

def _money(amount: Any, currency: str = "RUB") -> str:
    return f"{Decimal(amount):.2f} {currency}"


async def _notify_client(client_id: int, text: str, event: str) -> bool:
    try:
        client = await database.get_client(client_id)
        if client is None:
            return False
        sent = await send_telegram(client.get("telegram_id"), text)
        logger.info(f"NOTIFICATION_{event} [client_id={client_id}, sent={sent}]")
        return sent
    except Exception as e:
        logger.warning(f"NOTIFICATION_FAILED [event={event}, client_id={client_id}, error={e}]")
        return False


async def notify_payment_paid(payment: Dict[str, Any]) -> bool:
    if database.is_top_up(payment):
        text = (
            f"Баланс пополнен на {_money(payment['amount'], payment['currency'])}."
        )
        if payment.get("new_balance") is not None:
            text += f"\nТекущий баланс: {_money(payment['new_balance'], payment['currency'])}."
        return await _notify_client(payment["client_id"], text, "TOP_UP")
    text = f"Оплата {_money(payment['amount'], payment['currency'])} получена. Подписка активирована."
    return await _notify_client(payment["client_id"], text, "PAYMENT_PAID")


async def notify_referral_credit(referrer_id: int, level: int, amount: Decimal) -> bool:
    text = f"Вам начислено {_money(amount)} за приглашённого пользователя (уровень {level})."
    return await _notify_client(referrer_id, text, "REFERRAL_CREDIT")


async def notify_entitlement_delayed(client_id: int) -> bool:
    text = "Оплата получена, но активация задерживается. Поддержка завершит её в ближайшее время."
    return await _notify_client(client_id, text, "ENTITLEMENT_DELAYED")
