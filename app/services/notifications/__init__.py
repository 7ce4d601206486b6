"""
Notification Service Layer

Best-effort Telegram and e-mail messages for settlement and broadcast events.
"""

from app.services.notifications.service import (
    set_bot,
    get_bot,
    close_bot,
    send_telegram,
    send_email,
    notify_payment_paid,
    notify_referral_credit,
    notify_entitlement_delayed,
)

from app.services.notifications.exceptions import (
    NotificationServiceError,
    ChannelNotConfiguredError,
)

__all__ = [
    "set_bot",
    "get_bot",
    "close_bot",
    "send_telegram",
    "send_email",
    "notify_payment_paid",
    "notify_referral_credit",
    "notify_entitlement_delayed",
    "NotificationServiceError",
    "ChannelNotConfiguredError",
]
