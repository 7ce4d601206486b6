"""
bot.send_message that never raises.

A flood-control answer (TelegramRetryAfter) is waited out once when the wait
is short; blocked bots, unknown chats and network errors count as "not delivered".
"""
import asyncio
import logging

from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramRetryAfter,
)

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 30


async def safe_send_message(bot, telegram_id: int, text: str, **kwargs) -> bool:
    """True when Telegram accepted the message."""
    for attempt in (1, 2):
        try:
            await bot.send_message(telegram_id, text, **kwargs)
            return True
        except TelegramRetryAfter as e:
            if attempt == 2 or e.retry_after > MAX_RETRY_AFTER_SECONDS:
                logger.warning(f"TELEGRAM_FLOOD_LIMIT [telegram_id={telegram_id}, retry_after={e.retry_after}]")
                return False
            await asyncio.sleep(e.retry_after)
        except TelegramForbiddenError:
            logger.info(f"TELEGRAM_BOT_BLOCKED [telegram_id={telegram_id}]")
            return False
        except TelegramBadRequest as e:
            logger.warning(f"TELEGRAM_BAD_REQUEST [telegram_id={telegram_id}, error={e}]")
            return False
        except (TelegramAPIError, OSError) as e:
            logger.error(f"TELEGRAM_SEND_FAILED [telegram_id={telegram_id}, error_type={type(e).__name__}]")
            return False
    return False
