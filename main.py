import asyncio
import logging
import os
import sys

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging()

import uvicorn
from aiogram import Bot

import auto_broadcast_scheduler
import config
import database
import redis_client
from app.api import app
from app.core.structured_logger import log_event
from app.services.notifications import service as notification_service

logger = logging.getLogger(__name__)


async def main():
    logger.info(f"ENGINE_STARTING [env={config.APP_ENV}, pid={os.getpid()}, port={config.HTTP_PORT}]")

    # The HTTP server always starts; without a database it answers 503 on /health
    try:
        if await database.init_db():
            log_event(logger, component="startup", operation="db_init", outcome="success")
        else:
            log_event(logger, component="startup", operation="db_init", outcome="degraded", level="warning")
    except Exception as e:
        log_event(
            logger, component="startup", operation="db_init", outcome="failed",
            reason=type(e).__name__, level="error",
        )

    if config.REDIS_URL:
        await redis_client.check_redis_connection()

    bot = None
    if config.BOT_TOKEN:
        bot = Bot(token=config.BOT_TOKEN)
        notification_service.set_bot(bot)

    if config.AUTO_BROADCAST_ENABLED and database.DB_READY:
        await auto_broadcast_scheduler.start()
    else:
        logger.warning(
            f"AUTO_BROADCAST_SCHEDULER_NOT_STARTED [enabled={config.AUTO_BROADCAST_ENABLED}, "
            f"db_ready={database.DB_READY}]"
        )

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=os.getenv("HTTP_HOST", "0.0.0.0"),
        port=config.HTTP_PORT,
        log_config=None,
    ))
    try:
        await server.serve()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        auto_broadcast_scheduler.stop()

        try:
            await notification_service.close_bot()
        except Exception as e:
            logger.debug(f"Error closing bot session: {e}")

        await redis_client.close_redis_client()

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("ENGINE_STOPPED")
        sys.exit(0)
