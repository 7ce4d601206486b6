"""
Redis Client Module

Async Redis client (redis.asyncio), one per process. Redis is optional: with
no REDIS_URL every caller gets None and falls back to in-process behaviour
(asyncio locks for broadcast runs). Sessions require it.
"""
import logging
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


def key(*parts: object) -> str:
    """Namespaced key: "<app_env>:<part>:<part>..."."""
    return ":".join([config.APP_ENV, *(str(p) for p in parts)])


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Shared client, created on first use.

    Returns:
        Redis client, or None when REDIS_URL is not configured
    """
    global _redis_client

    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=10,
        )
        logger.info("REDIS_CLIENT_CREATED")
    return _redis_client


async def check_redis_connection() -> bool:
    """PING the server. Never raises; updates REDIS_READY."""
    global REDIS_READY

    client = await get_redis_client()
    if client is None:
        REDIS_READY = False
        return False

    try:
        REDIS_READY = bool(await client.ping())
    except (redis.RedisError, OSError) as e:
        REDIS_READY = False
        logger.warning(
            "REDIS_CONNECTION_FAILED",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "failed",
                "reason": str(e)[:100],
            },
        )
        return False

    logger.info(
        "REDIS_CONNECTED" if REDIS_READY else "REDIS_CONNECTION_FAILED",
        extra={
            "component": "infra",
            "operation": "redis_health_check",
            "outcome": "success" if REDIS_READY else "failed",
        },
    )
    return REDIS_READY


async def close_redis_client():
    """Close the connection pool. Safe to call more than once."""
    global _redis_client, REDIS_READY

    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
        logger.info("REDIS_CLIENT_CLOSED")
    except (redis.RedisError, OSError) as e:
        logger.error(f"REDIS_CLOSE_FAILED [error={e}]")
    finally:
        _redis_client = None
        REDIS_READY = False
