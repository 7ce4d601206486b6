"""
Client sessions in Redis.

Opaque token → client id with a sliding TTL, shared by every process instance.
"""
import logging
import secrets
from typing import Optional

import config
import redis_client

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class SessionStoreUnavailable(RuntimeError):
    """Redis is not configured"""
    pass


async def _client():
    client = await redis_client.get_redis_client()
    if client is None:
        raise SessionStoreUnavailable("Sessions require REDIS_URL")
    return client


def _key(token: str) -> str:
    return redis_client.key("session", token)


async def create_session(client_id: int, ttl_seconds: Optional[int] = None) -> str:
    """Issue a new token for a client."""
    client = await _client()
    token = secrets.token_urlsafe(TOKEN_BYTES)
    await client.set(_key(token), str(client_id), ex=ttl_seconds or config.SESSION_TTL_SECONDS)
    logger.info(f"SESSION_CREATED [client_id={client_id}]")
    return token


async def get_session_client_id(token: str) -> Optional[int]:
    """Client id for a live token; refreshes its TTL. None when unknown or expired."""
    if not token:
        return None
    client = await _client()
    key = _key(token)
    value = await client.get(key)
    if value is None:
        return None
    await client.expire(key, config.SESSION_TTL_SECONDS)
    return int(value)


async def delete_session(token: str) -> None:
    client = await _client()
    await client.delete(_key(token))
