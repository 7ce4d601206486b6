"""
Single-attempt run lock in Redis.

Ownership is a random token stored with SET NX PX; release deletes the key
only while it still holds our token. A holder that dies frees the run when
the TTL runs out.
"""
import logging
import secrets
from typing import Optional

import redis.asyncio as redis

from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisRunLock:
    """
    Usage:
        lock = RedisRunLock(client, "prod:lock:auto_broadcast:7", ttl_seconds=1800)
        if await lock.try_acquire():
            try:
                ...
            finally:
                await lock.release()
    """

    def __init__(self, client: redis.Redis, key: str, ttl_seconds: int):
        self.client = client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def try_acquire(self) -> bool:
        """True when this instance now owns the key; False when another run holds it."""
        if self.held:
            return True
        token = secrets.token_hex(16)
        if not await self.client.set(self.key, token, nx=True, px=self.ttl_seconds * 1000):
            log_event(logger, component="run_lock", operation="acquire", outcome="busy", key=self.key)
            return False
        self._token = token
        return True

    async def release(self) -> None:
        """Give the key back. A Redis failure is logged; the TTL frees the key anyway."""
        if not self.held:
            return
        token, self._token = self._token, None
        try:
            deleted = await self.client.eval(_COMPARE_AND_DELETE, 1, self.key, token)
        except (redis.RedisError, OSError) as e:
            log_event(
                logger, component="run_lock", operation="release", outcome="failed",
                reason=type(e).__name__, key=self.key, level="error",
            )
            return
        if not deleted:
            log_event(
                logger, component="run_lock", operation="release", outcome="expired",
                key=self.key, level="warning",
            )
