"""
Request authentication: admin API key and client session tokens.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException

import config
from app.core import session_store

logger = logging.getLogger(__name__)


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if not config.ADMIN_API_KEY:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, config.ADMIN_API_KEY):
        logger.warning("ADMIN_API_KEY_MISMATCH")
        raise HTTPException(status_code=403, detail="Forbidden")


async def session_token(authorization: Optional[str] = Header(default=None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing session token")
    return token.strip()


async def current_client_id(token: str = Depends(session_token)) -> int:
    """Client id behind `Authorization: Bearer <session token>`."""
    client_id = await session_store.get_session_client_id(token)
    if client_id is None:
        raise HTTPException(status_code=401, detail="Session expired")
    return client_id
