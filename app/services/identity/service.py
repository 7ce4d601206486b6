"""
Remote Identity Resolver

Maps a local client to exactly one panel subscriber.

Lookup order:
    1. stored remote_subscriber_id
    2. telegram id
    3. email
    4. derived username
    5. create a subscriber with no entitlement

A "username already exists" answer on create means another path created the
subscriber first: the resolver looks the username up again instead of failing.
Nothing is written locally here; the applier persists the id after a
successful remote write.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.core.exceptions import RemoteConflict, RemoteServiceUnavailable
from app.services import vpn_client
from app.services.vpn_client import RemoteSubscriber

logger = logging.getLogger(__name__)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 36
_USERNAME_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class ResolvedIdentity:
    subscriber: RemoteSubscriber
    source: str  # "stored" | "telegram_id" | "email" | "username" | "created"

    @property
    def created(self) -> bool:
        return self.source == "created"


def _sanitize(value: str) -> str:
    return _USERNAME_INVALID_CHARS.sub("_", value)[:USERNAME_MAX_LENGTH]


def derive_username(client: Dict[str, Any]) -> str:
    """
    Panel username for a client.

    Priority: telegram username, "tg<id>", e-mail local part, full e-mail,
    "user<last 8 chars of client id>". Candidates shorter than 3 characters
    after sanitising are skipped.
    """
    candidates = []
    if client.get("telegram_username"):
        candidates.append(str(client["telegram_username"]).lstrip("@"))
    if client.get("telegram_id"):
        candidates.append(f"tg{re.sub(r'[^0-9]', '', str(client['telegram_id']))}")
    email = client.get("email")
    if email:
        candidates.append(email.split("@", 1)[0])
        candidates.append(email)

    for candidate in candidates:
        username = _sanitize(candidate)
        if len(username) >= USERNAME_MIN_LENGTH:
            return username
    return _sanitize(f"user{str(client['id'])[-8:]}")


async def resolve(client: Dict[str, Any], now: Optional[datetime] = None) -> ResolvedIdentity:
    """
    Find or create the client's panel subscriber.

    Raises:
        RemoteServiceUnavailable: panel unreachable (nothing changed locally)
    """
    client_id = client["id"]

    stored = client.get("remote_subscriber_id")
    if stored:
        subscriber = await vpn_client.get_subscriber(stored)
        if subscriber is not None:
            return ResolvedIdentity(subscriber, "stored")
        logger.warning(f"IDENTITY_STORED_ID_MISSING [client_id={client_id}, remote_id={stored}]")

    if client.get("telegram_id"):
        subscriber = await vpn_client.find_by_telegram_id(client["telegram_id"])
        if subscriber is not None:
            return ResolvedIdentity(subscriber, "telegram_id")

    if client.get("email"):
        subscriber = await vpn_client.find_by_email(client["email"])
        if subscriber is not None:
            return ResolvedIdentity(subscriber, "email")

    username = derive_username(client)
    subscriber = await vpn_client.find_by_username(username)
    if subscriber is not None:
        return ResolvedIdentity(subscriber, "username")

    try:
        subscriber = await vpn_client.create_subscriber(
            username,
            now or datetime.now(timezone.utc),
            telegram_id=client.get("telegram_id"),
            email=client.get("email"),
        )
    except RemoteConflict:
        logger.info(f"IDENTITY_CREATE_CONFLICT [client_id={client_id}, username={username}]")
        subscriber = await vpn_client.find_by_username(username)
        if subscriber is None:
            raise RemoteServiceUnavailable(
                f"Panel reported username {username} as taken but lookup found nothing"
            )
        return ResolvedIdentity(subscriber, "username")

    logger.info(f"IDENTITY_SUBSCRIBER_CREATED [client_id={client_id}, remote_id={subscriber.uuid}]")
    return ResolvedIdentity(subscriber, "created")
