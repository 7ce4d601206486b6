"""
VPN panel facade: typed access to remote subscribers.

Architecture:
    services → vpn_client → vpn_utils (HTTP) → Remnawave panel

The panel answers in several shapes: bare objects, objects wrapped in
`response` or `data`, and lists for lookups that may match many users.
RemoteSubscriber.from_payload() is the only place that understands them.

Error mapping:
    transport failure / 5xx / auth / not configured → RemoteServiceUnavailable
    username already taken on create               → RemoteConflict
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

import vpn_utils
from app.core.exceptions import RemoteConflict, RemoteServiceUnavailable

TRAFFIC_LIMIT_STRATEGY = "NO_RESET"


# =============================================================================
# Normalised subscriber
# =============================================================================

def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict):
        for key in ("response", "data"):
            if key in payload and payload[key] is not None:
                return _unwrap(payload[key])
        if isinstance(payload.get("users"), list):
            return _unwrap(payload["users"])
    if isinstance(payload, list):
        return _unwrap(payload[0]) if payload else None
    return payload


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_squads(value: Any) -> List[str]:
    squads: List[str] = []
    for item in value or []:
        squad = item.get("uuid") if isinstance(item, dict) else item
        if isinstance(squad, str) and squad and squad not in squads:
            squads.append(squad)
    return squads


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RemoteSubscriber:
    """Subscriber as the panel currently sees it"""
    uuid: str
    username: Optional[str] = None
    expire_at: Optional[datetime] = None
    traffic_limit_bytes: int = 0
    device_limit: Optional[int] = None
    squad_uuids: List[str] = field(default_factory=list)
    telegram_id: Optional[int] = None
    email: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["RemoteSubscriber"]:
        """Build from any panel response shape. None when no subscriber is present."""
        data = _unwrap(payload)
        if not isinstance(data, dict):
            return None
        uuid = data.get("uuid")
        if not isinstance(uuid, str) or not uuid:
            return None
        return cls(
            uuid=uuid,
            username=data.get("username"),
            expire_at=_parse_datetime(data.get("expireAt")),
            traffic_limit_bytes=_optional_int(data.get("trafficLimitBytes")) or 0,
            device_limit=_optional_int(data.get("hwidDeviceLimit")),
            squad_uuids=_parse_squads(data.get("activeInternalSquads")),
            telegram_id=_optional_int(data.get("telegramId")),
            email=data.get("email"),
            status=data.get("status"),
        )


# =============================================================================
# Error mapping
# =============================================================================

async def _call(operation: str, coro):
    try:
        return await coro
    except vpn_utils.UserAlreadyExistsError as e:
        raise RemoteConflict(str(e)) from e
    except (vpn_utils.VPNAPIError, httpx.HTTPError, OSError) as e:
        raise RemoteServiceUnavailable(f"VPN panel {operation} failed: {e}") from e


# =============================================================================
# Lookups
# =============================================================================

async def get_subscriber(uuid: str) -> Optional[RemoteSubscriber]:
    payload = await _call("get_user", vpn_utils.get_user_by_uuid(uuid))
    return RemoteSubscriber.from_payload(payload)


async def find_by_telegram_id(telegram_id: int) -> Optional[RemoteSubscriber]:
    payload = await _call("get_by_telegram_id", vpn_utils.get_users_by_telegram_id(telegram_id))
    return RemoteSubscriber.from_payload(payload)


async def find_by_email(email: str) -> Optional[RemoteSubscriber]:
    payload = await _call("get_by_email", vpn_utils.get_users_by_email(email))
    return RemoteSubscriber.from_payload(payload)


async def find_by_username(username: str) -> Optional[RemoteSubscriber]:
    payload = await _call("get_by_username", vpn_utils.get_user_by_username(username))
    return RemoteSubscriber.from_payload(payload)


# =============================================================================
# Mutations
# =============================================================================

def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


async def create_subscriber(
    username: str,
    now: datetime,
    telegram_id: Optional[int] = None,
    email: Optional[str] = None,
) -> RemoteSubscriber:
    """
    Create a subscriber with no entitlement: expired at `now`, zero traffic, no squads.

    Raises:
        RemoteConflict: username already taken
        RemoteServiceUnavailable: panel unreachable or response unusable
    """
    body: Dict[str, Any] = {
        "username": username,
        "expireAt": _iso(now),
        "trafficLimitBytes": 0,
        "trafficLimitStrategy": TRAFFIC_LIMIT_STRATEGY,
        "activeInternalSquads": [],
    }
    if telegram_id is not None:
        body["telegramId"] = int(telegram_id)
    if email:
        body["email"] = email
    payload = await _call("create_user", vpn_utils.create_user(body))
    subscriber = RemoteSubscriber.from_payload(payload)
    if subscriber is None:
        raise RemoteServiceUnavailable("VPN panel create_user returned no uuid")
    return subscriber


async def update_subscriber(
    uuid: str,
    *,
    expire_at: datetime,
    traffic_limit_bytes: int,
    device_limit: Optional[int],
    squad_uuids: List[str],
) -> Optional[RemoteSubscriber]:
    """Full-replace update of expiry, limits and squad set."""
    body: Dict[str, Any] = {
        "uuid": uuid,
        "expireAt": _iso(expire_at),
        "trafficLimitBytes": int(traffic_limit_bytes),
        "trafficLimitStrategy": TRAFFIC_LIMIT_STRATEGY,
        "activeInternalSquads": list(squad_uuids),
        # null lifts a previous cap
        "hwidDeviceLimit": int(device_limit) if device_limit is not None else None,
    }
    payload = await _call("update_user", vpn_utils.update_user(body))
    return RemoteSubscriber.from_payload(payload)


async def revoke_subscription(uuid: str) -> None:
    await _call("revoke", vpn_utils.user_action(uuid, "revoke"))


async def health_check() -> bool:
    return await vpn_utils.check_panel_health()
