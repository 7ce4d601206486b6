"""
Remnawave VPN panel REST client.

Single point of contact with the panel. All subscriber operations go through
the functions of this module; app/services/vpn_client.py normalises what they
return.

EXTERNAL DEPENDENCIES POLICY:
- Panel not configured → PanelNotConfiguredError (no HTTP call made)
- Panel 401/403 → AuthError raised immediately (NOT retried)
- Panel 404 on lookups → None (subscriber absent)
- Panel "already exists" on create → UserAlreadyExistsError (NOT retried)
- Panel other 4xx → InvalidResponseError raised immediately (NOT retried)
- Panel 5xx/timeout/network → retried with exponential backoff, then re-raised

The bulk endpoint that adds every panel user to a squad is not wrapped:
squads are assigned per subscriber via update_user().
"""
import httpx
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote
import config
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

PANEL_HTTP_TIMEOUT = httpx.Timeout(
    connect=5.0, read=config.PANEL_API_TIMEOUT, write=5.0, pool=5.0
)
MAX_RETRIES = 2
RETRY_DELAY = 1.0

USER_ACTIONS = ("revoke", "disable", "enable", "reset-traffic")


class VPNAPIError(Exception):
    """Base class for panel API errors"""
    pass


class PanelNotConfiguredError(VPNAPIError):
    """PANEL_API_URL / PANEL_API_TOKEN missing"""
    pass


class AuthError(VPNAPIError):
    """Panel rejected the token (401, 403)"""
    pass


class InvalidResponseError(VPNAPIError):
    """Panel returned a 4xx or a body that is not JSON"""
    pass


class UserAlreadyExistsError(VPNAPIError):
    """Create refused: username (or telegram id / email) already taken"""
    pass


def _base_url() -> str:
    if not config.PANEL_ENABLED:
        raise PanelNotConfiguredError(
            "VPN panel is not configured. Set PANEL_API_URL and PANEL_API_TOKEN."
        )
    return config.PANEL_API_URL.rstrip("/")


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {config.PANEL_API_TOKEN}",
        "Content-Type": "application/json",
    }


def _is_already_exists(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    text = (response.text or "").lower()
    return response.status_code == 400 and "already exists" in text


async def _request(
    method: str,
    path: str,
    *,
    json_body: Optional[Dict[str, Any]] = None,
    not_found_ok: bool = False,
    detect_duplicate: bool = False,
) -> Optional[Any]:
    """
    Perform one panel call with retries on transient failures.

    Returns decoded JSON, or None for 404 when not_found_ok is set.
    """
    url = f"{_base_url()}{path}"
    operation = f"{method} {path.split('?')[0]}"

    async def _make_request() -> Optional[httpx.Response]:
        async with httpx.AsyncClient(timeout=PANEL_HTTP_TIMEOUT) as client:
            response = await client.request(method, url, headers=_headers(), json=json_body)

            if response.status_code in (401, 403):
                logger.error(f"PANEL_AUTH_ERROR [op={operation}, status={response.status_code}]")
                raise AuthError(f"Authentication error: status={response.status_code}")

            if response.status_code == 404 and not_found_ok:
                return None

            if detect_duplicate and _is_already_exists(response):
                raise UserAlreadyExistsError(response.text[:200])

            if 400 <= response.status_code < 500:
                error_msg = f"Client error: status={response.status_code}, response={response.text[:200]}"
                logger.error(f"PANEL_CLIENT_ERROR [op={operation}, {error_msg}]")
                raise InvalidResponseError(error_msg)

            # Only 5xx/timeout/network errors reach the retry loop
            response.raise_for_status()
            return response

    response = await retry_async(
        _make_request,
        retries=MAX_RETRIES,
        base_delay=RETRY_DELAY,
        max_delay=5.0,
        retry_on=(httpx.TransportError, httpx.HTTPStatusError, ConnectionError, OSError),
    )
    if response is None:
        logger.debug(f"PANEL_NOT_FOUND [op={operation}]")
        return None

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise InvalidResponseError(f"Invalid JSON response: {response.text[:200]}") from e


# ====================================================================================
# Lookups
# ====================================================================================

async def get_user_by_uuid(uuid: str) -> Optional[Any]:
    return await _request("GET", f"/api/users/{quote(uuid, safe='')}", not_found_ok=True)


async def get_users_by_telegram_id(telegram_id: int) -> Optional[Any]:
    return await _request("GET", f"/api/users/by-telegram-id/{int(telegram_id)}", not_found_ok=True)


async def get_users_by_email(email: str) -> Optional[Any]:
    return await _request("GET", f"/api/users/by-email/{quote(email, safe='')}", not_found_ok=True)


async def get_user_by_username(username: str) -> Optional[Any]:
    return await _request("GET", f"/api/users/by-username/{quote(username, safe='')}", not_found_ok=True)


# ====================================================================================
# Mutations
# ====================================================================================

async def create_user(payload: Dict[str, Any]) -> Any:
    """POST /api/users. Raises UserAlreadyExistsError when the username is taken."""
    logger.info(f"PANEL_CREATE_USER [username={payload.get('username')}]")
    return await _request("POST", "/api/users", json_body=payload, detect_duplicate=True)


async def update_user(payload: Dict[str, Any]) -> Any:
    """PATCH /api/users. Payload carries the uuid; every field sent is replaced."""
    if not payload.get("uuid"):
        raise ValueError("update_user requires uuid")
    logger.info(f"PANEL_UPDATE_USER [uuid={payload['uuid']}]")
    return await _request("PATCH", "/api/users", json_body=payload)


async def user_action(uuid: str, action: str) -> Any:
    """POST /api/users/{uuid}/actions/{action} for revoke, disable, enable, reset-traffic."""
    if action not in USER_ACTIONS:
        raise ValueError(f"Unknown panel user action: {action}")
    logger.info(f"PANEL_USER_ACTION [uuid={uuid}, action={action}]")
    return await _request("POST", f"/api/users/{quote(uuid, safe='')}/actions/{action}")


async def check_panel_health() -> bool:
    """GET /api/system/stats. Never raises."""
    if not config.PANEL_ENABLED:
        return False
    try:
        async with httpx.AsyncClient(timeout=PANEL_HTTP_TIMEOUT) as client:
            response = await client.get(f"{_base_url()}/api/system/stats", headers=_headers())
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.debug(f"PANEL_HEALTH_CHECK_FAILED [error={e}]")
        return False
