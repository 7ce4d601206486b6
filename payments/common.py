"""
Shared types of the payment gateway integrations.

Each gateway module exposes:
    is_enabled() -> bool
    async create_transaction(payment, *, description, return_url, customer_email=None)
        -> GatewayTransaction
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from app.utils.retry import retry_async

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for gateway errors"""
    pass


class GatewayNotConfiguredError(GatewayError):
    """Credentials for the gateway are missing"""
    pass


class GatewayAuthError(GatewayError):
    """Gateway rejected the credentials (401, 403)"""
    pass


class GatewayInvalidResponseError(GatewayError):
    """Gateway answered 4xx or with an unusable body"""
    pass


@dataclass
class GatewayTransaction:
    payment_url: str
    external_id: Optional[str]


def format_amount(amount: Decimal) -> str:
    """Decimal → "123.45" as gateways expect."""
    return f"{Decimal(amount):.2f}"


async def post_json(
    gateway: str,
    url: str,
    *,
    headers: Dict[str, str],
    body: Dict[str, Any],
    auth: Optional[httpx.Auth] = None,
) -> Dict[str, Any]:
    """
    POST a JSON body to a gateway and return the decoded answer.

    401/403 → GatewayAuthError, other 4xx → GatewayInvalidResponseError;
    both are final. 5xx, timeouts and network errors are retried.
    """
    return await request_json(gateway, "POST", url, headers=headers, body=body, auth=auth)


async def request_json(
    gateway: str,
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    body: Optional[Dict[str, Any]] = None,
    auth: Optional[httpx.Auth] = None,
) -> Dict[str, Any]:
    async def _make_request():
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.request(method, url, headers=headers, json=body, auth=auth)
            if response.status_code in (401, 403):
                error_msg = f"Authentication error: status={response.status_code}, response={response.text[:200]}"
                logger.error(f"{gateway} API error: {error_msg}")
                raise GatewayAuthError(error_msg)

            if 400 <= response.status_code < 500:
                error_msg = f"Client error: status={response.status_code}, response={response.text[:200]}"
                logger.error(f"{gateway} API error: {error_msg}")
                raise GatewayInvalidResponseError(error_msg)

            # 5xx raises HTTPStatusError, which is retried
            response.raise_for_status()
            return response

    response = await retry_async(
        _make_request,
        retries=2,
        base_delay=1.0,
        max_delay=5.0,
        retry_on=(httpx.HTTPError, ConnectionError, OSError),
    )
    try:
        data = response.json()
    except ValueError:
        raise GatewayInvalidResponseError(f"{gateway} returned non-JSON body: {response.text[:200]}")
    if not isinstance(data, dict):
        raise GatewayInvalidResponseError(f"{gateway} returned unexpected body: {response.text[:200]}")
    return data
