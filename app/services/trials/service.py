"""
Trial Service Layer

One free trial per client, configured through system settings:
    trial_days, trial_squad_uuid, trial_device_limit, trial_traffic_limit (bytes)

The trial is granted on the panel first; trial_used flips false → true only after
that write succeeded. Two concurrent requests may both reach the panel; only one
flips the flag and the other gets TrialAlreadyUsedError.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import database
from app.core.exceptions import Conflict, EngineError, NotFound, ValidationError
from app.services.entitlements import service as entitlement_service
from app.services.entitlements.calculator import Entitlement
from app.services.entitlements.service import ApplyResult

logger = logging.getLogger(__name__)

TRIAL_SETTING_KEYS = ("trial_days", "trial_squad_uuid", "trial_device_limit", "trial_traffic_limit")


# ====================================================================================
# Domain Exceptions
# ====================================================================================

class TrialServiceError(EngineError):
    """Base exception for trial service errors"""
    pass


class TrialNotConfiguredError(TrialServiceError, ValidationError):
    """trial_days <= 0 or no trial squad"""
    pass


class TrialAlreadyUsedError(TrialServiceError, Conflict):
    """Client already used the trial"""
    pass


# ====================================================================================
# Trial configuration
# ====================================================================================

@dataclass
class TrialConfig:
    days: int
    squad_uuid: Optional[str]
    device_limit: Optional[int]
    traffic_limit_bytes: int

    @property
    def enabled(self) -> bool:
        return self.days > 0 and bool(self.squad_uuid)

    def to_entitlement(self) -> Entitlement:
        return Entitlement(
            duration_days=self.days,
            traffic_limit_bytes=self.traffic_limit_bytes,
            device_limit=self.device_limit,
            squad_uuids=[self.squad_uuid] if self.squad_uuid else [],
        )


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


async def get_trial_config() -> TrialConfig:
    values = await database.get_system_config(TRIAL_SETTING_KEYS)
    return TrialConfig(
        days=_int_or_none(values.get("trial_days")) or 0,
        squad_uuid=(values.get("trial_squad_uuid") or "").strip() or None,
        device_limit=_int_or_none(values.get("trial_device_limit")),
        traffic_limit_bytes=_int_or_none(values.get("trial_traffic_limit")) or 0,
    )


# ====================================================================================
# Trial activation
# ====================================================================================

async def activate_trial(client_id: int) -> ApplyResult:
    """
    Grant the trial entitlement to a client.

    Raises:
        NotFound: client missing
        TrialAlreadyUsedError: trial_used already true
        TrialNotConfiguredError: no trial configured
        RemoteServiceUnavailable: panel unreachable, trial_used untouched
    """
    client = await database.get_client(client_id)
    if client is None:
        raise NotFound(f"Client {client_id} not found")
    if client["trial_used"]:
        raise TrialAlreadyUsedError(f"Client {client_id} already used the trial")

    trial = await get_trial_config()
    if not trial.enabled:
        raise TrialNotConfiguredError("Trial is not configured")

    result = await entitlement_service.apply_entitlement(client, trial.to_entitlement())

    if not await database.mark_trial_used(client_id):
        logger.warning(f"TRIAL_FLAG_RACE [client_id={client_id}]")
        raise TrialAlreadyUsedError(f"Client {client_id} already used the trial")

    logger.info(f"TRIAL_ACTIVATED [client_id={client_id}, days={trial.days}]")
    return result
