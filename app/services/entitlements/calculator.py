"""
Entitlement grant arithmetic.

Pure functions only: no I/O, no clock reads (callers pass `now`).

Rules:
- expiry extends from the later of the current expiry and now
- squads are unioned, never removed
- traffic and device limits are replaced by the granted entitlement
- extra options are the only additive limits (traffic, devices, one squad)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional

BYTES_PER_GB = 1024 ** 3

EXTRA_OPTION_KINDS = ("traffic", "devices", "servers")


@dataclass(frozen=True)
class Entitlement:
    """What a tariff, trial or promo grants"""
    duration_days: int
    traffic_limit_bytes: int = 0
    device_limit: Optional[int] = None
    squad_uuids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CurrentState:
    """Remote subscriber state the grant is computed against"""
    expire_at: Optional[datetime] = None
    traffic_limit_bytes: int = 0
    device_limit: Optional[int] = None
    squad_uuids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EntitlementGrant:
    """Absolute state to write to the panel"""
    expire_at: datetime
    traffic_limit_bytes: int
    device_limit: Optional[int]
    squad_uuids: List[str]


@dataclass(frozen=True)
class ExtraOption:
    kind: str  # "traffic" | "devices" | "servers"
    traffic_bytes: int = 0
    device_count: int = 0
    squad_uuid: Optional[str] = None


def gb_to_bytes(gb: float) -> int:
    return int(round(gb * BYTES_PER_GB))


def next_expire_at(current: Optional[datetime], duration_days: int, now: datetime) -> datetime:
    """max(current or now, now) + duration_days"""
    base = now if current is None or current < now else current
    return base + timedelta(days=duration_days)


def merge_squads(current: Iterable[str], granted: Iterable[str]) -> List[str]:
    """Order-preserving union. Never drops a squad the subscriber already has."""
    merged: List[str] = []
    for squad in list(current) + list(granted):
        if squad and squad not in merged:
            merged.append(squad)
    return merged


def build_grant(current: CurrentState, entitlement: Entitlement, now: datetime) -> EntitlementGrant:
    if entitlement.duration_days < 0:
        raise ValueError("duration_days must be non-negative")
    return EntitlementGrant(
        expire_at=next_expire_at(current.expire_at, entitlement.duration_days, now),
        traffic_limit_bytes=int(entitlement.traffic_limit_bytes or 0),
        device_limit=entitlement.device_limit,
        squad_uuids=merge_squads(current.squad_uuids, entitlement.squad_uuids),
    )


def extra_option_grant(current: CurrentState, option: ExtraOption, now: datetime) -> EntitlementGrant:
    """
    Apply a purchased extra option on top of the current state.

    Expiry is kept as is (an option never extends the subscription).
    """
    traffic = int(current.traffic_limit_bytes or 0)
    devices = current.device_limit
    squads = list(current.squad_uuids)

    if option.kind == "traffic":
        traffic += option.traffic_bytes
    elif option.kind == "devices":
        devices = (devices or 0) + option.device_count
    elif option.kind == "servers":
        squads = merge_squads(squads, [option.squad_uuid] if option.squad_uuid else [])
        traffic += option.traffic_bytes
    else:
        raise ValueError(f"Unknown extra option kind: {option.kind}")

    return EntitlementGrant(
        expire_at=current.expire_at or now,
        traffic_limit_bytes=traffic,
        device_limit=devices,
        squad_uuids=squads,
    )


# ====================================================================================
# Row → value object helpers
# ====================================================================================

def entitlement_from_row(row: Mapping[str, Any]) -> Entitlement:
    """Build from a tariffs / promo_groups / promo_codes row."""
    squads = row.get("internal_squad_uuids")
    if squads is None:
        squad = row.get("squad_uuid")
        squads = [squad] if squad else []
    return Entitlement(
        duration_days=int(row.get("duration_days") or 0),
        traffic_limit_bytes=int(row.get("traffic_limit_bytes") or 0),
        device_limit=row.get("device_limit"),
        squad_uuids=list(squads),
    )


def extra_option_from_metadata(data: Optional[Mapping[str, Any]]) -> Optional[ExtraOption]:
    """Parse `{"kind": ..., "traffic_bytes": ..., ...}`. None when the payload is not a valid option."""
    if not data:
        return None
    kind = data.get("kind")
    traffic_bytes = int(data.get("traffic_bytes") or 0)
    device_count = int(data.get("device_count") or 0)
    squad_uuid = data.get("squad_uuid")
    if kind == "traffic" and traffic_bytes > 0:
        return ExtraOption(kind="traffic", traffic_bytes=traffic_bytes)
    if kind == "devices" and device_count > 0:
        return ExtraOption(kind="devices", device_count=device_count)
    if kind == "servers" and squad_uuid:
        return ExtraOption(kind="servers", squad_uuid=str(squad_uuid), traffic_bytes=max(traffic_bytes, 0))
    return None
