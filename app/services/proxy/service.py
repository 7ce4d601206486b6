"""
Proxy Slot Service

Creates the proxy slots bought with a proxy tariff payment.

Slots are spread round-robin over the ONLINE nodes of the tariff (or all ONLINE
nodes when none are linked), skipping nodes whose capacity is used up. Each
slot gets random credentials and expires duration_days after creation.
Slots are keyed by (payment_id, slot_index), and the payment's apply marker
keeps a re-run from allocating twice.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import database
from app.core.exceptions import NotFound, RemoteServiceUnavailable, ValidationError
from app.services.entitlements import service as entitlement_service

logger = logging.getLogger(__name__)

LOGIN_LENGTH = 20
PASSWORD_LENGTH = 16
_ALPHABET = string.ascii_letters + string.digits


class NoProxyCapacityError(RemoteServiceUnavailable):
    """No ONLINE node with free capacity"""
    pass


@dataclass
class ProxySlotsResult:
    payment_id: int
    slots: List[Dict[str, Any]]
    already_applied: bool = False


def _random_token(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def allocate_nodes(nodes: List[Dict[str, Any]], count: int) -> List[int]:
    """
    Node id for each of `count` slots, round-robin, capacity-aware.

    A node with capacity None is unbounded. The result is shorter than `count`
    when the nodes run out of room.
    """
    free: Dict[int, Optional[int]] = {}
    for node in nodes:
        capacity = node.get("capacity")
        free[node["id"]] = None if capacity is None else max(0, capacity - (node.get("active_slots") or 0))

    order = [node["id"] for node in nodes]
    allocated: List[int] = []
    index = 0
    while len(allocated) < count:
        available = [node_id for node_id in order if free[node_id] is None or free[node_id] > 0]
        if not available:
            break
        # next node in rotation that still has room
        for offset in range(len(order)):
            node_id = order[(index + offset) % len(order)]
            if free[node_id] is None or free[node_id] > 0:
                break
        allocated.append(node_id)
        if free[node_id] is not None:
            free[node_id] -= 1
        index = (order.index(node_id) + 1) % len(order)
    return allocated


async def create_slots_by_payment(payment_id: int, now: Optional[datetime] = None) -> ProxySlotsResult:
    """
    Create the proxy slots for a PAID proxy tariff payment (idempotent).

    Raises:
        ValidationError: payment is not a proxy tariff payment
        NotFound: tariff missing or disabled
        NoProxyCapacityError: no node can take a slot
    """
    payment = await entitlement_service.load_paid_payment(payment_id)
    if payment.get("proxy_tariff_id") is None:
        raise ValidationError(f"Payment {payment_id} is not a proxy tariff payment")

    tariff = await database.get_proxy_tariff(payment["proxy_tariff_id"])
    if tariff is None or not tariff["enabled"]:
        raise NotFound(f"Proxy tariff {payment['proxy_tariff_id']} not found or disabled")

    async def _create() -> List[Dict[str, Any]]:
        nodes = await database.get_proxy_nodes_for_tariff(tariff["id"])
        node_ids = allocate_nodes(nodes, tariff["proxy_count"])
        if not node_ids:
            raise NoProxyCapacityError("No proxy nodes with free capacity")
        if len(node_ids) < tariff["proxy_count"]:
            logger.warning(
                f"PROXY_CAPACITY_SHORT [payment_id={payment_id}, requested={tariff['proxy_count']}, "
                f"allocated={len(node_ids)}]"
            )

        created_at = now or datetime.now(timezone.utc)
        slots = [
            {
                "slot_index": index,
                "node_id": node_id,
                "login": _random_token(LOGIN_LENGTH),
                "password": _random_token(PASSWORD_LENGTH),
            }
            for index, node_id in enumerate(node_ids)
        ]
        rows = await database.create_proxy_slots(
            payment, tariff, slots, created_at + timedelta(days=tariff["duration_days"])
        )
        logger.info(f"PROXY_SLOTS_CREATED [payment_id={payment_id}, slots={len(rows)}]")
        return rows

    rows = await entitlement_service.run_once_per_payment(payment, _create)
    if rows is None:
        return ProxySlotsResult(
            payment_id, await database.get_proxy_slots_by_payment(payment_id), already_applied=True
        )
    return ProxySlotsResult(payment_id, rows)
