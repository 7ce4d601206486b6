"""
Proxy Slot Service Layer
"""

from app.services.proxy.service import (
    create_slots_by_payment,
    allocate_nodes,
    ProxySlotsResult,
    NoProxyCapacityError,
)

__all__ = [
    "create_slots_by_payment",
    "allocate_nodes",
    "ProxySlotsResult",
    "NoProxyCapacityError",
]
