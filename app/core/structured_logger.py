"""
Lifecycle events in the `COMPONENT_OPERATION [key=value, ...]` line format.

The same fields are attached to the record as `extra` so a JSON formatter can
pick them up. The correlation id of the current request or job run is added
when the caller does not pass one. Never pass secrets or full payloads.
"""
import logging
from typing import Any, Optional

from app.utils.logging_helpers import get_correlation_id

_LEVELS = ("debug", "info", "warning", "error", "critical")


def format_event(component: str, operation: str, fields: dict) -> str:
    name = f"{component}_{operation}".upper()
    if not fields:
        return name
    return f"{name} [{', '.join(f'{key}={value}' for key, value in fields.items())}]"


def log_event(
    logger: logging.Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    reason: Optional[str] = None,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    Emit one lifecycle event.

    Example:
        log_event(logger, component="payments", operation="mark_paid",
                  outcome="already_paid", reason="source=webhook, payment_id=42")
        → PAYMENTS_MARK_PAID [outcome=already_paid, reason=source=webhook, payment_id=42]
    """
    event = {"outcome": outcome}
    if duration_ms is not None:
        event["duration_ms"] = duration_ms
    if reason is not None:
        event["reason"] = reason
    event.update({key: value for key, value in fields.items() if value is not None})

    correlation_id = correlation_id or get_correlation_id()
    extra = {"component": component, "operation": operation, **event}
    if correlation_id is not None:
        extra["correlation_id"] = correlation_id

    level = level.lower() if level.lower() in _LEVELS else "info"
    logger.log(
        logging.getLevelName(level.upper()),
        format_event(component, operation, event),
        extra=extra,
    )
