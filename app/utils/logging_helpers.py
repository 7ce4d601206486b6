"""
Structured log lines for API requests and scheduled jobs.

Every line is one JSON object carrying:
- correlation_id: the request (X-Request-ID) or job run it belongs to
- component / operation
- outcome: success | degraded | failed | skipped

Failure taxonomy (error_type):
- domain_error: a business rule said no (validation, not found, conflict, funds)
- dependency_error: the VPN panel or a payment gateway failed
- infra_error: database, timeouts, sockets
- unexpected_error: anything else
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg
import httpx

from app.core.exceptions import EngineError, RemoteConflict, RemoteServiceUnavailable

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger("engine.events")

_LEVELS = {
    "failed": logging.ERROR,
    "degraded": logging.WARNING,
}


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def classify_error(exception: BaseException) -> str:
    if isinstance(exception, (RemoteServiceUnavailable, RemoteConflict, httpx.HTTPError)):
        return "dependency_error"
    if isinstance(exception, EngineError):
        return "domain_error"
    if isinstance(exception, (asyncpg.PostgresError, asyncio.TimeoutError, OSError)):
        return "infra_error"
    return "unexpected_error"


def _write(event: str, component: str, operation: str, outcome: Optional[str], **fields: Any) -> None:
    line = {
        "event": event,
        "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "correlation_id": get_correlation_id(),
        "component": component,
        "operation": operation,
    }
    if outcome is not None:
        line["outcome"] = outcome
    line.update({key: value for key, value in fields.items() if value is not None})
    logger.log(_LEVELS.get(outcome, logging.INFO), json.dumps(line, default=str, ensure_ascii=False))


def log_job_start(job: str, **fields: Any) -> str:
    """Open a job run: binds and returns a fresh correlation id."""
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    _write("JOB_START", "scheduler", job, None, **fields)
    return correlation_id


def log_job_end(
    job: str,
    outcome: str,
    items_processed: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    _write(
        "JOB_END", "scheduler", job, outcome,
        items_processed=items_processed, duration_ms=duration_ms, **fields,
    )


def log_request(
    method: str,
    path: str,
    outcome: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    error_type: Optional[str] = None,
) -> None:
    """One line per HTTP request handled by the API."""
    _write(
        "REQUEST", "api", f"{method} {path}", outcome,
        status_code=status_code, duration_ms=duration_ms, error_type=error_type,
    )
