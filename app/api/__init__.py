"""
API module: FastAPI app with admin, client, webhook and health endpoints.

Domain errors map to HTTP statuses in one place:
ValidationError→400, InsufficientFunds→402, NotFound→404, Conflict→409,
RemoteServiceUnavailable→503.
"""
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import config
import database
import redis_client
from app.api import admin, client, webhooks
from app.services import vpn_client
from app.core.exceptions import (
    Conflict,
    EngineError,
    InsufficientFunds,
    NotFound,
    RemoteServiceUnavailable,
    ValidationError,
)
from app.core.session_store import SessionStoreUnavailable
from app.utils.logging_helpers import (
    classify_error,
    generate_correlation_id,
    log_request,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (ValidationError, 400),
    (InsufficientFunds, 402),
    (NotFound, 404),
    (Conflict, 409),
    (RemoteServiceUnavailable, 503),
)

app = FastAPI(title="VPN settlement engine")
app.include_router(admin.router)
app.include_router(client.router)
app.include_router(webhooks.router)


def error_status(exc: EngineError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status = error_status(exc)
    logger.info(
        f"API_DOMAIN_ERROR [path={request.url.path}, status={status}, "
        f"error_type={type(exc).__name__}, error={exc}]"
    )
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


@app.exception_handler(SessionStoreUnavailable)
async def session_store_error_handler(request: Request, exc: SessionStoreUnavailable):
    return JSONResponse(status_code=503, content={"error": "SessionStoreUnavailable", "message": str(exc)})


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    set_correlation_id(request.headers.get("X-Request-ID") or generate_correlation_id())
    started = time.monotonic()
    try:
        response = await call_next(request)
    except Exception as e:
        log_request(
            request.method, request.url.path, "failed",
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            error_type=classify_error(e),
        )
        raise
    log_request(
        request.method, request.url.path,
        "failed" if response.status_code >= 500 else "success",
        status_code=response.status_code,
        duration_ms=round((time.monotonic() - started) * 1000, 1),
    )
    return response


@app.get("/health")
async def health():
    redis_ok = await redis_client.check_redis_connection() if config.REDIS_URL else None
    panel_ok = await vpn_client.health_check() if config.PANEL_ENABLED else None
    status = "ok" if database.DB_READY and panel_ok is not False else "degraded"
    return JSONResponse(
        status_code=200 if database.DB_READY else 503,
        content={
            "status": status,
            "db_ready": database.DB_READY,
            "redis_ready": redis_ok,
            "panel_ready": panel_ok,
        },
    )
