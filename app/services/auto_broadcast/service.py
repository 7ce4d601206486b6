"""
Auto Broadcast Eligibility Engine

Evaluates AutoBroadcastRule triggers against the client / payment ledger and
messages each eligible client at most once per rule.

- Eligible = matches the trigger at now − delay_days, not blocked, and has no
  auto_broadcast_logs row for the rule.
- The log row is written (ON CONFLICT DO NOTHING) only after at least one
  channel delivered; a client whose row appears mid-run is skipped.
- Runs of the same rule never overlap: a Redis lock when Redis is configured,
  otherwise a per-process asyncio.Lock. A busy rule is skipped, not queued.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

import config
import database
import redis_client
from app.core.redis_lock import RedisRunLock
from app.services.notifications import service as notification_service
from app.services.notifications.exceptions import ChannelNotConfiguredError
from app.utils.logging_helpers import (
    classify_error,
    log_job_end,
    log_job_start,
)

logger = logging.getLogger(__name__)

TELEGRAM_DELAY_SECONDS = 0.06
EMAIL_DELAY_SECONDS = 0.2
RULE_LOCK_TTL_SECONDS = 30 * 60
MAX_REPORTED_ERRORS = 5

CHANNEL_TELEGRAM = "telegram"
CHANNEL_EMAIL = "email"
CHANNEL_BOTH = "both"

_local_locks: Dict[int, asyncio.Lock] = {}


@dataclass
class RunRuleResult:
    rule_id: int
    rule_name: str
    sent: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


def eligibility_window(delay_days: int, now: datetime) -> Tuple[datetime, datetime]:
    """(since, window_start): since = now − delay_days, window_start = since − 1 day."""
    since = now - timedelta(days=max(delay_days, 0))
    return since, since - timedelta(days=1)


@asynccontextmanager
async def rule_run_lock(rule_id: int) -> AsyncIterator[bool]:
    """Yields True when this caller owns the rule's run, False when a run is in progress."""
    client = await redis_client.get_redis_client()
    if client is not None:
        lock = RedisRunLock(
            client,
            redis_client.key("lock", "auto_broadcast", rule_id),
            ttl_seconds=RULE_LOCK_TTL_SECONDS,
        )
        acquired = await lock.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                await lock.release()
        return

    lock = _local_locks.setdefault(rule_id, asyncio.Lock())
    if lock.locked():
        yield False
        return
    async with lock:
        yield True


async def _get_candidates(rule: dict, now: datetime) -> List[dict]:
    since, window_start = eligibility_window(rule.get("delay_days") or 0, now)
    return await database.get_auto_broadcast_candidates(
        rule["id"], rule["trigger_type"], now=now, since=since, window_start=window_start
    )


async def get_eligible_client_ids(rule_id: int, now: Optional[datetime] = None) -> List[int]:
    """Ids of clients the rule would message now. Empty for a missing or disabled rule."""
    rule = await database.get_auto_broadcast_rule(rule_id)
    if rule is None or not rule["enabled"]:
        return []
    candidates = await _get_candidates(rule, now or datetime.now(timezone.utc))
    return [c["id"] for c in candidates]


def _channels_for(rule: dict) -> Tuple[bool, bool]:
    """
    (telegram, email) transports usable for the rule.

    Raises:
        ChannelNotConfiguredError: none of the rule's channels has a transport
    """
    channel = rule.get("channel") or CHANNEL_TELEGRAM
    want_telegram = channel in (CHANNEL_TELEGRAM, CHANNEL_BOTH)
    want_email = channel in (CHANNEL_EMAIL, CHANNEL_BOTH)
    do_telegram = want_telegram and notification_service.get_bot() is not None
    do_email = want_email and config.SMTP_ENABLED
    if not do_telegram and not do_email:
        raise ChannelNotConfiguredError(f"Channel '{channel}' is not configured")
    return do_telegram, do_email


async def run_rule(rule_id: int, now: Optional[datetime] = None) -> RunRuleResult:
    """
    Message every eligible client of one rule.

    Safe to call repeatedly and concurrently: each (rule, client) pair is
    messaged at most once in total.
    """
    rule = await database.get_auto_broadcast_rule(rule_id)
    if rule is None:
        return RunRuleResult(rule_id, "", errors=["Rule not found"], skipped_reason="not_found")
    result = RunRuleResult(rule_id, rule["name"])
    if not rule["enabled"]:
        result.skipped_reason = "disabled"
        return result

    async with rule_run_lock(rule_id) as acquired:
        if not acquired:
            logger.info(f"AUTO_BROADCAST_RULE_BUSY [rule_id={rule_id}]")
            result.skipped_reason = "already_running"
            return result
        await _send_rule(rule, result, now or datetime.now(timezone.utc))

    logger.info(
        f"AUTO_BROADCAST_RULE_DONE [rule_id={rule_id}, trigger={rule['trigger_type']}, "
        f"sent={result.sent}, errors={len(result.errors)}]"
    )
    return result


def _add_error(result: RunRuleResult, message: str) -> None:
    if len(result.errors) < MAX_REPORTED_ERRORS:
        result.errors.append(message)


async def _send_rule(rule: dict, result: RunRuleResult, now: datetime) -> None:
    try:
        do_telegram, do_email = _channels_for(rule)
    except ChannelNotConfiguredError as e:
        logger.warning(f"AUTO_BROADCAST_CHANNEL_UNAVAILABLE [rule_id={rule['id']}, error={e}]")
        _add_error(result, str(e))
        return

    candidates = await _get_candidates(rule, now)
    if not candidates:
        return

    service_name = await database.get_setting("service_name", "VPN") or "VPN"
    message = rule["message"].strip()
    subject = (rule.get("subject") or "").strip() or f"Сообщение от {service_name}"

    for client in candidates:
        if await database.has_auto_broadcast_log(rule["id"], client["id"]):
            continue

        telegram_ok = False
        email_ok = False
        if do_telegram and client.get("telegram_id"):
            telegram_ok = await notification_service.send_telegram(client["telegram_id"], message)
            if not telegram_ok:
                _add_error(result, f"Telegram {client['id']}")
            await asyncio.sleep(TELEGRAM_DELAY_SECONDS)
        if do_email and client.get("email"):
            email_ok = await notification_service.send_email(client["email"], subject, message)
            if not email_ok:
                _add_error(result, f"Email {client['id']}")
            await asyncio.sleep(EMAIL_DELAY_SECONDS)

        if (telegram_ok or email_ok) and await database.insert_auto_broadcast_log(rule["id"], client["id"]):
            result.sent += 1


async def run_all_rules(now: Optional[datetime] = None) -> List[RunRuleResult]:
    """Run every enabled rule; a failing rule is reported and the batch continues."""
    log_job_start("auto_broadcast")
    started = time.monotonic()
    results: List[RunRuleResult] = []
    failed = 0

    for rule in await database.get_auto_broadcast_rules(enabled_only=True):
        try:
            results.append(await run_rule(rule["id"], now=now))
        except Exception as e:
            failed += 1
            logger.exception(
                f"AUTO_BROADCAST_RULE_FAILED [rule_id={rule['id']}, error_type={classify_error(e)}]"
            )
            results.append(RunRuleResult(rule["id"], rule.get("name", ""), errors=[str(e)[:200]]))

    sent = sum(r.sent for r in results)
    log_job_end(
        "auto_broadcast",
        outcome="degraded" if failed else "success",
        items_processed=sent,
        duration_ms=round((time.monotonic() - started) * 1000, 1),
        rules=len(results),
        failed_rules=failed,
    )
    return results
