"""
Auto broadcast scheduler.

One AsyncIOScheduler job per process runs every enabled auto broadcast rule on
a crontab schedule. The expression is read from the `auto_broadcast_cron`
setting, then AUTO_BROADCAST_CRON, then DEFAULT_AUTO_BROADCAST_CRON; an
invalid expression falls back to the default. restart() re-reads it after an
admin changes the setting.
"""
import logging
from typing import Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import config
import database
from app.services.auto_broadcast import service as auto_broadcast_service

logger = logging.getLogger(__name__)

JOB_ID = "auto_broadcast"

_scheduler: Optional[AsyncIOScheduler] = None
_current_cron: Optional[str] = None


def parse_cron(expression: Optional[str]) -> Tuple[CronTrigger, str]:
    """Trigger for the expression, or for the default when it is empty or invalid."""
    expr = (expression or "").strip()
    if expr:
        try:
            return CronTrigger.from_crontab(expr), expr
        except ValueError as e:
            logger.warning(
                f"AUTO_BROADCAST_CRON_INVALID [cron={expr!r}, fallback={config.DEFAULT_AUTO_BROADCAST_CRON}, error={e}]"
            )
    default = config.DEFAULT_AUTO_BROADCAST_CRON
    return CronTrigger.from_crontab(default), default


async def resolve_cron_expression() -> str:
    setting = None
    try:
        setting = await database.get_setting("auto_broadcast_cron")
    except Exception as e:
        logger.warning(f"AUTO_BROADCAST_CRON_SETTING_UNAVAILABLE [error={e}]")
    return (setting or "").strip() or config.AUTO_BROADCAST_CRON or config.DEFAULT_AUTO_BROADCAST_CRON


async def _run_job() -> None:
    try:
        results = await auto_broadcast_service.run_all_rules()
    except Exception:
        logger.exception("AUTO_BROADCAST_SCHEDULED_RUN_FAILED")
        return
    total = sum(r.sent for r in results)
    if total > 0 or any(r.errors for r in results):
        logger.info(f"AUTO_BROADCAST_SCHEDULED_RUN [rules={len(results)}, sent={total}]")


def is_running() -> bool:
    return _scheduler is not None and _scheduler.running


def current_cron() -> Optional[str]:
    return _current_cron


async def start(cron_expression: Optional[str] = None) -> Optional[str]:
    """
    Start the scheduler. No-op when it is already running.

    Returns:
        The crontab expression in effect
    """
    global _scheduler, _current_cron

    if is_running():
        return _current_cron

    expression = cron_expression or await resolve_cron_expression()
    trigger, effective = parse_cron(expression)

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        _run_job,
        trigger=trigger,
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    _scheduler = scheduler
    _current_cron = effective
    logger.info(f"AUTO_BROADCAST_SCHEDULER_STARTED [cron={effective}]")
    return effective


def stop() -> None:
    global _scheduler, _current_cron

    if _scheduler is None:
        return
    if _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
    _current_cron = None
    logger.info("AUTO_BROADCAST_SCHEDULER_STOPPED")


async def restart() -> Optional[str]:
    """Stop and start again with the current configuration."""
    stop()
    return await start()
