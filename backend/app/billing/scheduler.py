"""Background scheduler for the reconciler sweeps."""

import functools
import logging
from collections.abc import Awaitable, Callable
from datetime import timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from app.billing import reconciler
from app.config import settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def _logged_job(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[None]]:
    """Log and swallow database errors so one failed run does not kill the job."""

    @functools.wraps(func)
    async def wrapper() -> None:
        logger.info("Running scheduled task: %s", func.__name__)
        try:
            await func()
        except SQLAlchemyError:
            logger.exception("Scheduled task %s failed, will run again next cycle", func.__name__)

    return wrapper


def init_scheduler() -> AsyncIOScheduler:
    """Create, configure and start the scheduler."""
    global _scheduler

    logger.info("Initializing reconciler scheduler with UTC timezone")
    _scheduler = AsyncIOScheduler(timezone=timezone.utc)

    # Expired subscriptions, every 30 minutes by default
    _scheduler.add_job(
        _logged_job(reconciler.sweep_expired_subscriptions),
        trigger=IntervalTrigger(minutes=settings.reconcile_expiry_minutes),
        id="expired_subscriptions",
        replace_existing=True,
    )

    # Past-due escalation once a day
    _scheduler.add_job(
        _logged_job(reconciler.sweep_past_due_subscriptions),
        trigger=CronTrigger(hour=3, minute=0),
        id="past_due_escalation",
        replace_existing=True,
    )

    # Stale pending purchases at the top of every hour
    _scheduler.add_job(
        _logged_job(reconciler.sweep_stale_pending_purchases),
        trigger=CronTrigger(minute=0),
        id="stale_pending_purchases",
        replace_existing=True,
    )

    _scheduler.add_job(
        _logged_job(reconciler.sweep_unverified_accounts),
        trigger=CronTrigger(minute="*/10"),
        id="unverified_accounts",
        replace_existing=True,
    )

    # Processed-event retention
    _scheduler.add_job(
        _logged_job(reconciler.purge_old_events),
        trigger=CronTrigger(minute=30),
        id="processed_event_purge",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Scheduler started with %d jobs", len(_scheduler.get_jobs()))
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
