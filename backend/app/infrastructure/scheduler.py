"""
Scheduled jobs for subscription maintenance.

The expiry sweep retires current subscriptions whose end date has passed.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config.settings import get_settings
from app.infrastructure.db.dependencies import get_subscription_service


logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "expire_subscriptions"

_scheduler: Optional[AsyncIOScheduler] = None


async def run_expiry_sweep() -> int:
    """
    Run one expiry sweep.

    Errors are logged, not raised, so the scheduler keeps running.
    """
    try:
        return await get_subscription_service().sweep_expired()
    except Exception as e:
        logger.error(f"Error during subscription expiry sweep: {e}", exc_info=True)
        return 0


def start_scheduler() -> AsyncIOScheduler:
    """Start the scheduler with the expiry sweep job."""
    global _scheduler
    settings = get_settings()

    if _scheduler is not None and _scheduler.running:
        return _scheduler

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        run_expiry_sweep,
        trigger=IntervalTrigger(hours=settings.sweep_interval_hours),
        id=EXPIRY_SWEEP_JOB_ID,
        name="Expire subscriptions past their end date",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        f"Scheduler started. Expiry sweep runs every {settings.sweep_interval_hours}h"
    )
    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    global _scheduler
    try:
        if _scheduler is not None and _scheduler.running:
            _scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown successfully")
    except Exception as e:
        logger.error(f"Error shutting down scheduler: {e}", exc_info=True)
    finally:
        _scheduler = None
