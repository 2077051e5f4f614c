"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from grocart.config import settings
from grocart.worker.tasks import ScrapeTaskRunner

logger = logging.getLogger(__name__)


def setup_scheduler(task_runner: ScrapeTaskRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    The weekly sweep only enqueues a job; the queue worker runs it like any
    other job.

    Returns:
        Configured (not yet started) scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone=settings.weekly_refresh_timezone)

    if settings.weekly_refresh_enabled:
        scheduler.add_job(
            task_runner.enqueue_weekly_refresh,
            CronTrigger(
                day_of_week=settings.weekly_refresh_day,
                hour=settings.weekly_refresh_hour,
                minute=0,
                timezone=settings.weekly_refresh_timezone,
            ),
            id="weekly_refresh",
            name="Enqueue weekly refresh of active ZIP codes",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        logger.info(
            f"Weekly refresh scheduled for {settings.weekly_refresh_day} "
            f"{settings.weekly_refresh_hour:02d}:00 {settings.weekly_refresh_timezone}"
        )
    else:
        logger.info("Weekly refresh disabled")

    return scheduler
