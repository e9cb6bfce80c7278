"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from tapidentity.config import settings
from tapidentity.worker.aggregate_job import run_daily_aggregation

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Daily aggregation of yesterday's activity at
      settings.aggregation_cron_hour:aggregation_cron_minute UTC

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        run_daily_aggregation,
        CronTrigger(
            hour=settings.aggregation_cron_hour,
            minute=settings.aggregation_cron_minute,
            timezone="UTC",
        ),
        id="daily_aggregation",
        name="Aggregate yesterday's activity into daily snapshots",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=3600,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: daily aggregation at %02d:%02d UTC (reporting %s)",
        settings.aggregation_cron_hour,
        settings.aggregation_cron_minute,
        "enabled" if settings.enable_reporting else "disabled",
    )

    return scheduler
