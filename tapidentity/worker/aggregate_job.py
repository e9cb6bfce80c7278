"""Scheduled daily aggregation job.

Runs the daily aggregation for yesterday (UTC) in its own session.
"""

import logging
from datetime import date
from typing import Optional

from tapidentity import metrics
from tapidentity.config import settings
from tapidentity.db.session import AsyncSessionLocal
from tapidentity.errors import AggregationError
from tapidentity.reporting.aggregate import daily_aggregator

logger = logging.getLogger(__name__)


async def run_daily_aggregation(target_date: Optional[date] = None) -> Optional[dict]:
    """
    Entry point for the scheduler to run the daily aggregation.

    Returns:
        The aggregation summary, or None when reporting is disabled or the run failed
    """
    if not settings.enable_reporting:
        logger.info("Reporting disabled, skipping daily aggregation")
        return None

    async with AsyncSessionLocal() as db:
        try:
            summary = await daily_aggregator.aggregate_day(db, target_date)
        except AggregationError as e:
            # The scheduler has no caller to propagate to; the next run retries.
            logger.error("Scheduled aggregation failed at %s: %s", e.dimension, e)
            metrics.record_scheduler_run("daily_aggregation", False)
            return None

    metrics.record_scheduler_run("daily_aggregation", True)
    return summary.to_dict()
