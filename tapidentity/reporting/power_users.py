"""Power-user leaderboard over the recent daily visitor snapshots."""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.config import settings
from tapidentity.dates import utcnow
from tapidentity.db.models import DailyVisitorStats, User
from tapidentity.reporting.scoring import is_power_user

logger = logging.getLogger(__name__)

# Visitors counted in the "top share of taps" KPI
TOP_SHARE_SIZE = 10


@dataclass
class PowerUserEntry:
    visitor_id: str
    user_id: Optional[str]
    total_score: int
    taps: int
    active_days: int
    avg_daily_score: float
    is_power_user: bool
    user_email: Optional[str] = None


@dataclass
class PowerUserReport:
    since: date
    top_visitors: list[PowerUserEntry] = field(default_factory=list)
    power_users_count: int = 0
    # Percent of all taps made by the top visitors, one decimal
    power_user_share: float = 0.0


async def power_user_report(
    db: AsyncSession,
    days: Optional[int] = None,
    limit: Optional[int] = None,
    today: Optional[date] = None,
) -> PowerUserReport:
    """
    Rank visitors by total score over the last ``days`` days.

    A visitor is a power user when its total score over the window reaches
    the power-user threshold. The user id of a visitor is the first
    non-null one found in its snapshots.
    """
    days = days or settings.power_user_window_days
    limit = limit or settings.power_user_report_limit
    since = (today or utcnow().date()) - timedelta(days=days)

    result = await db.execute(
        select(
            DailyVisitorStats.visitor_id,
            DailyVisitorStats.user_id,
            DailyVisitorStats.score,
            DailyVisitorStats.taps,
        )
        .where(DailyVisitorStats.date >= since)
        .order_by(DailyVisitorStats.date)
    )

    totals: dict[str, PowerUserEntry] = {}
    for visitor_id, user_id, score, taps in result.all():
        entry = totals.get(visitor_id)
        if entry is None:
            entry = totals[visitor_id] = PowerUserEntry(
                visitor_id=visitor_id,
                user_id=user_id,
                total_score=0,
                taps=0,
                active_days=0,
                avg_daily_score=0.0,
                is_power_user=False,
            )
        entry.total_score += score
        entry.taps += taps
        entry.active_days += 1  # one snapshot row per visitor per day
        if entry.user_id is None and user_id:
            entry.user_id = user_id

    for entry in totals.values():
        entry.avg_daily_score = round(entry.total_score / entry.active_days, 2)
        entry.is_power_user = is_power_user(entry.total_score)

    ranked = sorted(totals.values(), key=lambda e: (-e.total_score, e.visitor_id))
    top = ranked[:limit]

    user_ids = {e.user_id for e in top if e.user_id}
    if user_ids:
        users = await db.execute(select(User.id, User.email).where(User.id.in_(user_ids)))
        emails = dict(users.all())
        for entry in top:
            entry.user_email = emails.get(entry.user_id) if entry.user_id else None

    all_taps = sum(e.taps for e in ranked)
    top_taps = sum(e.taps for e in ranked[:TOP_SHARE_SIZE])
    share = round(top_taps / all_taps * 100, 1) if all_taps else 0.0

    logger.debug("Power-user report since %s: %d visitors", since, len(ranked))
    return PowerUserReport(
        since=since,
        top_visitors=top,
        power_users_count=sum(1 for e in ranked if e.is_power_user),
        power_user_share=share,
    )
