"""Daily aggregation of raw activity into snapshot tables.

For one UTC day, five dimensions are computed from the activity ledger and
written with overwriting upserts:

- site: taps, two-tier unique visitor estimate, new users, lists, items
- batch / tag: taps and unique visitor estimate per key
- item: adds vs purchases per item key
- visitor: engagement counts, score and power-user flag

Each dimension runs in its own transaction against the same day window.
A failure stops the run but leaves earlier dimensions committed; running
the same date again recomputes every dimension from scratch and converges.

Unique visitor estimate (two-tier, fixed):
    distinct non-null anon_visitor_id
    + distinct (ip_hash, user_agent) pairs among taps with no anon_visitor_id
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity import metrics
from tapidentity.config import settings
from tapidentity.dates import DayWindow, utcnow, yesterday_utc
from tapidentity.db.models import (
    DailyBatchStats,
    DailyItemStats,
    DailySiteStats,
    DailyTagStats,
    DailyVisitorStats,
    ShoppingList,
    ShoppingListItem,
    TapEvent,
    User,
    Visitor,
)
from tapidentity.db.upsert import UPSERT_CHUNK_SIZE, upsert_rows
from tapidentity.errors import AggregationError
from tapidentity.logging_config import JobLogger
from tapidentity.reporting.scoring import EngagementCounts, engagement_score, is_power_user

logger = logging.getLogger(__name__)

JOB_NAME = "aggregate-daily"


@dataclass
class SiteStats:
    taps_total: int = 0
    unique_visitors_est: int = 0
    users_new: int = 0
    users_active_est: int = 0
    lists_created: int = 0
    items_added: int = 0
    items_purchased: int = 0


@dataclass
class AggregationSummary:
    """Per-dimension row counts for one processed date."""

    date: str
    site: SiteStats = field(default_factory=SiteStats)
    batches: int = 0
    tags: int = 0
    items: int = 0
    visitors: int = 0
    power_users: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DailyAggregator:
    """Computes and writes the five daily snapshot dimensions."""

    def __init__(self, power_user_threshold: Optional[int] = None):
        self.power_user_threshold = power_user_threshold

    @property
    def threshold(self) -> int:
        if self.power_user_threshold is not None:
            return self.power_user_threshold
        return settings.power_user_score_threshold

    async def aggregate_day(
        self,
        db: AsyncSession,
        target_date: Optional[date] = None,
    ) -> AggregationSummary:
        """
        Aggregate one UTC day (default: yesterday).

        Raises:
            AggregationError: A dimension failed; earlier dimensions stay committed
        """
        day = target_date or yesterday_utc()
        window = DayWindow.for_date(day)
        summary = AggregationSummary(date=window.label)

        job = JobLogger(__name__, JOB_NAME, date=window.label)
        job.start()
        started = time.monotonic()

        steps = (
            ("site", self._site_step),
            ("batch", self._batch_step),
            ("tag", self._tag_step),
            ("item", self._item_step),
            ("visitor", self._visitor_step),
        )

        for dimension, step in steps:
            try:
                written = await step(db, window, summary)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                metrics.record_aggregation_run(False, time.monotonic() - started)
                job.error(exc, dimension=dimension)
                raise AggregationError(dimension, exc) from exc
            metrics.record_rows_upserted(dimension, written)

        metrics.record_aggregation_run(True, time.monotonic() - started)
        job.end(
            {
                "site": asdict(summary.site),
                "batches": summary.batches,
                "tags": summary.tags,
                "items": summary.items,
                "visitors": summary.visitors,
                "power_users": summary.power_users,
            }
        )
        return summary

    # ------------------------------------------------------------------
    # Shared query pieces
    # ------------------------------------------------------------------

    @staticmethod
    def _tap_filters(window: DayWindow) -> list:
        return [
            TapEvent.occurred_at >= window.start,
            TapEvent.occurred_at <= window.end,
            TapEvent.is_duplicate.is_(False),
        ]

    async def _unique_visitors_est(self, db: AsyncSession, window: DayWindow) -> int:
        filters = self._tap_filters(window)

        by_anon = await db.execute(
            select(func.count(func.distinct(TapEvent.anon_visitor_id))).where(
                *filters, TapEvent.anon_visitor_id.is_not(None)
            )
        )

        pairs = (
            select(TapEvent.ip_hash, TapEvent.user_agent)
            .where(*filters, TapEvent.anon_visitor_id.is_(None), TapEvent.ip_hash.is_not(None))
            .distinct()
            .subquery()
        )
        by_fingerprint = await db.execute(select(func.count()).select_from(pairs))

        return (by_anon.scalar() or 0) + (by_fingerprint.scalar() or 0)

    async def _keyed_tap_stats(
        self, db: AsyncSession, window: DayWindow, key
    ) -> dict[str, dict[str, int]]:
        """Taps and two-tier visitor estimate grouped by ``key`` (tag or batch)."""
        filters = self._tap_filters(window)

        stats: dict[str, dict[str, int]] = {}

        taps = await db.execute(
            select(key, func.count(TapEvent.id)).where(*filters).group_by(key)
        )
        for value, count in taps.all():
            stats[value] = {"taps_total": count, "unique_visitors_est": 0}

        by_anon = await db.execute(
            select(key, func.count(func.distinct(TapEvent.anon_visitor_id)))
            .where(*filters, TapEvent.anon_visitor_id.is_not(None))
            .group_by(key)
        )
        for value, count in by_anon.all():
            stats[value]["unique_visitors_est"] += count

        pairs = (
            select(key.label("key"), TapEvent.ip_hash, TapEvent.user_agent)
            .where(*filters, TapEvent.anon_visitor_id.is_(None), TapEvent.ip_hash.is_not(None))
            .distinct()
            .subquery()
        )
        by_fingerprint = await db.execute(
            select(pairs.c.key, func.count()).group_by(pairs.c.key)
        )
        for value, count in by_fingerprint.all():
            stats[value]["unique_visitors_est"] += count

        return stats

    async def _replace_rows(
        self,
        db: AsyncSession,
        model,
        window: DayWindow,
        key_column: str,
        rows: list[dict[str, Any]],
    ) -> int:
        """Upsert this day's rows and drop rows for keys no longer present."""
        column = getattr(model, key_column)
        existing = await db.execute(select(column).where(model.date == window.day))
        stale = sorted(set(existing.scalars().all()) - {row[key_column] for row in rows})

        # Chunked so a large day stays under the driver's bind-parameter limit
        for i in range(0, len(stale), UPSERT_CHUNK_SIZE):
            await db.execute(
                delete(model)
                .where(model.date == window.day, column.in_(stale[i:i + UPSERT_CHUNK_SIZE]))
                .execution_options(synchronize_session=False)
            )
        if stale:
            logger.debug(
                "Dropped %d stale %s rows for %s", len(stale), model.__tablename__, window.label
            )

        return await upsert_rows(db, model, rows, conflict_columns=["date", key_column])

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    async def compute_site_stats(self, db: AsyncSession, window: DayWindow) -> SiteStats:
        filters = self._tap_filters(window)

        taps_total = (
            await db.execute(select(func.count(TapEvent.id)).where(*filters))
        ).scalar() or 0
        unique_visitors_est = await self._unique_visitors_est(db, window)
        users_new = (
            await db.execute(
                select(func.count(User.id)).where(
                    User.created_at >= window.start, User.created_at <= window.end
                )
            )
        ).scalar() or 0
        lists_created = (
            await db.execute(
                select(func.count(ShoppingList.id)).where(
                    ShoppingList.created_at >= window.start,
                    ShoppingList.created_at <= window.end,
                )
            )
        ).scalar() or 0
        items_added = (
            await db.execute(
                select(func.count(ShoppingListItem.id)).where(
                    ShoppingListItem.last_added_at >= window.start,
                    ShoppingListItem.last_added_at <= window.end,
                )
            )
        ).scalar() or 0
        items_purchased = (
            await db.execute(
                select(func.count(ShoppingListItem.id)).where(
                    ShoppingListItem.purchased_at >= window.start,
                    ShoppingListItem.purchased_at <= window.end,
                )
            )
        ).scalar() or 0

        return SiteStats(
            taps_total=taps_total,
            unique_visitors_est=unique_visitors_est,
            users_new=users_new,
            users_active_est=unique_visitors_est,  # same as unique visitors for now
            lists_created=lists_created,
            items_added=items_added,
            items_purchased=items_purchased,
        )

    async def _site_step(self, db: AsyncSession, window: DayWindow, summary: AggregationSummary) -> int:
        summary.site = await self.compute_site_stats(db, window)
        row = {"date": window.day, **asdict(summary.site), "updated_at": utcnow()}
        return await upsert_rows(db, DailySiteStats, [row], conflict_columns=["date"])

    async def _batch_step(self, db: AsyncSession, window: DayWindow, summary: AggregationSummary) -> int:
        stats = await self._keyed_tap_stats(db, window, TapEvent.batch_id)
        rows = [{"date": window.day, "batch_id": key, **values} for key, values in stats.items()]
        summary.batches = await self._replace_rows(db, DailyBatchStats, window, "batch_id", rows)
        return summary.batches

    async def _tag_step(self, db: AsyncSession, window: DayWindow, summary: AggregationSummary) -> int:
        stats = await self._keyed_tap_stats(db, window, TapEvent.tag_id)
        rows = [{"date": window.day, "tag_id": key, **values} for key, values in stats.items()]
        summary.tags = await self._replace_rows(db, DailyTagStats, window, "tag_id", rows)
        return summary.tags

    async def compute_item_stats(self, db: AsyncSession, window: DayWindow) -> dict[str, dict[str, int]]:
        """Adds and purchases per item key, one merged entry per key."""
        items: dict[str, dict[str, int]] = {}

        added = await db.execute(
            select(ShoppingListItem.item_key, func.count(ShoppingListItem.id))
            .where(
                ShoppingListItem.last_added_at >= window.start,
                ShoppingListItem.last_added_at <= window.end,
            )
            .group_by(ShoppingListItem.item_key)
        )
        for item_key, count in added.all():
            items[item_key] = {"added_count": count, "purchased_count": 0}

        purchased = await db.execute(
            select(ShoppingListItem.item_key, func.count(ShoppingListItem.id))
            .where(
                ShoppingListItem.purchased_at >= window.start,
                ShoppingListItem.purchased_at <= window.end,
            )
            .group_by(ShoppingListItem.item_key)
        )
        for item_key, count in purchased.all():
            entry = items.setdefault(item_key, {"added_count": 0, "purchased_count": 0})
            entry["purchased_count"] = count

        return items

    async def _item_step(self, db: AsyncSession, window: DayWindow, summary: AggregationSummary) -> int:
        stats = await self.compute_item_stats(db, window)
        rows = [{"date": window.day, "item_key": key, **values} for key, values in stats.items()]
        summary.items = await self._replace_rows(db, DailyItemStats, window, "item_key", rows)
        return summary.items

    async def compute_visitor_stats(self, db: AsyncSession, window: DayWindow) -> list[dict[str, Any]]:
        """Engagement counts, score and power-user flag per visitor who tapped that day."""
        filters = self._tap_filters(window)

        tap_groups = await db.execute(
            select(
                TapEvent.visitor_id,
                func.count(TapEvent.id),
                func.count(func.distinct(TapEvent.tag_id)),
                func.count(func.distinct(TapEvent.batch_id)),
                func.max(TapEvent.user_id),  # any same-day denormalized owner
            )
            .where(*filters, TapEvent.visitor_id.is_not(None))
            .group_by(TapEvent.visitor_id)
        )
        groups = tap_groups.all()
        if not groups:
            return []

        visitor_ids = [row[0] for row in groups]
        visitor_users = dict(
            (
                await db.execute(
                    select(Visitor.id, Visitor.user_id).where(Visitor.id.in_(visitor_ids))
                )
            ).all()
        )

        lists_created = dict(
            (
                await db.execute(
                    select(ShoppingList.owner_visitor_id, func.count(ShoppingList.id))
                    .where(
                        ShoppingList.owner_visitor_id.is_not(None),
                        ShoppingList.created_at >= window.start,
                        ShoppingList.created_at <= window.end,
                    )
                    .group_by(ShoppingList.owner_visitor_id)
                )
            ).all()
        )

        async def items_by_owner(column) -> dict[str, int]:
            result = await db.execute(
                select(ShoppingList.owner_visitor_id, func.count(ShoppingListItem.id))
                .join(ShoppingList, ShoppingListItem.list_id == ShoppingList.id)
                .where(
                    ShoppingList.owner_visitor_id.is_not(None),
                    column >= window.start,
                    column <= window.end,
                )
                .group_by(ShoppingList.owner_visitor_id)
            )
            return dict(result.all())

        items_added = await items_by_owner(ShoppingListItem.last_added_at)
        items_purchased = await items_by_owner(ShoppingListItem.purchased_at)

        rows = []
        for visitor_id, taps, tags_tapped, batches_tapped, event_user_id in groups:
            counts = EngagementCounts(
                taps=taps,
                tags_tapped=tags_tapped,
                batches_tapped=batches_tapped,
                lists_created=lists_created.get(visitor_id, 0),
                items_added=items_added.get(visitor_id, 0),
                items_purchased=items_purchased.get(visitor_id, 0),
            )
            score = engagement_score(counts)
            rows.append(
                {
                    "date": window.day,
                    "visitor_id": visitor_id,
                    "user_id": event_user_id or visitor_users.get(visitor_id),
                    **asdict(counts),
                    "score": score,
                    "is_power_user": is_power_user(score, self.threshold),
                }
            )
        return rows

    async def _visitor_step(self, db: AsyncSession, window: DayWindow, summary: AggregationSummary) -> int:
        rows = await self.compute_visitor_stats(db, window)
        summary.visitors = await self._replace_rows(db, DailyVisitorStats, window, "visitor_id", rows)
        summary.power_users = sum(1 for row in rows if row["is_power_user"])
        return summary.visitors


# Global aggregator instance
daily_aggregator = DailyAggregator()
