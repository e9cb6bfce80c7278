"""Tests for the daily aggregation engine."""

from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from factories import make_list, make_tap, make_user, make_visitor, new_anon_id
from tapidentity.db.models import (
    DailyBatchStats,
    DailyItemStats,
    DailySiteStats,
    DailyTagStats,
    DailyVisitorStats,
    TapEvent,
)
from tapidentity.errors import AggregationError
from tapidentity.reporting.aggregate import DailyAggregator

DAY = date(2026, 2, 12)
NOON = datetime(2026, 2, 12, 12, 0)


async def _rows(session_factory, model):
    async with session_factory() as session:
        result = await session.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_unique_visitor_estimate_is_two_tier(db_session, session_factory):
    for _ in range(3):
        db_session.add(make_tap(anon_visitor_id=new_anon_id(), occurred_at=NOON))
    for _ in range(2):
        db_session.add(make_tap(ip_hash="h1", user_agent="ua", occurred_at=NOON))
    await db_session.commit()

    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.site.taps_total == 5
    assert summary.site.unique_visitors_est == 4
    assert summary.site.users_active_est == 4

    site = (await _rows(session_factory, DailySiteStats))[0]
    assert site.date == DAY
    assert site.unique_visitors_est == 4


@pytest.mark.asyncio
async def test_window_bounds_and_duplicates(db_session):
    anon_id = new_anon_id()
    db_session.add(make_tap(anon_visitor_id=anon_id, occurred_at=datetime(2026, 2, 12, 0, 0)))
    db_session.add(
        make_tap(anon_visitor_id=anon_id, occurred_at=datetime(2026, 2, 12, 23, 59, 59, 999999))
    )
    db_session.add(make_tap(anon_visitor_id=anon_id, occurred_at=datetime(2026, 2, 13, 0, 0)))
    db_session.add(make_tap(anon_visitor_id=anon_id, occurred_at=datetime(2026, 2, 11, 23, 59)))
    db_session.add(make_tap(anon_visitor_id=anon_id, occurred_at=NOON, is_duplicate=True))
    await db_session.commit()

    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.site.taps_total == 2
    assert summary.site.unique_visitors_est == 1


@pytest.mark.asyncio
async def test_batch_and_tag_dimensions(db_session, session_factory):
    anon_a, anon_b = new_anon_id(), new_anon_id()
    db_session.add(make_tap("tag-1", "batch-1", NOON, anon_visitor_id=anon_a))
    db_session.add(make_tap("tag-1", "batch-1", NOON, anon_visitor_id=anon_a))
    db_session.add(make_tap("tag-2", "batch-1", NOON, anon_visitor_id=anon_b))
    db_session.add(make_tap("tag-3", "batch-2", NOON, ip_hash="h", user_agent="ua"))
    await db_session.commit()

    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.batches == 2
    assert summary.tags == 3
    batches = {r.batch_id: r for r in await _rows(session_factory, DailyBatchStats)}
    assert (batches["batch-1"].taps_total, batches["batch-1"].unique_visitors_est) == (3, 2)
    assert (batches["batch-2"].taps_total, batches["batch-2"].unique_visitors_est) == (1, 1)
    tags = {r.tag_id: r for r in await _rows(session_factory, DailyTagStats)}
    assert (tags["tag-1"].taps_total, tags["tag-1"].unique_visitors_est) == (2, 1)
    assert tags["tag-3"].unique_visitors_est == 1


@pytest.mark.asyncio
async def test_item_dimension_merges_adds_and_purchases(db_session, session_factory):
    visitor = await make_visitor(db_session)
    await make_list(
        db_session,
        owner_visitor_id=visitor.id,
        created_at=NOON,
        items=[
            {"item_key": "milk", "last_added_at": NOON, "purchased_at": NOON},
            {"item_key": "eggs", "last_added_at": NOON},
            {"item_key": "bread", "last_added_at": NOON - timedelta(days=3), "purchased_at": NOON},
        ],
    )
    await db_session.commit()

    await DailyAggregator().aggregate_day(db_session, DAY)

    items = {r.item_key: r for r in await _rows(session_factory, DailyItemStats)}
    assert set(items) == {"milk", "eggs", "bread"}
    assert (items["milk"].added_count, items["milk"].purchased_count) == (1, 1)
    assert (items["eggs"].added_count, items["eggs"].purchased_count) == (1, 0)
    assert (items["bread"].added_count, items["bread"].purchased_count) == (0, 1)


@pytest.mark.asyncio
async def test_visitor_dimension_scores(db_session, session_factory):
    user = await make_user(db_session)
    visitor = await make_visitor(db_session, user_id=user.id)
    for i in range(10):
        db_session.add(
            make_tap(
                tag_id=f"tag-{i % 2}",
                batch_id="batch-1",
                occurred_at=NOON,
                visitor_id=visitor.id,
            )
        )
    items = [{"item_key": f"item-{i}", "last_added_at": NOON} for i in range(5)]
    for i in range(8):
        items.append(
            {"item_key": f"bought-{i}", "last_added_at": NOON - timedelta(days=2), "purchased_at": NOON}
        )
    await make_list(db_session, owner_visitor_id=visitor.id, created_at=NOON, items=items)
    await db_session.commit()

    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    rows = await _rows(session_factory, DailyVisitorStats)
    assert len(rows) == 1
    row = rows[0]
    assert row.user_id == user.id
    assert (row.taps, row.tags_tapped, row.batches_tapped) == (10, 2, 1)
    assert (row.lists_created, row.items_added, row.items_purchased) == (1, 5, 8)
    assert row.score == 10 + 4 + 2 + 3 + 5 + 40
    assert row.is_power_user is True
    assert summary.power_users == 1


@pytest.mark.asyncio
async def test_visitor_user_id_prefers_same_day_event(db_session, session_factory):
    visitor = await make_visitor(db_session)
    db_session.add(make_tap(occurred_at=NOON, visitor_id=visitor.id, user_id="user-from-event"))
    await db_session.commit()

    await DailyAggregator().aggregate_day(db_session, DAY)

    rows = await _rows(session_factory, DailyVisitorStats)
    assert rows[0].user_id == "user-from-event"


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db_session, session_factory):
    visitor = await make_visitor(db_session)
    db_session.add(make_tap(occurred_at=NOON, visitor_id=visitor.id, anon_visitor_id=new_anon_id()))
    await make_list(
        db_session,
        owner_visitor_id=visitor.id,
        created_at=NOON,
        items=[{"item_key": "milk", "last_added_at": NOON}],
    )
    await db_session.commit()

    aggregator = DailyAggregator()
    first = await aggregator.aggregate_day(db_session, DAY)
    snapshot = {
        model: [
            {c.name: getattr(r, c.name) for c in model.__table__.columns if c.name not in ("id", "updated_at")}
            for r in await _rows(session_factory, model)
        ]
        for model in (DailySiteStats, DailyBatchStats, DailyTagStats, DailyItemStats, DailyVisitorStats)
    }

    second = await aggregator.aggregate_day(db_session, DAY)
    again = {
        model: [
            {c.name: getattr(r, c.name) for c in model.__table__.columns if c.name not in ("id", "updated_at")}
            for r in await _rows(session_factory, model)
        ]
        for model in snapshot
    }

    assert first.to_dict() == second.to_dict()
    assert snapshot == again


@pytest.mark.asyncio
async def test_rerun_drops_keys_no_longer_present(db_session, session_factory):
    db_session.add(make_tap("tag-old", "batch-old", NOON, anon_visitor_id=new_anon_id()))
    await db_session.commit()
    await DailyAggregator().aggregate_day(db_session, DAY)

    # Event reclassified as a duplicate after the first run
    await db_session.execute(update(TapEvent).values(is_duplicate=True))
    await db_session.commit()
    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.tags == 0
    assert await _rows(session_factory, DailyTagStats) == []
    assert (await _rows(session_factory, DailySiteStats))[0].taps_total == 0


@pytest.mark.asyncio
async def test_stale_keys_deleted_in_chunks(db_session, session_factory, monkeypatch):
    monkeypatch.setattr("tapidentity.reporting.aggregate.UPSERT_CHUNK_SIZE", 2)
    for i in range(5):
        db_session.add(make_tap(f"tag-{i}", "batch-1", NOON, anon_visitor_id=new_anon_id()))
    await db_session.commit()
    await DailyAggregator().aggregate_day(db_session, DAY)
    assert len(await _rows(session_factory, DailyTagStats)) == 5

    await db_session.execute(
        update(TapEvent).where(TapEvent.tag_id != "tag-2").values(is_duplicate=True)
    )
    await db_session.commit()
    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.tags == 1
    assert [r.tag_id for r in await _rows(session_factory, DailyTagStats)] == ["tag-2"]


@pytest.mark.asyncio
async def test_empty_day_writes_zero_site_row(db_session, session_factory):
    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.to_dict()["site"]["taps_total"] == 0
    assert (summary.batches, summary.tags, summary.items, summary.visitors) == (0, 0, 0, 0)
    assert len(await _rows(session_factory, DailySiteStats)) == 1


@pytest.mark.asyncio
async def test_failure_keeps_earlier_dimensions(db_session, session_factory):
    visitor = await make_visitor(db_session)
    db_session.add(
        make_tap(occurred_at=NOON, anon_visitor_id=visitor.anon_visitor_id, visitor_id=visitor.id)
    )
    await db_session.commit()

    aggregator = DailyAggregator()
    with patch.object(
        DailyAggregator, "compute_item_stats", side_effect=RuntimeError("items table locked")
    ):
        with pytest.raises(AggregationError) as excinfo:
            await aggregator.aggregate_day(db_session, DAY)

    assert excinfo.value.dimension == "item"
    assert len(await _rows(session_factory, DailySiteStats)) == 1
    assert len(await _rows(session_factory, DailyTagStats)) == 1
    assert await _rows(session_factory, DailyVisitorStats) == []

    # A clean re-run converges
    summary = await aggregator.aggregate_day(db_session, DAY)
    assert summary.visitors == 1
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(DailyItemStats))
    assert count == 0


@pytest.mark.asyncio
async def test_items_counted_on_last_added_at(db_session):
    visitor = await make_visitor(db_session)
    await make_list(
        db_session,
        owner_visitor_id=visitor.id,
        created_at=NOON - timedelta(days=5),
        items=[{"item_key": "milk", "last_added_at": NOON}],
    )
    await db_session.commit()

    summary = await DailyAggregator().aggregate_day(db_session, DAY)

    assert summary.site.lists_created == 0
    assert summary.site.items_added == 1
    assert summary.site.items_purchased == 0
