"""Tests for the visitor registry helpers."""

import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from factories import make_tag, make_tap, make_visitor, new_anon_id
from tapidentity.dates import utcnow
from tapidentity.db.models import TapEvent, Visitor
from tapidentity.identity.visitors import (
    extract_client_ip,
    find_or_create_visitor,
    hash_ip,
    identify_visitor,
    ping_visitor,
    touch_visitor_for_tap,
)


def test_hash_ip_uses_salt():
    expected = hashlib.sha256(b"203.0.113.9:pepper").hexdigest()
    assert hash_ip("203.0.113.9", salt="pepper") == expected
    assert hash_ip("203.0.113.9", salt="other") != expected


@pytest.mark.parametrize(
    "headers, ip",
    [
        ({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}, "203.0.113.9"),
        ({"x-forwarded-for": " ", "x-real-ip": "198.51.100.4"}, "198.51.100.4"),
        ({"x-real-ip": "198.51.100.4"}, "198.51.100.4"),
        ({}, None),
    ],
)
def test_extract_client_ip(headers, ip):
    assert extract_client_ip(headers) == ip


@pytest.mark.asyncio
async def test_find_or_create_is_stable(db_session):
    anon_id = new_anon_id()

    first = await find_or_create_visitor(db_session, anon_id)
    second = await find_or_create_visitor(db_session, anon_id, lock=True)
    await db_session.commit()

    assert first.id == second.id
    count = await db_session.scalar(
        select(func.count()).select_from(Visitor).where(Visitor.anon_visitor_id == anon_id)
    )
    assert count == 1


@pytest.mark.asyncio
async def test_ping_refreshes_fingerprint(db_session):
    anon_id = new_anon_id()

    visitor = await ping_visitor(db_session, anon_id, ip_hash="h1", user_agent="ua-1")
    assert (visitor.ip_hash_last_seen, visitor.user_agent_last_seen) == ("h1", "ua-1")

    # Missing values never erase the stored pair
    visitor = await ping_visitor(db_session, anon_id)
    assert (visitor.ip_hash_last_seen, visitor.user_agent_last_seen) == ("h1", "ua-1")
    assert visitor.user_id is None


@pytest.mark.asyncio
async def test_touch_counts_only_taps_with_a_tag(db_session):
    anon_id = new_anon_id()

    visitor = await touch_visitor_for_tap(db_session, anon_id, tag_id="tag-1", batch_id="batch-1")
    assert visitor.tap_count == 1
    assert (visitor.last_tag_id, visitor.last_batch_id) == ("tag-1", "batch-1")

    visitor = await touch_visitor_for_tap(db_session, anon_id)
    assert visitor.tap_count == 1

    visitor = await touch_visitor_for_tap(db_session, anon_id, tag_id="tag-2")
    assert visitor.tap_count == 2
    assert (visitor.last_tag_id, visitor.last_batch_id) == ("tag-2", "batch-1")


async def _taps(db_session):
    result = await db_session.execute(
        select(TapEvent).order_by(TapEvent.id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_identify_attributes_recent_taps_on_the_tag(db_session):
    tag = await make_tag(db_session, batch_id="batch-1")
    other_visitor = await make_visitor(db_session)
    now = utcnow()
    db_session.add_all(
        [
            make_tap(tag.id, "batch-1", now - timedelta(minutes=2), ip_hash="h1"),
            make_tap("tag-elsewhere", "batch-1", now - timedelta(minutes=1), ip_hash="h1"),
            make_tap(tag.id, "batch-1", now - timedelta(minutes=10), ip_hash="h1"),
            make_tap(tag.id, "batch-1", now, ip_hash="h2"),
            make_tap(tag.id, "batch-1", now, ip_hash="h1", visitor_id=other_visitor.id),
        ]
    )
    await db_session.commit()
    anon_id = new_anon_id()

    visitor = await identify_visitor(
        db_session, anon_id, ip_hash="h1", tag_uuid=tag.public_uuid, batch_id="batch-1", now=now
    )

    assert visitor.tap_count == 1
    assert (visitor.last_tag_id, visitor.last_batch_id) == (tag.id, "batch-1")
    taps = await _taps(db_session)
    assert [t.visitor_id for t in taps] == [visitor.id, None, None, None, other_visitor.id]
    assert taps[0].anon_visitor_id == anon_id


@pytest.mark.asyncio
async def test_identify_without_matching_tag_uses_ip_only(db_session):
    tag = await make_tag(db_session, batch_id="batch-1")
    now = utcnow()
    db_session.add_all(
        [
            make_tap(tag.id, "batch-1", now - timedelta(minutes=1), ip_hash="h1"),
            make_tap("tag-elsewhere", "batch-2", now - timedelta(minutes=1), ip_hash="h1"),
        ]
    )
    await db_session.commit()

    # Tag belongs to another batch, so it is ignored
    visitor = await identify_visitor(
        db_session,
        new_anon_id(),
        ip_hash="h1",
        tag_uuid=tag.public_uuid,
        batch_id="batch-9",
        now=now,
    )

    assert visitor.tap_count == 0
    assert visitor.last_tag_id is None
    assert [t.visitor_id for t in await _taps(db_session)] == [visitor.id, visitor.id]


@pytest.mark.asyncio
async def test_identify_without_ip_only_touches_visitor(db_session):
    db_session.add(make_tap(occurred_at=utcnow(), ip_hash="h1"))
    await db_session.commit()

    visitor = await identify_visitor(db_session, new_anon_id())

    assert visitor.tap_count == 0
    assert [t.visitor_id for t in await _taps(db_session)] == [None]
