"""Tests for the identity claim protocol."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from factories import make_list, make_tap, make_user, make_visitor, new_anon_id
from tapidentity.dates import utcnow
from tapidentity.db.models import IdentityClaim, ShoppingList, TapEvent, Visitor
from tapidentity.errors import UnauthorizedError, ValidationError
from tapidentity.identity.claim import IdentityClaimService, identity_claim_service
from tapidentity.identity.matchers import TapMatcher


async def _events(session_factory):
    """Read tap events through a fresh session so bulk updates are visible."""
    async with session_factory() as session:
        result = await session.execute(select(TapEvent).order_by(TapEvent.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_claim_links_events_by_anon_visitor_id(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    for _ in range(3):
        db_session.add(make_tap(anon_visitor_id=anon_id))
    db_session.add(make_tap(anon_visitor_id=new_anon_id()))  # someone else
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id, method="login")

    assert outcome.conflict is False
    assert outcome.tap_events_linked == 3
    assert outcome.linked_by_method["login"] == 3

    events = await _events(session_factory)
    linked = [e for e in events if e.user_id == user.id]
    assert len(linked) == 3
    assert {e.link_method for e in linked} == {"login"}
    assert all(e.visitor_id == outcome.visitor_id and e.linked_at is not None for e in linked)
    assert events[3].user_id is None

    async with session_factory() as session:
        visitor = await session.get(Visitor, outcome.visitor_id)
        assert visitor.user_id == user.id
        assert visitor.anon_visitor_id == anon_id


@pytest.mark.asyncio
async def test_claim_creates_visitor_when_unknown(db_session, session_factory):
    user = await make_user(db_session)
    await db_session.commit()
    anon_id = new_anon_id()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    assert outcome.tap_events_linked == 0
    assert outcome.my_list_claimed is False
    async with session_factory() as session:
        visitor = (
            await session.execute(select(Visitor).where(Visitor.anon_visitor_id == anon_id))
        ).scalar_one()
        assert visitor.user_id == user.id


@pytest.mark.asyncio
async def test_claim_is_idempotent(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    db_session.add(make_tap(anon_visitor_id=anon_id))
    db_session.add(make_tap(anon_visitor_id=anon_id))
    await db_session.commit()

    first = await identity_claim_service.claim(db_session, user.id, anon_id, method="signup")
    before = {e.id: (e.user_id, e.linked_at, e.link_method) for e in await _events(session_factory)}

    second = await identity_claim_service.claim(db_session, user.id, anon_id, method="signup")
    after = {e.id: (e.user_id, e.linked_at, e.link_method) for e in await _events(session_factory)}

    assert second.visitor_id == first.visitor_id
    assert sum(second.linked_by_method.values()) == 0
    assert before == after

    async with session_factory() as session:
        claims = (await session.execute(select(IdentityClaim))).scalars().all()
        assert len(claims) == 1
        assert claims[0].method == "signup"
        assert "reclaimedAt" in claims[0].details
        assert claims[0].details["anonVisitorId"] == anon_id


@pytest.mark.asyncio
async def test_claim_conflict_leaves_data_untouched(db_session, session_factory):
    owner = await make_user(db_session, email="owner@example.com")
    other = await make_user(db_session, email="other@example.com")
    anon_id = new_anon_id()
    visitor = await make_visitor(db_session, anon_id, user_id=owner.id)
    db_session.add(make_tap(anon_visitor_id=anon_id))
    await db_session.commit()
    seen_before = visitor.last_seen_at

    outcome = await identity_claim_service.claim(db_session, other.id, anon_id)

    assert outcome.conflict is True
    assert outcome.visitor_id == visitor.id

    events = await _events(session_factory)
    assert events[0].user_id is None
    async with session_factory() as session:
        stored = await session.get(Visitor, visitor.id)
        assert stored.user_id == owner.id
        assert stored.last_seen_at == seen_before
        claims = (await session.execute(select(IdentityClaim))).scalars().all()
        assert claims == []


@pytest.mark.asyncio
async def test_claim_never_relinks_events_owned_by_another_user(db_session, session_factory):
    user = await make_user(db_session, email="me@example.com")
    anon_id = new_anon_id()
    earlier = utcnow() - timedelta(days=1)
    db_session.add(
        make_tap(
            anon_visitor_id=anon_id,
            user_id="someone-else",
            linked_at=earlier,
            link_method="manual",
        )
    )
    db_session.add(make_tap(anon_visitor_id=anon_id))
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    assert outcome.tap_events_linked == 1
    events = await _events(session_factory)
    assert events[0].user_id == "someone-else"
    assert events[0].linked_at == earlier
    assert events[0].link_method == "manual"
    assert events[1].user_id == user.id


@pytest.mark.asyncio
async def test_claim_backfills_visitor_id_on_events(db_session, session_factory):
    user = await make_user(db_session)
    other = await make_user(db_session, email="earlier@example.com")
    anon_id = new_anon_id()
    # Already owned, but missing the visitor reference
    db_session.add(make_tap(anon_visitor_id=anon_id, user_id=other.id, link_method="login"))
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    events = await _events(session_factory)
    assert events[0].visitor_id == outcome.visitor_id
    assert events[0].user_id == other.id


@pytest.mark.asyncio
async def test_fallback_matchers_run_in_confidence_order(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    visitor = await make_visitor(
        db_session,
        anon_id,
        last_tag_id="tag-shelf",
        last_batch_id="batch-shelf",
        ip_hash_last_seen="hash-1",
        user_agent_last_seen="Mozilla/5.0",
    )
    await make_list(
        db_session,
        owner_visitor_id=visitor.id,
        source_tag_id="tag-shelf",
        items=[{"item_key": "bread", "source_tag_id": "tag-bakery"}],
    )
    now = utcnow()
    # Matches both list provenance and last tag: the stronger signal wins
    db_session.add(make_tap(tag_id="tag-shelf", batch_id="batch-x", occurred_at=now))
    db_session.add(make_tap(tag_id="tag-bakery", batch_id="batch-y", occurred_at=now))
    # Only the last batch
    db_session.add(make_tap(tag_id="tag-other", batch_id="batch-shelf", occurred_at=now))
    # Only the stored fingerprint
    db_session.add(
        make_tap(
            tag_id="tag-z",
            batch_id="batch-z",
            ip_hash="hash-1",
            user_agent="Mozilla/5.0",
            occurred_at=now - timedelta(days=1),
        )
    )
    # Same fingerprint, outside the window
    db_session.add(
        make_tap(
            tag_id="tag-z",
            batch_id="batch-z",
            ip_hash="hash-1",
            user_agent="Mozilla/5.0",
            occurred_at=now - timedelta(days=8),
        )
    )
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    events = await _events(session_factory)
    assert [e.link_method for e in events] == [
        "myListSourceTag",
        "myListSourceTag",
        "visitorLastTag",
        "visitorStoredIpUa",
        None,
    ]
    assert outcome.linked_by_method == {
        "manual": 0,
        "myListSourceTag": 2,
        "visitorLastTag": 1,
        "visitorStoredIpUa": 1,
    }
    assert outcome.my_list_claimed is True

    async with session_factory() as session:
        audit = (await session.execute(select(IdentityClaim))).scalar_one()
    # Only the direct pass counts here; the breakdown carries the rest
    assert audit.details["tapEventsLinked"] == 0
    assert audit.details["linkedByMethod"]["myListSourceTag"] == 2


@pytest.mark.asyncio
async def test_fallback_respects_sample_limit(db_session, session_factory, monkeypatch):
    from tapidentity.config import settings

    monkeypatch.setattr(settings, "claim_last_tag_tap_limit", 2)
    user = await make_user(db_session)
    anon_id = new_anon_id()
    await make_visitor(db_session, anon_id, last_tag_id="tag-shelf")
    for _ in range(5):
        db_session.add(make_tap(tag_id="tag-shelf"))
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    assert outcome.linked_by_method["visitorLastTag"] == 2
    events = await _events(session_factory)
    assert sum(1 for e in events if e.user_id == user.id) == 2


@pytest.mark.asyncio
async def test_claim_marks_visitor_list_claimed(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    visitor = await make_visitor(db_session, anon_id)
    shopping_list = await make_list(db_session, owner_visitor_id=visitor.id)
    await db_session.commit()

    outcome = await identity_claim_service.claim(db_session, user.id, anon_id)

    assert outcome.my_list_claimed is True
    async with session_factory() as session:
        stored = await session.get(ShoppingList, shopping_list.id)
        assert stored.owner_user_id == user.id
        assert stored.claimed_at is not None


@pytest.mark.asyncio
async def test_claim_requires_user(db_session):
    with pytest.raises(UnauthorizedError):
        await identity_claim_service.claim(db_session, None, new_anon_id())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "anon_id",
    [
        "not-a-uuid",
        "",
        None,
        "urn:uuid:12345678-1234-5678-1234-567812345678",
        "{12345678-1234-5678-1234-567812345678}",
        "12345678123456781234567812345678",
    ],
)
async def test_claim_rejects_malformed_visitor_id(db_session, anon_id):
    with pytest.raises(ValidationError):
        await identity_claim_service.claim(db_session, "user-1", anon_id)


@pytest.mark.asyncio
async def test_claim_rejects_unknown_method(db_session):
    with pytest.raises(ValidationError):
        await identity_claim_service.claim(db_session, "user-1", new_anon_id(), method="sso")


class ExplodingMatcher(TapMatcher):
    name = "exploding"

    async def criteria(self, db, ctx):
        raise RuntimeError("matcher failed")


class SlowMatcher(TapMatcher):
    name = "slow"

    async def criteria(self, db, ctx):
        await asyncio.sleep(1)
        return None


@pytest.mark.asyncio
async def test_claim_failure_rolls_back_everything(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    db_session.add(make_tap(anon_visitor_id=anon_id))
    await db_session.commit()

    service = IdentityClaimService(fallback_matchers=[ExplodingMatcher()])
    with pytest.raises(RuntimeError):
        await service.claim(db_session, user.id, anon_id)

    events = await _events(session_factory)
    assert events[0].user_id is None
    async with session_factory() as session:
        visitor = (
            await session.execute(select(Visitor).where(Visitor.anon_visitor_id == anon_id))
        ).scalar_one_or_none()
        assert visitor is None


@pytest.mark.asyncio
async def test_claim_times_out(db_session, session_factory):
    user = await make_user(db_session)
    anon_id = new_anon_id()
    db_session.add(make_tap(anon_visitor_id=anon_id))
    await db_session.commit()

    service = IdentityClaimService(fallback_matchers=[SlowMatcher()], timeout_seconds=0.05)
    with pytest.raises(asyncio.TimeoutError):
        await service.claim(db_session, user.id, anon_id)

    events = await _events(session_factory)
    assert events[0].user_id is None
