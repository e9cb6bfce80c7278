"""Visitor registry: find-or-create, fingerprint refresh, tap bookkeeping."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.config import settings
from tapidentity.dates import utcnow
from tapidentity.db.models import NfcTag, TapEvent, Visitor
from tapidentity.db.upsert import insert_ignore

logger = logging.getLogger(__name__)


def hash_ip(ip: str, salt: Optional[str] = None) -> str:
    """SHA-256 of ``"{ip}:{salt}"``; raw IPs are never stored."""
    salt = settings.ip_hash_salt if salt is None else salt
    return hashlib.sha256(f"{ip}:{salt}".encode()).hexdigest()


def extract_client_ip(headers: Mapping[str, str]) -> Optional[str]:
    """Client IP from proxy headers: first x-forwarded-for entry, then x-real-ip."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return None


async def find_or_create_visitor(
    db: AsyncSession,
    anon_visitor_id: str,
    now: Optional[datetime] = None,
    lock: bool = False,
) -> Visitor:
    """
    Return the Visitor for ``anon_visitor_id``, creating it if absent.

    The insert is conflict-tolerant so two racing requests converge on one
    row. With ``lock=True`` the row is re-read ``FOR UPDATE`` so concurrent
    claims for the same visitor serialize on it until the transaction ends.
    ``last_seen_at`` is touched either way.
    """
    now = now or utcnow()

    await insert_ignore(
        db,
        Visitor,
        {
            "anon_visitor_id": anon_visitor_id,
            "first_seen_at": now,
            "last_seen_at": now,
            "tap_count": 0,
        },
        conflict_columns=["anon_visitor_id"],
    )

    query = select(Visitor).where(Visitor.anon_visitor_id == anon_visitor_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    visitor = result.scalar_one()

    visitor.last_seen_at = now
    await db.flush()
    return visitor


async def ping_visitor(
    db: AsyncSession,
    anon_visitor_id: str,
    ip_hash: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Visitor:
    """Ensure the visitor exists and refresh its last-seen fingerprint."""
    visitor = await find_or_create_visitor(db, anon_visitor_id)

    if ip_hash:
        visitor.ip_hash_last_seen = ip_hash
    if user_agent:
        visitor.user_agent_last_seen = user_agent

    await db.commit()
    return visitor


async def touch_visitor_for_tap(
    db: AsyncSession,
    anon_visitor_id: str,
    tag_id: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> Visitor:
    """
    Record a tap (or identify call) against the visitor registry.

    ``tap_count`` only moves when a tag is given; identify calls without a
    tag just touch ``last_seen_at``. The caller commits.
    """
    visitor = await find_or_create_visitor(db, anon_visitor_id)

    values: dict = {}
    if tag_id:
        values["tap_count"] = Visitor.tap_count + 1
        values["last_tag_id"] = tag_id
    if batch_id:
        values["last_batch_id"] = batch_id

    if values:
        await db.execute(
            update(Visitor)
            .where(Visitor.id == visitor.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(visitor)

    return visitor


async def increment_tap_count(db: AsyncSession, visitor_id: str, count: int, **fields) -> None:
    """Atomically add ``count`` taps to a visitor and set any extra columns."""
    await db.execute(
        update(Visitor)
        .where(Visitor.id == visitor_id)
        .values(tap_count=Visitor.tap_count + count, **fields)
        .execution_options(synchronize_session=False)
    )


async def identify_visitor(
    db: AsyncSession,
    anon_visitor_id: str,
    ip_hash: Optional[str] = None,
    tag_uuid: Optional[str] = None,
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Visitor:
    """
    Register a visitor once the client knows its anonymous id.

    The tag counts only when ``tag_uuid`` resolves to a tag of ``batch_id``.
    Taps from the same IP hash in the last few minutes that carry no
    visitor yet (restricted to the resolved tag, if any) are attributed to
    this visitor. Events that already have a visitor are never moved.
    Commits.
    """
    now = now or utcnow()

    tag_id = tag_batch_id = None
    if tag_uuid and batch_id:
        tag = (
            await db.execute(select(NfcTag).where(NfcTag.public_uuid == tag_uuid))
        ).scalar_one_or_none()
        if tag is not None and tag.batch_id == batch_id:
            tag_id, tag_batch_id = tag.id, tag.batch_id

    visitor = await touch_visitor_for_tap(db, anon_visitor_id, tag_id, tag_batch_id)

    if ip_hash:
        window_start = now - timedelta(minutes=settings.identify_window_minutes)
        criteria = [
            TapEvent.visitor_id.is_(None),
            TapEvent.ip_hash == ip_hash,
            TapEvent.occurred_at >= window_start,
        ]
        if tag_id:
            criteria.append(TapEvent.tag_id == tag_id)

        result = await db.execute(
            update(TapEvent)
            .where(*criteria)
            .values(visitor_id=visitor.id, anon_visitor_id=anon_visitor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Attributed %d recent taps to visitor %s", result.rowcount, visitor.id)

    await db.commit()
    return visitor
