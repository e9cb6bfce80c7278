"""Short-lived association of a tap session's events with a visitor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity import metrics
from tapidentity.config import settings
from tapidentity.dates import utcnow
from tapidentity.db.models import TapEvent
from tapidentity.errors import NotFoundError
from tapidentity.identity.visitors import find_or_create_visitor, increment_tap_count

logger = logging.getLogger(__name__)

RECENT_SESSION_LINK_METHOD = "recentTapSession"


@dataclass
class AttachResult:
    events_found: int
    visitor_id: Optional[str] = None
    user_id: Optional[str] = None
    events_linked: int = 0


async def attach_recent(
    db: AsyncSession,
    tap_session_id: str,
    anon_visitor_id: Optional[str] = None,
) -> AttachResult:
    """
    Attach the last few events of a tap session to a visitor.

    Only events from the last ``attach_recent_window_minutes`` that carry
    no visitor yet are eligible, and at most ``attach_recent_max_events`` of
    them. If the visitor is already claimed the events are also linked to
    its user, still guarded by ``user_id IS NULL``.

    Raises:
        NotFoundError: No eligible events for the session
    """
    now = utcnow()
    since = now - timedelta(minutes=settings.attach_recent_window_minutes)

    result = await db.execute(
        select(TapEvent.id)
        .where(
            TapEvent.session_hint == tap_session_id,
            TapEvent.occurred_at >= since,
            TapEvent.visitor_id.is_(None),
        )
        .order_by(TapEvent.occurred_at.desc())
        .limit(settings.attach_recent_max_events)
    )
    event_ids = list(result.scalars().all())

    if not event_ids:
        raise NotFoundError("No recent tap events found for this session ID")

    if not anon_visitor_id:
        return AttachResult(events_found=len(event_ids))

    visitor = await find_or_create_visitor(db, anon_visitor_id, now)
    await increment_tap_count(db, visitor.id, len(event_ids))

    await db.execute(
        update(TapEvent)
        .where(TapEvent.id.in_(event_ids), TapEvent.visitor_id.is_(None))
        .values(visitor_id=visitor.id, anon_visitor_id=anon_visitor_id)
        .execution_options(synchronize_session=False)
    )

    linked = 0
    if visitor.user_id:
        link_result = await db.execute(
            update(TapEvent)
            .where(TapEvent.id.in_(event_ids), TapEvent.user_id.is_(None))
            .values(
                user_id=visitor.user_id,
                linked_at=now,
                link_method=RECENT_SESSION_LINK_METHOD,
            )
            .execution_options(synchronize_session=False)
        )
        linked = link_result.rowcount or 0
        metrics.record_taps_linked(RECENT_SESSION_LINK_METHOD, linked)

    await db.commit()

    logger.info(
        "Attached %d recent events of session %s to visitor %s (%d linked to user)",
        len(event_ids),
        tap_session_id,
        visitor.id,
        linked,
    )
    return AttachResult(
        events_found=len(event_ids),
        visitor_id=visitor.id,
        user_id=visitor.user_id,
        events_linked=linked,
    )
