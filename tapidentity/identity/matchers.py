"""Tap-event matchers for the claim protocol.

A matcher names one signal that ties unlinked tap events to a claimed
visitor. Matchers run in order of decreasing confidence:

    primary (anon visitor id / visitor id)
    -> myListSourceTag (tags and batches the visitor's list came from)
    -> visitorLastTag (visitor's last tapped tag / batch)
    -> visitorStoredIpUa (stored ip hash + user agent, recent only)

Every write goes through ``link_tap_events`` whose UPDATE always carries
``user_id IS NULL``. An event linked by an earlier, stronger matcher is
therefore never rewritten by a later one, and two concurrent passes cannot
relink the same row. Add a signal by appending a matcher to
``FALLBACK_MATCHERS``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity import metrics
from tapidentity.config import settings
from tapidentity.db.models import ShoppingList, ShoppingListItem, TapEvent, Visitor

logger = logging.getLogger(__name__)


@dataclass
class LinkContext:
    """Everything a matcher needs to know about the claim in progress."""

    user_id: str
    visitor: Visitor
    anon_visitor_id: str
    method: str
    now: datetime


async def link_tap_events(
    db: AsyncSession,
    ctx: LinkContext,
    criteria: ColumnElement[bool],
    link_method: str,
    limit: Optional[int] = None,
) -> int:
    """
    Link unlinked tap events matching ``criteria`` to the claiming user.

    ``user_id``, ``visitor_id``, ``anon_visitor_id``, ``linked_at`` and
    ``link_method`` are written in one statement. With ``limit`` the
    candidate ids are sampled first so a single call touches a bounded
    number of rows; the UPDATE re-checks ``user_id IS NULL`` in case another
    transaction linked a sampled row in between.

    Returns:
        Number of rows actually linked
    """
    unlinked = TapEvent.user_id.is_(None)

    if limit is not None:
        id_result = await db.execute(
            select(TapEvent.id).where(criteria, unlinked).limit(limit)
        )
        ids = list(id_result.scalars().all())
        if not ids:
            return 0
        target = and_(TapEvent.id.in_(ids), unlinked)
    else:
        target = and_(criteria, unlinked)

    result = await db.execute(
        update(TapEvent)
        .where(target)
        .values(
            user_id=ctx.user_id,
            visitor_id=ctx.visitor.id,
            anon_visitor_id=ctx.anon_visitor_id,
            linked_at=ctx.now,
            link_method=link_method,
        )
        .execution_options(synchronize_session=False)
    )
    linked = result.rowcount or 0
    metrics.record_taps_linked(link_method, linked)
    return linked


class TapMatcher:
    """Base matcher: build criteria for candidate events, then link them."""

    name: str = "unknown"

    def limit(self) -> Optional[int]:
        return None

    def link_method(self, ctx: LinkContext) -> str:
        return self.name

    async def criteria(
        self, db: AsyncSession, ctx: LinkContext
    ) -> Optional[ColumnElement[bool]]:
        """Return the candidate predicate, or None when the signal is absent."""
        raise NotImplementedError

    async def link(self, db: AsyncSession, ctx: LinkContext) -> int:
        criteria = await self.criteria(db, ctx)
        if criteria is None:
            return 0

        linked = await link_tap_events(
            db, ctx, criteria, self.link_method(ctx), limit=self.limit()
        )
        if linked:
            logger.info(
                "Matcher %s linked %d taps for anon_visitor_id=%s",
                self.name,
                linked,
                ctx.anon_visitor_id,
            )
        return linked


class PrimaryMatcher(TapMatcher):
    """Explicit identifier match. Recorded under the claim method itself."""

    name = "primary"

    def link_method(self, ctx: LinkContext) -> str:
        return ctx.method

    async def criteria(self, db, ctx):
        return or_(
            TapEvent.anon_visitor_id == ctx.anon_visitor_id,
            TapEvent.visitor_id == ctx.visitor.id,
        )


class ListSourceTagMatcher(TapMatcher):
    """Tags and batches recorded as the source of the visitor's list items."""

    name = "myListSourceTag"

    def limit(self) -> Optional[int]:
        return settings.claim_list_source_tap_limit

    async def criteria(self, db, ctx):
        list_result = await db.execute(
            select(ShoppingList)
            .where(ShoppingList.owner_visitor_id == ctx.visitor.id)
            .order_by(ShoppingList.created_at.desc())
            .limit(1)
        )
        shopping_list = list_result.scalar_one_or_none()
        if shopping_list is None:
            return None

        tag_ids: set[str] = set()
        batch_ids: set[str] = set()
        if shopping_list.source_tag_id:
            tag_ids.add(shopping_list.source_tag_id)
        if shopping_list.source_batch_id:
            batch_ids.add(shopping_list.source_batch_id)

        item_result = await db.execute(
            select(ShoppingListItem.source_tag_id, ShoppingListItem.source_batch_id)
            .where(ShoppingListItem.list_id == shopping_list.id)
            .limit(settings.claim_list_item_sample)
        )
        for source_tag_id, source_batch_id in item_result.all():
            if source_tag_id:
                tag_ids.add(source_tag_id)
            if source_batch_id:
                batch_ids.add(source_batch_id)

        clauses = []
        if tag_ids:
            clauses.append(TapEvent.tag_id.in_(sorted(tag_ids)))
        if batch_ids:
            clauses.append(TapEvent.batch_id.in_(sorted(batch_ids)))
        return or_(*clauses) if clauses else None


class LastTagMatcher(TapMatcher):
    """The visitor's last-seen tag or batch."""

    name = "visitorLastTag"

    def limit(self) -> Optional[int]:
        return settings.claim_last_tag_tap_limit

    async def criteria(self, db, ctx):
        clauses = []
        if ctx.visitor.last_tag_id:
            clauses.append(TapEvent.tag_id == ctx.visitor.last_tag_id)
        if ctx.visitor.last_batch_id:
            clauses.append(TapEvent.batch_id == ctx.visitor.last_batch_id)
        return or_(*clauses) if clauses else None


class StoredIpUaMatcher(TapMatcher):
    """Same ip hash and user agent as the visitor's stored pair, recent taps only."""

    name = "visitorStoredIpUa"

    def limit(self) -> Optional[int]:
        return settings.claim_ip_ua_tap_limit

    async def criteria(self, db, ctx):
        visitor = ctx.visitor
        if not (visitor.ip_hash_last_seen and visitor.user_agent_last_seen):
            return None

        since = ctx.now - timedelta(days=settings.claim_ip_ua_window_days)
        return and_(
            TapEvent.ip_hash == visitor.ip_hash_last_seen,
            TapEvent.user_agent == visitor.user_agent_last_seen,
            TapEvent.occurred_at >= since,
        )


PRIMARY_MATCHER = PrimaryMatcher()

# Strictly decreasing confidence; order matters
FALLBACK_MATCHERS: list[TapMatcher] = [
    ListSourceTagMatcher(),
    LastTagMatcher(),
    StoredIpUaMatcher(),
]


async def backfill_visitor_id(db: AsyncSession, ctx: LinkContext) -> int:
    """Set visitor_id on events carrying the anon id but no visitor id.

    Schema repair only; ownership is untouched.
    """
    result = await db.execute(
        update(TapEvent)
        .where(
            TapEvent.anon_visitor_id == ctx.anon_visitor_id,
            TapEvent.visitor_id.is_(None),
        )
        .values(visitor_id=ctx.visitor.id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
