"""Identity claim: retroactively attach a visitor's history to an account.

The whole protocol runs in one transaction on the caller's session:

1. find-or-create the visitor (row locked for the rest of the transaction)
2. conflict gate: visitor already owned by another user -> roll back, report
3. claim the visitor
4. primary link pass + visitor_id backfill
5-7. fallback matchers (list provenance, last tag, stored ip/ua)
8. claim / merge the visitor's shopping list
9. upsert the (user, visitor) audit row
10. count events linked to the user within the last few seconds

Any exception rolls the transaction back, so no partial linking survives.
The conflict case is returned as data, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity import metrics
from tapidentity.config import settings
from tapidentity.dates import utcnow
from tapidentity.db.models import IdentityClaim, TapEvent
from tapidentity.db.upsert import dialect_insert
from tapidentity.errors import UnauthorizedError, ValidationError
from tapidentity.identity.list_merge import claim_visitor_list
from tapidentity.identity.matchers import (
    FALLBACK_MATCHERS,
    PRIMARY_MATCHER,
    LinkContext,
    TapMatcher,
    backfill_visitor_id,
)
from tapidentity.identity.visitors import find_or_create_visitor

logger = logging.getLogger(__name__)

CLAIM_METHODS = ("login", "signup", "manual")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\Z", re.IGNORECASE
)


@dataclass
class ClaimOutcome:
    """Result of one claim call. ``conflict`` is the only structured failure."""

    anon_visitor_id: str
    visitor_id: Optional[str] = None
    conflict: bool = False
    tap_events_linked: int = 0
    my_list_claimed: bool = False
    linked_by_method: dict[str, int] = field(default_factory=dict)


def validate_anon_visitor_id(value: str) -> str:
    """
    Return ``value`` unchanged if it is a hyphenated 8-4-4-4-12 UUID string.

    Braced, ``urn:uuid:`` and bare-hex spellings are rejected so one device
    token never maps to two visitor rows.
    """
    if not isinstance(value, str) or not UUID_PATTERN.match(value):
        raise ValidationError("anonVisitorId must be a valid UUID")
    return value


class IdentityClaimService:
    """Runs the claim protocol against an injected session."""

    def __init__(
        self,
        fallback_matchers: Optional[Sequence[TapMatcher]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.primary_matcher = PRIMARY_MATCHER
        self.fallback_matchers = list(
            FALLBACK_MATCHERS if fallback_matchers is None else fallback_matchers
        )
        self.timeout_seconds = timeout_seconds or settings.claim_timeout_seconds

    async def claim(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        anon_visitor_id: str,
        method: str = "manual",
    ) -> ClaimOutcome:
        """
        Claim ``anon_visitor_id`` for ``user_id``.

        The session must not have an open transaction with unrelated
        pending work: it is committed on success and rolled back on conflict
        or error.

        Raises:
            UnauthorizedError: No authenticated user
            ValidationError: Malformed visitor id or method
        """
        if not user_id:
            raise UnauthorizedError()
        if method not in CLAIM_METHODS:
            raise ValidationError(f"method must be one of {', '.join(CLAIM_METHODS)}")
        anon_visitor_id = validate_anon_visitor_id(anon_visitor_id)

        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                self._run(db, user_id, anon_visitor_id, method),
                timeout=self.timeout_seconds,
            )
            if outcome.conflict:
                await db.rollback()
            else:
                await db.commit()
        except Exception:
            await db.rollback()
            metrics.record_claim(method, "error", time.monotonic() - started)
            logger.exception(
                "Identity claim failed for anon_visitor_id=%s user_id=%s method=%s",
                anon_visitor_id,
                user_id,
                method,
            )
            raise

        metrics.record_claim(
            method, "conflict" if outcome.conflict else "success", time.monotonic() - started
        )
        return outcome

    async def _run(
        self,
        db: AsyncSession,
        user_id: str,
        anon_visitor_id: str,
        method: str,
    ) -> ClaimOutcome:
        now = utcnow()

        visitor = await find_or_create_visitor(db, anon_visitor_id, now, lock=True)

        if visitor.user_id and visitor.user_id != user_id:
            logger.warning(
                "Claim conflict: visitor %s already linked to another account (requested by %s)",
                visitor.id,
                user_id,
            )
            return ClaimOutcome(anon_visitor_id=anon_visitor_id, visitor_id=visitor.id, conflict=True)

        if not visitor.user_id:
            visitor.user_id = user_id
            await db.flush()

        ctx = LinkContext(
            user_id=user_id,
            visitor=visitor,
            anon_visitor_id=anon_visitor_id,
            method=method,
            now=now,
        )

        linked_by_method: dict[str, int] = {}
        linked_by_method[method] = await self.primary_matcher.link(db, ctx)
        await backfill_visitor_id(db, ctx)

        for matcher in self.fallback_matchers:
            linked_by_method[matcher.name] = await matcher.link(db, ctx)

        my_list_claimed = await claim_visitor_list(db, visitor.id, user_id, now)

        await self._record_audit(
            db,
            user_id=user_id,
            visitor_id=visitor.id,
            anon_visitor_id=anon_visitor_id,
            method=method,
            now=now,
            tap_events_linked=linked_by_method[method],
            linked_by_method=linked_by_method,
            my_list_claimed=my_list_claimed,
        )

        tap_events_linked = await self._count_recently_linked(db, user_id, now)
        logger.info(
            "Identity claim: %d taps linked for anon_visitor_id=%s method=%s (%s)",
            tap_events_linked,
            anon_visitor_id,
            method,
            linked_by_method,
        )

        return ClaimOutcome(
            anon_visitor_id=anon_visitor_id,
            visitor_id=visitor.id,
            tap_events_linked=tap_events_linked,
            my_list_claimed=my_list_claimed,
            linked_by_method=linked_by_method,
        )

    async def _record_audit(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        visitor_id: str,
        anon_visitor_id: str,
        method: str,
        now: datetime,
        tap_events_linked: int,
        linked_by_method: dict[str, int],
        my_list_claimed: bool,
    ) -> None:
        """Upsert the audit row for (user, visitor); re-runs add ``reclaimedAt``."""
        details = {
            "anonVisitorId": anon_visitor_id,
            "tapEventsLinked": tap_events_linked,
            "linkedByMethod": linked_by_method,
            "myListClaimed": my_list_claimed,
        }
        stmt = dialect_insert(db, IdentityClaim).values(
            user_id=user_id,
            visitor_id=visitor_id,
            claimed_at=now,
            method=method,
            details=details,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "visitor_id"],
            set_={
                "claimed_at": now,
                "method": method,
                "details": {**details, "reclaimedAt": now.isoformat() + "Z"},
            },
        )
        await db.execute(stmt)

    async def _count_recently_linked(self, db: AsyncSession, user_id: str, now: datetime) -> int:
        window_start = now - timedelta(seconds=settings.claim_linked_count_window_seconds)
        result = await db.execute(
            select(func.count())
            .select_from(TapEvent)
            .where(TapEvent.user_id == user_id, TapEvent.linked_at >= window_start)
        )
        return result.scalar() or 0


identity_claim_service = IdentityClaimService()
