"""Admin tool: link every unlinked tap on one tag to a user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.dates import utcnow
from tapidentity.db.models import NfcTag, TapEvent, User, Visitor
from tapidentity.errors import NotFoundError
from tapidentity.identity.matchers import LinkContext, link_tap_events
from tapidentity.identity.visitors import increment_tap_count

logger = logging.getLogger(__name__)

MANUAL_LINK_METHOD = "manualAdminLink"


@dataclass
class ManualLinkResult:
    tag_uuid: str
    tag_label: str | None
    user_email: str
    taps_linked: int


async def manual_link_taps(db: AsyncSession, tag_uuid: str, user_email: str) -> ManualLinkResult:
    """
    Link the tag's unlinked taps to the user with ``user_email``.

    Uses the user's existing visitor, or mints one with a fresh anonymous
    id. Already-linked taps are never touched.

    Raises:
        NotFoundError: Unknown tag or user
    """
    tag = (
        await db.execute(select(NfcTag).where(NfcTag.public_uuid == tag_uuid))
    ).scalar_one_or_none()
    if tag is None:
        raise NotFoundError("Tag not found")

    user = (await db.execute(select(User).where(User.email == user_email))).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")

    now = utcnow()
    visitor = (
        await db.execute(select(Visitor).where(Visitor.user_id == user.id).limit(1))
    ).scalar_one_or_none()
    if visitor is None:
        visitor = Visitor(
            anon_visitor_id=str(uuid4()),
            user_id=user.id,
            first_seen_at=now,
            last_seen_at=now,
            tap_count=0,
        )
        db.add(visitor)
        await db.flush()

    ctx = LinkContext(
        user_id=user.id,
        visitor=visitor,
        anon_visitor_id=visitor.anon_visitor_id,
        method=MANUAL_LINK_METHOD,
        now=now,
    )
    linked = await link_tap_events(db, ctx, TapEvent.tag_id == tag.id, MANUAL_LINK_METHOD)

    if linked:
        await increment_tap_count(
            db, visitor.id, linked, last_tag_id=tag.id, last_batch_id=tag.batch_id
        )

    await db.commit()

    logger.info("Manual link: %d taps on tag %s linked to user %s", linked, tag_uuid, user.id)
    return ManualLinkResult(
        tag_uuid=tag_uuid,
        tag_label=tag.label,
        user_email=user_email,
        taps_linked=linked,
    )
