"""Retroactive shopping-list claim and merge."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tapidentity.db.models import ShoppingList, ShoppingListItem

logger = logging.getLogger(__name__)

# Merge target: the user's own list, then an unclaimed list the user owns on
# a device, then the earliest claimed visitor list. Later claimed lists are
# husks whose items already moved elsewhere.
MERGE_TARGET_ORDER = (
    case(
        (ShoppingList.owner_visitor_id.is_(None), 0),
        (ShoppingList.claimed_at.is_(None), 1),
        else_=2,
    ),
    ShoppingList.claimed_at.asc(),
)


def merge_item(existing: ShoppingListItem, incoming: ShoppingListItem) -> None:
    """Combine two rows for the same item key, keeping the larger of each counter."""
    existing.quantity = max(existing.quantity or 0, incoming.quantity or 0)
    existing.times_purchased = max(existing.times_purchased or 0, incoming.times_purchased or 0)
    existing.last_added_at = max(existing.last_added_at, incoming.last_added_at)


def copy_item(item: ShoppingListItem, list_id: str) -> ShoppingListItem:
    """Copy an item onto another list, keeping its source provenance."""
    return ShoppingListItem(
        list_id=list_id,
        item_key=item.item_key,
        item_label=item.item_label,
        quantity=item.quantity,
        times_purchased=item.times_purchased,
        last_added_at=item.last_added_at,
        purchased_at=item.purchased_at,
        source_tag_id=item.source_tag_id,
        source_batch_id=item.source_batch_id,
    )


async def _latest_list(db: AsyncSession, *criteria, order_by=()) -> Optional[ShoppingList]:
    result = await db.execute(
        select(ShoppingList)
        .where(*criteria)
        .options(selectinload(ShoppingList.items))
        .order_by(*order_by, ShoppingList.updated_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_visitor_list(
    db: AsyncSession,
    visitor_id: str,
    user_id: str,
    now: datetime,
) -> bool:
    """
    Attach the visitor's most recent list to the user.

    If the user already owns a different list (picked by
    ``MERGE_TARGET_ORDER``), the visitor's items are merged into it keyed on
    ``item_key``. The visitor list is then stamped ``owner_user_id`` /
    ``claimed_at`` whether or not a merge happened, so a later claim never
    treats it as unclaimed again. A list this user has
    already claimed is left untouched.

    Returns:
        True if a visitor list was found and claimed
    """
    visitor_list = await _latest_list(db, ShoppingList.owner_visitor_id == visitor_id)
    if visitor_list is None:
        return False

    if visitor_list.claimed_at is not None and visitor_list.owner_user_id == user_id:
        logger.debug("Visitor list %s already claimed by this user", visitor_list.id)
        return True

    user_list = await _latest_list(
        db,
        ShoppingList.owner_user_id == user_id,
        ShoppingList.id != visitor_list.id,
        order_by=MERGE_TARGET_ORDER,
    )

    if user_list is not None:
        by_key = {item.item_key: item for item in user_list.items}
        merged = copied = 0
        for item in visitor_list.items:
            existing = by_key.get(item.item_key)
            if existing is not None:
                merge_item(existing, item)
                merged += 1
            else:
                new_item = copy_item(item, user_list.id)
                db.add(new_item)
                by_key[item.item_key] = new_item
                copied += 1
        logger.info(
            "Merged visitor list %s into user list %s (%d merged, %d copied)",
            visitor_list.id,
            user_list.id,
            merged,
            copied,
        )

    visitor_list.owner_user_id = user_id
    visitor_list.claimed_at = now
    await db.flush()
    return True
