"""SQLAlchemy database models."""

import datetime as dt
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tapidentity.dates import utcnow


def new_id() -> str:
    return str(uuid4())


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# Collaborator tables (owned by the storefront, read by the core)
# =============================================================================


class User(Base):
    """Authenticated account. Created by the session layer."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class NfcTag(Base):
    """Physical or virtual tag that produces tap events."""

    __tablename__ = "nfc_tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    public_uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


# =============================================================================
# Visitor Registry
# =============================================================================


class Visitor(Base):
    """One anonymous browsing identity (device/browser)."""

    __tablename__ = "visitors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    anon_visitor_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    # Set at most once; see identity.claim for the conflict gate
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    tap_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_tag_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    last_batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    ip_hash_last_seen: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent_last_seen: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lists: Mapped[list["ShoppingList"]] = relationship(
        "ShoppingList", back_populates="owner_visitor"
    )


# =============================================================================
# Activity Ledger
# =============================================================================


class TapEvent(Base):
    """One observed interaction with a tag. Written by ingestion."""

    __tablename__ = "tap_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tag_id: Mapped[str] = mapped_column(String(36), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ip_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    device_hint: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # mobile, tablet, desktop
    session_hint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # tapSessionId
    anon_visitor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    visitor_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("visitors.id"), nullable=True
    )
    # user_id, linked_at and link_method are only ever written together
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    linked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    link_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_tap_events_occurred_at", "occurred_at"),
        Index("ix_tap_events_anon_visitor_id", "anon_visitor_id"),
        Index("ix_tap_events_visitor_id", "visitor_id"),
        Index("ix_tap_events_user_id_linked_at", "user_id", "linked_at"),
        Index("ix_tap_events_tag_id", "tag_id"),
        Index("ix_tap_events_batch_id", "batch_id"),
        Index("ix_tap_events_ip_hash_user_agent", "ip_hash", "user_agent"),
        Index("ix_tap_events_session_hint", "session_hint"),
    )


class ShoppingList(Base):
    """Cart-like list owned by a visitor or a user."""

    __tablename__ = "shopping_lists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_visitor_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("visitors.id"), nullable=True, index=True
    )
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    source_tag_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source_batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    owner_visitor: Mapped[Optional["Visitor"]] = relationship("Visitor", back_populates="lists")
    items: Mapped[list["ShoppingListItem"]] = relationship(
        "ShoppingListItem", back_populates="shopping_list", cascade="all, delete-orphan"
    )


class ShoppingListItem(Base):
    """One keyed entry on a shopping list."""

    __tablename__ = "shopping_list_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    list_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shopping_lists.id"), nullable=False
    )
    item_key: Mapped[str] = mapped_column(String(128), nullable=False)
    item_label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    times_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    purchased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    source_tag_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source_batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    shopping_list: Mapped["ShoppingList"] = relationship("ShoppingList", back_populates="items")

    __table_args__ = (
        UniqueConstraint("list_id", "item_key", name="uq_shopping_list_item_key"),
        Index("ix_shopping_list_items_last_added_at", "last_added_at"),
        Index("ix_shopping_list_items_purchased_at", "purchased_at"),
    )


# =============================================================================
# Audit Trail
# =============================================================================


class IdentityClaim(Base):
    """Audit row per (user, visitor) pair. Re-runs update it in place."""

    __tablename__ = "identity_claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    visitor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("visitors.id"), nullable=False
    )
    claimed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)  # login, signup, manual
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "visitor_id", name="uq_identity_claim_user_visitor"),
    )


# =============================================================================
# Daily snapshots (overwritten on re-run)
# =============================================================================


class DailySiteStats(Base):
    """Site-wide KPIs for one UTC day."""

    __tablename__ = "daily_site_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, unique=True, nullable=False)
    taps_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_visitors_est: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    users_new: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    users_active_est: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lists_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class DailyBatchStats(Base):
    """Per-batch taps and visitor estimate for one UTC day."""

    __tablename__ = "daily_batch_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    taps_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_visitors_est: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("date", "batch_id", name="uq_daily_batch_stats_date_batch"),)


class DailyTagStats(Base):
    """Per-tag taps and visitor estimate for one UTC day."""

    __tablename__ = "daily_tag_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    tag_id: Mapped[str] = mapped_column(String(36), nullable=False)
    taps_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_visitors_est: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("date", "tag_id", name="uq_daily_tag_stats_date_tag"),)


class DailyItemStats(Base):
    """Per-item adds and purchases for one UTC day."""

    __tablename__ = "daily_item_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    item_key: Mapped[str] = mapped_column(String(128), nullable=False)
    added_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchased_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("date", "item_key", name="uq_daily_item_stats_date_item"),)


class DailyVisitorStats(Base):
    """Per-visitor engagement and power-user score for one UTC day."""

    __tablename__ = "daily_visitor_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    visitor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    taps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tags_tapped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_tapped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lists_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Derived from the counts above, never set independently
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_power_user: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("date", "visitor_id", name="uq_daily_visitor_stats_date_visitor"),
        Index("ix_daily_visitor_stats_date", "date"),
    )
