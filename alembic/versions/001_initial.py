"""Initial schema: visitor registry, tap ledger, lists, claims and daily snapshots.

Revision ID: 001_initial
Revises:
Create Date: 2026-02-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table(
        'nfc_tags',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('public_uuid', sa.String(36), nullable=False),
        sa.Column('batch_id', sa.String(36), nullable=False),
        sa.Column('label', sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('public_uuid')
    )

    # Visitor registry
    op.create_table(
        'visitors',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('anon_visitor_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('tap_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_tag_id', sa.String(36), nullable=True),
        sa.Column('last_batch_id', sa.String(36), nullable=True),
        sa.Column('ip_hash_last_seen', sa.String(64), nullable=True),
        sa.Column('user_agent_last_seen', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('anon_visitor_id')
    )
    op.create_index('ix_visitors_user_id', 'visitors', ['user_id'])

    # Activity ledger
    op.create_table(
        'tap_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tag_id', sa.String(36), nullable=False),
        sa.Column('batch_id', sa.String(36), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('ip_hash', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('device_hint', sa.String(16), nullable=True),
        sa.Column('session_hint', sa.String(64), nullable=True),
        sa.Column('anon_visitor_id', sa.String(36), nullable=True),
        sa.Column('visitor_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('is_duplicate', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('linked_at', sa.DateTime(), nullable=True),
        sa.Column('link_method', sa.String(32), nullable=True),
        sa.ForeignKeyConstraint(['visitor_id'], ['visitors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tap_events_occurred_at', 'tap_events', ['occurred_at'])
    op.create_index('ix_tap_events_anon_visitor_id', 'tap_events', ['anon_visitor_id'])
    op.create_index('ix_tap_events_visitor_id', 'tap_events', ['visitor_id'])
    op.create_index('ix_tap_events_user_id_linked_at', 'tap_events', ['user_id', 'linked_at'])
    op.create_index('ix_tap_events_tag_id', 'tap_events', ['tag_id'])
    op.create_index('ix_tap_events_batch_id', 'tap_events', ['batch_id'])
    op.create_index('ix_tap_events_ip_hash_user_agent', 'tap_events', ['ip_hash', 'user_agent'])
    op.create_index('ix_tap_events_session_hint', 'tap_events', ['session_hint'])

    # Shopping lists
    op.create_table(
        'shopping_lists',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('owner_visitor_id', sa.String(36), nullable=True),
        sa.Column('owner_user_id', sa.String(36), nullable=True),
        sa.Column('source_tag_id', sa.String(36), nullable=True),
        sa.Column('source_batch_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['owner_visitor_id'], ['visitors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_shopping_lists_owner_visitor_id', 'shopping_lists', ['owner_visitor_id'])
    op.create_index('ix_shopping_lists_owner_user_id', 'shopping_lists', ['owner_user_id'])

    op.create_table(
        'shopping_list_items',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('list_id', sa.String(36), nullable=False),
        sa.Column('item_key', sa.String(128), nullable=False),
        sa.Column('item_label', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('times_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_added_at', sa.DateTime(), nullable=False),
        sa.Column('purchased_at', sa.DateTime(), nullable=True),
        sa.Column('source_tag_id', sa.String(36), nullable=True),
        sa.Column('source_batch_id', sa.String(36), nullable=True),
        sa.ForeignKeyConstraint(['list_id'], ['shopping_lists.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('list_id', 'item_key', name='uq_shopping_list_item_key')
    )
    op.create_index('ix_shopping_list_items_last_added_at', 'shopping_list_items', ['last_added_at'])
    op.create_index('ix_shopping_list_items_purchased_at', 'shopping_list_items', ['purchased_at'])

    # Audit trail
    op.create_table(
        'identity_claims',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('visitor_id', sa.String(36), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.Column('method', sa.String(16), nullable=False),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.ForeignKeyConstraint(['visitor_id'], ['visitors.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'visitor_id', name='uq_identity_claim_user_visitor')
    )

    # Daily snapshots
    op.create_table(
        'daily_site_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('taps_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_visitors_est', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('users_new', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('users_active_est', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lists_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date')
    )

    op.create_table(
        'daily_batch_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('batch_id', sa.String(36), nullable=False),
        sa.Column('taps_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_visitors_est', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'batch_id', name='uq_daily_batch_stats_date_batch')
    )

    op.create_table(
        'daily_tag_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('tag_id', sa.String(36), nullable=False),
        sa.Column('taps_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_visitors_est', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'tag_id', name='uq_daily_tag_stats_date_tag')
    )

    op.create_table(
        'daily_item_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('item_key', sa.String(128), nullable=False),
        sa.Column('added_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('purchased_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'item_key', name='uq_daily_item_stats_date_item')
    )

    op.create_table(
        'daily_visitor_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('visitor_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('taps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tags_tapped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('batches_tapped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lists_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_power_user', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'visitor_id', name='uq_daily_visitor_stats_date_visitor')
    )
    op.create_index('ix_daily_visitor_stats_date', 'daily_visitor_stats', ['date'])


def downgrade() -> None:
    op.drop_index('ix_daily_visitor_stats_date', table_name='daily_visitor_stats')
    op.drop_table('daily_visitor_stats')
    op.drop_table('daily_item_stats')
    op.drop_table('daily_tag_stats')
    op.drop_table('daily_batch_stats')
    op.drop_table('daily_site_stats')
    op.drop_table('identity_claims')
    op.drop_index('ix_shopping_list_items_purchased_at', table_name='shopping_list_items')
    op.drop_index('ix_shopping_list_items_last_added_at', table_name='shopping_list_items')
    op.drop_table('shopping_list_items')
    op.drop_index('ix_shopping_lists_owner_user_id', table_name='shopping_lists')
    op.drop_index('ix_shopping_lists_owner_visitor_id', table_name='shopping_lists')
    op.drop_table('shopping_lists')
    for name in (
        'ix_tap_events_session_hint',
        'ix_tap_events_ip_hash_user_agent',
        'ix_tap_events_batch_id',
        'ix_tap_events_tag_id',
        'ix_tap_events_user_id_linked_at',
        'ix_tap_events_visitor_id',
        'ix_tap_events_anon_visitor_id',
        'ix_tap_events_occurred_at',
    ):
        op.drop_index(name, table_name='tap_events')
    op.drop_table('tap_events')
    op.drop_index('ix_visitors_user_id', table_name='visitors')
    op.drop_table('visitors')
    op.drop_table('nfc_tags')
    op.drop_table('users')
