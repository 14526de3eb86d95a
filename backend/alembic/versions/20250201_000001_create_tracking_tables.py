"""Create tracking tables (connections, tracking_configs, tracking_events, ad_entities).

Revision ID: 20250201_000001
Revises:
Create Date: 2025-02-01 12:00:00.000000

WHAT:
    - connections: per-store storefront credential (shop domain + Fernet token)
    - tracking_configs: per-store attribution model/window and pixel id
    - tracking_events: touches, purchases and refunds, unique on (store_id, event_id)
    - ad_entities: cached campaign/adset/ad names for UTM resolution

WHY:
    Every ingestion path (touch collection, order backfill) is an upsert on
    (store_id, event_id), so re-running a backfill never duplicates rows.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20250201_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: connections
    # =========================================================================
    op.create_table(
        'connections',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False, server_default='shopify'),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('store_id', 'provider', name='uq_connection_store_provider'),
    )
    op.create_index('ix_connections_store_id', 'connections', ['store_id'])

    # =========================================================================
    # STEP 2: tracking_configs
    # =========================================================================
    op.create_table(
        'tracking_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), nullable=False, unique=True),
        sa.Column('pixel_id', sa.String(), nullable=True),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('attribution_model', sa.String(), nullable=False, server_default='last_click'),
        sa.Column('attribution_window', sa.String(), nullable=False, server_default='7day'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # =========================================================================
    # STEP 3: tracking_events
    # =========================================================================
    # Timestamps are naive UTC
    op.create_table(
        'tracking_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False, server_default='server'),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),

        # Context
        sa.Column('page_url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),

        # Identity signals
        sa.Column('click_id', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('email_hash', sa.String(64), nullable=True),
        sa.Column('phone_hash', sa.String(64), nullable=True),
        sa.Column('ip_hash', sa.String(64), nullable=True),

        # Commerce
        sa.Column('value', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),

        # Resolved ad entities
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),

        sa.Column('payload_json', sa.JSON(), nullable=True),

        sa.UniqueConstraint('store_id', 'event_id', name='uq_tracking_event_store_event'),
    )
    op.create_index('ix_tracking_events_store_occurred', 'tracking_events', ['store_id', 'occurred_at'])
    op.create_index(
        'ix_tracking_events_store_name_occurred',
        'tracking_events',
        ['store_id', 'event_name', 'occurred_at'],
    )
    op.create_index('ix_tracking_events_click_id', 'tracking_events', ['click_id'])

    # =========================================================================
    # STEP 4: ad_entities
    # =========================================================================
    op.create_table(
        'ad_entities',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False, server_default='meta'),
        sa.Column('level', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('store_id', 'provider', 'level', 'external_id', name='uq_ad_entity'),
    )
    op.create_index('ix_ad_entities_store_id', 'ad_entities', ['store_id'])


def downgrade() -> None:
    op.drop_index('ix_ad_entities_store_id', table_name='ad_entities')
    op.drop_table('ad_entities')

    op.drop_index('ix_tracking_events_click_id', table_name='tracking_events')
    op.drop_index('ix_tracking_events_store_name_occurred', table_name='tracking_events')
    op.drop_index('ix_tracking_events_store_occurred', table_name='tracking_events')
    op.drop_table('tracking_events')

    op.drop_table('tracking_configs')

    op.drop_index('ix_connections_store_id', table_name='connections')
    op.drop_table('connections')
