"""Initial harvester schema

Revision ID: 001_harvester_initial
Revises: 
Create Date: 2026-01-15 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_harvester_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Dealers and storefronts
    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('subscription_status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'retailers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('website', sa.String(length=512), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('website')
    )

    # Sources and runs
    op.create_table(
        'sources',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('source_type', sa.String(length=16), nullable=False, server_default='HTML'),
        sa.Column('source_kind', sa.String(length=16), nullable=False, server_default='DIRECT'),
        sa.Column('pagination_config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('scrape_config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('affiliate_network', sa.String(length=32), nullable=True),
        sa.Column('retailer_id', sa.Integer(), nullable=True),
        sa.Column('feed_hash', sa.String(length=64), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('interval_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('next_run_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['retailer_id'], ['retailers.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sources_due', 'sources', ['enabled', 'next_run_at'])

    op.create_table(
        'executions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('items_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_upserted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.CheckConstraint("status IN ('PENDING', 'SUCCESS', 'FAILED')", name='ck_execution_status'),
        sa.ForeignKeyConstraint(['source_id'], ['sources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_executions_source_id', 'executions', ['source_id'])

    op.create_table(
        'execution_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('execution_id', sa.Integer(), nullable=False),
        sa.Column('level', sa.String(length=8), nullable=False),
        sa.Column('event', sa.String(length=64), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['execution_id'], ['executions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_execution_logs_execution_id', 'execution_logs', ['execution_id'])

    # Catalog
    op.create_table(
        'products',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('brand', sa.String(length=128), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('upc', sa.String(length=32), nullable=True),
        sa.Column('caliber', sa.String(length=64), nullable=True),
        sa.Column('grain_weight', sa.Float(), nullable=True),
        sa.Column('case_material', sa.String(length=32), nullable=True),
        sa.Column('purpose', sa.String(length=32), nullable=True),
        sa.Column('round_count', sa.Integer(), nullable=True),
        sa.Column('load_type', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_products_upc', 'products', ['upc'])

    op.create_table(
        'source_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('identity_key', sa.String(length=64), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('brand', sa.String(length=128), nullable=True),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column('last_seen_execution_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['source_id'], ['sources.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_id', 'url', name='uq_source_product_source_url')
    )

    op.create_table(
        'prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('retailer_id', sa.Integer(), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('source_product_id', sa.Integer(), nullable=True),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('in_stock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.Column('ingestion_run_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['retailer_id'], ['retailers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['source_id'], ['sources.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['source_product_id'], ['source_products.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_prices_product_retailer', 'prices', ['product_id', 'retailer_id'])

    # Subscribers and alert rules
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('tier', sa.String(length=16), nullable=False, server_default='FREE'),
        sa.Column('notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table(
        'watchlist_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('price_drop_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('back_in_stock_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('min_drop_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('min_drop_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('stock_alert_cooldown_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('last_price_notified_at', sa.DateTime(), nullable=True),
        sa.Column('last_stock_notified_at', sa.DateTime(), nullable=True),
        sa.Column('price_claim_key', sa.String(length=64), nullable=True),
        sa.Column('price_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('stock_claim_key', sa.String(length=64), nullable=True),
        sa.Column('stock_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'product_id', name='uq_watchlist_user_product')
    )

    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('watchlist_item_id', sa.Integer(), nullable=False),
        sa.Column('rule_type', sa.String(length=16), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['watchlist_item_id'], ['watchlist_items.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_alerts_product_id', 'alerts', ['product_id'])


def downgrade() -> None:
    op.drop_index('ix_alerts_product_id', table_name='alerts')
    op.drop_table('alerts')
    op.drop_table('watchlist_items')
    op.drop_table('users')
    op.drop_index('ix_prices_product_retailer', table_name='prices')
    op.drop_table('prices')
    op.drop_table('source_products')
    op.drop_index('ix_products_upc', table_name='products')
    op.drop_table('products')
    op.drop_index('ix_execution_logs_execution_id', table_name='execution_logs')
    op.drop_table('execution_logs')
    op.drop_index('ix_executions_source_id', table_name='executions')
    op.drop_table('executions')
    op.drop_index('ix_sources_due', table_name='sources')
    op.drop_table('sources')
    op.drop_table('retailers')
    op.drop_table('merchants')
