"""create_platform_sync_tables

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-19

Connections, bulk job audit trail, and the entity tables written by quick
sync and historical import. Entity rows are unique per (connection, remote key).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f7b9d2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _connection_fk():
    return sa.Column(
        'connection_id', sa.Integer(),
        sa.ForeignKey('platform_connections.id', ondelete='CASCADE'),
        nullable=False, index=True
    )


def upgrade() -> None:
    """Create connection, bulk job and entity tables."""
    op.create_table(
        'platform_connections',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('brand_id', sa.String(), index=True, nullable=True),
        sa.Column('platform', sa.String(), index=True, nullable=False),
        sa.Column('account_ref', sa.String(), nullable=False),
        sa.Column('credential_handle', sa.Text(), nullable=False),
        sa.Column('sync_status', sa.String(), index=True, nullable=False, server_default='NOT_STARTED'),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('stage_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table(
        'bulk_jobs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column(
            'connection_id', sa.Integer(),
            sa.ForeignKey('platform_connections.id', ondelete='CASCADE'),
            nullable=False
        ),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('remote_job_id', sa.String(), nullable=False, index=True),
        sa.Column('status', sa.String(), index=True, nullable=False),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('records_processed', sa.Integer(), default=0),
        sa.Column('records_failed', sa.Integer(), default=0),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_bulk_jobs_connection_status', 'bulk_jobs', ['connection_id', 'status'])

    # Shopify
    op.create_table(
        'shopify_orders',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        _connection_fk(),
        sa.Column('shopify_order_id', sa.BigInteger(), index=True, nullable=False),
        sa.Column('order_number', sa.Integer(), index=True, nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('customer_id', sa.BigInteger(), index=True, nullable=True),
        sa.Column('email', sa.String(), index=True, nullable=True),
        sa.Column('financial_status', sa.String(), index=True, nullable=True),
        sa.Column('fulfillment_status', sa.String(), index=True, nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('subtotal_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_tax', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_discounts', sa.Numeric(12, 2), default=0),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), index=True),
        sa.Column('updated_at', sa.DateTime(), index=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime()),
        sa.UniqueConstraint('connection_id', 'shopify_order_id', name='uq_shopify_orders_connection_order'),
    )

    op.create_table(
        'shopify_line_items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        _connection_fk(),
        sa.Column('shopify_order_id', sa.BigInteger(), index=True, nullable=False),
        sa.Column('line_item_id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), index=True, nullable=True),
        sa.Column('variant_id', sa.BigInteger(), nullable=True),
        sa.Column('sku', sa.String(), index=True, nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('variant_title', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), default=1),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('synced_at', sa.DateTime()),
        sa.UniqueConstraint(
            'connection_id', 'shopify_order_id', 'line_item_id',
            name='uq_shopify_line_items_connection_order_item'
        ),
    )

    op.create_table(
        'shopify_customers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        _connection_fk(),
        sa.Column('shopify_customer_id', sa.BigInteger(), index=True, nullable=False),
        sa.Column('email', sa.String(), index=True, nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('orders_count', sa.Integer(), default=0),
        sa.Column('total_spent', sa.Numeric(12, 2), default=0),
        sa.Column('default_address_city', sa.String(), nullable=True),
        sa.Column('default_address_province', sa.String(), nullable=True),
        sa.Column('default_address_country', sa.String(), nullable=True),
        sa.Column('default_address_zip', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), index=True),
        sa.Column('updated_at', sa.DateTime(), index=True),
        sa.Column('synced_at', sa.DateTime()),
        sa.UniqueConstraint('connection_id', 'shopify_customer_id', name='uq_shopify_customers_connection_customer'),
    )

    op.create_table(
        'shopify_products',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        _connection_fk(),
        sa.Column('shopify_product_id', sa.BigInteger(), index=True, nullable=False),
        sa.Column('handle', sa.String(), index=True, nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('vendor', sa.String(), index=True, nullable=True),
        sa.Column('product_type', sa.String(), index=True, nullable=True),
        sa.Column('status', sa.String(), index=True, nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('total_inventory', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), index=True),
        sa.Column('updated_at', sa.DateTime(), index=True),
        sa.Column('synced_at', sa.DateTime()),
        sa.UniqueConstraint('connection_id', 'shopify_product_id', name='uq_shopify_products_connection_product'),
    )

    # Meta
    op.create_table(
        'ad_daily_insights',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        _connection_fk(),
        sa.Column('ad_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('granularity', sa.String(), nullable=False, server_default='GRANULAR'),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), index=True, nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('adset_name', sa.String(), nullable=True),
        sa.Column('ad_name', sa.String(), nullable=True),
        sa.Column('spend', sa.Numeric(12, 2), default=0),
        sa.Column('impressions', sa.Integer(), default=0),
        sa.Column('clicks', sa.Integer(), default=0),
        sa.Column('reach', sa.Integer(), nullable=True),
        sa.Column('ctr', sa.Float(), nullable=True),
        sa.Column('cpc', sa.Float(), nullable=True),
        sa.Column('purchases', sa.Integer(), default=0),
        sa.Column('purchase_value', sa.Numeric(12, 2), default=0),
        sa.Column('synced_at', sa.DateTime()),
        sa.UniqueConstraint('connection_id', 'ad_id', 'date', name='uq_ad_daily_insights_connection_ad_date'),
    )
    # Dominance checks look up granular rows by date
    op.create_index(
        'ix_ad_daily_insights_connection_date_granularity',
        'ad_daily_insights',
        ['connection_id', 'date', 'granularity']
    )


def downgrade() -> None:
    """Drop platform sync tables."""
    op.drop_index('ix_ad_daily_insights_connection_date_granularity', table_name='ad_daily_insights')
    op.drop_table('ad_daily_insights')
    op.drop_table('shopify_products')
    op.drop_table('shopify_customers')
    op.drop_table('shopify_line_items')
    op.drop_table('shopify_orders')
    op.drop_index('ix_bulk_jobs_connection_status', table_name='bulk_jobs')
    op.drop_table('bulk_jobs')
    op.drop_table('platform_connections')
