"""Create Shopee orders sync tables (shops, orders, escrow, sync status, run log)

Revision ID: shopee_orders_sync_20261019
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = 'shopee_orders_sync_20261019'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # shopee_shops: connected shops and their (encrypted) token pair
    op.create_table(
        'shopee_shops',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('shop_name', sa.Text(), nullable=True),
        sa.Column('partner_id', sa.BigInteger(), nullable=True),
        sa.Column('partner_key', sa.Text(), nullable=True),
        sa.Column('merchant_id', sa.BigInteger(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expire_in', sa.Integer(), nullable=True),
        sa.Column('expired_at', sa.BigInteger(), nullable=True),
        sa.Column('token_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_shopee_shops_shop_id', 'shopee_shops', ['shop_id'], unique=True)

    # shopee_orders: one row per (shop_id, order_sn)
    op.create_table(
        'shopee_orders',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('order_sn', sa.String(length=64), nullable=False),
        sa.Column('booking_sn', sa.String(length=64), nullable=True),
        sa.Column('order_status', sa.String(length=32), nullable=False),
        sa.Column('pending_terms', JSONB, nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('cod', sa.Boolean(), nullable=True),
        sa.Column('total_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('estimated_shipping_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('actual_shipping_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('reverse_shipping_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('create_time', sa.BigInteger(), nullable=False),
        sa.Column('update_time', sa.BigInteger(), nullable=False),
        sa.Column('pay_time', sa.BigInteger(), nullable=True),
        sa.Column('ship_by_date', sa.BigInteger(), nullable=True),
        sa.Column('pickup_done_time', sa.BigInteger(), nullable=True),
        sa.Column('buyer_user_id', sa.BigInteger(), nullable=True),
        sa.Column('buyer_username', sa.Text(), nullable=True),
        sa.Column('region', sa.String(length=8), nullable=True),
        sa.Column('recipient_address', JSONB, nullable=True),
        sa.Column('shipping_carrier', sa.Text(), nullable=True),
        sa.Column('checkout_shipping_carrier', sa.Text(), nullable=True),
        sa.Column('days_to_ship', sa.Integer(), nullable=True),
        sa.Column('fulfillment_flag', sa.String(length=64), nullable=True),
        sa.Column('payment_method', sa.Text(), nullable=True),
        sa.Column('payment_info', JSONB, nullable=True),
        sa.Column('item_list', JSONB, nullable=True),
        sa.Column('package_list', JSONB, nullable=True),
        sa.Column('cancel_by', sa.Text(), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('buyer_cancel_reason', sa.Text(), nullable=True),
        sa.Column('message_to_seller', sa.Text(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('invoice_data', JSONB, nullable=True),
        sa.Column('escrow_fetched', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('raw_response', JSONB, nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('shop_id', 'order_sn', name='uq_shopee_orders_shop_order_sn'),
    )
    op.create_index('idx_shopee_orders_shop_status', 'shopee_orders', ['shop_id', 'order_status'])
    op.create_index('idx_shopee_orders_shop_create_time', 'shopee_orders', ['shop_id', 'create_time'])
    op.create_index('idx_shopee_orders_update_time', 'shopee_orders', ['update_time'])

    # shopee_order_escrow: settlement detail per order
    op.create_table(
        'shopee_order_escrow',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('order_sn', sa.String(length=64), nullable=False),
        sa.Column('buyer_user_name', sa.Text(), nullable=True),
        sa.Column('return_order_sn_list', JSONB, nullable=True),
        sa.Column('escrow_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('escrow_amount_after_adjustment', sa.Numeric(15, 2), nullable=True),
        sa.Column('buyer_total_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('order_selling_price', sa.Numeric(15, 2), nullable=True),
        sa.Column('commission_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('service_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('seller_transaction_fee', sa.Numeric(15, 2), nullable=True),
        sa.Column('escrow_tax', sa.Numeric(15, 2), nullable=True),
        sa.Column('total_adjustment_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('order_income', JSONB, nullable=True),
        sa.Column('buyer_payment_info', JSONB, nullable=True),
        sa.Column('items', JSONB, nullable=True),
        sa.Column('order_adjustment', JSONB, nullable=True),
        sa.Column('raw_response', JSONB, nullable=True),
        sa.Column('fetched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('shop_id', 'order_sn', name='uq_shopee_order_escrow_shop_order_sn'),
    )

    # shopee_orders_sync_status: per-shop lease, cursor and counters
    op.create_table(
        'shopee_orders_sync_status',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('is_syncing', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('sync_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_run_id', sa.String(length=36), nullable=True),
        sa.Column('sync_action', sa.String(length=32), nullable=True),
        sa.Column('is_initial_sync_done', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_update_time', sa.BigInteger(), nullable=True),
        sa.Column('total_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('new_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cursor_type', sa.String(length=16), nullable=False, server_default='idle'),
        sa.Column('cursor_value', JSONB, nullable=True),
        sa.Column('synced_months', JSONB, nullable=True),
        sa.Column('synced_ranges', JSONB, nullable=True),
        sa.Column('progress', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_shopee_orders_sync_status_shop_id', 'shopee_orders_sync_status', ['shop_id'], unique=True)

    # shopee_sync_run_log: structured events per invocation
    op.create_table(
        'shopee_sync_run_log',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('pipeline', sa.String(length=16), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('details_json', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_shopee_sync_run_log_run_id', 'shopee_sync_run_log', ['run_id'])
    op.create_index('ix_shopee_sync_run_log_shop_id', 'shopee_sync_run_log', ['shop_id'])
    op.create_index('ix_shopee_sync_run_log_pipeline', 'shopee_sync_run_log', ['pipeline'])
    op.create_index('ix_shopee_sync_run_log_event_type', 'shopee_sync_run_log', ['event_type'])


def downgrade():
    op.drop_index('ix_shopee_sync_run_log_event_type', table_name='shopee_sync_run_log')
    op.drop_index('ix_shopee_sync_run_log_pipeline', table_name='shopee_sync_run_log')
    op.drop_index('ix_shopee_sync_run_log_shop_id', table_name='shopee_sync_run_log')
    op.drop_index('ix_shopee_sync_run_log_run_id', table_name='shopee_sync_run_log')
    op.drop_table('shopee_sync_run_log')

    op.drop_index('ix_shopee_orders_sync_status_shop_id', table_name='shopee_orders_sync_status')
    op.drop_table('shopee_orders_sync_status')

    op.drop_table('shopee_order_escrow')

    op.drop_index('idx_shopee_orders_update_time', table_name='shopee_orders')
    op.drop_index('idx_shopee_orders_shop_create_time', table_name='shopee_orders')
    op.drop_index('idx_shopee_orders_shop_status', table_name='shopee_orders')
    op.drop_table('shopee_orders')

    op.drop_index('ix_shopee_shops_shop_id', table_name='shopee_shops')
    op.drop_table('shopee_shops')
