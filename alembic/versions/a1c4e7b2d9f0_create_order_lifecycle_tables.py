"""Create order lifecycle tables: catalog, orders, payments, shipments, idempotency and outbox

Revision ID: a1c4e7b2d9f0
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a1c4e7b2d9f0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    # ── product_variants ──
    if not _has_table('product_variants'):
        op.create_table(
            'product_variants',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('sku', sa.String(), nullable=True),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
            sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_product_variants_sku', 'product_variants', ['sku'], unique=True)

    # ── orders ──
    if not _has_table('orders'):
        op.create_table(
            'orders',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_code', sa.String(32), nullable=False),
            sa.Column('user_id', sa.String(), nullable=True),
            sa.Column('customer_name', sa.String(), nullable=True),
            sa.Column('customer_email', sa.String(), nullable=True),
            sa.Column('customer_phone', sa.String(), nullable=True),
            sa.Column('shipping_address', sa.JSON(), nullable=True),
            sa.Column('payment_method', sa.String(16), nullable=False),
            sa.Column('order_status', sa.String(32), nullable=False),
            sa.Column('payment_status', sa.String(32), nullable=False),
            sa.Column('total_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(3), nullable=True),
            sa.Column('tracking_number', sa.String(), nullable=True),
            sa.Column('payment_attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stock_released', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('delivered_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_orders_order_code', 'orders', ['order_code'], unique=True)
        op.create_index('ix_orders_tracking_number', 'orders', ['tracking_number'], unique=True)
        op.create_index('ix_orders_user_id', 'orders', ['user_id'])
        op.create_index('ix_orders_order_status', 'orders', ['order_status'])
        op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
        op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    # ── order_items ──
    if not _has_table('order_items'):
        op.create_table(
            'order_items',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('variant_id', sa.Integer(), sa.ForeignKey('product_variants.id'), nullable=False),
            sa.Column('product_name', sa.String(), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False),
            sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        )
        op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
        op.create_index('ix_order_items_variant_id', 'order_items', ['variant_id'])

    # ── inventory_ledger ──
    if not _has_table('inventory_ledger'):
        op.create_table(
            'inventory_ledger',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('variant_id', sa.Integer(), sa.ForeignKey('product_variants.id'), nullable=False),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=True),
            sa.Column('change_type', sa.String(16), nullable=False),
            sa.Column('quantity', sa.Integer(), nullable=False),
            sa.Column('reason', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_inventory_ledger_variant_id', 'inventory_ledger', ['variant_id'])
        op.create_index('ix_inventory_ledger_order_id', 'inventory_ledger', ['order_id'])

    # ── payments ──
    if not _has_table('payments'):
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('method', sa.String(16), nullable=False),
            sa.Column('status', sa.String(32), nullable=False),
            sa.Column('transaction_id', sa.String(), nullable=True),
            sa.Column('reference_number', sa.String(), nullable=True),
            sa.Column('amount', sa.Numeric(10, 2), nullable=False),
            sa.Column('currency', sa.String(3), nullable=True),
            sa.Column('payment_url', sa.Text(), nullable=True),
            sa.Column('status_changed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_payments_order_id', 'payments', ['order_id'])
        op.create_index('ix_payments_status', 'payments', ['status'])
        op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=True)
        op.create_index('ix_payments_status_changed_at', 'payments', ['status_changed_at'])
        op.create_index('ix_payments_created_at', 'payments', ['created_at'])

    # ── payment_events ──
    if not _has_table('payment_events'):
        op.create_table(
            'payment_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('transaction_id', sa.String(), nullable=True),
            sa.Column('channel', sa.String(16), nullable=False),
            sa.Column('status_code', sa.String(8), nullable=True),
            sa.Column('reference_number', sa.String(), nullable=True),
            sa.Column('message', sa.Text(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('received_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_payment_events_transaction_id', 'payment_events', ['transaction_id'])
        op.create_index('ix_payment_events_received_at', 'payment_events', ['received_at'])

    # ── shipments ──
    if not _has_table('shipments'):
        op.create_table(
            'shipments',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('tracking_number', sa.String(), nullable=False),
            sa.Column('carrier', sa.String(), nullable=False),
            sa.Column('status', sa.String(32), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('is_rts_leg', sa.Boolean(), server_default=sa.false()),
            sa.Column('last_webhook_event', sa.String(), nullable=True),
            sa.Column('last_webhook_at', sa.DateTime(), nullable=True),
            sa.Column('raw_response', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_shipments_order_id', 'shipments', ['order_id'], unique=True)
        op.create_index('ix_shipments_tracking_number', 'shipments', ['tracking_number'], unique=True)
        op.create_index('ix_shipments_status', 'shipments', ['status'])

    # ── tracking_events ──
    if not _has_table('tracking_events'):
        op.create_table(
            'tracking_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('tracking_number', sa.String(), nullable=False),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=True),
            sa.Column('status', sa.String(32), nullable=True),
            sa.Column('event', sa.String(), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('location', sa.String(), nullable=True),
            sa.Column('event_timestamp', sa.DateTime(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('source', sa.String(16), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_tracking_events_tracking_number', 'tracking_events', ['tracking_number'])
        op.create_index('ix_tracking_events_order_id', 'tracking_events', ['order_id'])
        op.create_index('ix_tracking_events_event_timestamp', 'tracking_events', ['event_timestamp'])

    # ── carrier_webhook_events ──
    if not _has_table('carrier_webhook_events'):
        op.create_table(
            'carrier_webhook_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('tracking_id', sa.String(), nullable=False),
            sa.Column('event', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('event_timestamp', sa.DateTime(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('is_terminal', sa.Boolean(), server_default=sa.false()),
            sa.Column('is_rts_leg', sa.Boolean(), server_default=sa.false()),
            sa.Column('received_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_carrier_webhook_events_tracking_id', 'carrier_webhook_events', ['tracking_id'])
        op.create_index('ix_carrier_webhook_events_received_at', 'carrier_webhook_events', ['received_at'])

    # ── idempotency_keys ──
    if not _has_table('idempotency_keys'):
        op.create_table(
            'idempotency_keys',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('source', sa.String(32), nullable=False),
            sa.Column('external_id', sa.String(), nullable=False),
            sa.Column('signature', sa.String(), nullable=False),
            sa.Column('purpose', sa.String(16), nullable=False, server_default='transition'),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('expires_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('source', 'external_id', 'signature', name='uq_idempotency_source_external_signature'),
        )
        op.create_index('ix_idempotency_keys_external_id', 'idempotency_keys', ['external_id'])
        op.create_index('ix_idempotency_keys_expires_at', 'idempotency_keys', ['expires_at'])

    # ── outbox_messages ──
    if not _has_table('outbox_messages'):
        op.create_table(
            'outbox_messages',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('kind', sa.String(32), nullable=False),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('dedupe_key', sa.String(), nullable=False, unique=True),
            sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('available_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('processed_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_outbox_messages_kind', 'outbox_messages', ['kind'])
        op.create_index('ix_outbox_messages_order_id', 'outbox_messages', ['order_id'])
        op.create_index('ix_outbox_messages_status', 'outbox_messages', ['status'])
        op.create_index('ix_outbox_messages_available_at', 'outbox_messages', ['available_at'])


def downgrade() -> None:
    for table_name in (
        'outbox_messages',
        'idempotency_keys',
        'carrier_webhook_events',
        'tracking_events',
        'shipments',
        'payment_events',
        'payments',
        'inventory_ledger',
        'order_items',
        'orders',
        'product_variants',
    ):
        if _has_table(table_name):
            op.drop_table(table_name)
