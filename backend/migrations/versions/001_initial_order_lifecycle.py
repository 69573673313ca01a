"""
Alembic migration: Initial order lifecycle schema.

Creates orders and their item snapshots, the stock counters with their
reservation and movement ledgers, payment proofs and the append-only
audit log. Enum columns are stored as constrained strings so the same
schema works on PostgreSQL and SQLite.

Revision ID: 001
Revises:
Create Date: 2026-03-02 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ('PENDING_ADMIN', 'PAID', 'SHIPPED', 'DELIVERED', 'CANCELLED', 'REJECTED')
PROOF_STATUSES = ('pending', 'auto_verified', 'manually_verified', 'rejected', 'superseded')
RESERVATION_STATUSES = ('reserved', 'released')

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            comment='Timestamp when record was last updated',
        ),
    ]


def _in_check(column: str, values: Sequence[str]) -> str:
    quoted = ', '.join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


def upgrade() -> None:
    """
    Upgrade database schema to the initial order lifecycle layout.
    """
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_number', sa.String(20), nullable=False, comment='Human readable order number'),
        sa.Column('status', sa.String(20), nullable=False, comment='Current order status'),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='Order total'),
        sa.Column('currency', sa.String(3), nullable=False, comment='ISO 4217 currency code'),
        sa.Column('customer_id', sa.String(64), nullable=False, comment='Customer identifier'),
        sa.Column('customer_chat_id', sa.String(64), nullable=True),
        sa.Column('store_id', sa.String(64), nullable=False, comment='Store identifier'),
        sa.Column('store_name', sa.String(255), nullable=False),
        sa.Column('client_request_id', sa.String(128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('active_proof_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('carrier', sa.String(100), nullable=True),
        sa.Column('delivery_notes', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.UniqueConstraint('store_id', 'client_request_id', name='uq_orders_store_request'),
        sa.CheckConstraint(_in_check('status', ORDER_STATUSES), name='order_status'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        sa.CheckConstraint(
            "delivered_at IS NULL OR status = 'DELIVERED'",
            name='ck_orders_delivered_at_status',
        ),
        sa.CheckConstraint(
            "cancelled_at IS NULL OR status = 'CANCELLED'",
            name='ck_orders_cancelled_at_status',
        ),
        sa.CheckConstraint(
            "rejected_at IS NULL OR status = 'REJECTED'",
            name='ck_orders_rejected_at_status',
        ),
        comment='Customer orders',
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])
    op.create_index('ix_orders_store_status', 'orders', ['store_id', 'status'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('variant_id', sa.String(64), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column(
            'unit_price',
            sa.Numeric(precision=12, scale=2),
            nullable=False,
            comment='Price per unit at order time',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_order_items_order_id', ondelete='CASCADE'
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'stock_levels',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('variant_id', sa.String(64), nullable=True),
        sa.Column('available', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_stock_levels'),
        sa.UniqueConstraint('product_id', 'variant_id', name='uq_stock_levels_item'),
        sa.CheckConstraint('available >= 0', name='ck_stock_levels_available_non_negative'),
    )

    op.create_table(
        'stock_reservations',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('items', JSON_TYPE, nullable=False),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_stock_reservations'),
        sa.UniqueConstraint('order_id', name='uq_stock_reservations_order_id'),
        sa.CheckConstraint(
            _in_check('status', RESERVATION_STATUSES), name='reservation_status'
        ),
    )

    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('variant_id', sa.String(64), nullable=True),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_stock_movements'),
    )
    op.create_index('ix_stock_movements_item', 'stock_movements', ['product_id', 'variant_id'])
    op.create_index('ix_stock_movements_order', 'stock_movements', ['order_id'])

    op.create_table(
        'payment_proofs',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('storage_key', sa.String(512), nullable=False),
        sa.Column('original_filename', sa.String(255), nullable=False),
        sa.Column('detected_mime_type', sa.String(100), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('sha256', sa.String(64), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('reviewed_by', sa.String(128), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification', JSON_TYPE, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payment_proofs'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_payment_proofs_order_id', ondelete='RESTRICT'
        ),
        sa.CheckConstraint(_in_check('status', PROOF_STATUSES), name='proof_status'),
    )
    op.create_index('ix_payment_proofs_order_active', 'payment_proofs', ['order_id', 'is_active'])
    op.create_index('ix_payment_proofs_status', 'payment_proofs', ['status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor', sa.String(128), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('details', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_audit_logs'),
    )
    op.create_index('ix_audit_logs_order_created', 'audit_logs', ['order_id', 'created_at'])


def downgrade() -> None:
    """
    Downgrade database schema by removing all order lifecycle tables.
    """
    op.drop_index('ix_audit_logs_order_created', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('ix_payment_proofs_status', table_name='payment_proofs')
    op.drop_index('ix_payment_proofs_order_active', table_name='payment_proofs')
    op.drop_table('payment_proofs')

    op.drop_index('ix_stock_movements_order', table_name='stock_movements')
    op.drop_index('ix_stock_movements_item', table_name='stock_movements')
    op.drop_table('stock_movements')
    op.drop_table('stock_reservations')
    op.drop_table('stock_levels')

    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_store_status', table_name='orders')
    op.drop_index('ix_orders_store_id', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')
