"""
Alembic migration: Initial order fulfillment schema.

Creates parties, warehouses with per-size stock, orders with their
append-only status history, the payment timeline ledger, driver earnings,
physical cylinders and buyer ratings. Enum columns are stored as their
string values so the schema is portable between PostgreSQL and SQLite.

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:12:40.518311
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column('id', sa.Uuid(), primary_key=True, nullable=False)


def _timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=None if nullable else sa.text('0'),
    )


def upgrade() -> None:
    """
    Create all fulfillment tables with their indexes and constraints.
    """
    op.create_table(
        'parties',
        _id_column(),
        sa.Column('role', sa.String(32), nullable=False, comment='Party role'),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('business_name', sa.String(200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('driver_status', sa.String(32), nullable=True),
        sa.Column(
            'auto_assign_orders', sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column('zone_center_lat', sa.Float(), nullable=True),
        sa.Column('zone_center_lng', sa.Float(), nullable=True),
        sa.Column('zone_radius_km', sa.Numeric(8, 3), nullable=True),
        sa.Column('zone_polygon', sa.JSON(), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index('ix_parties_role', 'parties', ['role'])
    op.create_index(
        'ix_parties_dispatch', 'parties', ['role', 'driver_status', 'auto_assign_orders']
    )

    op.create_table(
        'warehouses',
        _id_column(),
        sa.Column(
            'seller_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('label', sa.String(200), nullable=False),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('price_per_kg', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('issued_cylinders', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_inventory', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('add_ons', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamp_columns(),
        sa.CheckConstraint('issued_cylinders >= 0', name='ck_warehouses_issued_non_negative'),
    )
    op.create_index('ix_warehouses_seller_id', 'warehouses', ['seller_id'])

    op.create_table(
        'warehouse_stock',
        _id_column(),
        sa.Column(
            'warehouse_id',
            sa.Uuid(),
            sa.ForeignKey('warehouses.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('size', sa.String(32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
        *_timestamp_columns(),
        sa.UniqueConstraint('warehouse_id', 'size', name='uq_warehouse_stock_size'),
        sa.CheckConstraint('quantity >= 0', name='ck_warehouse_stock_quantity_non_negative'),
    )
    op.create_index('ix_warehouse_stock_warehouse_id', 'warehouse_stock', ['warehouse_id'])

    op.create_table(
        'orders',
        _id_column(),
        sa.Column('order_number', sa.String(16), nullable=False),
        sa.Column(
            'buyer_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'seller_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'driver_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column(
            'warehouse_id',
            sa.Uuid(),
            sa.ForeignKey('warehouses.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('source_cylinder_id', sa.Uuid(), nullable=True),
        sa.Column('order_type', sa.String(32), nullable=False),
        sa.Column('cylinder_size', sa.String(32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('qr_code', sa.String(64), nullable=True),
        sa.Column('is_urgent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_method', sa.String(32), nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column(
            'inventory_reserved', sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column('delivery_address', sa.Text(), nullable=True),
        sa.Column('delivery_lat', sa.Float(), nullable=True),
        sa.Column('delivery_lng', sa.Float(), nullable=True),
        _money('cylinder_price'),
        _money('security_charges'),
        _money('delivery_charges'),
        _money('urgent_delivery_fee'),
        _money('add_ons_total'),
        sa.Column('add_ons', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamp_columns(),
        sa.UniqueConstraint('qr_code', name='uq_orders_qr_code'),
        sa.CheckConstraint('quantity > 0', name='ck_orders_quantity_positive'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
    op.create_index('ix_orders_seller_id', 'orders', ['seller_id'])
    op.create_index('ix_orders_driver_id', 'orders', ['driver_id'])
    op.create_index('ix_orders_warehouse_id', 'orders', ['warehouse_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_type', 'orders', ['status', 'order_type'])

    op.create_table(
        'order_status_history',
        _id_column(),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.String(32), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('event', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    op.create_table(
        'payment_timeline_entries',
        _id_column(),
        sa.Column('timeline_id', sa.String(64), nullable=False),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(32), nullable=False),
        sa.Column('cause', sa.String(200), nullable=False),
        _money('amount'),
        sa.Column('liability_type', sa.String(32), nullable=False),
        sa.Column('payment_method', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('driver_id', sa.Uuid(), nullable=True),
        sa.Column('reference_id', sa.String(100), nullable=True),
        sa.Column('processed_by', sa.String(100), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_notes', sa.Text(), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index(
        'ix_payment_timeline_entries_timeline_id',
        'payment_timeline_entries',
        ['timeline_id'],
        unique=True,
    )
    op.create_index(
        'ix_payment_timeline_entries_order_id', 'payment_timeline_entries', ['order_id']
    )
    op.create_index(
        'ix_payment_timeline_entries_status', 'payment_timeline_entries', ['status']
    )

    op.create_table(
        'driver_earnings',
        _id_column(),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'driver_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('timeline_id', sa.String(64), nullable=True),
        sa.Column('leg', sa.Integer(), nullable=False, server_default='1'),
        _money('amount'),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index('ix_driver_earnings_order_id', 'driver_earnings', ['order_id'])
    op.create_index('ix_driver_earnings_driver_id', 'driver_earnings', ['driver_id'])
    op.create_index('ix_driver_earnings_timeline_id', 'driver_earnings', ['timeline_id'])

    op.create_table(
        'cylinders',
        _id_column(),
        sa.Column('serial_number', sa.String(100), nullable=False),
        sa.Column('qr_code', sa.String(64), nullable=False),
        sa.Column('size', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('location', sa.String(32), nullable=False),
        sa.Column(
            'buyer_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column(
            'seller_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'warehouse_id',
            sa.Uuid(),
            sa.ForeignKey('warehouses.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'origin_order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        _money('security_fee'),
        sa.Column('tare_weight', sa.Float(), nullable=True),
        sa.Column('gross_weight', sa.Float(), nullable=True),
        *_timestamp_columns(),
        sa.UniqueConstraint('qr_code', name='uq_cylinders_qr_code'),
    )
    op.create_index('ix_cylinders_serial_number', 'cylinders', ['serial_number'], unique=True)
    op.create_index('ix_cylinders_buyer_id', 'cylinders', ['buyer_id'])
    op.create_index('ix_cylinders_order_id', 'cylinders', ['order_id'])

    op.create_table(
        'order_ratings',
        _id_column(),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'buyer_id',
            sa.Uuid(),
            sa.ForeignKey('parties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        *_timestamp_columns(),
        sa.UniqueConstraint('order_id', name='uq_order_ratings_order_id'),
        sa.CheckConstraint('rating BETWEEN 1 AND 5', name='ck_order_ratings_range'),
    )


def downgrade() -> None:
    """
    Drop all fulfillment tables in reverse dependency order.
    """
    op.drop_table('order_ratings')
    op.drop_index('ix_cylinders_order_id', table_name='cylinders')
    op.drop_index('ix_cylinders_buyer_id', table_name='cylinders')
    op.drop_index('ix_cylinders_serial_number', table_name='cylinders')
    op.drop_table('cylinders')
    op.drop_index('ix_driver_earnings_timeline_id', table_name='driver_earnings')
    op.drop_index('ix_driver_earnings_driver_id', table_name='driver_earnings')
    op.drop_index('ix_driver_earnings_order_id', table_name='driver_earnings')
    op.drop_table('driver_earnings')
    op.drop_index('ix_payment_timeline_entries_status', table_name='payment_timeline_entries')
    op.drop_index('ix_payment_timeline_entries_order_id', table_name='payment_timeline_entries')
    op.drop_index(
        'ix_payment_timeline_entries_timeline_id', table_name='payment_timeline_entries'
    )
    op.drop_table('payment_timeline_entries')
    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')
    for index_name in (
        'ix_orders_status_type',
        'ix_orders_status',
        'ix_orders_warehouse_id',
        'ix_orders_driver_id',
        'ix_orders_seller_id',
        'ix_orders_buyer_id',
        'ix_orders_order_number',
    ):
        op.drop_index(index_name, table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_warehouse_stock_warehouse_id', table_name='warehouse_stock')
    op.drop_table('warehouse_stock')
    op.drop_index('ix_warehouses_seller_id', table_name='warehouses')
    op.drop_table('warehouses')
    op.drop_index('ix_parties_dispatch', table_name='parties')
    op.drop_index('ix_parties_role', table_name='parties')
    op.drop_table('parties')
