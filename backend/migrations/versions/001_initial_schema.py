"""
Alembic migration: Initial storefront schema.

Creates users, the product catalog, coupons, carts and the order aggregate
(orders, order items, refunds and status history). The unique constraint on
``orders.payment_session_id`` is the idempotency key shared by the Stripe
webhook and the session verifier.

Revision ID: 001
Revises:
Create Date: 2026-10-01 09:00:00.000000
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

ENUM_TYPES = {
    'user_role': ('customer', 'admin'),
    'payment_method': ('stripe', 'cod'),
    'payment_status': ('pending', 'completed', 'failed'),
    'order_status': (
        'pending',
        'confirmed',
        'processing',
        'shipped',
        'delivered',
        'cancelled',
        'returned',
        'refunded',
        'failed',
    ),
    'return_status': ('requested', 'approved', 'rejected', 'refunded', 'completed'),
    'refund_status': ('pending', 'completed', 'failed'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column(
            'id',
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text('gen_random_uuid()'),
        ),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
    ]


def _money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    if not nullable:
        kwargs.setdefault('server_default', sa.text('0'))
    return sa.Column(name, sa.Numeric(precision=10, scale=2), nullable=nullable, **kwargs)


def upgrade() -> None:
    """
    Upgrade database schema to the initial storefront layout.

    Creates the enum types first, then tables in foreign key order.
    """
    for name, values in ENUM_TYPES.items():
        quoted = ', '.join(f"'{value}'" for value in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({quoted})")

    op.create_table(
        'users',
        *_base_columns(),
        sa.Column('email', sa.String(length=255), nullable=False, comment='Contact and login email address'),
        sa.Column('name', sa.String(length=255), nullable=True, comment='Display name'),
        sa.Column(
            'role',
            _enum('user_role'),
            nullable=False,
            server_default=sa.text("'customer'"),
            comment='Access role',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'products',
        *_base_columns(),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False, comment='URL slug'),
        _money('price', server_default=None),
        sa.Column(
            'discount_type',
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'percentage'"),
        ),
        _money('discount_value'),
        _money('shipping_charges'),
        _money('free_shipping_threshold'),
        sa.Column('free_shipping_min_quantity', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('cod_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('returnable', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('stock', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('image_url', sa.String(length=500), nullable=True),
        sa.Column(
            'taxonomy_ids',
            postgresql.ARRAY(sa.String(length=64)),
            nullable=False,
            server_default=sa.text("'{}'"),
            comment='Category and tag identifiers',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
        sa.UniqueConstraint('slug', name='uq_products_slug'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        sa.CheckConstraint('discount_value >= 0', name='ck_products_discount_value_non_negative'),
        sa.CheckConstraint('shipping_charges >= 0', name='ck_products_shipping_non_negative'),
        comment='Storefront product catalog',
    )
    op.create_index('ix_products_is_active', 'products', ['is_active'])

    op.create_table(
        'coupons',
        *_base_columns(),
        sa.Column('code', sa.String(length=20), nullable=False, comment='Unique uppercase coupon code'),
        sa.Column('type', sa.String(length=10), nullable=False, comment='Discount type: flat or percent'),
        _money('value', server_default=None),
        _money('min_subtotal'),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column(
            'applies_to_product_ids',
            postgresql.ARRAY(sa.String(length=64)),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column(
            'applies_to_taxonomy_ids',
            postgresql.ARRAY(sa.String(length=64)),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.PrimaryKeyConstraint('id', name='pk_coupons'),
        sa.UniqueConstraint('code', name='uq_coupons_code'),
        sa.CheckConstraint('value >= 0', name='ck_coupons_value_non_negative'),
        sa.CheckConstraint('min_subtotal >= 0', name='ck_coupons_min_subtotal_non_negative'),
        sa.CheckConstraint(
            'usage_limit IS NULL OR usage_limit > 0',
            name='ck_coupons_usage_limit_positive',
        ),
        sa.CheckConstraint('used_count >= 0', name='ck_coupons_used_count_non_negative'),
        sa.CheckConstraint('ends_at > starts_at', name='ck_coupons_valid_date_range'),
        sa.CheckConstraint(
            "(type = 'percent' AND value <= 100) OR (type = 'flat')",
            name='ck_coupons_percent_max_100',
        ),
        comment='Checkout discount coupons',
    )
    op.create_index(
        'ix_coupons_active_window',
        'coupons',
        ['is_active', 'starts_at', 'ends_at'],
    )

    op.create_table(
        'carts',
        *_base_columns(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, comment='Owner of the cart'),
        sa.Column('coupon_code', sa.String(length=20), nullable=True),
        _money('coupon_discount'),
        sa.PrimaryKeyConstraint('id', name='pk_carts'),
        sa.UniqueConstraint('user_id', name='uq_carts_user_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'cart_items',
        *_base_columns(),
        sa.Column('cart_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.PrimaryKeyConstraint('id', name='pk_cart_items'),
        sa.ForeignKeyConstraint(['cart_id'], ['carts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.CheckConstraint('quantity > 0', name='ck_cart_items_quantity_positive'),
    )
    op.create_index('ix_cart_items_cart_id', 'cart_items', ['cart_id'])

    op.create_table(
        'orders',
        *_base_columns(),
        sa.Column('order_number', sa.String(length=50), nullable=False, comment='Human-readable order number'),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True, comment='User who placed the order'),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'usd'")),
        _money('subtotal', server_default=None),
        _money('product_discount'),
        _money('discount'),
        _money('shipping_charges'),
        _money('total', server_default=None),
        sa.Column('coupon_code', sa.String(length=20), nullable=True),
        sa.Column('coupon_type', sa.String(length=10), nullable=True),
        _money('coupon_value', nullable=True),
        _money('coupon_discount', nullable=True),
        sa.Column(
            'payment_method',
            _enum('payment_method'),
            nullable=False,
            server_default=sa.text("'stripe'"),
        ),
        sa.Column(
            'payment_session_id',
            sa.String(length=255),
            nullable=True,
            comment='Provider checkout session id (idempotency key)',
        ),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column(
            'payment_status',
            _enum('payment_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_failure_reason', sa.String(length=500), nullable=True),
        sa.Column(
            'status',
            _enum('order_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_notes', sa.Text(), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('shipping_notes', sa.Text(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_notes', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
        sa.Column('cancelled_by', sa.String(length=255), nullable=True),
        sa.Column(
            'shipping_address',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment='Delivery address',
        ),
        sa.Column('return_status', _enum('return_status'), nullable=True),
        sa.Column('return_reason', sa.String(length=500), nullable=True),
        sa.Column('return_items', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('return_bank_details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('return_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('return_decided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('return_decided_by', sa.String(length=255), nullable=True),
        sa.Column('return_refunded_at', sa.DateTime(timezone=True), nullable=True),
        _money('return_refund_amount', nullable=True),
        sa.Column('return_notes', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.UniqueConstraint('payment_session_id', name='uq_orders_payment_session_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.CheckConstraint('subtotal >= 0', name='ck_orders_subtotal_non_negative'),
        sa.CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
        sa.CheckConstraint('discount <= subtotal', name='ck_orders_discount_within_subtotal'),
        comment='Customer orders',
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_user_status', 'orders', ['user_id', 'status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        *_base_columns(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        _money('price', server_default=None, comment='Unit price after product discount'),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('subtotal', server_default=None),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='RESTRICT'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('price >= 0', name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    op.create_table(
        'order_refunds',
        *_base_columns(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        _money('amount', server_default=None),
        sa.Column('reason', sa.String(length=500), nullable=True),
        sa.Column('method', sa.String(length=20), nullable=False),
        sa.Column(
            'status',
            _enum('refund_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('stripe_refund_id', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_by', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_order_refunds'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.CheckConstraint('amount > 0', name='ck_order_refunds_amount_positive'),
    )
    op.create_index('ix_order_refunds_order_id', 'order_refunds', ['order_id'])

    op.create_table(
        'order_status_history',
        *_base_columns(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True),
        sa.Column('to_status', sa.String(length=20), nullable=False),
        sa.Column('changed_by', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_order_status_history'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])


def downgrade() -> None:
    """
    Downgrade database schema by removing every storefront table.

    Tables are dropped in reverse foreign key order, then the enum types.
    """
    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_order_refunds_order_id', table_name='order_refunds')
    op.drop_table('order_refunds')

    op.drop_index('ix_order_items_product_id', table_name='order_items')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_user_status', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_payment_status', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_cart_items_cart_id', table_name='cart_items')
    op.drop_table('cart_items')
    op.drop_table('carts')

    op.drop_index('ix_coupons_active_window', table_name='coupons')
    op.drop_table('coupons')

    op.drop_index('ix_products_is_active', table_name='products')
    op.drop_table('products')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    for name in reversed(list(ENUM_TYPES)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
