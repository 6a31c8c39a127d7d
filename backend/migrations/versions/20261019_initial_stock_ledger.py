"""Initial stock ledger schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. products (ledger view of the catalog: current_stock, thresholds, lot_mandatory)
2. stock_movements (append-only ledger with previous/resulting snapshots)
3. lots and lot_movements (physical batches and their audit trail)
4. sales, sale_items, sale_item_lots (counter and reconciled offline sales)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. PRODUCTS
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('cost_price_cents', sa.Integer(), nullable=True),
        sa.Column('current_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minimum_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('maximum_stock', sa.Integer(), nullable=True),
        sa.Column('lot_mandatory', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('requires_prescription', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('current_stock >= 0', name='ck_products_stock_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_products_barcode'), ['barcode'], unique=False)
        batch_op.create_index('ix_products_active_name', ['is_active', 'name'], unique=False)

    # ==========================================================================
    # 2. STOCK MOVEMENTS (append-only)
    # ==========================================================================
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=36), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_stock', sa.Integer(), nullable=False),
        sa.Column('resulting_stock', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=200), nullable=False),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('related_sale_id', sa.String(length=64), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_stock_movements_quantity_positive'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stock_movements_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_kind'), ['kind'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_related_sale_id'), ['related_sale_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_actor_id'), ['actor_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_stock_movements_product_created', ['product_id', 'created_at'], unique=False)

    # ==========================================================================
    # 3. LOTS
    # ==========================================================================
    op.create_table('lots',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.String(length=36), nullable=False),
        sa.Column('lot_number', sa.String(length=50), nullable=False),
        sa.Column('barcode', sa.String(length=50), nullable=True),
        sa.Column('manufacture_date', sa.Date(), nullable=False),
        sa.Column('expiry_date', sa.Date(), nullable=False),
        sa.Column('initial_quantity', sa.Integer(), nullable=False),
        sa.Column('current_quantity', sa.Integer(), nullable=False),
        sa.Column('reserved_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_lots_reserved_non_negative'),
        sa.CheckConstraint('current_quantity >= reserved_quantity', name='ck_lots_current_covers_reserved'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('lots', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_lots_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_lots_barcode'), ['barcode'], unique=False)
        batch_op.create_index('ix_lots_product_expiry', ['product_id', 'expiry_date'], unique=False)
        batch_op.create_index('ix_lots_product_number', ['product_id', 'lot_number'], unique=False)

    op.create_table('lot_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('lot_id', sa.String(length=36), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=200), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('sale_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_lot_movements_quantity_positive'),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('lot_movements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_lot_movements_lot_id'), ['lot_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_lot_movements_sale_id'), ['sale_id'], unique=False)

    # ==========================================================================
    # 4. SALES
    # ==========================================================================
    op.create_table('sales',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('total_value_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='CASH'),
        sa.Column('origin', sa.String(length=16), nullable=False, server_default='COUNTER'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='COMPLETED'),
        sa.Column('has_controlled_items', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.String(length=64), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('sales', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sales_client_id'), ['client_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sales_actor_id'), ['actor_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sales_origin'), ['origin'], unique=False)
        batch_op.create_index(batch_op.f('ix_sales_status'), ['status'], unique=False)

    op.create_table('sale_items',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('sale_id', sa.String(length=64), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_id', sa.String(length=36), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('requires_prescription', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock_movement_id', sa.Integer(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_sale_items_quantity_positive'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['stock_movement_id'], ['stock_movements.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('sale_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sale_items_sale_id'), ['sale_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_items_product_id'), ['product_id'], unique=False)

    op.create_table('sale_item_lots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_item_id', sa.String(length=64), nullable=False),
        sa.Column('lot_id', sa.String(length=36), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['sale_item_id'], ['sale_items.id'], ),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_item_id', 'lot_id', name='uq_sale_item_lots_item_lot'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sale_item_lots', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sale_item_lots_sale_item_id'), ['sale_item_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_item_lots_lot_id'), ['lot_id'], unique=False)


def downgrade():
    op.drop_table('sale_item_lots')
    op.drop_table('sale_items')
    op.drop_table('sales')
    op.drop_table('lot_movements')
    op.drop_table('lots')
    op.drop_table('stock_movements')
    op.drop_table('products')
