"""initial materials schema

Revision ID: b7e4c1d92a10
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the catalog, discount and inventory ledger schema:
- property_definitions, products, product_variants, product/variant properties
- supplier_offers, product_price_events (append-only price history)
- discounts
- inventory_records, inventory_locations, serialized_units
- inventory_transactions (append-only stock ledger)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7e4c1d92a10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # ============================================================================
    # property_definitions: declared keys for product/variant property maps
    # ============================================================================
    op.create_table(
        'property_definitions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('label', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=32), nullable=False, server_default='other'),
        sa.Column('measurement_type', sa.String(length=32), nullable=False, server_default='other'),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.Column('aliases', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_property_definitions_key', 'property_definitions', ['key'], unique=True)
    op.create_index('ix_property_definitions_is_active', 'property_definitions', ['is_active'])

    # ============================================================================
    # products: catalog entries (never hard-deleted)
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('internal_part_number', sa.String(length=64), nullable=True),
        sa.Column('unit_of_measure', sa.String(length=16), nullable=False, server_default='EA'),
        sa.Column('category', sa.String(length=120), nullable=True),
        sa.Column('pricebook_section', sa.String(length=120), nullable=True),
        sa.Column('pricebook_page_number', sa.String(length=32), nullable=True),
        sa.Column('pricebook_page_name', sa.String(length=255), nullable=True),
        sa.Column('pricebook_group_code', sa.String(length=64), nullable=True),
        sa.Column('manufacturer_id', sa.Integer(), nullable=True),
        sa.Column('variant_keys', sa.JSON(), nullable=True),
        sa.Column('discount_percent', sa.Float(), nullable=True),
        sa.Column('discount_effective_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('discount_expires_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_internal_part_number', 'products', ['internal_part_number'])
    op.create_index('ix_products_category', 'products', ['category'])
    op.create_index('ix_products_pricebook_section', 'products', ['pricebook_section'])
    op.create_index('ix_products_pricebook_page_number', 'products', ['pricebook_page_number'])
    op.create_index('ix_products_pricebook_group_code', 'products', ['pricebook_group_code'])
    op.create_index('ix_products_manufacturer_id', 'products', ['manufacturer_id'])
    op.create_index('ix_products_is_active', 'products', ['is_active'])
    op.create_index('ix_products_category_active', 'products', ['category', 'is_active'])

    op.create_table(
        'product_properties',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('value_text', sa.String(length=255), nullable=True),
        sa.Column('normalized_value', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'key', name='uq_product_properties_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_properties_product_id', 'product_properties', ['product_id'])
    op.create_index('ix_product_properties_key_value', 'product_properties', ['key', 'value_text'])

    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('standard_cost', sa.Float(), nullable=True),
        sa.Column('list_price', sa.Float(), nullable=True),
        sa.Column('net_price', sa.Float(), nullable=True),
        sa.Column('discount_percent', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_variants_product_id', 'product_variants', ['product_id'])
    op.create_index('ix_product_variants_sku', 'product_variants', ['sku'])

    op.create_table(
        'variant_properties',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('value_text', sa.String(length=255), nullable=True),
        sa.Column('normalized_value', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('variant_id', 'key', name='uq_variant_properties_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_variant_properties_variant_id', 'variant_properties', ['variant_id'])

    # Exactly one owner: product-level or variant-level
    op.create_table(
        'supplier_offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('distributor_id', sa.Integer(), nullable=False),
        sa.Column('manufacturer_id', sa.Integer(), nullable=True),
        sa.Column('supplier_part_number', sa.String(length=64), nullable=True),
        sa.Column('list_price', sa.Float(), nullable=True),
        sa.Column('net_price', sa.Float(), nullable=True),
        sa.Column('discount_percent', sa.Float(), nullable=True),
        sa.Column('last_purchased_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_preferred', sa.Boolean(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.CheckConstraint('(product_id IS NULL) <> (variant_id IS NULL)',
                           name='ck_supplier_offers_single_owner'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_supplier_offers_product_id', 'supplier_offers', ['product_id'])
    op.create_index('ix_supplier_offers_variant_id', 'supplier_offers', ['variant_id'])
    op.create_index('ix_supplier_offers_distributor_id', 'supplier_offers', ['distributor_id'])
    op.create_index('ix_supplier_offers_manufacturer_id', 'supplier_offers', ['manufacturer_id'])

    # ============================================================================
    # discounts: pricebook rules (deactivated, never deleted)
    # ============================================================================
    op.create_table(
        'discounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False, server_default='category'),
        sa.Column('category', sa.String(length=120), nullable=True),
        sa.Column('category_group', sa.String(length=120), nullable=True),
        sa.Column('section', sa.String(length=120), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('discount_percent', sa.Float(), nullable=False),
        sa.Column('discount_amount', sa.Float(), nullable=True),
        sa.Column('effective_date', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replaces_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pricebook_page', sa.String(length=255), nullable=True),
        sa.Column('pricebook_page_number', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('last_applied', sa.DateTime(timezone=True), nullable=True),
        sa.Column('products_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('category_group', 'pricebook_page_number', name='uq_discounts_group_page'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_discounts_code', 'discounts', ['code'])
    op.create_index('ix_discounts_category', 'discounts', ['category'])
    op.create_index('ix_discounts_category_group', 'discounts', ['category_group'])
    op.create_index('ix_discounts_product_id', 'discounts', ['product_id'])
    op.create_index('ix_discounts_supplier_id', 'discounts', ['supplier_id'])
    op.create_index('ix_discounts_is_active', 'discounts', ['is_active'])
    op.create_index('ix_discounts_type_active', 'discounts', ['discount_type', 'is_active'])
    op.create_index('ix_discounts_effective', 'discounts', ['effective_date', 'expires_date'])

    # ============================================================================
    # product_price_events: append-only price history
    # ============================================================================
    op.create_table(
        'product_price_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('discount_id', sa.Integer(), nullable=True),
        sa.Column('discount_percent', sa.Float(), nullable=True),
        sa.Column('effective_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('applied_by', sa.Integer(), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('variant_snapshots', sa.JSON(), nullable=True),
        sa.Column('supplier_snapshots', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['discount_id'], ['discounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_price_events_product_id', 'product_price_events', ['product_id'])
    op.create_index('ix_product_price_events_discount_id', 'product_price_events', ['discount_id'])
    op.create_index('ix_price_events_product_applied', 'product_price_events', ['product_id', 'applied_at'])

    # ============================================================================
    # inventory_records: one per (product, variant); quantities cache the ledger
    # ============================================================================
    op.create_table(
        'inventory_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('inventory_type', sa.String(length=16), nullable=False, server_default='bulk'),
        sa.Column('quantity_on_hand', sa.Float(), nullable=False, server_default='0'),
        sa.Column('quantity_reserved', sa.Float(), nullable=False, server_default='0'),
        sa.Column('quantity_available', sa.Float(), nullable=False, server_default='0'),
        sa.Column('primary_location', sa.String(length=120), nullable=True),
        sa.Column('reorder_point', sa.Float(), nullable=True),
        sa.Column('reorder_quantity', sa.Float(), nullable=True),
        sa.Column('cost_method', sa.String(length=16), nullable=False, server_default='fifo'),
        sa.Column('average_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('last_updated_by', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'variant_id', name='uq_inventory_product_variant'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_records_product_id', 'inventory_records', ['product_id'])
    op.create_index('ix_inventory_records_variant_id', 'inventory_records', ['variant_id'])
    op.create_index('ix_inventory_records_type_active', 'inventory_records', ['inventory_type', 'is_active'])

    op.create_table(
        'inventory_locations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('inventory_id', sa.Integer(), nullable=False),
        sa.Column('location', sa.String(length=120), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['inventory_id'], ['inventory_records.id'], ),
        sa.CheckConstraint('quantity >= 0', name='ck_inventory_locations_quantity'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('inventory_id', 'location', name='uq_inventory_locations_location'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_locations_inventory_id', 'inventory_locations', ['inventory_id'])

    op.create_table(
        'serialized_units',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('inventory_id', sa.Integer(), nullable=False),
        sa.Column('serial_number', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='available'),
        sa.Column('location', sa.String(length=120), nullable=True),
        sa.Column('assigned_to', sa.String(length=64), nullable=True),
        sa.Column('assigned_to_task', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('received_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_maintenance_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['inventory_id'], ['inventory_records.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('inventory_id', 'serial_number', name='uq_serialized_units_serial'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_serialized_units_inventory_id', 'serialized_units', ['inventory_id'])
    op.create_index('ix_serialized_units_inventory_status', 'serialized_units', ['inventory_id', 'status'])

    # ============================================================================
    # inventory_transactions: append-only stock ledger
    # ============================================================================
    # quantity is the signed effect on quantity_on_hand (transfers carry the
    # moved amount and no on-hand effect)
    op.create_table(
        'inventory_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('inventory_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False, server_default='0'),
        sa.Column('serial_numbers', sa.JSON(), nullable=True),
        sa.Column('from_location', sa.String(length=120), nullable=True),
        sa.Column('to_location', sa.String(length=120), nullable=True),
        sa.Column('reason', sa.String(length=32), nullable=True),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('unit_cost', sa.Float(), nullable=True),
        sa.Column('total_cost', sa.Float(), nullable=True),
        sa.Column('performed_by', sa.Integer(), nullable=True),
        sa.Column('performed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['inventory_id'], ['inventory_records.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_transactions_inventory_id', 'inventory_transactions', ['inventory_id'])
    op.create_index('ix_inventory_transactions_type', 'inventory_transactions', ['type'])
    op.create_index('ix_inventory_transactions_record_time', 'inventory_transactions',
                    ['inventory_id', 'performed_at', 'id'])
    op.create_index('ix_inventory_transactions_reference', 'inventory_transactions',
                    ['reference_type', 'reference_id'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('inventory_transactions')
    op.drop_table('serialized_units')
    op.drop_table('inventory_locations')
    op.drop_table('inventory_records')
    op.drop_table('product_price_events')
    op.drop_table('discounts')
    op.drop_table('supplier_offers')
    op.drop_table('variant_properties')
    op.drop_table('product_variants')
    op.drop_table('product_properties')
    op.drop_table('products')
    op.drop_table('property_definitions')
