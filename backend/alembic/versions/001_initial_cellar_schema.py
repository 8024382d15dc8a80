"""Initial cellar schema

Revision ID: 001_initial_cellar
Revises:
Create Date: 2024-08-15

Vessels, purchase items, press runs, batches and the volume ledgers.
One active batch per vessel is enforced with a partial unique index.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '001_initial_cellar'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_VESSEL_PREDICATE = "vessel_id IS NOT NULL AND deleted_at IS NULL AND NOT is_archived"


def volume(name, **kwargs):
    return sa.Column(name, sa.Numeric(14, 4), **kwargs)


def gravity(name, **kwargs):
    return sa.Column(name, sa.Numeric(6, 4), **kwargs)


def timestamps(updated=False):
    columns = [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    ]
    if updated:
        columns.append(sa.Column('updated_at', sa.DateTime(), nullable=True))
    return columns


def upgrade() -> None:
    # Vessels
    op.create_table(
        'vessels',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        volume('capacity', nullable=True),
        sa.Column('capacity_unit', sa.String(10), server_default='L', nullable=False),
        sa.Column('status', sa.String(20), server_default='available', nullable=False),
        sa.Column('is_barrel', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('location', sa.String(100), nullable=True),
        *timestamps(updated=True),
    )

    # Purchases and press runs
    op.create_table(
        'juice_purchase_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('vendor_name', sa.String(200)),
        sa.Column('variety_name', sa.String(200)),
        sa.Column('juice_type', sa.String(100)),
        sa.Column('lot_code', sa.String(100)),
        volume('volume', nullable=False),
        sa.Column('volume_unit', sa.String(10), server_default='L', nullable=False),
        volume('volume_allocated', server_default='0', nullable=False),
        sa.Column('brix', sa.Numeric(6, 2)),
        sa.Column('ph', sa.Numeric(4, 2)),
        gravity('specific_gravity'),
        sa.Column('total_cost', sa.Numeric(14, 4)),
        sa.Column('purchase_date', sa.DateTime()),
        *timestamps(),
    )
    op.create_table(
        'base_fruit_purchase_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('vendor_name', sa.String(200)),
        sa.Column('variety_name', sa.String(200)),
        sa.Column('lot_code', sa.String(100)),
        sa.Column('quantity_kg', sa.Numeric(14, 3), nullable=False),
        sa.Column('quantity_used_kg', sa.Numeric(14, 3), server_default='0', nullable=False),
        sa.Column('total_cost', sa.Numeric(14, 4)),
        sa.Column('brix', sa.Numeric(6, 2)),
        *timestamps(),
    )
    op.create_table(
        'additive_purchase_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('additive_type', sa.String(100)),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 4), nullable=False),
        sa.Column('unit', sa.String(10), nullable=False),
        sa.Column('quantity_used', sa.Numeric(14, 4), server_default='0', nullable=False),
        sa.Column('total_cost', sa.Numeric(14, 4)),
        *timestamps(),
    )
    op.create_table(
        'press_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100)),
        sa.Column('status', sa.String(20), server_default='completed', nullable=False),
        sa.Column('pressed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        volume('juice_volume', server_default='0', nullable=False),
        volume('juice_volume_allocated', server_default='0', nullable=False),
        sa.Column('total_fruit_kg', sa.Numeric(14, 3), server_default='0', nullable=False),
        *timestamps(),
    )
    op.create_table(
        'press_run_loads',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('press_run_id', sa.Integer(), sa.ForeignKey('press_runs.id'), nullable=False, index=True),
        sa.Column('base_fruit_item_id', sa.Integer(), sa.ForeignKey('base_fruit_purchase_items.id')),
        sa.Column('vendor_name', sa.String(200)),
        sa.Column('variety_name', sa.String(200)),
        sa.Column('lot_code', sa.String(100)),
        sa.Column('weight_kg', sa.Numeric(14, 3), nullable=False),
        volume('juice_volume'),
        sa.Column('brix', sa.Numeric(6, 2)),
        sa.Column('material_cost', sa.Numeric(14, 4)),
        sa.Column('deleted_at', sa.DateTime()),
    )

    # Batches
    op.create_table(
        'batches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('batch_number', sa.String(50), index=True),
        sa.Column('custom_name', sa.String(200)),
        sa.Column('vessel_id', sa.Integer(), sa.ForeignKey('vessels.id'), index=True),
        volume('initial_volume', nullable=False),
        volume('current_volume', nullable=False),
        sa.Column('volume_unit', sa.String(10), server_default='L', nullable=False),
        sa.Column('status', sa.String(20), server_default='fermentation', nullable=False),
        sa.Column('product_type', sa.String(20), server_default='cider', nullable=False),
        sa.Column('fermentation_stage', sa.String(20), server_default='not_started', nullable=False),
        sa.Column('fermentation_stage_updated_at', sa.DateTime()),
        gravity('original_gravity'),
        gravity('target_final_gravity'),
        gravity('final_gravity'),
        sa.Column('estimated_abv', sa.Numeric(5, 2)),
        sa.Column('actual_abv', sa.Numeric(5, 2)),
        sa.Column('sweetness_style', sa.String(20)),
        sa.Column('origin_press_run_id', sa.Integer(), sa.ForeignKey('press_runs.id')),
        sa.Column('origin_juice_purchase_item_id', sa.Integer(), sa.ForeignKey('juice_purchase_items.id')),
        sa.Column('parent_batch_id', sa.Integer(), sa.ForeignKey('batches.id'), index=True),
        sa.Column('is_legacy', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('start_date', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('end_date', sa.DateTime()),
        sa.Column('is_archived', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('archived_at', sa.DateTime()),
        sa.Column('archive_reason', sa.String(500)),
        sa.Column('notes', sa.Text()),
        *timestamps(updated=True),
    )
    op.create_index(
        'uq_batches_active_vessel',
        'batches',
        ['vessel_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_VESSEL_PREDICATE),
        sqlite_where=sa.text(ACTIVE_VESSEL_PREDICATE),
    )

    op.create_table(
        'batch_compositions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('source_type', sa.String(20), nullable=False),
        sa.Column('base_fruit_item_id', sa.Integer(), sa.ForeignKey('base_fruit_purchase_items.id')),
        sa.Column('juice_purchase_item_id', sa.Integer(), sa.ForeignKey('juice_purchase_items.id')),
        sa.Column('source_batch_id', sa.Integer(), sa.ForeignKey('batches.id')),
        sa.Column('press_run_id', sa.Integer(), sa.ForeignKey('press_runs.id')),
        sa.Column('vendor_name', sa.String(200)),
        sa.Column('variety_name', sa.String(200)),
        sa.Column('lot_code', sa.String(100)),
        sa.Column('input_weight_kg', sa.Numeric(14, 3), server_default='0', nullable=False),
        volume('juice_volume', server_default='0', nullable=False),
        sa.Column('fraction_of_batch', sa.Numeric(10, 6), server_default='0', nullable=False),
        sa.Column('material_cost', sa.Numeric(14, 4), server_default='0', nullable=False),
        sa.Column('avg_brix', sa.Numeric(6, 2)),
        sa.Column('abv', sa.Numeric(5, 2)),
        *timestamps(),
    )
    op.create_table(
        'batch_measurements',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('measurement_date', sa.DateTime(), nullable=False, index=True),
        gravity('specific_gravity'),
        gravity('raw_specific_gravity'),
        sa.Column('abv', sa.Numeric(5, 2)),
        sa.Column('ph', sa.Numeric(4, 2)),
        sa.Column('total_acidity', sa.Numeric(6, 2)),
        sa.Column('temperature', sa.Numeric(5, 2)),
        volume('volume'),
        sa.Column('volume_unit', sa.String(10)),
        volume('volume_liters'),
        sa.Column('is_estimated', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('estimate_source', sa.String(200)),
        sa.Column('copied_from_id', sa.Integer(), sa.ForeignKey('batch_measurements.id')),
        sa.Column('notes', sa.Text()),
        sa.Column('taken_by', sa.String(100)),
        *timestamps(updated=True),
    )
    op.create_table(
        'batch_additives',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('additive_purchase_item_id', sa.Integer(), sa.ForeignKey('additive_purchase_items.id')),
        sa.Column('additive_type', sa.String(100), nullable=False),
        sa.Column('additive_name', sa.String(200), nullable=False),
        sa.Column('amount', sa.Numeric(14, 4), nullable=False),
        sa.Column('unit', sa.String(10), nullable=False),
        sa.Column('cost_per_unit', sa.Numeric(14, 4)),
        sa.Column('total_cost', sa.Numeric(14, 4)),
        sa.Column('added_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('added_by', sa.String(100)),
        sa.Column('copied_from_id', sa.Integer(), sa.ForeignKey('batch_additives.id')),
        sa.Column('notes', sa.Text()),
        *timestamps(),
    )

    # Volume ledger
    op.create_table(
        'batch_merge_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('target_batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('source_type', sa.String(20), nullable=False),
        sa.Column('source_press_run_id', sa.Integer(), sa.ForeignKey('press_runs.id')),
        sa.Column('source_juice_purchase_item_id', sa.Integer(), sa.ForeignKey('juice_purchase_items.id')),
        sa.Column('source_batch_id', sa.Integer(), sa.ForeignKey('batches.id')),
        volume('volume_added', nullable=False),
        volume('target_volume_before', nullable=False),
        volume('target_volume_after', nullable=False),
        sa.Column('composition_snapshot', sa.JSON()),
        sa.Column('notes', sa.Text()),
        sa.Column('merged_at', sa.DateTime(), nullable=False, index=True),
        *timestamps(),
    )
    op.create_table(
        'batch_racking_operations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('source_vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('destination_vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        volume('volume_before', nullable=False),
        volume('volume_after', nullable=False),
        volume('volume_loss', nullable=False),
        sa.Column('outcome', sa.String(20)),
        sa.Column('racked_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('notes', sa.Text()),
        *timestamps(updated=True),
    )
    op.create_table(
        'batch_transfers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source_batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('source_vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('destination_batch_id', sa.Integer(), sa.ForeignKey('batches.id'), index=True),
        sa.Column('destination_vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('remaining_batch_id', sa.Integer(), sa.ForeignKey('batches.id'), index=True),
        volume('remaining_volume'),
        volume('volume_transferred', nullable=False),
        volume('loss', server_default='0', nullable=False),
        volume('total_volume_processed', nullable=False),
        sa.Column('is_merge', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('racking_operation_id', sa.Integer(), sa.ForeignKey('batch_racking_operations.id')),
        sa.Column('notes', sa.Text()),
        sa.Column('transferred_at', sa.DateTime(), nullable=False, index=True),
        *timestamps(),
    )
    op.create_table(
        'batch_filter_operations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('filter_type', sa.String(20), nullable=False),
        volume('volume_before', nullable=False),
        volume('volume_after', nullable=False),
        volume('volume_loss', nullable=False),
        sa.Column('filtered_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('notes', sa.Text()),
        *timestamps(updated=True),
    )
    op.create_table(
        'packaging_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('batches.id'), nullable=False, index=True),
        sa.Column('vessel_id', sa.Integer(), sa.ForeignKey('vessels.id')),
        sa.Column('kind', sa.String(20), nullable=False),
        volume('volume_before', nullable=False),
        volume('volume_taken', nullable=False),
        volume('loss', server_default='0', nullable=False),
        sa.Column('units_produced', sa.Integer()),
        sa.Column('packaged_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('notes', sa.Text()),
        *timestamps(),
    )

    # Settings and audit
    op.create_table(
        'organization_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), nullable=False, unique=True, index=True),
        sa.Column('temperature_correction_enabled', sa.Boolean()),
        sa.Column('calibration_temp_c', sa.Numeric(5, 2)),
        sa.Column('stage_early_max_percent', sa.Numeric(5, 2)),
        sa.Column('stage_mid_max_percent', sa.Numeric(5, 2)),
        sa.Column('stage_approaching_dry_max_percent', sa.Numeric(5, 2)),
        sa.Column('stall_detection_enabled', sa.Boolean()),
        sa.Column('stall_detection_days', sa.Integer()),
        sa.Column('stall_detection_threshold', sa.Numeric(6, 4)),
        sa.Column('terminal_confirmation_hours', sa.Integer()),
        gravity('default_target_fg'),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer()),
        sa.Column('username', sa.String(100)),
        sa.Column('action', sa.String(50), nullable=False, index=True),
        sa.Column('target_type', sa.String(50), nullable=False, index=True),
        sa.Column('target_id', sa.Integer(), index=True),
        sa.Column('description', sa.Text()),
        sa.Column('meta', sa.Text()),
        sa.Column('operation_id', sa.String(36)),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
    )


def downgrade() -> None:
    for table in (
        'audit_logs',
        'organization_settings',
        'packaging_runs',
        'batch_filter_operations',
        'batch_transfers',
        'batch_racking_operations',
        'batch_merge_history',
        'batch_additives',
        'batch_measurements',
        'batch_compositions',
    ):
        op.drop_table(table)
    op.drop_index('uq_batches_active_vessel', table_name='batches')
    for table in (
        'batches',
        'press_run_loads',
        'press_runs',
        'additive_purchase_items',
        'base_fruit_purchase_items',
        'juice_purchase_items',
        'vessels',
    ):
        op.drop_table(table)
