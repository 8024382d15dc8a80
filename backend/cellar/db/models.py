from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index, Numeric, JSON, text,
)
from sqlalchemy.orm import relationship

from cellar.db.database import Base, utcnow
from cellar.db.enums import (
    BatchStatus, ProductType, FermentationStage, VesselStatus, PressRunStatus,
)


ACTIVE_VESSEL_PREDICATE = "vessel_id IS NOT NULL AND deleted_at IS NULL AND NOT is_archived"


def Volume(**kwargs):
    """Liters, read back as float."""
    return Column(Numeric(14, 4, asdecimal=False), **kwargs)


def Money(**kwargs):
    return Column(Numeric(14, 4, asdecimal=False), **kwargs)


def Gravity(**kwargs):
    return Column(Numeric(6, 4, asdecimal=False), **kwargs)


# ============================================================================
# Vessels
# ============================================================================

class Vessel(Base):
    """Physical container: tank, barrel, carboy."""
    __tablename__ = "vessels"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    capacity = Volume(nullable=True)
    capacity_unit = Column(String(10), default="L", nullable=False)
    status = Column(String(20), default=VesselStatus.available.value, nullable=False)
    is_barrel = Column(Boolean, default=False, nullable=False)
    location = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Vessel id={self.id} name={self.name} status={self.status}>"


# ============================================================================
# External collaborators: purchase items and press runs
# ============================================================================

class JuicePurchaseItem(Base):
    """Juice bought from a vendor. volume_allocated counts liters already sent to tanks."""
    __tablename__ = "juice_purchase_items"

    id = Column(Integer, primary_key=True, index=True)
    vendor_name = Column(String(200), nullable=True)
    variety_name = Column(String(200), nullable=True)
    juice_type = Column(String(100), nullable=True)
    lot_code = Column(String(100), nullable=True)
    volume = Volume(nullable=False)
    volume_unit = Column(String(10), default="L", nullable=False)
    volume_allocated = Volume(default=0, nullable=False)
    brix = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    ph = Column(Numeric(4, 2, asdecimal=False), nullable=True)
    specific_gravity = Gravity(nullable=True)
    total_cost = Money(nullable=True)
    purchase_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class BaseFruitPurchaseItem(Base):
    """Fruit bought by weight, pressed or macerated into juice."""
    __tablename__ = "base_fruit_purchase_items"

    id = Column(Integer, primary_key=True, index=True)
    vendor_name = Column(String(200), nullable=True)
    variety_name = Column(String(200), nullable=True)
    lot_code = Column(String(100), nullable=True)
    quantity_kg = Column(Numeric(14, 3, asdecimal=False), nullable=False)
    quantity_used_kg = Column(Numeric(14, 3, asdecimal=False), default=0, nullable=False)
    total_cost = Money(nullable=True)
    brix = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class AdditivePurchaseItem(Base):
    """Stocked additive (yeast, nutrient, sugar, sulfite...)."""
    __tablename__ = "additive_purchase_items"

    id = Column(Integer, primary_key=True, index=True)
    additive_type = Column(String(100), nullable=True)
    name = Column(String(200), nullable=False)
    quantity = Column(Numeric(14, 4, asdecimal=False), nullable=False)
    unit = Column(String(10), nullable=False)
    quantity_used = Column(Numeric(14, 4, asdecimal=False), default=0, nullable=False)
    total_cost = Money(nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class PressRun(Base):
    __tablename__ = "press_runs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    status = Column(String(20), default=PressRunStatus.completed.value, nullable=False)
    pressed_at = Column(DateTime, default=utcnow, nullable=False)
    juice_volume = Volume(default=0, nullable=False)
    juice_volume_allocated = Volume(default=0, nullable=False)
    total_fruit_kg = Column(Numeric(14, 3, asdecimal=False), default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    loads = relationship("PressRunLoad", back_populates="press_run", lazy="selectin")


class PressRunLoad(Base):
    """One fruit load pressed in a run."""
    __tablename__ = "press_run_loads"

    id = Column(Integer, primary_key=True, index=True)
    press_run_id = Column(Integer, ForeignKey("press_runs.id"), nullable=False, index=True)
    base_fruit_item_id = Column(Integer, ForeignKey("base_fruit_purchase_items.id"), nullable=True)
    vendor_name = Column(String(200), nullable=True)
    variety_name = Column(String(200), nullable=True)
    lot_code = Column(String(100), nullable=True)
    weight_kg = Column(Numeric(14, 3, asdecimal=False), nullable=False)
    juice_volume = Volume(nullable=True)
    brix = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    material_cost = Money(nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    press_run = relationship("PressRun", back_populates="loads")


# ============================================================================
# Batch aggregate
# ============================================================================

class Batch(Base):
    """
    A tracked quantity of liquid. current_volume is the mutable aggregate;
    the ledgers below are the append-only history it must agree with.
    """
    __tablename__ = "batches"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    batch_number = Column(String(50), nullable=True, index=True)
    custom_name = Column(String(200), nullable=True)
    vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True, index=True)

    initial_volume = Volume(nullable=False)
    current_volume = Volume(nullable=False)
    volume_unit = Column(String(10), default="L", nullable=False)

    status = Column(String(20), default=BatchStatus.fermentation.value, nullable=False)
    product_type = Column(String(20), default=ProductType.cider.value, nullable=False)
    fermentation_stage = Column(String(20), default=FermentationStage.not_started.value, nullable=False)
    fermentation_stage_updated_at = Column(DateTime, nullable=True)

    original_gravity = Gravity(nullable=True)
    target_final_gravity = Gravity(nullable=True)
    final_gravity = Gravity(nullable=True)
    estimated_abv = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    actual_abv = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    sweetness_style = Column(String(20), nullable=True)  # dry, semi-dry, semi-sweet, sweet

    # Origin: press run XOR juice purchase XOR neither (legacy)
    origin_press_run_id = Column(Integer, ForeignKey("press_runs.id"), nullable=True)
    origin_juice_purchase_item_id = Column(Integer, ForeignKey("juice_purchase_items.id"), nullable=True)
    parent_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    is_legacy = Column(Boolean, default=False, nullable=False)

    start_date = Column(DateTime, default=utcnow, nullable=False)
    end_date = Column(DateTime, nullable=True)

    is_archived = Column(Boolean, default=False, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    archive_reason = Column(String(500), nullable=True)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # One active batch per vessel
        Index(
            "uq_batches_active_vessel",
            "vessel_id",
            unique=True,
            postgresql_where=text(ACTIVE_VESSEL_PREDICATE),
            sqlite_where=text(ACTIVE_VESSEL_PREDICATE),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and not self.is_archived

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name

    def __repr__(self):
        return f"<Batch id={self.id} name={self.name} volume={self.current_volume} vessel={self.vessel_id}>"


class BatchComposition(Base):
    """One material contribution to a batch. fraction_of_batch is recomputed, never trusted."""
    __tablename__ = "batch_compositions"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    source_type = Column(String(20), nullable=False)
    base_fruit_item_id = Column(Integer, ForeignKey("base_fruit_purchase_items.id"), nullable=True)
    juice_purchase_item_id = Column(Integer, ForeignKey("juice_purchase_items.id"), nullable=True)
    source_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True)
    press_run_id = Column(Integer, ForeignKey("press_runs.id"), nullable=True)
    vendor_name = Column(String(200), nullable=True)
    variety_name = Column(String(200), nullable=True)
    lot_code = Column(String(100), nullable=True)
    input_weight_kg = Column(Numeric(14, 3, asdecimal=False), default=0, nullable=False)
    juice_volume = Volume(default=0, nullable=False)
    fraction_of_batch = Column(Numeric(10, 6, asdecimal=False), default=0, nullable=False)
    material_cost = Money(default=0, nullable=False)
    avg_brix = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    abv = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class BatchMeasurement(Base):
    __tablename__ = "batch_measurements"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    measurement_date = Column(DateTime, nullable=False, index=True)
    specific_gravity = Gravity(nullable=True)
    raw_specific_gravity = Gravity(nullable=True)
    abv = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    ph = Column(Numeric(4, 2, asdecimal=False), nullable=True)
    total_acidity = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    temperature = Column(Numeric(5, 2, asdecimal=False), nullable=True)  # Celsius
    volume = Volume(nullable=True)
    volume_unit = Column(String(10), nullable=True)
    volume_liters = Volume(nullable=True)
    is_estimated = Column(Boolean, default=False, nullable=False)
    estimate_source = Column(String(200), nullable=True)
    copied_from_id = Column(Integer, ForeignKey("batch_measurements.id"), nullable=True)
    notes = Column(Text, nullable=True)
    taken_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class BatchAdditive(Base):
    __tablename__ = "batch_additives"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    additive_purchase_item_id = Column(Integer, ForeignKey("additive_purchase_items.id"), nullable=True)
    additive_type = Column(String(100), nullable=False)
    additive_name = Column(String(200), nullable=False)
    amount = Column(Numeric(14, 4, asdecimal=False), nullable=False)
    unit = Column(String(10), nullable=False)
    cost_per_unit = Money(nullable=True)
    total_cost = Money(nullable=True)
    added_at = Column(DateTime, nullable=False, index=True)
    added_by = Column(String(100), nullable=True)
    copied_from_id = Column(Integer, ForeignKey("batch_additives.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


# ============================================================================
# Volume ledger
# ============================================================================

class BatchMergeHistory(Base):
    """Volume merged into a batch from intake or from another batch."""
    __tablename__ = "batch_merge_history"

    id = Column(Integer, primary_key=True, index=True)
    target_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    source_type = Column(String(20), nullable=False)
    source_press_run_id = Column(Integer, ForeignKey("press_runs.id"), nullable=True)
    source_juice_purchase_item_id = Column(Integer, ForeignKey("juice_purchase_items.id"), nullable=True)
    source_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True)
    volume_added = Volume(nullable=False)
    target_volume_before = Volume(nullable=False)
    target_volume_after = Volume(nullable=False)
    composition_snapshot = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    merged_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class BatchTransfer(Base):
    """
    Liquid moved out of a batch. is_merge marks a destination that was
    already occupied; remaining_batch_id points at the batch created for
    what stayed behind in the source vessel.
    """
    __tablename__ = "batch_transfers"

    id = Column(Integer, primary_key=True, index=True)
    source_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    source_vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    destination_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    destination_vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    remaining_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    remaining_volume = Volume(nullable=True)
    volume_transferred = Volume(nullable=False)
    loss = Volume(default=0, nullable=False)
    total_volume_processed = Volume(nullable=False)
    is_merge = Column(Boolean, default=False, nullable=False)
    racking_operation_id = Column(Integer, ForeignKey("batch_racking_operations.id"), nullable=True)
    notes = Column(Text, nullable=True)
    transferred_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class BatchRackingOperation(Base):
    __tablename__ = "batch_racking_operations"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    source_vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    destination_vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    volume_before = Volume(nullable=False)
    volume_after = Volume(nullable=False)
    volume_loss = Volume(nullable=False)
    outcome = Column(String(20), nullable=True)
    racked_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class BatchFilterOperation(Base):
    __tablename__ = "batch_filter_operations"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    filter_type = Column(String(20), nullable=False)
    volume_before = Volume(nullable=False)
    volume_after = Volume(nullable=False)
    volume_loss = Volume(nullable=False)
    filtered_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class PackagingRun(Base):
    """Bottling, kegging or distillation outflow. Only the volume effect is tracked."""
    __tablename__ = "packaging_runs"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    vessel_id = Column(Integer, ForeignKey("vessels.id"), nullable=True)
    kind = Column(String(20), nullable=False)
    volume_before = Volume(nullable=False)
    volume_taken = Volume(nullable=False)
    loss = Volume(default=0, nullable=False)
    units_produced = Column(Integer, nullable=True)
    packaged_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


# ============================================================================
# Settings and audit
# ============================================================================

class OrganizationSettingsRecord(Base):
    """Per-organization overrides. NULL columns fall back to application defaults."""
    __tablename__ = "organization_settings"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, unique=True, index=True)
    temperature_correction_enabled = Column(Boolean, nullable=True)
    calibration_temp_c = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    stage_early_max_percent = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    stage_mid_max_percent = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    stage_approaching_dry_max_percent = Column(Numeric(5, 2, asdecimal=False), nullable=True)
    stall_detection_enabled = Column(Boolean, nullable=True)
    stall_detection_days = Column(Integer, nullable=True)
    stall_detection_threshold = Column(Numeric(6, 4, asdecimal=False), nullable=True)
    terminal_confirmation_hours = Column(Integer, nullable=True)
    default_target_fg = Gravity(nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    """
    Append-only audit trail.
    meta holds JSON: {"changes": {"field": {"old": ..., "new": ...}}, "reason": ...}
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(100), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    target_type = Column(String(50), nullable=False, index=True)
    target_id = Column(Integer, nullable=True, index=True)
    description = Column(Text, nullable=True)
    meta = Column(Text, nullable=True)
    operation_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
