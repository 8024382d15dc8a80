"""
Pydantic schemas for cellar operations.

Request schemas validate physical ranges before any service code runs;
result schemas carry a human-readable message naming the branch executed.
"""
from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel, Field, model_validator

from cellar.db.enums import (
    BatchStatus, ProductType, FermentationStage, FilterType, PackagingKind, RackOutcome,
    CompositionSourceType, MergeSourceType,
)


class OperationResult(BaseModel):
    success: bool = True
    message: str
    entity_id: int


# ---------------------- Measurement Schemas ----------------------

class MeasurementCreate(BaseModel):
    """Lab reading. Bounds reject physically implausible values."""
    measurement_date: Optional[datetime] = None
    specific_gravity: Optional[float] = Field(None, ge=0.990, le=1.200)
    abv: Optional[float] = Field(None, ge=0, le=20)
    ph: Optional[float] = Field(None, ge=2, le=5)
    total_acidity: Optional[float] = Field(None, ge=0, le=20)
    temperature: Optional[float] = Field(None, ge=0, le=40, description="Celsius")
    volume: Optional[float] = Field(None, gt=0)
    volume_unit: str = "L"
    notes: Optional[str] = None
    taken_by: Optional[str] = Field(None, max_length=100)


class MeasurementUpdate(BaseModel):
    measurement_date: Optional[datetime] = None
    specific_gravity: Optional[float] = Field(None, ge=0.990, le=1.200)
    abv: Optional[float] = Field(None, ge=0, le=20)
    ph: Optional[float] = Field(None, ge=2, le=5)
    total_acidity: Optional[float] = Field(None, ge=0, le=20)
    temperature: Optional[float] = Field(None, ge=0, le=40)
    volume: Optional[float] = Field(None, gt=0)
    volume_unit: Optional[str] = None
    notes: Optional[str] = None


class MeasurementResult(BaseModel):
    success: bool = True
    message: str
    measurement_id: int
    batch_id: int
    specific_gravity: Optional[float] = None
    raw_specific_gravity: Optional[float] = None
    original_gravity: Optional[float] = None
    fermentation_stage: str
    stage_changed: bool = False


class MeasurementResponse(BaseModel):
    id: int
    batch_id: int
    measurement_date: datetime
    specific_gravity: Optional[float]
    abv: Optional[float]
    ph: Optional[float]
    total_acidity: Optional[float]
    temperature: Optional[float]
    volume_liters: Optional[float]
    is_estimated: bool
    estimate_source: Optional[str]
    notes: Optional[str]

    class Config:
        from_attributes = True


# ---------------------- Additive Schemas ----------------------

class AdditiveCreate(BaseModel):
    additive_type: str = Field(..., min_length=1, max_length=100)
    additive_name: str = Field(..., min_length=1, max_length=200)
    amount: float = Field(..., gt=0)
    unit: str = Field(..., min_length=1, max_length=10)
    additive_purchase_item_id: Optional[int] = None
    added_at: Optional[datetime] = None
    added_by: Optional[str] = None
    notes: Optional[str] = None


class AdditiveUpdate(BaseModel):
    additive_name: Optional[str] = Field(None, min_length=1, max_length=200)
    amount: Optional[float] = Field(None, gt=0)
    unit: Optional[str] = Field(None, min_length=1, max_length=10)
    added_at: Optional[datetime] = None
    notes: Optional[str] = None


class AdditiveResult(BaseModel):
    success: bool = True
    message: str
    additive_id: int
    batch_id: int
    cost_per_unit: Optional[float] = None
    total_cost: Optional[float] = None
    fermentation_stage: Optional[str] = None
    estimated_measurement_id: Optional[int] = None


class AdditiveResponse(BaseModel):
    id: int
    batch_id: int
    vessel_id: Optional[int]
    additive_type: str
    additive_name: str
    amount: float
    unit: str
    total_cost: Optional[float]
    added_at: datetime

    class Config:
        from_attributes = True


# ---------------------- Racking / Filtering Schemas ----------------------

class RackRequest(BaseModel):
    destination_vessel_id: int
    volume_to_rack: float = Field(..., gt=0)
    volume_unit: str = "L"
    loss: float = Field(0, ge=0)
    racked_at: Optional[datetime] = None
    notes: Optional[str] = None


class RackResult(BaseModel):
    success: bool = True
    message: str
    outcome: RackOutcome
    batch_id: int
    racking_operation_id: int
    destination_batch_id: Optional[int] = None
    child_batch_id: Optional[int] = None
    merge_history_id: Optional[int] = None
    transfer_id: Optional[int] = None
    volume_racked: float
    loss: float
    remaining_volume: float


class RackingUpdate(BaseModel):
    racked_at: Optional[datetime] = None
    volume_loss: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class FilterRequest(BaseModel):
    vessel_id: int
    filter_type: FilterType
    volume_before: float = Field(..., gt=0)
    volume_after: float = Field(..., ge=0)
    volume_unit: str = "L"
    filtered_at: Optional[datetime] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_volume_decreases(self):
        if self.volume_after >= self.volume_before:
            raise ValueError("volume_after must be less than volume_before")
        return self


class FilterUpdate(BaseModel):
    filtered_at: Optional[datetime] = None
    volume_after: Optional[float] = Field(None, ge=0)
    filter_type: Optional[FilterType] = None
    notes: Optional[str] = None


class FilterResult(BaseModel):
    success: bool = True
    message: str
    batch_id: int
    filter_operation_id: int
    volume_loss: float
    current_volume: float


class LedgerCorrectionResult(BaseModel):
    success: bool = True
    message: str
    batch_id: int
    operation_id: int
    volume_delta: float = 0
    current_volume: float


# ---------------------- Intake Schemas ----------------------

class JuiceTransferRequest(BaseModel):
    juice_purchase_item_id: int
    vessel_id: int
    volume: float = Field(..., gt=0)
    volume_unit: str = "L"
    batch_name: Optional[str] = None
    product_type: ProductType = ProductType.cider
    transferred_at: Optional[datetime] = None


class JuiceAllocation(BaseModel):
    juice_purchase_item_id: int
    volume: float = Field(..., gt=0)
    volume_unit: str = "L"


class JuiceBatchCreate(BaseModel):
    vessel_id: int
    allocations: list[JuiceAllocation] = Field(..., min_length=1)
    name: Optional[str] = None
    product_type: ProductType = ProductType.cider
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class FruitAllocation(BaseModel):
    base_fruit_item_id: int
    weight_kg: float = Field(..., gt=0)
    juice_volume: float = Field(..., gt=0, description="Liters of must attributed to this fruit")


class FruitWineBatchCreate(BaseModel):
    vessel_id: int
    name: str = Field(..., min_length=1, max_length=200)
    allocations: list[FruitAllocation] = Field(..., min_length=1)
    product_type: ProductType = ProductType.other
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class PressRunBatchCreate(BaseModel):
    press_run_id: int
    vessel_id: int
    volume: Optional[float] = Field(None, gt=0, description="Defaults to all unallocated juice")
    volume_unit: str = "L"
    name: Optional[str] = None
    product_type: ProductType = ProductType.cider
    transferred_at: Optional[datetime] = None


class LegacyBatchCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    vessel_id: Optional[int] = None
    volume: float = Field(..., gt=0)
    volume_unit: str = "L"
    product_type: ProductType = ProductType.cider
    status: BatchStatus = BatchStatus.aging
    fermentation_stage: Optional[FermentationStage] = None
    original_gravity: Optional[float] = Field(None, ge=0.990, le=1.200)
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class IntakeResult(BaseModel):
    success: bool = True
    message: str
    batch_id: int
    created_batch: bool
    vessel_id: Optional[int] = None
    volume_added: float
    current_volume: float
    merge_history_id: Optional[int] = None
    purchase_item_archived: bool = False


# ---------------------- Batch Lifecycle Schemas ----------------------

class BatchUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    custom_name: Optional[str] = None
    status: Optional[BatchStatus] = None
    product_type: Optional[ProductType] = None
    fermentation_stage: Optional[FermentationStage] = None
    vessel_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_final_gravity: Optional[float] = Field(None, ge=0.990, le=1.200)
    sweetness_style: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = Field(None, description="Recorded with audited field changes")


class BatchUpdateResult(BaseModel):
    success: bool = True
    message: str
    batch_id: int
    changes: dict[str, dict[str, Any]] = {}


class BatchTransferRequest(BaseModel):
    destination_vessel_id: int
    volume_transferred: float = Field(..., gt=0)
    loss: float = Field(0, ge=0)
    volume_unit: str = "L"
    transferred_at: Optional[datetime] = None
    notes: Optional[str] = None


class BatchTransferResult(BaseModel):
    success: bool = True
    message: str
    transfer_id: int
    source_batch_id: int
    destination_batch_id: int
    remaining_batch_id: Optional[int] = None
    is_merge: bool


class PackagingRequest(BaseModel):
    kind: PackagingKind
    volume_taken: float = Field(..., gt=0)
    loss: float = Field(0, ge=0)
    volume_unit: str = "L"
    units_produced: Optional[int] = Field(None, ge=0)
    packaged_at: Optional[datetime] = None
    notes: Optional[str] = None


class PackagingResult(BaseModel):
    success: bool = True
    message: str
    packaging_run_id: int
    batch_id: int
    current_volume: float
    batch_completed: bool


class DeleteResult(BaseModel):
    success: bool = True
    message: str
    batch_id: int
    purged: bool = False


# ---------------------- Read Models ----------------------

class CompositionEntryResponse(BaseModel):
    id: int
    source_type: CompositionSourceType
    base_fruit_item_id: Optional[int]
    juice_purchase_item_id: Optional[int]
    source_batch_id: Optional[int]
    press_run_id: Optional[int]
    vendor_name: Optional[str]
    variety_name: Optional[str]
    lot_code: Optional[str]
    input_weight_kg: float
    juice_volume: float
    fraction_of_batch: float
    material_cost: float
    avg_brix: Optional[float]
    abv: Optional[float]

    class Config:
        from_attributes = True


class CompositionSummary(BaseModel):
    batch_id: int
    entries: list[CompositionEntryResponse] = []
    total_volume: float = 0
    total_weight_kg: float = 0
    total_cost: float = 0
    cost_per_liter: Optional[float] = None


class MergeHistoryResponse(BaseModel):
    id: int
    target_batch_id: int
    source_type: MergeSourceType
    source_press_run_id: Optional[int]
    source_juice_purchase_item_id: Optional[int]
    source_batch_id: Optional[int]
    volume_added: float
    target_volume_before: float
    target_volume_after: float
    composition_snapshot: Optional[Any]
    merged_at: datetime

    class Config:
        from_attributes = True


class FermentationProgress(BaseModel):
    batch_id: Optional[int] = None
    original_gravity: Optional[float] = None
    current_gravity: Optional[float] = None
    target_final_gravity: float
    percent_fermented: Optional[float] = None
    stage: FermentationStage
    is_stalled: bool = False
    stall_days: Optional[float] = None
    is_terminal_confirmed: bool = False
    estimated_abv: Optional[float] = None
    recommended_action: Optional[str] = None
    next_measurement_due: Optional[datetime] = None
    stage_persisted: bool = False


class VolumeEvent(BaseModel):
    timestamp: datetime
    event_type: str
    description: str
    reference_id: int
    inflow: float = 0
    outflow: float = 0
    loss: float = 0
    running_balance: float


class VolumeTrace(BaseModel):
    batch_id: int
    batch_name: str
    initial_volume: float
    current_volume: float
    total_inflow: float
    total_outflow: float
    total_loss: float
    accounted_volume: float
    discrepancy: float
    has_discrepancy: bool
    events: list[VolumeEvent] = []


class BatchTraceNode(BaseModel):
    batch_id: int
    batch_name: str
    parent_batch_id: Optional[int] = None
    split_at: Optional[datetime] = None
    trace: VolumeTrace
    children: list["BatchTraceNode"] = []


class BatchFamilyTotals(BaseModel):
    initial_volume: float = 0
    external_inflow: float = 0
    current_volume: float = 0
    total_loss: float = 0
    packaged_volume: float = 0
    discrepancy: float = 0


class BatchTraceReport(BaseModel):
    start_date: datetime
    end_date: datetime
    generated_at: datetime
    families: list[BatchTraceNode] = []
    totals: BatchFamilyTotals = BatchFamilyTotals()
    batches_with_discrepancy: list[int] = []


class HistoryEntry(BaseModel):
    timestamp: datetime
    entry_type: str
    batch_id: int
    reference_id: int
    summary: str
    inherited_from_batch_id: Optional[int] = None
    data: dict[str, Any] = {}


class BatchHistory(BaseModel):
    batch_id: int
    name: str
    status: BatchStatus
    product_type: ProductType
    fermentation_stage: FermentationStage
    vessel_id: Optional[int] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    origin_press_run_id: Optional[int] = None
    origin_juice_purchase_item_id: Optional[int] = None
    composition: list[CompositionEntryResponse] = []
    measurements: list[MeasurementResponse] = []
    additives: list[AdditiveResponse] = []
    changes: list[HistoryEntry] = []


class ActivityPage(BaseModel):
    batch_id: int
    items: list[HistoryEntry] = []
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False


BatchTraceNode.model_rebuild()
