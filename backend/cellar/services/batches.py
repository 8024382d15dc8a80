"""
Batch Service Layer

Lifecycle of the Batch aggregate outside of racking/filtering:
- creation helpers shared by intake, racking and transfers
- batch-to-batch merge (stage propagation, blended estimate, composition)
- update with audited status / product type / stage diffs
- soft delete, and purge of legacy batches with no ledger history
- vessel-to-vessel transfer leaving a "Remaining" batch behind
- packaging outflows

All public operations run in one transaction (see db.transaction).
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError, ConflictError, UnitConversionError
from cellar.core.logging import batch_logger, log_operation
from cellar.db.crud import get_batch, get_vessel, get_batch_in_vessel
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import (
    BatchStatus, FermentationStage, VesselStatus, MergeSourceType, ProductType,
    ACTIVE_FERMENTATION_STAGES, DORMANT_FERMENTATION_STAGES, NON_FERMENTING_PRODUCTS,
)
from cellar.db.models import (
    Batch, Vessel, BatchComposition, BatchMeasurement, BatchAdditive, BatchMergeHistory,
    BatchTransfer, BatchRackingOperation, BatchFilterOperation, PackagingRun,
)
from cellar.db.transaction import transactional
from cellar.schemas import (
    BatchUpdate, BatchUpdateResult, BatchTransferRequest, BatchTransferResult,
    PackagingRequest, PackagingResult, DeleteResult, LegacyBatchCreate, IntakeResult,
)
from cellar.services import composition, ledger
from cellar.services.audit import log_audit, diff_fields, AuditActions, AuditTargetTypes
from cellar.services.fermentation import estimate_blend
from cellar.services.measurements import add_estimated_measurement, list_measurements
from cellar.services.units import to_liters

logger = logging.getLogger(__name__)

EPSILON = ledger.EPSILON
AUDITED_FIELDS = ("status", "product_type", "fermentation_stage")


# ============================================================================
# Shared helpers
# ============================================================================

def liters(amount: float, unit: str) -> float:
    """Caller-supplied volume in liters; unknown units are a bad request."""
    try:
        return to_liters(amount, unit)
    except UnitConversionError as e:
        raise BadRequestError(str(e), details={"unit": unit})


def generate_batch_name(label: str, at: datetime, vessel_name: Optional[str] = None) -> str:
    parts = [label, at.date().isoformat()]
    if vessel_name:
        parts.append(vessel_name)
    parts.append(uuid.uuid4().hex[:6].upper())
    return "-".join(parts)


def initial_stage_for(product_type: str) -> FermentationStage:
    if ProductType(product_type) in NON_FERMENTING_PRODUCTS:
        return FermentationStage.not_applicable
    return FermentationStage.not_started


def aged_status(status: str) -> str:
    """Racking or transferring ends primary fermentation."""
    if status == BatchStatus.fermentation.value:
        return BatchStatus.aging.value
    return status


def check_capacity(vessel: Vessel, existing: float, adding: float) -> None:
    if vessel.capacity and existing + adding > to_liters(vessel.capacity, vessel.capacity_unit or "L") + EPSILON:
        raise BadRequestError(
            f"Adding {adding:.1f}L to {existing:.1f}L exceeds the capacity of {vessel.name}",
            details={"vessel_id": vessel.id, "capacity": vessel.capacity},
        )


async def ensure_vessel_empty(db: AsyncSession, vessel: Vessel, exclude_batch_id: Optional[int] = None) -> None:
    occupant = await get_batch_in_vessel(db, vessel.id, lock=True, exclude_batch_id=exclude_batch_id)
    if occupant is not None:
        raise ConflictError(
            f"Vessel {vessel.name} already contains batch {occupant.display_name}",
            details={"vessel_id": vessel.id, "batch_id": occupant.id},
        )


def new_batch(
    *,
    name: str,
    vessel_id: Optional[int],
    volume: float,
    started_at: datetime,
    status: str = BatchStatus.fermentation.value,
    product_type: str = ProductType.cider.value,
    fermentation_stage: Optional[str] = None,
    batch_number: Optional[str] = None,
    **fields,
) -> Batch:
    return Batch(
        name=name,
        batch_number=batch_number or name,
        vessel_id=vessel_id,
        initial_volume=volume,
        current_volume=volume,
        status=status,
        product_type=product_type,
        fermentation_stage=fermentation_stage or initial_stage_for(product_type).value,
        start_date=started_at,
        **fields,
    )


def derived_batch(source: Batch, name: str, batch_number: str, vessel_id: int, volume: float, at: datetime) -> Batch:
    """A batch carved out of ``source`` (split child or remaining batch)."""
    return new_batch(
        name=name,
        batch_number=batch_number,
        custom_name=source.custom_name and f"{source.custom_name}{name[len(source.name):]}",
        vessel_id=vessel_id,
        volume=volume,
        started_at=at,
        status=source.status,
        product_type=source.product_type,
        fermentation_stage=source.fermentation_stage,
        fermentation_stage_updated_at=source.fermentation_stage_updated_at,
        original_gravity=source.original_gravity,
        target_final_gravity=source.target_final_gravity,
        sweetness_style=source.sweetness_style,
        origin_press_run_id=source.origin_press_run_id,
        origin_juice_purchase_item_id=source.origin_juice_purchase_item_id,
        parent_batch_id=source.id,
    )


def archive_batch(batch: Batch, reason: str, at: Optional[datetime] = None) -> None:
    """Retire a batch whose liquid now lives elsewhere: zero volume, no vessel."""
    at = at or utcnow()
    batch.status = BatchStatus.completed.value
    batch.is_archived = True
    batch.archived_at = at
    batch.archive_reason = reason
    batch.current_volume = 0.0
    batch.vessel_id = None
    batch.end_date = batch.end_date or at


def _latest_values(measurements) -> dict:
    """Most recent non-null value per field, measurements newest first."""
    values = {}
    for field in ("specific_gravity", "abv", "ph", "total_acidity"):
        values[field] = next(
            (getattr(m, field) for m in measurements if getattr(m, field) is not None), None
        )
    return values


def propagate_stage(source: Batch, target: Batch, at: Optional[datetime] = None) -> bool:
    """An actively fermenting source wakes a dormant, fermentable target."""
    if source.fermentation_stage not in {s.value for s in ACTIVE_FERMENTATION_STAGES}:
        return False
    if target.fermentation_stage not in {s.value for s in DORMANT_FERMENTATION_STAGES}:
        return False
    if ProductType(target.product_type) in NON_FERMENTING_PRODUCTS:
        return False
    target.fermentation_stage = source.fermentation_stage
    target.fermentation_stage_updated_at = at or utcnow()
    return True


async def merge_batch_into(
    db: AsyncSession,
    source: Batch,
    target: Batch,
    volume: float,
    merged_at: datetime,
    notes: Optional[str] = None,
) -> Tuple[BatchMergeHistory, Optional[BatchMeasurement]]:
    """
    Fold ``volume`` liters of ``source`` into ``target``. The caller is
    responsible for shrinking or archiving the source afterwards.
    """
    target_before = target.current_volume
    source_volume = source.current_volume

    stage_propagated = propagate_stage(source, target, merged_at)

    source_values = _latest_values(await list_measurements(db, source.id, until=merged_at))
    target_values = _latest_values(await list_measurements(db, target.id, until=merged_at))
    blended = {
        field: estimate_blend(source_values[field], volume, target_values[field], target_before)
        for field in source_values
    }
    estimate = None
    if any(v is not None for v in blended.values()):
        estimate = await add_estimated_measurement(
            db,
            target.id,
            measurement_date=merged_at,
            estimate_source=f"blend:batch:{source.id}",
            volume_liters=target_before + volume,
            notes=(
                f"Estimated after blending {volume:.1f}L from {source.display_name} "
                f"into {target_before:.1f}L of {target.display_name}"
            ),
            **blended,
        )

    ratio = volume / source_volume if source_volume > 0 else 0.0
    snapshot = await composition.snapshot(db, source.id)
    await composition.copy_proportional(db, source.id, target.id, ratio, moved_volume=volume)
    await composition.recalculate_fractions(db, target.id)

    merge = await ledger.record_merge(
        db,
        target_batch_id=target.id,
        source_type=MergeSourceType.batch_transfer,
        source_batch_id=source.id,
        volume_added=volume,
        target_volume_before=target_before,
        merged_at=merged_at,
        composition_snapshot=snapshot,
        notes=notes,
    )
    target.current_volume = target_before + volume

    if stage_propagated:
        logger.info(
            f"[Batches] Stage {target.fermentation_stage} propagated from batch {source.id} to {target.id}"
        )
    return merge, estimate


async def has_ledger_history(db: AsyncSession, batch_id: int) -> bool:
    checks = [
        select(func.count()).select_from(BatchTransfer).where(or_(
            BatchTransfer.source_batch_id == batch_id,
            BatchTransfer.destination_batch_id == batch_id,
            BatchTransfer.remaining_batch_id == batch_id,
        )),
        select(func.count()).select_from(BatchMergeHistory).where(or_(
            BatchMergeHistory.target_batch_id == batch_id,
            BatchMergeHistory.source_batch_id == batch_id,
        )),
        select(func.count()).select_from(BatchRackingOperation).where(BatchRackingOperation.batch_id == batch_id),
        select(func.count()).select_from(BatchFilterOperation).where(BatchFilterOperation.batch_id == batch_id),
        select(func.count()).select_from(PackagingRun).where(PackagingRun.batch_id == batch_id),
    ]
    for query in checks:
        if (await db.execute(query)).scalar_one():
            return True
    return False


# ============================================================================
# Operations
# ============================================================================

@log_operation("create_legacy_batch", batch_logger)
@transactional("create_legacy_batch")
async def create_legacy_batch(db: AsyncSession, data: LegacyBatchCreate) -> IntakeResult:
    """Record inventory that predates the system. No composition, no origin."""
    volume = liters(data.volume, data.volume_unit)
    started_at = as_naive_utc(data.start_date) or utcnow()

    if data.vessel_id is not None:
        vessel = await get_vessel(db, data.vessel_id, lock=True)
        await ensure_vessel_empty(db, vessel)

    product_type = data.product_type.value
    if data.fermentation_stage is not None:
        stage = data.fermentation_stage.value
    elif ProductType(product_type) in NON_FERMENTING_PRODUCTS:
        stage = FermentationStage.not_applicable.value
    else:
        stage = FermentationStage.unknown.value

    batch = new_batch(
        name=data.name,
        vessel_id=data.vessel_id,
        volume=volume,
        started_at=started_at,
        status=data.status.value,
        product_type=product_type,
        fermentation_stage=stage,
        original_gravity=data.original_gravity,
        is_legacy=True,
        notes=data.notes,
    )
    db.add(batch)
    await db.flush()

    await log_audit(
        db,
        action=AuditActions.BATCH_CREATE,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=f"Legacy batch {batch.name} entered with {volume:.1f}L",
        meta={"legacy": True, "vessel_id": data.vessel_id, "volume": volume},
    )
    return IntakeResult(
        message=f"Legacy batch {batch.name} created with {volume:.1f}L",
        batch_id=batch.id,
        created_batch=True,
        vessel_id=data.vessel_id,
        volume_added=volume,
        current_volume=volume,
    )


@log_operation("update_batch", batch_logger)
@transactional("update_batch")
async def update_batch(db: AsyncSession, batch_id: int, patch: BatchUpdate) -> BatchUpdateResult:
    batch = await get_batch(db, batch_id, lock=True)
    fields = patch.model_dump(exclude_unset=True)
    reason = fields.pop("reason", None)
    before = {k: getattr(batch, k) for k in fields}
    for key in AUDITED_FIELDS:
        before.setdefault(key, getattr(batch, key))

    if "vessel_id" in fields and fields["vessel_id"] != batch.vessel_id and fields["vessel_id"] is not None:
        vessel = await get_vessel(db, fields["vessel_id"], lock=True)
        await ensure_vessel_empty(db, vessel, exclude_batch_id=batch.id)

    for key, value in fields.items():
        if hasattr(value, "value"):
            value = value.value
        if key in ("start_date", "end_date"):
            value = as_naive_utc(value)
        if key in ("name", "status", "product_type", "fermentation_stage") and value is None:
            continue
        setattr(batch, key, value)

    if "product_type" in fields and "fermentation_stage" not in fields:
        if ProductType(batch.product_type) in NON_FERMENTING_PRODUCTS:
            batch.fermentation_stage = FermentationStage.not_applicable.value
        elif batch.fermentation_stage == FermentationStage.not_applicable.value:
            batch.fermentation_stage = FermentationStage.not_started.value

    if batch.fermentation_stage != before["fermentation_stage"]:
        batch.fermentation_stage_updated_at = utcnow()

    if batch.status in (BatchStatus.completed.value, BatchStatus.discarded.value) and batch.end_date is None:
        batch.end_date = utcnow()

    changes = diff_fields(before, {k: getattr(batch, k) for k in before})
    await db.flush()

    if changes:
        audited = [k for k in AUDITED_FIELDS if k in changes]
        description = ", ".join(
            f"{k} {changes[k]['old']} -> {changes[k]['new']}" for k in audited
        ) or f"Updated {', '.join(sorted(changes))}"
        await log_audit(
            db,
            action=AuditActions.BATCH_STATUS_CHANGE if "status" in changes else AuditActions.BATCH_UPDATE,
            target_type=AuditTargetTypes.BATCH,
            target_id=batch.id,
            description=f"Batch {batch.display_name}: {description}",
            meta={"changes": changes, "reason": reason},
        )

    return BatchUpdateResult(
        message=f"Batch {batch.display_name} updated" if changes else "No changes to apply",
        batch_id=batch.id,
        changes=changes,
    )


@log_operation("delete_batch", batch_logger)
@transactional("delete_batch")
async def delete_batch(db: AsyncSession, batch_id: int, purge: bool = False) -> DeleteResult:
    """
    Soft-delete a completed or discarded batch and send its vessel to cleaning.

    purge=True hard-deletes a legacy batch entered by mistake; refused once
    any ledger row references it.
    """
    batch = await get_batch(db, batch_id, lock=True)
    vessel_id = batch.vessel_id

    if purge:
        if not batch.is_legacy:
            raise BadRequestError("Only legacy batches can be purged", details={"batch_id": batch.id})
        if await has_ledger_history(db, batch.id):
            raise BadRequestError(
                "Batch has volume history and cannot be purged; soft-delete it instead",
                details={"batch_id": batch.id},
            )
        for model in (BatchComposition, BatchMeasurement, BatchAdditive):
            await db.execute(delete(model).where(model.batch_id == batch.id))
        name = batch.display_name
        await db.delete(batch)
        await db.flush()
        await log_audit(
            db,
            action=AuditActions.BATCH_PURGE,
            target_type=AuditTargetTypes.BATCH,
            target_id=batch_id,
            description=f"Legacy batch {name} purged",
        )
        message = f"Legacy batch {name} permanently removed"
    else:
        if batch.status not in (BatchStatus.completed.value, BatchStatus.discarded.value):
            raise BadRequestError(
                f"Only completed or discarded batches can be deleted (status is {batch.status})",
                details={"batch_id": batch.id, "status": batch.status},
            )
        batch.deleted_at = utcnow()
        await log_audit(
            db,
            action=AuditActions.BATCH_DELETE,
            target_type=AuditTargetTypes.BATCH,
            target_id=batch.id,
            description=f"Batch {batch.display_name} deleted",
            meta={"status": batch.status, "vessel_id": vessel_id},
        )
        message = f"Batch {batch.display_name} deleted"

    if vessel_id is not None:
        vessel = await get_vessel(db, vessel_id, lock=True)
        vessel.status = VesselStatus.cleaning.value
        message += f"; vessel {vessel.name} set to cleaning"

    return DeleteResult(message=message, batch_id=batch_id, purged=purge)


@log_operation("transfer_batch", batch_logger)
@transactional("transfer_batch")
async def transfer_batch(db: AsyncSession, batch_id: int, req: BatchTransferRequest) -> BatchTransferResult:
    """
    Move liquid to another vessel. Anything left behind becomes a new
    "Remaining" batch in the source vessel; an occupied destination is
    blended and the source batch retired.
    """
    batch = await get_batch(db, batch_id, lock=True)
    if batch.vessel_id is None:
        raise BadRequestError("Batch is not assigned to a vessel", details={"batch_id": batch.id})
    source_vessel = await get_vessel(db, batch.vessel_id, lock=True)
    dest_vessel = await get_vessel(db, req.destination_vessel_id, lock=True)
    if dest_vessel.id == source_vessel.id:
        raise BadRequestError("Source and destination vessels are the same; use racking instead")
    if dest_vessel.status not in (VesselStatus.available.value, VesselStatus.fermenting.value):
        raise BadRequestError(
            f"Destination vessel is {dest_vessel.status} and cannot receive liquid",
            details={"vessel_id": dest_vessel.id},
        )

    dest_batch = await get_batch_in_vessel(db, dest_vessel.id, lock=True)
    volume = liters(req.volume_transferred, req.volume_unit)
    loss = liters(req.loss, req.volume_unit)
    current = batch.current_volume
    status_before = batch.status

    if volume + loss > current + EPSILON:
        raise BadRequestError(
            f"Transfer volume plus loss ({volume + loss:.2f}L) exceeds current batch volume ({current:.2f}L)",
            details={"batch_id": batch.id},
        )
    check_capacity(dest_vessel, dest_batch.current_volume if dest_batch else 0.0, volume)

    at = as_naive_utc(req.transferred_at) or utcnow()
    remaining = max(current - volume - loss, 0.0)
    if remaining <= EPSILON:
        remaining = 0.0

    if dest_batch is not None:
        await merge_batch_into(db, batch, dest_batch, volume, at, notes=req.notes)
        archive_batch(batch, f"Blended into {dest_batch.display_name} in {dest_vessel.name}", at)
        message = (
            f"Blended {volume:.1f}L from {batch.display_name} into {dest_batch.display_name}. "
            f"Total volume: {dest_batch.current_volume:.1f}L"
        )
    else:
        await ensure_vessel_empty(db, dest_vessel, exclude_batch_id=batch.id)
        if current > 0:
            await composition.scale_entries(db, batch.id, volume / current)
        batch.vessel_id = dest_vessel.id
        batch.current_volume = volume
        batch.status = aged_status(batch.status)
        dest_vessel.status = VesselStatus.fermenting.value
        message = f"Transferred {volume:.1f}L of {batch.display_name} to {dest_vessel.name}"
    await db.flush()

    remaining_batch = None
    if remaining > 0:
        remaining_batch = derived_batch(
            batch,
            name=f"{batch.name} - Remaining",
            batch_number=f"{batch.batch_number or batch.name}-R",
            vessel_id=source_vessel.id,
            volume=remaining,
            at=at,
        )
        # what stays behind is untouched liquid
        remaining_batch.status = status_before
        db.add(remaining_batch)
        await db.flush()
        # moved source entries were already scaled down to the moved volume
        source_ratio = remaining / volume if dest_batch is None and volume > 0 else remaining / current
        await composition.copy_proportional(db, batch.id, remaining_batch.id, source_ratio, moved_volume=remaining)
        await composition.recalculate_fractions(db, remaining_batch.id)
        message += f"; {remaining:.1f}L remains in {source_vessel.name} as {remaining_batch.name}"
    else:
        source_vessel.status = VesselStatus.cleaning.value

    transfer = await ledger.record_transfer(
        db,
        source_batch_id=batch.id,
        source_vessel_id=source_vessel.id,
        destination_batch_id=dest_batch.id if dest_batch else batch.id,
        destination_vessel_id=dest_vessel.id,
        volume_before=current,
        volume_transferred=volume,
        loss=loss,
        remaining_batch_id=remaining_batch.id if remaining_batch else None,
        remaining_volume=remaining if remaining_batch else None,
        is_merge=dest_batch is not None,
        transferred_at=at,
        notes=req.notes,
    )

    await log_audit(
        db,
        action=AuditActions.BATCH_MERGE if dest_batch else AuditActions.BATCH_TRANSFER,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=message,
        meta={
            "transfer_id": transfer.id,
            "destination_vessel_id": dest_vessel.id,
            "volume": volume,
            "loss": loss,
            "remaining_batch_id": remaining_batch.id if remaining_batch else None,
        },
    )

    return BatchTransferResult(
        message=message,
        transfer_id=transfer.id,
        source_batch_id=batch.id,
        destination_batch_id=dest_batch.id if dest_batch else batch.id,
        remaining_batch_id=remaining_batch.id if remaining_batch else None,
        is_merge=dest_batch is not None,
    )


@log_operation("package_batch", batch_logger)
@transactional("package_batch")
async def package_batch(db: AsyncSession, batch_id: int, req: PackagingRequest) -> PackagingResult:
    """Bottling, kegging or distillation draw. An emptied batch is completed and its vessel freed."""
    batch = await get_batch(db, batch_id, lock=True)
    volume = liters(req.volume_taken, req.volume_unit)
    loss = liters(req.loss, req.volume_unit)
    current = batch.current_volume
    if volume + loss > current + EPSILON:
        raise BadRequestError(
            f"Packaging volume plus loss ({volume + loss:.2f}L) exceeds current batch volume ({current:.2f}L)",
            details={"batch_id": batch.id},
        )

    at = as_naive_utc(req.packaged_at) or utcnow()
    run = await ledger.record_packaging(
        db,
        batch_id=batch.id,
        kind=req.kind,
        volume_before=current,
        volume_taken=volume,
        loss=loss,
        packaged_at=at,
        vessel_id=batch.vessel_id,
        units_produced=req.units_produced,
        notes=req.notes,
    )

    batch.current_volume = max(current - volume - loss, 0.0)
    completed = batch.current_volume <= EPSILON
    message = f"{req.kind.value.capitalize()} drew {volume:.1f}L from {batch.display_name}"
    if completed:
        batch.current_volume = 0.0
        batch.status = BatchStatus.completed.value
        batch.end_date = at
        if batch.vessel_id is not None:
            vessel = await get_vessel(db, batch.vessel_id, lock=True)
            vessel.status = VesselStatus.cleaning.value
            batch.vessel_id = None
        message += "; batch emptied and completed"
    else:
        message += f"; {batch.current_volume:.1f}L remaining"

    await log_audit(
        db,
        action=AuditActions.BATCH_PACKAGE,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=message,
        meta={"packaging_run_id": run.id, "kind": req.kind.value, "volume": volume, "loss": loss},
    )
    return PackagingResult(
        message=message,
        packaging_run_id=run.id,
        batch_id=batch.id,
        current_volume=batch.current_volume,
        batch_completed=completed,
    )
