"""
Batch Intake

Liquid entering the cellar from outside the batch graph: purchased juice,
base fruit, and press runs. Every intake either starts a batch in an empty
vessel or merges into the vessel's current batch, and always updates the
supplier-side allocation counter in the same transaction.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError
from cellar.core.logging import batch_logger, log_operation
from cellar.db.crud import (
    get_vessel, get_batch_in_vessel, get_juice_purchase_item, get_base_fruit_item, get_press_run,
)
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import CompositionSourceType, MergeSourceType, PressRunStatus
from cellar.db.models import Batch, BatchMeasurement, JuicePurchaseItem
from cellar.db.transaction import transactional
from cellar.schemas import (
    JuiceTransferRequest, JuiceBatchCreate, FruitWineBatchCreate, PressRunBatchCreate, IntakeResult,
)
from cellar.services import composition, ledger
from cellar.services.audit import log_audit, AuditActions, AuditTargetTypes
from cellar.services.batches import (
    EPSILON, liters, new_batch, generate_batch_name, ensure_vessel_empty, check_capacity,
)
from cellar.services.composition import CompositionSource
from cellar.services.fermentation import estimate_blend
from cellar.services.units import to_liters

logger = logging.getLogger(__name__)


def _juice_item_liters(item: JuicePurchaseItem) -> float:
    return to_liters(item.volume, item.volume_unit or "L")


def _juice_label(item: JuicePurchaseItem) -> str:
    return " ".join(p for p in (item.vendor_name, item.variety_name or item.juice_type) if p) or f"Juice #{item.id}"


def _share(total: Optional[float], part: float, whole: float) -> float:
    if not total or whole <= 0:
        return 0.0
    return round(total * part / whole, 4)


def _ensure_juice_available(item: JuicePurchaseItem, volume: float) -> None:
    available = _juice_item_liters(item) - (item.volume_allocated or 0.0)
    if volume > available + EPSILON:
        raise BadRequestError(
            f"Requested {volume:.1f}L but only {max(available, 0.0):.1f}L of {_juice_label(item)} is available",
            details={"juice_purchase_item_id": item.id, "available": round(max(available, 0.0), 4)},
        )


async def _allocate_juice(db: AsyncSession, item: JuicePurchaseItem, volume: float) -> bool:
    """
    Count ``volume`` liters against the purchase item. A fully allocated
    item is soft-deleted. Returns True when the item was archived.
    """
    _ensure_juice_available(item, volume)
    total = _juice_item_liters(item)
    item.volume_allocated = (item.volume_allocated or 0.0) + volume
    if item.volume_allocated >= total - EPSILON:
        item.deleted_at = utcnow()
        await log_audit(
            db,
            action=AuditActions.JUICE_ITEM_ARCHIVE,
            target_type=AuditTargetTypes.JUICE_PURCHASE_ITEM,
            target_id=item.id,
            description=f"{_juice_label(item)} fully allocated and archived",
            meta={"volume": total},
        )
        return True
    return False


async def _record_juice_contribution(db: AsyncSession, batch_id: int, item: JuicePurchaseItem, volume: float):
    return await composition.record_contribution(
        db,
        batch_id,
        CompositionSource(
            source_type=CompositionSourceType.juice_purchase,
            juice_purchase_item_id=item.id,
            vendor_name=item.vendor_name,
            variety_name=item.variety_name or item.juice_type,
            lot_code=item.lot_code,
        ),
        volume=volume,
        cost=_share(item.total_cost, volume, _juice_item_liters(item)),
        brix=item.brix,
    )


def _initial_measurement(
    batch: Batch,
    measured_at: datetime,
    specific_gravity: Optional[float],
    ph: Optional[float],
    source: str,
) -> Optional[BatchMeasurement]:
    if specific_gravity is None and ph is None:
        return None
    return BatchMeasurement(
        batch_id=batch.id,
        measurement_date=measured_at,
        specific_gravity=specific_gravity,
        ph=ph,
        volume=batch.current_volume,
        volume_unit="L",
        volume_liters=batch.current_volume,
        is_estimated=False,
        notes=f"Initial reading from {source}",
        taken_by="System",
    )


async def _audit_intake(db: AsyncSession, batch: Batch, description: str, **meta) -> None:
    await log_audit(
        db,
        action=AuditActions.JUICE_TRANSFER,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=description,
        meta=meta,
    )


# ============================================================================
# Operations
# ============================================================================

@log_operation("transfer_juice_to_tank", batch_logger)
@transactional("transfer_juice_to_tank")
async def transfer_juice_to_tank(db: AsyncSession, req: JuiceTransferRequest) -> IntakeResult:
    """
    Move purchased juice into a vessel. An empty vessel gets a new batch
    seeded from the purchase; an occupied one has the juice merged in.
    """
    item = await get_juice_purchase_item(db, req.juice_purchase_item_id, lock=True)
    vessel = await get_vessel(db, req.vessel_id, lock=True)
    volume = liters(req.volume, req.volume_unit)
    _ensure_juice_available(item, volume)
    at = as_naive_utc(req.transferred_at) or utcnow()

    occupant = await get_batch_in_vessel(db, vessel.id, lock=True)
    check_capacity(vessel, occupant.current_volume if occupant else 0.0, volume)

    label = _juice_label(item)
    merge = None
    if occupant is None:
        batch = new_batch(
            name=req.batch_name or generate_batch_name("JP", at, vessel.name),
            vessel_id=vessel.id,
            volume=volume,
            started_at=at,
            product_type=req.product_type.value,
            original_gravity=item.specific_gravity,
            origin_juice_purchase_item_id=item.id,
        )
        db.add(batch)
        await db.flush()
        entry = await _record_juice_contribution(db, batch.id, item, volume)
        entry.fraction_of_batch = 1.0
        initial = _initial_measurement(batch, at, item.specific_gravity, item.ph, label)
        if initial is not None:
            db.add(initial)
        archived = await _allocate_juice(db, item, volume)
        message = f"Created batch {batch.name} with {volume:.1f}L of {label} in {vessel.name}"
    else:
        batch = occupant
        volume_before = batch.current_volume
        archived = await _allocate_juice(db, item, volume)
        await _record_juice_contribution(db, batch.id, item, volume)
        merge = await ledger.record_merge(
            db,
            target_batch_id=batch.id,
            source_type=MergeSourceType.juice_purchase,
            source_juice_purchase_item_id=item.id,
            volume_added=volume,
            target_volume_before=volume_before,
            merged_at=at,
        )
        batch.current_volume = volume_before + volume
        await composition.recalculate_fractions(db, batch.id)
        message = (
            f"Merged {volume:.1f}L of {label} into {batch.display_name}. "
            f"Total volume: {batch.current_volume:.1f}L"
        )

    if archived:
        message += f"; {label} fully allocated"
    await db.flush()
    await _audit_intake(
        db, batch, message,
        juice_purchase_item_id=item.id, vessel_id=vessel.id, volume=volume, created=occupant is None,
    )
    return IntakeResult(
        message=message,
        batch_id=batch.id,
        created_batch=occupant is None,
        vessel_id=vessel.id,
        volume_added=volume,
        current_volume=batch.current_volume,
        merge_history_id=merge.id if merge else None,
        purchase_item_archived=archived,
    )


@log_operation("create_from_juice_purchase", batch_logger)
@transactional("create_from_juice_purchase")
async def create_from_juice_purchase(db: AsyncSession, data: JuiceBatchCreate) -> IntakeResult:
    """New batch in an empty vessel from one or more juice purchases."""
    vessel = await get_vessel(db, data.vessel_id, lock=True)
    await ensure_vessel_empty(db, vessel)
    at = as_naive_utc(data.start_date) or utcnow()

    allocations = []
    requested = {}
    for allocation in data.allocations:
        item = await get_juice_purchase_item(db, allocation.juice_purchase_item_id, lock=True)
        volume = liters(allocation.volume, allocation.volume_unit)
        requested[item.id] = requested.get(item.id, 0.0) + volume
        _ensure_juice_available(item, requested[item.id])
        allocations.append((item, volume))
    total = sum(volume for _, volume in allocations)
    check_capacity(vessel, 0.0, total)

    first_item = allocations[0][0]
    batch = new_batch(
        name=data.name or generate_batch_name("JP", at, vessel.name),
        vessel_id=vessel.id,
        volume=total,
        started_at=at,
        product_type=data.product_type.value,
        origin_juice_purchase_item_id=first_item.id,
        notes=data.notes,
    )
    db.add(batch)
    await db.flush()

    gravity = ph = None
    gravity_volume = ph_volume = 0.0
    archived_items: List[int] = []
    for item, volume in allocations:
        await _record_juice_contribution(db, batch.id, item, volume)
        gravity = estimate_blend(item.specific_gravity, volume, gravity, gravity_volume)
        if item.specific_gravity is not None:
            gravity_volume += volume
        ph = estimate_blend(item.ph, volume, ph, ph_volume)
        if item.ph is not None:
            ph_volume += volume
        if await _allocate_juice(db, item, volume):
            archived_items.append(item.id)

    await composition.recalculate_fractions(db, batch.id)
    if gravity is not None:
        batch.original_gravity = round(gravity, 4)
    initial = _initial_measurement(
        batch, at, batch.original_gravity, round(ph, 2) if ph is not None else None,
        f"{len(allocations)} juice purchase(s)",
    )
    if initial is not None:
        db.add(initial)
    await db.flush()

    message = f"Created batch {batch.name} with {total:.1f}L from {len(allocations)} juice allocation(s)"
    if archived_items:
        message += f"; {len(archived_items)} purchase item(s) fully allocated"
    await _audit_intake(
        db, batch, message,
        vessel_id=vessel.id,
        allocations=[{"juice_purchase_item_id": i.id, "volume": v} for i, v in allocations],
    )
    return IntakeResult(
        message=message,
        batch_id=batch.id,
        created_batch=True,
        vessel_id=vessel.id,
        volume_added=total,
        current_volume=batch.current_volume,
        purchase_item_archived=bool(archived_items),
    )


@log_operation("create_fruit_wine_batch", batch_logger)
@transactional("create_fruit_wine_batch")
async def create_fruit_wine_batch(db: AsyncSession, data: FruitWineBatchCreate) -> IntakeResult:
    """New batch from base fruit. Fruit stock is drawn down by weight."""
    vessel = await get_vessel(db, data.vessel_id, lock=True)
    await ensure_vessel_empty(db, vessel)
    at = as_naive_utc(data.start_date) or utcnow()

    total = sum(a.juice_volume for a in data.allocations)
    check_capacity(vessel, 0.0, total)

    items = []
    requested = {}
    for allocation in data.allocations:
        item = await get_base_fruit_item(db, allocation.base_fruit_item_id, lock=True)
        requested[item.id] = requested.get(item.id, 0.0) + allocation.weight_kg
        available = item.quantity_kg - (item.quantity_used_kg or 0.0)
        if requested[item.id] > available + EPSILON:
            raise BadRequestError(
                f"Requested {requested[item.id]:.1f}kg but only {max(available, 0.0):.1f}kg of "
                f"{item.variety_name or 'fruit'} is available",
                details={"base_fruit_item_id": item.id, "available_kg": round(max(available, 0.0), 3)},
            )
        items.append((item, allocation))

    batch = new_batch(
        name=data.name,
        vessel_id=vessel.id,
        volume=total,
        started_at=at,
        product_type=data.product_type.value,
        notes=data.notes,
    )
    db.add(batch)
    await db.flush()

    for item, allocation in items:
        item.quantity_used_kg = (item.quantity_used_kg or 0.0) + allocation.weight_kg
        await composition.record_contribution(
            db,
            batch.id,
            CompositionSource(
                source_type=CompositionSourceType.base_fruit,
                base_fruit_item_id=item.id,
                vendor_name=item.vendor_name,
                variety_name=item.variety_name,
                lot_code=item.lot_code,
            ),
            volume=allocation.juice_volume,
            cost=_share(item.total_cost, allocation.weight_kg, item.quantity_kg),
            brix=item.brix,
            weight_kg=allocation.weight_kg,
        )

    await composition.recalculate_fractions(db, batch.id)
    await db.flush()

    message = f"Created fruit batch {batch.name} with {total:.1f}L from {len(data.allocations)} fruit lot(s)"
    await _audit_intake(
        db, batch, message,
        vessel_id=vessel.id,
        allocations=[a.model_dump() for a in data.allocations],
    )
    return IntakeResult(
        message=message,
        batch_id=batch.id,
        created_batch=True,
        vessel_id=vessel.id,
        volume_added=total,
        current_volume=batch.current_volume,
    )


@log_operation("create_from_press_run", batch_logger)
@transactional("create_from_press_run")
async def create_from_press_run(db: AsyncSession, data: PressRunBatchCreate) -> IntakeResult:
    """
    Send juice from a completed press run to a vessel. Composition comes
    from the run's fruit loads, scaled by the share of the run's juice taken.
    """
    press_run = await get_press_run(db, data.press_run_id, lock=True)
    if press_run.status != PressRunStatus.completed.value:
        raise BadRequestError(
            f"Press run is {press_run.status}; only completed press runs can be transferred",
            details={"press_run_id": press_run.id},
        )
    available = (press_run.juice_volume or 0.0) - (press_run.juice_volume_allocated or 0.0)
    volume = liters(data.volume, data.volume_unit) if data.volume is not None else available
    if volume <= EPSILON:
        raise BadRequestError("Press run has no unallocated juice", details={"press_run_id": press_run.id})
    if volume > available + EPSILON:
        raise BadRequestError(
            f"Requested {volume:.1f}L but only {available:.1f}L of the press run is unallocated",
            details={"press_run_id": press_run.id, "available": round(available, 4)},
        )

    vessel = await get_vessel(db, data.vessel_id, lock=True)
    occupant = await get_batch_in_vessel(db, vessel.id, lock=True)
    check_capacity(vessel, occupant.current_volume if occupant else 0.0, volume)
    at = as_naive_utc(data.transferred_at) or utcnow()

    merge = None
    if occupant is None:
        batch = new_batch(
            name=data.name or generate_batch_name("PR", at, vessel.name),
            vessel_id=vessel.id,
            volume=volume,
            started_at=at,
            product_type=data.product_type.value,
            origin_press_run_id=press_run.id,
        )
        db.add(batch)
        await db.flush()
    else:
        batch = occupant

    share = volume / press_run.juice_volume
    loads = [load for load in press_run.loads if load.deleted_at is None]
    total_weight = sum(load.weight_kg or 0.0 for load in loads)
    for load in loads:
        if load.juice_volume:
            load_volume = load.juice_volume * share
        else:
            load_volume = volume * (load.weight_kg or 0.0) / total_weight if total_weight else 0.0
        await composition.record_contribution(
            db,
            batch.id,
            CompositionSource(
                source_type=CompositionSourceType.base_fruit,
                base_fruit_item_id=load.base_fruit_item_id,
                press_run_id=press_run.id,
                vendor_name=load.vendor_name,
                variety_name=load.variety_name,
                lot_code=load.lot_code,
            ),
            volume=load_volume,
            cost=(load.material_cost or 0.0) * share,
            brix=load.brix,
            weight_kg=(load.weight_kg or 0.0) * share,
        )
    if not loads:
        await composition.record_contribution(
            db,
            batch.id,
            CompositionSource(source_type=CompositionSourceType.base_fruit, press_run_id=press_run.id),
            volume=volume,
        )

    if occupant is not None:
        volume_before = batch.current_volume
        merge = await ledger.record_merge(
            db,
            target_batch_id=batch.id,
            source_type=MergeSourceType.press_run,
            source_press_run_id=press_run.id,
            volume_added=volume,
            target_volume_before=volume_before,
            merged_at=at,
        )
        batch.current_volume = volume_before + volume
        message = (
            f"Merged {volume:.1f}L from press run {press_run.name or press_run.id} into "
            f"{batch.display_name}. Total volume: {batch.current_volume:.1f}L"
        )
    else:
        message = f"Created batch {batch.name} with {volume:.1f}L from press run {press_run.name or press_run.id}"

    await composition.recalculate_fractions(db, batch.id)
    press_run.juice_volume_allocated = (press_run.juice_volume_allocated or 0.0) + volume
    await db.flush()

    await _audit_intake(
        db, batch, message,
        press_run_id=press_run.id, vessel_id=vessel.id, volume=volume, created=occupant is None,
    )
    return IntakeResult(
        message=message,
        batch_id=batch.id,
        created_batch=occupant is None,
        vessel_id=vessel.id,
        volume_added=volume,
        current_volume=batch.current_volume,
        merge_history_id=merge.id if merge else None,
    )
