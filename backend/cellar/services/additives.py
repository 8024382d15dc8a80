"""
Additive Service

Additions to a batch (yeast, nutrients, sugar, sulfite, fining agents...).
- Purchase-linked additions are costed in the stock item's unit and
  decrement its remaining quantity; the amounts must share a unit family.
- Duplicate additions (same vessel, name, amount, unit and day) are refused.
- Yeast starts fermentation on a not_started batch.
- Sugar produces an estimated post-addition measurement.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError, ConflictError, NotFoundError, UnitConversionError
from cellar.core.logging import batch_logger, log_operation
from cellar.db.crud import get_batch, get_additive_item
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import FermentationStage
from cellar.db.models import Batch, BatchAdditive, AdditivePurchaseItem
from cellar.db.transaction import transactional
from cellar.schemas import AdditiveCreate, AdditiveUpdate, AdditiveResult, OperationResult
from cellar.services import fermentation
from cellar.services.audit import log_audit, diff_fields, AuditActions, AuditTargetTypes
from cellar.services.measurements import (
    add_estimated_measurement, list_measurements, product_ferments, set_fermentation_stage,
)
from cellar.services.units import convert, to_grams

logger = logging.getLogger(__name__)

SUGAR_ADDITIVE_TYPE = "Sugar & Sweeteners"
# Dosage rate: grams per liter of batch
GRAMS_PER_LITER = "g/L"
STOCK_EPSILON = 1e-6


def is_yeast(additive_type: str) -> bool:
    return "yeast" in additive_type.lower()


def is_sugar(additive_type: str) -> bool:
    return additive_type == SUGAR_ADDITIVE_TYPE or "sugar" in additive_type.lower()


def _day_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


async def get_additive(db: AsyncSession, additive_id: int) -> BatchAdditive:
    result = await db.execute(
        select(BatchAdditive).where(BatchAdditive.id == additive_id, BatchAdditive.deleted_at.is_(None))
    )
    additive = result.scalar_one_or_none()
    if additive is None:
        raise NotFoundError("Additive not found", details={"additive_id": additive_id})
    return additive


async def list_additives(
    db: AsyncSession,
    batch_id: int,
    until: Optional[datetime] = None,
) -> List[BatchAdditive]:
    """Active additives for a batch, newest first."""
    query = select(BatchAdditive).where(
        BatchAdditive.batch_id == batch_id, BatchAdditive.deleted_at.is_(None)
    )
    if until is not None:
        query = query.where(BatchAdditive.added_at <= until)
    result = await db.execute(query.order_by(desc(BatchAdditive.added_at), desc(BatchAdditive.id)))
    return list(result.scalars().all())


async def _find_duplicate(
    db: AsyncSession,
    vessel_id: int,
    name: str,
    amount: float,
    unit: str,
    added_at: datetime,
    exclude_id: Optional[int] = None,
) -> Optional[BatchAdditive]:
    start, end = _day_bounds(added_at)
    query = select(BatchAdditive).where(
        BatchAdditive.vessel_id == vessel_id,
        BatchAdditive.additive_name == name,
        BatchAdditive.amount == amount,
        BatchAdditive.unit == unit,
        BatchAdditive.added_at >= start,
        BatchAdditive.added_at < end,
        BatchAdditive.deleted_at.is_(None),
    )
    if exclude_id is not None:
        query = query.where(BatchAdditive.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


def _stock_quantity(item: AdditivePurchaseItem, amount: float, unit: str) -> float:
    """amount expressed in the stock item's unit. Cross-family units are refused."""
    try:
        return convert(amount, unit, item.unit)
    except UnitConversionError as e:
        raise BadRequestError(
            f"Cannot cost {amount} {unit} against stock measured in {item.unit}: {e}",
            details={"additive_purchase_item_id": item.id, "unit": unit, "stock_unit": item.unit},
        )


def _consume_stock(item: AdditivePurchaseItem, quantity: float) -> None:
    remaining = (item.quantity or 0.0) - (item.quantity_used or 0.0)
    if quantity > remaining + STOCK_EPSILON:
        raise BadRequestError(
            f"Insufficient stock: {remaining:.3f} {item.unit} available, {quantity:.3f} {item.unit} requested",
            details={"additive_purchase_item_id": item.id, "available": remaining, "requested": quantity},
        )
    item.quantity_used = (item.quantity_used or 0.0) + quantity


def _release_stock(item: AdditivePurchaseItem, quantity: float) -> None:
    item.quantity_used = max((item.quantity_used or 0.0) - quantity, 0.0)


def _costing(item: AdditivePurchaseItem, stock_quantity: float, amount: float):
    """(cost per additive unit, total cost) or (None, None) when the item has no cost."""
    if not item.total_cost or not item.quantity:
        return None, None
    total = item.total_cost / item.quantity * stock_quantity
    return round(total / amount, 4), round(total, 2)


async def _project_sugar(
    db: AsyncSession,
    batch: Batch,
    additive: BatchAdditive,
) -> Optional[int]:
    """Insert an estimated measurement after a sugar addition. Returns its id, or None when skipped."""
    readings = await list_measurements(db, batch.id, with_gravity_only=True, until=additive.added_at)
    if not readings:
        logger.warning(f"[Additives] No SG reading for batch {batch.id}, skipping sugar estimate")
        return None

    latest = readings[0]
    volume = latest.volume_liters or batch.current_volume
    if not volume or volume <= 0:
        logger.warning(f"[Additives] No volume for batch {batch.id}, skipping sugar estimate")
        return None

    if additive.unit == GRAMS_PER_LITER:
        sugar_grams = additive.amount * volume
    else:
        try:
            sugar_grams = to_grams(additive.amount, additive.unit)
        except UnitConversionError:
            logger.warning(
                f"[Additives] Sugar amount in {additive.unit} has no mass equivalent, skipping estimate"
            )
            return None

    projection = fermentation.project_sugar_addition(
        latest.specific_gravity, sugar_grams, volume, batch.original_gravity
    )
    measurement = await add_estimated_measurement(
        db,
        batch.id,
        measurement_date=additive.added_at,
        estimate_source=f"additive:{additive.id}",
        specific_gravity=projection.specific_gravity,
        abv=projection.abv,
        volume_liters=volume,
        notes=(
            f"Estimated after adding {additive.amount}{additive.unit} of {additive.additive_name}. "
            f"Assumes full fermentation."
        ),
    )
    return measurement.id


@log_operation("add_additive", batch_logger)
@transactional("add_additive")
async def add_additive(
    db: AsyncSession,
    batch_id: int,
    data: AdditiveCreate,
) -> AdditiveResult:
    batch = await get_batch(db, batch_id, lock=True)
    if batch.vessel_id is None:
        raise BadRequestError("Batch is not assigned to a vessel", details={"batch_id": batch.id})

    added_at = as_naive_utc(data.added_at) or utcnow()
    duplicate = await _find_duplicate(
        db, batch.vessel_id, data.additive_name, data.amount, data.unit, added_at
    )
    if duplicate is not None:
        raise ConflictError(
            f"{data.additive_name} ({data.amount} {data.unit}) was already added to this vessel on "
            f"{added_at.date().isoformat()}",
            details={"additive_id": duplicate.id},
        )

    cost_per_unit = total_cost = None
    if data.additive_purchase_item_id is not None:
        item = await get_additive_item(db, data.additive_purchase_item_id, lock=True)
        stock_quantity = _stock_quantity(item, data.amount, data.unit)
        _consume_stock(item, stock_quantity)
        cost_per_unit, total_cost = _costing(item, stock_quantity, data.amount)

    additive = BatchAdditive(
        batch_id=batch.id,
        vessel_id=batch.vessel_id,
        additive_purchase_item_id=data.additive_purchase_item_id,
        additive_type=data.additive_type,
        additive_name=data.additive_name,
        amount=data.amount,
        unit=data.unit,
        cost_per_unit=cost_per_unit,
        total_cost=total_cost,
        added_at=added_at,
        added_by=data.added_by,
        notes=data.notes,
    )
    db.add(additive)
    await db.flush()

    messages = [f"{data.additive_name} added to {batch.display_name}"]

    if (
        is_yeast(data.additive_type)
        and batch.fermentation_stage == FermentationStage.not_started.value
        and product_ferments(batch.product_type)
    ):
        set_fermentation_stage(batch, FermentationStage.early, added_at)
        messages.append("fermentation started")

    estimated_id = None
    if is_sugar(data.additive_type):
        estimated_id = await _project_sugar(db, batch, additive)
        if estimated_id is not None:
            messages.append("estimated SG/ABV recorded")

    await db.flush()
    return AdditiveResult(
        message="; ".join(messages),
        additive_id=additive.id,
        batch_id=batch.id,
        cost_per_unit=cost_per_unit,
        total_cost=total_cost,
        fermentation_stage=batch.fermentation_stage,
        estimated_measurement_id=estimated_id,
    )


@log_operation("update_additive", batch_logger)
@transactional("update_additive")
async def update_additive(db: AsyncSession, additive_id: int, patch: AdditiveUpdate) -> AdditiveResult:
    additive = await get_additive(db, additive_id)
    fields = patch.model_dump(exclude_unset=True)
    tracked = ("additive_name", "amount", "unit", "added_at", "notes")
    before = {k: getattr(additive, k) for k in tracked}

    new_amount = fields.get("amount") or additive.amount
    new_unit = fields.get("unit") or additive.unit

    # split copies never drew stock
    if additive.additive_purchase_item_id is not None and additive.copied_from_id is None and (
        new_amount != additive.amount or new_unit != additive.unit
    ):
        item = await get_additive_item(db, additive.additive_purchase_item_id, lock=True)
        _release_stock(item, _stock_quantity(item, additive.amount, additive.unit))
        stock_quantity = _stock_quantity(item, new_amount, new_unit)
        _consume_stock(item, stock_quantity)
        additive.cost_per_unit, additive.total_cost = _costing(item, stock_quantity, new_amount)

    additive.amount = new_amount
    additive.unit = new_unit
    if fields.get("additive_name"):
        additive.additive_name = fields["additive_name"]
    if fields.get("added_at"):
        additive.added_at = as_naive_utc(fields["added_at"])
    if "notes" in fields:
        additive.notes = fields["notes"]

    if additive.vessel_id is not None:
        duplicate = await _find_duplicate(
            db, additive.vessel_id, additive.additive_name, additive.amount, additive.unit,
            additive.added_at, exclude_id=additive.id,
        )
        if duplicate is not None:
            raise ConflictError(
                "An identical additive entry already exists for this vessel and date",
                details={"additive_id": duplicate.id},
            )

    changes = diff_fields(before, {k: getattr(additive, k) for k in tracked})
    await db.flush()
    if changes:
        await log_audit(
            db,
            action=AuditActions.ADDITIVE_UPDATE,
            target_type=AuditTargetTypes.ADDITIVE,
            target_id=additive.id,
            description=f"Additive {additive.id} on batch {additive.batch_id} updated",
            meta={"batch_id": additive.batch_id, "changes": changes},
        )

    return AdditiveResult(
        message="Additive updated successfully" if changes else "No changes to apply",
        additive_id=additive.id,
        batch_id=additive.batch_id,
        cost_per_unit=additive.cost_per_unit,
        total_cost=additive.total_cost,
    )


@log_operation("delete_additive", batch_logger)
@transactional("delete_additive")
async def delete_additive(db: AsyncSession, additive_id: int) -> OperationResult:
    additive = await get_additive(db, additive_id)
    if additive.additive_purchase_item_id is not None and additive.copied_from_id is None:
        item = await get_additive_item(db, additive.additive_purchase_item_id, lock=True)
        _release_stock(item, _stock_quantity(item, additive.amount, additive.unit))

    additive.deleted_at = utcnow()
    await log_audit(
        db,
        action=AuditActions.ADDITIVE_DELETE,
        target_type=AuditTargetTypes.ADDITIVE,
        target_id=additive.id,
        description=f"Additive {additive.additive_name} removed from batch {additive.batch_id}",
        meta={"batch_id": additive.batch_id, "amount": additive.amount, "unit": additive.unit},
    )
    return OperationResult(message="Additive deleted successfully", entity_id=additive.id)


async def copy_additives(
    db: AsyncSession,
    source_batch_id: int,
    dest_batch_id: int,
    until: datetime,
) -> List[BatchAdditive]:
    """Copy additions dated at or before ``until`` onto a split child. Stock is not consumed again."""
    copies = []
    for a in reversed(await list_additives(db, source_batch_id, until=until)):
        copy = BatchAdditive(
            batch_id=dest_batch_id,
            vessel_id=a.vessel_id,
            additive_purchase_item_id=a.additive_purchase_item_id,
            additive_type=a.additive_type,
            additive_name=a.additive_name,
            amount=a.amount,
            unit=a.unit,
            cost_per_unit=a.cost_per_unit,
            total_cost=a.total_cost,
            added_at=a.added_at,
            added_by=a.added_by,
            copied_from_id=a.id,
            notes=a.notes,
        )
        db.add(copy)
        copies.append(copy)
    await db.flush()
    return copies
