"""
Composition Ledger

What raw materials make up a batch. Entries are appended on intake, merge
and split; fraction_of_batch is recomputed from juice_volume by
recalculate_fractions(), which callers invoke as the last step of any
multi-entry mutation.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import NotFoundError
from cellar.db.enums import CompositionSourceType
from cellar.db.models import Batch, BatchComposition
from cellar.schemas import CompositionEntryResponse, CompositionSummary

logger = logging.getLogger(__name__)


@dataclass
class CompositionSource:
    """Where a contribution came from. Exactly one reference is normally set."""
    source_type: CompositionSourceType
    base_fruit_item_id: Optional[int] = None
    juice_purchase_item_id: Optional[int] = None
    source_batch_id: Optional[int] = None
    press_run_id: Optional[int] = None
    vendor_name: Optional[str] = None
    variety_name: Optional[str] = None
    lot_code: Optional[str] = None


async def active_entries(db: AsyncSession, batch_id: int) -> List[BatchComposition]:
    result = await db.execute(
        select(BatchComposition)
        .where(BatchComposition.batch_id == batch_id, BatchComposition.deleted_at.is_(None))
        .order_by(BatchComposition.id)
    )
    return list(result.scalars().all())


async def record_contribution(
    db: AsyncSession,
    batch_id: int,
    source: CompositionSource,
    volume: float,
    cost: float = 0.0,
    brix: Optional[float] = None,
    weight_kg: float = 0.0,
    abv: Optional[float] = None,
    fraction: float = 0.0,
) -> BatchComposition:
    """Append one entry with a provisional fraction. Batch volume is untouched."""
    entry = BatchComposition(
        batch_id=batch_id,
        source_type=source.source_type.value,
        base_fruit_item_id=source.base_fruit_item_id,
        juice_purchase_item_id=source.juice_purchase_item_id,
        source_batch_id=source.source_batch_id,
        press_run_id=source.press_run_id,
        vendor_name=source.vendor_name,
        variety_name=source.variety_name,
        lot_code=source.lot_code,
        input_weight_kg=weight_kg or 0.0,
        juice_volume=volume,
        fraction_of_batch=fraction,
        material_cost=cost or 0.0,
        avg_brix=brix,
        abv=abv,
    )
    db.add(entry)
    await db.flush()
    return entry


async def recalculate_fractions(db: AsyncSession, batch_id: int) -> List[BatchComposition]:
    """
    fraction = juice_volume / total over active entries.

    When the total is zero the entries keep their previous fractions.
    """
    entries = await active_entries(db, batch_id)
    total = sum(e.juice_volume or 0.0 for e in entries)
    if total <= 0:
        if entries:
            logger.warning(
                f"[Composition] Batch {batch_id} has {len(entries)} entries with zero total volume, "
                f"fractions left unchanged"
            )
        return entries

    for entry in entries:
        entry.fraction_of_batch = round((entry.juice_volume or 0.0) / total, 6)
    await db.flush()
    return entries


async def copy_proportional(
    db: AsyncSession,
    source_batch_id: int,
    dest_batch_id: int,
    ratio: float,
    moved_volume: Optional[float] = None,
) -> List[BatchComposition]:
    """
    Copy the source's active entries into dest, scaling weight, volume and
    cost by ``ratio``. Lot codes, vendor references and stored ABV are kept
    as-is. A source without entries yields one batch_transfer entry of
    ``moved_volume`` liters.
    """
    entries = await active_entries(db, source_batch_id)
    copies = []

    if not entries:
        if moved_volume is None:
            return copies
        copy = await record_contribution(
            db,
            dest_batch_id,
            CompositionSource(
                source_type=CompositionSourceType.batch_transfer,
                source_batch_id=source_batch_id,
            ),
            volume=moved_volume,
        )
        logger.info(
            f"[Composition] Batch {source_batch_id} has no composition, "
            f"recorded {moved_volume:.3f}L transfer entry on batch {dest_batch_id}"
        )
        return [copy]

    for entry in entries:
        copy = BatchComposition(
            batch_id=dest_batch_id,
            source_type=entry.source_type,
            base_fruit_item_id=entry.base_fruit_item_id,
            juice_purchase_item_id=entry.juice_purchase_item_id,
            source_batch_id=source_batch_id,
            press_run_id=entry.press_run_id,
            vendor_name=entry.vendor_name,
            variety_name=entry.variety_name,
            lot_code=entry.lot_code,
            input_weight_kg=(entry.input_weight_kg or 0.0) * ratio,
            juice_volume=(entry.juice_volume or 0.0) * ratio,
            fraction_of_batch=entry.fraction_of_batch,
            material_cost=(entry.material_cost or 0.0) * ratio,
            avg_brix=entry.avg_brix,
            abv=entry.abv,
        )
        db.add(copy)
        copies.append(copy)

    await db.flush()
    return copies


async def scale_entries(db: AsyncSession, batch_id: int, ratio: float) -> List[BatchComposition]:
    """Shrink a batch's own entries after part of it left (split, transfer)."""
    entries = await active_entries(db, batch_id)
    for entry in entries:
        entry.input_weight_kg = (entry.input_weight_kg or 0.0) * ratio
        entry.juice_volume = (entry.juice_volume or 0.0) * ratio
        entry.material_cost = (entry.material_cost or 0.0) * ratio
    await db.flush()
    return entries


async def snapshot(db: AsyncSession, batch_id: int) -> List[dict]:
    """JSON-friendly copy of the active entries, stored on merge history rows."""
    return [
        {
            "source_type": e.source_type,
            "vendor_name": e.vendor_name,
            "variety_name": e.variety_name,
            "lot_code": e.lot_code,
            "juice_volume": e.juice_volume,
            "fraction_of_batch": e.fraction_of_batch,
        }
        for e in await active_entries(db, batch_id)
    ]


async def get_composition(db: AsyncSession, batch_id: int) -> CompositionSummary:
    batch = await db.get(Batch, batch_id)
    if batch is None or batch.deleted_at is not None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})

    entries = await active_entries(db, batch_id)
    total_volume = sum(e.juice_volume or 0.0 for e in entries)
    total_cost = sum(e.material_cost or 0.0 for e in entries)
    return CompositionSummary(
        batch_id=batch_id,
        entries=[CompositionEntryResponse.model_validate(e) for e in entries],
        total_volume=round(total_volume, 4),
        total_weight_kg=round(sum(e.input_weight_kg or 0.0 for e in entries), 3),
        total_cost=round(total_cost, 2),
        cost_per_liter=round(total_cost / total_volume, 4) if total_volume > 0 else None,
    )
