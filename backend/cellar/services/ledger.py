"""
Volume Ledger

Append-only rows for every volume-affecting event:
- BatchMergeHistory       volume merged into a batch (intake or batch-to-batch)
- BatchTransfer           volume leaving a batch for another vessel/batch
- BatchRackingOperation   vessel-to-vessel rack with sediment loss
- BatchFilterOperation    filtration loss
- PackagingRun            bottling / kegging / distillation outflow

Each append checks that no volume is created from nothing. The state
machine validates caller input first, so a failure here is a bug and is
raised as LedgerValidationError.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import LedgerValidationError
from cellar.core.logging import ledger_logger
from cellar.db.enums import MergeSourceType, FilterType, PackagingKind, RackOutcome
from cellar.db.models import (
    BatchMergeHistory, BatchTransfer, BatchRackingOperation, BatchFilterOperation, PackagingRun,
)

# Float noise allowed when comparing liters
EPSILON = 1e-6


def _check_non_negative(label: str, value: float, **context) -> None:
    if value < -EPSILON:
        raise LedgerValidationError(
            f"{label} would be negative ({value:.4f})",
            details=context,
        )


def compute_loss(volume_before: float, volume_after: float, label: str = "loss", **context) -> float:
    """loss = before - after, rejected when negative."""
    loss = volume_before - volume_after
    _check_non_negative(label, loss, volume_before=volume_before, volume_after=volume_after, **context)
    return max(round(loss, 4), 0.0)


async def record_merge(
    db: AsyncSession,
    target_batch_id: int,
    source_type: MergeSourceType,
    volume_added: float,
    target_volume_before: float,
    merged_at: datetime,
    source_batch_id: Optional[int] = None,
    source_press_run_id: Optional[int] = None,
    source_juice_purchase_item_id: Optional[int] = None,
    composition_snapshot: Optional[list] = None,
    notes: Optional[str] = None,
) -> BatchMergeHistory:
    _check_non_negative("volume_added", volume_added, target_batch_id=target_batch_id)
    _check_non_negative("target_volume_before", target_volume_before, target_batch_id=target_batch_id)

    row = BatchMergeHistory(
        target_batch_id=target_batch_id,
        source_type=source_type.value,
        source_batch_id=source_batch_id,
        source_press_run_id=source_press_run_id,
        source_juice_purchase_item_id=source_juice_purchase_item_id,
        volume_added=volume_added,
        target_volume_before=target_volume_before,
        target_volume_after=target_volume_before + volume_added,
        composition_snapshot=composition_snapshot,
        notes=notes,
        merged_at=merged_at,
    )
    db.add(row)
    await db.flush()
    ledger_logger.info(
        "merge_recorded",
        target_batch_id=target_batch_id,
        source_type=source_type.value,
        volume_added=volume_added,
    )
    return row


async def record_transfer(
    db: AsyncSession,
    source_batch_id: int,
    volume_before: float,
    volume_transferred: float,
    transferred_at: datetime,
    loss: float = 0.0,
    source_vessel_id: Optional[int] = None,
    destination_batch_id: Optional[int] = None,
    destination_vessel_id: Optional[int] = None,
    is_merge: bool = False,
    remaining_batch_id: Optional[int] = None,
    remaining_volume: Optional[float] = None,
    racking_operation_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> BatchTransfer:
    """
    is_merge must be True when the destination vessel already held a batch;
    lineage and reconciliation read merges differently from moves.
    """
    _check_non_negative("loss", loss, source_batch_id=source_batch_id)
    _check_non_negative("volume_transferred", volume_transferred, source_batch_id=source_batch_id)
    processed = volume_transferred + loss
    leftover = volume_before - processed - (remaining_volume or 0.0)
    _check_non_negative(
        "volume left after transfer", leftover,
        source_batch_id=source_batch_id,
        volume_before=volume_before,
        volume_transferred=volume_transferred,
        loss=loss,
    )

    row = BatchTransfer(
        source_batch_id=source_batch_id,
        source_vessel_id=source_vessel_id,
        destination_batch_id=destination_batch_id,
        destination_vessel_id=destination_vessel_id,
        remaining_batch_id=remaining_batch_id,
        remaining_volume=remaining_volume,
        volume_transferred=volume_transferred,
        loss=loss,
        total_volume_processed=processed,
        is_merge=is_merge,
        racking_operation_id=racking_operation_id,
        notes=notes,
        transferred_at=transferred_at,
    )
    db.add(row)
    await db.flush()
    ledger_logger.info(
        "transfer_recorded",
        source_batch_id=source_batch_id,
        destination_batch_id=destination_batch_id,
        volume=volume_transferred,
        loss=loss,
        is_merge=is_merge,
    )
    return row


async def record_racking(
    db: AsyncSession,
    batch_id: int,
    volume_before: float,
    volume_after: float,
    racked_at: datetime,
    source_vessel_id: Optional[int] = None,
    destination_vessel_id: Optional[int] = None,
    outcome: Optional[RackOutcome] = None,
    notes: Optional[str] = None,
) -> BatchRackingOperation:
    loss = compute_loss(volume_before, volume_after, batch_id=batch_id)
    row = BatchRackingOperation(
        batch_id=batch_id,
        source_vessel_id=source_vessel_id,
        destination_vessel_id=destination_vessel_id,
        volume_before=volume_before,
        volume_after=volume_after,
        volume_loss=loss,
        outcome=outcome.value if outcome else None,
        racked_at=racked_at,
        notes=notes,
    )
    db.add(row)
    await db.flush()
    ledger_logger.info("racking_recorded", batch_id=batch_id, loss=loss, outcome=row.outcome)
    return row


async def record_filter(
    db: AsyncSession,
    batch_id: int,
    filter_type: FilterType,
    volume_before: float,
    volume_after: float,
    filtered_at: datetime,
    vessel_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> BatchFilterOperation:
    loss = compute_loss(volume_before, volume_after, batch_id=batch_id)
    row = BatchFilterOperation(
        batch_id=batch_id,
        vessel_id=vessel_id,
        filter_type=filter_type.value,
        volume_before=volume_before,
        volume_after=volume_after,
        volume_loss=round(loss, 3),
        filtered_at=filtered_at,
        notes=notes,
    )
    db.add(row)
    await db.flush()
    ledger_logger.info("filter_recorded", batch_id=batch_id, loss=row.volume_loss, filter_type=row.filter_type)
    return row


async def record_packaging(
    db: AsyncSession,
    batch_id: int,
    kind: PackagingKind,
    volume_before: float,
    volume_taken: float,
    packaged_at: datetime,
    loss: float = 0.0,
    vessel_id: Optional[int] = None,
    units_produced: Optional[int] = None,
    notes: Optional[str] = None,
) -> PackagingRun:
    _check_non_negative("loss", loss, batch_id=batch_id)
    compute_loss(volume_before, volume_taken + loss, label="volume left after packaging", batch_id=batch_id)
    row = PackagingRun(
        batch_id=batch_id,
        vessel_id=vessel_id,
        kind=kind.value,
        volume_before=volume_before,
        volume_taken=volume_taken,
        loss=loss,
        units_produced=units_produced,
        packaged_at=packaged_at,
        notes=notes,
    )
    db.add(row)
    await db.flush()
    ledger_logger.info("packaging_recorded", batch_id=batch_id, kind=kind.value, volume=volume_taken, loss=loss)
    return row
