"""
Racking and Filtering

rack_batch() picks one of five outcomes from three facts about the request:
is the destination the batch's own vessel, does enough liquid stay behind
to be worth keeping (a split), and is the destination already occupied.
Each outcome has its own handler; the racking operation row is written
for every one of them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError, ConflictError, NotFoundError
from cellar.core.logging import batch_logger, ledger_logger, log_operation
from cellar.db.crud import get_batch, get_vessel, get_batch_in_vessel
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import RackOutcome, VesselStatus
from cellar.db.models import Batch, Vessel, BatchRackingOperation, BatchFilterOperation, BatchTransfer
from cellar.db.transaction import transactional
from cellar.schemas import (
    RackRequest, RackResult, RackingUpdate, FilterRequest, FilterResult, FilterUpdate,
    LedgerCorrectionResult,
)
from cellar.services import composition, ledger
from cellar.services.additives import copy_additives
from cellar.services.audit import log_audit, diff_fields, AuditActions, AuditTargetTypes
from cellar.services.batches import (
    EPSILON, liters, derived_batch, archive_batch, merge_batch_into, aged_status,
)
from cellar.services.measurements import copy_measurements
from cellar.services.org_settings import OrganizationSettings, DEFAULT_ORGANIZATION_SETTINGS

logger = logging.getLogger(__name__)


# (is_rack_to_self, is_partial, has_batch_in_destination) -> outcome
# A partial rack back into the same vessel is not a valid request.
RACK_DECISIONS: Dict[Tuple[bool, bool, bool], RackOutcome] = {
    (True, False, False): RackOutcome.rack_to_self,
    (True, False, True): RackOutcome.rack_to_self,
    (False, True, False): RackOutcome.split,
    (False, True, True): RackOutcome.partial_merge,
    (False, False, True): RackOutcome.full_merge,
    (False, False, False): RackOutcome.move,
}


def decide_rack_outcome(is_rack_to_self: bool, is_partial: bool, has_batch_in_destination: bool) -> RackOutcome:
    outcome = RACK_DECISIONS.get((is_rack_to_self, is_partial, has_batch_in_destination))
    if outcome is None:
        raise BadRequestError(
            "Cannot partially rack a batch into its own vessel",
            details={"is_partial": is_partial},
        )
    return outcome


@dataclass
class RackContext:
    db: AsyncSession
    batch: Batch
    source_vessel: Vessel
    dest_vessel: Vessel
    dest_batch: Optional[Batch]
    volume_before: float
    volume: float
    loss: float
    remaining: float
    racked_at: datetime
    operation: BatchRackingOperation
    notes: Optional[str] = None


@dataclass
class RackEffect:
    message: str
    destination_batch_id: Optional[int] = None
    child_batch_id: Optional[int] = None
    merge_history_id: Optional[int] = None
    transfer_id: Optional[int] = None
    source_survives: bool = True


async def _rack_to_self(ctx: RackContext) -> RackEffect:
    ctx.batch.current_volume = ctx.volume_before - ctx.loss
    return RackEffect(
        message=(
            f"Racked {ctx.batch.display_name} in place in {ctx.source_vessel.name}; "
            f"{ctx.loss:.1f}L of sediment removed, {ctx.batch.current_volume:.1f}L remaining"
        ),
        destination_batch_id=ctx.batch.id,
    )


async def _split(ctx: RackContext) -> RackEffect:
    db, batch = ctx.db, ctx.batch
    stamp = ctx.racked_at.date()
    child = derived_batch(
        batch,
        name=f"{batch.name} - Racked {stamp.isoformat()}",
        batch_number=f"{batch.batch_number or batch.name}-R{stamp.strftime('%Y%m%d')}",
        vessel_id=ctx.dest_vessel.id,
        volume=ctx.volume,
        at=ctx.racked_at,
    )
    child.status = aged_status(child.status)
    db.add(child)
    await db.flush()

    await composition.copy_proportional(
        db, batch.id, child.id, ctx.volume / ctx.volume_before, moved_volume=ctx.volume
    )
    await composition.scale_entries(db, batch.id, ctx.remaining / ctx.volume_before)
    await composition.recalculate_fractions(db, child.id)
    await composition.recalculate_fractions(db, batch.id)

    measurements = await copy_measurements(db, batch.id, child.id, until=ctx.racked_at)
    additives = await copy_additives(db, batch.id, child.id, until=ctx.racked_at)

    # Loss is carried by the racking operation, not the transfer
    transfer = await ledger.record_transfer(
        db,
        source_batch_id=batch.id,
        source_vessel_id=ctx.source_vessel.id,
        destination_batch_id=child.id,
        destination_vessel_id=ctx.dest_vessel.id,
        volume_before=ctx.volume_before,
        volume_transferred=ctx.volume,
        transferred_at=ctx.racked_at,
        racking_operation_id=ctx.operation.id,
        notes=ctx.notes,
    )
    batch.current_volume = ctx.remaining

    batch_logger.info(
        "batch_split",
        batch_id=batch.id,
        child_batch_id=child.id,
        measurements_copied=len(measurements),
        additives_copied=len(additives),
    )
    return RackEffect(
        message=(
            f"Partial rack created {child.name} with {ctx.volume:.1f}L in {ctx.dest_vessel.name}. "
            f"{ctx.remaining:.1f}L remaining in {ctx.source_vessel.name}"
        ),
        destination_batch_id=child.id,
        child_batch_id=child.id,
        transfer_id=transfer.id,
    )


async def _merge(ctx: RackContext, full: bool) -> RackEffect:
    db, batch, target = ctx.db, ctx.batch, ctx.dest_batch
    merge, _ = await merge_batch_into(db, batch, target, ctx.volume, ctx.racked_at, notes=ctx.notes)
    transfer = await ledger.record_transfer(
        db,
        source_batch_id=batch.id,
        source_vessel_id=ctx.source_vessel.id,
        destination_batch_id=target.id,
        destination_vessel_id=ctx.dest_vessel.id,
        volume_before=ctx.volume_before,
        volume_transferred=ctx.volume,
        transferred_at=ctx.racked_at,
        is_merge=True,
        racking_operation_id=ctx.operation.id,
        notes=ctx.notes,
    )

    if full:
        archive_batch(batch, f"Merged into {target.display_name} in {ctx.dest_vessel.name}", ctx.racked_at)
        message = (
            f"Full rack merged {batch.display_name} into {target.display_name}. "
            f"Total volume: {target.current_volume:.1f}L; source batch archived"
        )
    else:
        if ctx.volume_before > 0:
            await composition.scale_entries(db, batch.id, ctx.remaining / ctx.volume_before)
            await composition.recalculate_fractions(db, batch.id)
        batch.current_volume = ctx.remaining
        message = (
            f"Partial rack merged {ctx.volume:.1f}L into {target.display_name}. "
            f"{ctx.remaining:.1f}L remaining in {ctx.source_vessel.name}"
        )

    return RackEffect(
        message=message,
        destination_batch_id=target.id,
        merge_history_id=merge.id,
        transfer_id=transfer.id,
        source_survives=not full,
    )


async def _partial_merge(ctx: RackContext) -> RackEffect:
    return await _merge(ctx, full=False)


async def _full_merge(ctx: RackContext) -> RackEffect:
    return await _merge(ctx, full=True)


async def _move(ctx: RackContext) -> RackEffect:
    # The destination was empty when the request was decided; check again right before the move
    occupant = await get_batch_in_vessel(ctx.db, ctx.dest_vessel.id, lock=True, exclude_batch_id=ctx.batch.id)
    if occupant is not None:
        raise ConflictError(
            f"Vessel {ctx.dest_vessel.name} was filled with {occupant.display_name} during the rack",
            details={"vessel_id": ctx.dest_vessel.id, "batch_id": occupant.id},
        )
    ctx.batch.vessel_id = ctx.dest_vessel.id
    ctx.batch.current_volume = ctx.volume
    return RackEffect(
        message=(
            f"Racked {ctx.batch.display_name} from {ctx.source_vessel.name} to {ctx.dest_vessel.name}; "
            f"{ctx.volume:.1f}L moved, {ctx.loss:.1f}L lost"
        ),
        destination_batch_id=ctx.batch.id,
    )


RACK_HANDLERS: Dict[RackOutcome, Callable[[RackContext], Awaitable[RackEffect]]] = {
    RackOutcome.rack_to_self: _rack_to_self,
    RackOutcome.split: _split,
    RackOutcome.partial_merge: _partial_merge,
    RackOutcome.full_merge: _full_merge,
    RackOutcome.move: _move,
}


@log_operation("rack_batch", batch_logger)
@transactional("rack_batch")
async def rack_batch(
    db: AsyncSession,
    batch_id: int,
    req: RackRequest,
    org: OrganizationSettings = DEFAULT_ORGANIZATION_SETTINGS,
) -> RackResult:
    batch = await get_batch(db, batch_id, lock=True)
    if batch.vessel_id is None:
        raise BadRequestError("Batch is not assigned to a vessel", details={"batch_id": batch.id})

    source_vessel = await get_vessel(db, batch.vessel_id, lock=True)
    dest_vessel = await get_vessel(db, req.destination_vessel_id, lock=True)
    is_rack_to_self = dest_vessel.id == source_vessel.id
    dest_batch = None
    if not is_rack_to_self:
        dest_batch = await get_batch_in_vessel(db, dest_vessel.id, lock=True, exclude_batch_id=batch.id)

    volume = liters(req.volume_to_rack, req.volume_unit)
    explicit_loss = liters(req.loss, req.volume_unit)
    volume_before = batch.current_volume
    if volume + explicit_loss > volume_before + EPSILON:
        raise BadRequestError(
            f"Rack volume plus loss ({volume + explicit_loss:.2f}L) exceeds current batch volume "
            f"({volume_before:.2f}L)",
            details={"batch_id": batch.id, "current_volume": volume_before},
        )

    remaining = max(volume_before - volume - explicit_loss, 0.0)
    is_partial = remaining >= org.partial_rack_min_remaining_l
    loss = explicit_loss if is_partial else explicit_loss + remaining
    if not is_partial:
        remaining = 0.0

    outcome = decide_rack_outcome(is_rack_to_self, is_partial, dest_batch is not None)
    racked_at = as_naive_utc(req.racked_at) or utcnow()

    operation = await ledger.record_racking(
        db,
        batch_id=batch.id,
        source_vessel_id=source_vessel.id,
        destination_vessel_id=dest_vessel.id,
        volume_before=volume_before,
        volume_after=volume_before - loss,
        racked_at=racked_at,
        outcome=outcome,
        notes=req.notes,
    )

    ctx = RackContext(
        db=db,
        batch=batch,
        source_vessel=source_vessel,
        dest_vessel=dest_vessel,
        dest_batch=dest_batch,
        volume_before=volume_before,
        volume=volume,
        loss=loss,
        remaining=remaining,
        racked_at=racked_at,
        operation=operation,
        notes=req.notes,
    )
    effect = await RACK_HANDLERS[outcome](ctx)

    if effect.source_survives:
        batch.status = aged_status(batch.status)
    if not is_rack_to_self:
        if not is_partial:
            source_vessel.status = VesselStatus.cleaning.value
        if dest_batch is None:
            dest_vessel.status = VesselStatus.available.value
    await db.flush()

    await log_audit(
        db,
        action=AuditActions.BATCH_RACK,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=effect.message,
        meta={
            "outcome": outcome.value,
            "racking_operation_id": operation.id,
            "source_vessel_id": source_vessel.id,
            "destination_vessel_id": dest_vessel.id,
            "volume": volume,
            "loss": loss,
            "remaining": remaining,
        },
    )
    ledger_logger.info("rack_completed", batch_id=batch.id, outcome=outcome.value)

    return RackResult(
        message=effect.message,
        outcome=outcome,
        batch_id=batch.id,
        racking_operation_id=operation.id,
        destination_batch_id=effect.destination_batch_id,
        child_batch_id=effect.child_batch_id,
        merge_history_id=effect.merge_history_id,
        transfer_id=effect.transfer_id,
        volume_racked=volume,
        loss=loss,
        remaining_volume=batch.current_volume if effect.source_survives else 0.0,
    )


@log_operation("filter_batch", batch_logger)
@transactional("filter_batch")
async def filter_batch(db: AsyncSession, batch_id: int, req: FilterRequest) -> FilterResult:
    batch = await get_batch(db, batch_id, lock=True)
    if batch.vessel_id != req.vessel_id:
        raise BadRequestError(
            "Batch is not in the specified vessel",
            details={"batch_id": batch.id, "vessel_id": req.vessel_id},
        )
    vessel = await get_vessel(db, req.vessel_id, lock=True)
    if vessel.status != VesselStatus.available.value:
        raise BadRequestError(
            f"Vessel {vessel.name} is {vessel.status}; filtering requires an available vessel",
            details={"vessel_id": vessel.id, "status": vessel.status},
        )

    volume_before = liters(req.volume_before, req.volume_unit)
    volume_after = liters(req.volume_after, req.volume_unit)
    if volume_before > batch.current_volume + EPSILON:
        raise BadRequestError(
            f"Volume before filtering ({volume_before:.2f}L) exceeds current batch volume "
            f"({batch.current_volume:.2f}L)",
            details={"batch_id": batch.id},
        )

    filtered_at = as_naive_utc(req.filtered_at) or utcnow()
    operation = await ledger.record_filter(
        db,
        batch_id=batch.id,
        vessel_id=vessel.id,
        filter_type=req.filter_type,
        volume_before=volume_before,
        volume_after=volume_after,
        filtered_at=filtered_at,
        notes=req.notes,
    )
    batch.current_volume = volume_after

    message = (
        f"{req.filter_type.value.capitalize()} filtration of {batch.display_name}: "
        f"{operation.volume_loss:.1f}L lost, {volume_after:.1f}L remaining"
    )
    await log_audit(
        db,
        action=AuditActions.BATCH_FILTER,
        target_type=AuditTargetTypes.BATCH,
        target_id=batch.id,
        description=message,
        meta={"filter_operation_id": operation.id, "loss": operation.volume_loss},
    )
    return FilterResult(
        message=message,
        batch_id=batch.id,
        filter_operation_id=operation.id,
        volume_loss=operation.volume_loss,
        current_volume=batch.current_volume,
    )


async def _get_racking(db: AsyncSession, operation_id: int) -> BatchRackingOperation:
    operation = await db.get(BatchRackingOperation, operation_id, with_for_update=True)
    if operation is None or operation.deleted_at is not None:
        raise NotFoundError("Racking operation not found", details={"racking_operation_id": operation_id})
    return operation


async def _get_filter(db: AsyncSession, operation_id: int) -> BatchFilterOperation:
    operation = await db.get(BatchFilterOperation, operation_id, with_for_update=True)
    if operation is None or operation.deleted_at is not None:
        raise NotFoundError("Filter operation not found", details={"filter_operation_id": operation_id})
    return operation


def _apply_loss_delta(batch: Batch, delta: float) -> None:
    new_volume = batch.current_volume - delta
    if new_volume < -EPSILON:
        raise BadRequestError(
            f"Correction would leave {batch.display_name} with negative volume ({new_volume:.2f}L)",
            details={"batch_id": batch.id, "current_volume": batch.current_volume, "delta": delta},
        )
    batch.current_volume = max(new_volume, 0.0)


@log_operation("update_racking", batch_logger)
@transactional("update_racking")
async def update_racking(db: AsyncSession, operation_id: int, patch: RackingUpdate) -> LedgerCorrectionResult:
    """
    Correct a recorded rack. A changed loss moves the batch's current volume
    by the difference; batches already merged away cannot be corrected.
    """
    operation = await _get_racking(db, operation_id)
    batch = await get_batch(db, operation.batch_id, lock=True)
    if batch.is_archived:
        raise BadRequestError(
            f"Batch {batch.display_name} was merged away and its racks can no longer be corrected",
            details={"batch_id": batch.id},
        )

    fields = patch.model_dump(exclude_unset=True)
    tracked = ("racked_at", "volume_loss", "volume_after", "notes")
    before = {k: getattr(operation, k) for k in tracked}

    delta = 0.0
    if fields.get("volume_loss") is not None:
        new_loss = fields["volume_loss"]
        if new_loss > operation.volume_before + EPSILON:
            raise BadRequestError(
                "Loss cannot exceed the volume before racking",
                details={"volume_before": operation.volume_before},
            )
        delta = new_loss - operation.volume_loss
        _apply_loss_delta(batch, delta)
        operation.volume_loss = new_loss
        operation.volume_after = operation.volume_before - new_loss

    if fields.get("racked_at") is not None:
        operation.racked_at = as_naive_utc(fields["racked_at"])
        transfers = await db.execute(
            select(BatchTransfer).where(BatchTransfer.racking_operation_id == operation.id)
        )
        for transfer in transfers.scalars().all():
            transfer.transferred_at = operation.racked_at
    if "notes" in fields:
        operation.notes = fields["notes"]

    changes = diff_fields(before, {k: getattr(operation, k) for k in tracked})
    await db.flush()
    if changes:
        await log_audit(
            db,
            action=AuditActions.RACKING_UPDATE,
            target_type=AuditTargetTypes.RACKING,
            target_id=operation.id,
            description=f"Racking operation {operation.id} on batch {batch.display_name} corrected",
            meta={"batch_id": batch.id, "changes": changes, "volume_delta": -delta},
        )

    return LedgerCorrectionResult(
        message=(
            f"Racking operation updated; batch volume adjusted by {-delta:+.2f}L"
            if delta else ("Racking operation updated" if changes else "No changes to apply")
        ),
        batch_id=batch.id,
        operation_id=operation.id,
        volume_delta=-delta,
        current_volume=batch.current_volume,
    )


@log_operation("update_filter", batch_logger)
@transactional("update_filter")
async def update_filter(db: AsyncSession, operation_id: int, patch: FilterUpdate) -> LedgerCorrectionResult:
    operation = await _get_filter(db, operation_id)
    batch = await get_batch(db, operation.batch_id, lock=True)
    if batch.is_archived:
        raise BadRequestError(
            f"Batch {batch.display_name} is archived and its filtrations can no longer be corrected",
            details={"batch_id": batch.id},
        )

    fields = patch.model_dump(exclude_unset=True)
    tracked = ("filtered_at", "volume_after", "volume_loss", "filter_type", "notes")
    before = {k: getattr(operation, k) for k in tracked}

    delta = 0.0
    if fields.get("volume_after") is not None:
        new_after = fields["volume_after"]
        if new_after >= operation.volume_before:
            raise BadRequestError(
                "volume_after must be less than volume_before",
                details={"volume_before": operation.volume_before},
            )
        new_loss = ledger.compute_loss(operation.volume_before, new_after, filter_operation_id=operation.id)
        delta = new_loss - operation.volume_loss
        _apply_loss_delta(batch, delta)
        operation.volume_after = new_after
        operation.volume_loss = round(new_loss, 3)

    if fields.get("filtered_at") is not None:
        operation.filtered_at = as_naive_utc(fields["filtered_at"])
    if fields.get("filter_type") is not None:
        operation.filter_type = fields["filter_type"].value
    if "notes" in fields:
        operation.notes = fields["notes"]

    changes = diff_fields(before, {k: getattr(operation, k) for k in tracked})
    await db.flush()
    if changes:
        await log_audit(
            db,
            action=AuditActions.FILTER_UPDATE,
            target_type=AuditTargetTypes.FILTER,
            target_id=operation.id,
            description=f"Filter operation {operation.id} on batch {batch.display_name} corrected",
            meta={"batch_id": batch.id, "changes": changes, "volume_delta": -delta},
        )

    return LedgerCorrectionResult(
        message="Filter operation updated" if changes else "No changes to apply",
        batch_id=batch.id,
        operation_id=operation.id,
        volume_delta=-delta,
        current_volume=batch.current_volume,
    )
