"""
Volume Reconciliation

Replays a batch's ledgers and compares the result with the stored
current_volume:

    accounted   = initial + inflow - outflow - loss
    discrepancy = current - accounted

Read-only. A discrepancy above RECONCILIATION_TOLERANCE_L means the
aggregate and the ledgers disagree and is reported, never corrected here.
"""
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.config import settings
from cellar.core.exceptions import NotFoundError
from cellar.core.logging import report_logger, log_operation
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import MergeSourceType
from cellar.db.models import (
    Batch, BatchMergeHistory, BatchTransfer, BatchRackingOperation, BatchFilterOperation, PackagingRun,
)
from cellar.schemas import VolumeEvent, VolumeTrace, BatchTraceNode, BatchFamilyTotals, BatchTraceReport
from cellar.services.lineage import find_children, find_parent_transfer


def _active(model):
    return model.deleted_at.is_(None)


async def _load_batch(db: AsyncSession, batch_id: int) -> Batch:
    batch = await db.get(Batch, batch_id)
    if batch is None or batch.deleted_at is not None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})
    return batch


async def _collect_events(db: AsyncSession, batch: Batch) -> List[dict]:
    events = []

    merges = await db.execute(
        select(BatchMergeHistory).where(BatchMergeHistory.target_batch_id == batch.id, _active(BatchMergeHistory))
    )
    for m in merges.scalars().all():
        events.append(dict(
            timestamp=m.merged_at,
            event_type="merge_in",
            description=f"Received {m.volume_added:.2f}L ({m.source_type})",
            reference_id=m.id,
            inflow=m.volume_added,
        ))

    transfers = await db.execute(
        select(BatchTransfer).where(BatchTransfer.source_batch_id == batch.id, _active(BatchTransfer))
    )
    for t in transfers.scalars().all():
        moved_out = t.destination_batch_id != batch.id
        outflow = (t.volume_transferred if moved_out else 0.0) + (t.remaining_volume or 0.0)
        # Rack-linked transfers leave the loss on the racking operation
        loss = t.loss if t.racking_operation_id is None else 0.0
        if t.is_merge:
            event_type, description = "merge_out", f"Merged {t.volume_transferred:.2f}L into batch {t.destination_batch_id}"
        elif moved_out:
            event_type, description = "split_out", f"Split {t.volume_transferred:.2f}L into batch {t.destination_batch_id}"
        else:
            event_type, description = "vessel_move", f"Moved {t.volume_transferred:.2f}L to vessel {t.destination_vessel_id}"
        if t.remaining_batch_id is not None:
            description += f"; {t.remaining_volume:.2f}L left behind as batch {t.remaining_batch_id}"
        events.append(dict(
            timestamp=t.transferred_at,
            event_type=event_type,
            description=description,
            reference_id=t.id,
            outflow=outflow,
            loss=loss,
        ))

    rackings = await db.execute(
        select(BatchRackingOperation).where(BatchRackingOperation.batch_id == batch.id, _active(BatchRackingOperation))
    )
    for r in rackings.scalars().all():
        events.append(dict(
            timestamp=r.racked_at,
            event_type="racking",
            description=f"Racked ({r.outcome or 'unspecified'}), {r.volume_loss:.2f}L lost",
            reference_id=r.id,
            loss=r.volume_loss,
        ))

    filters = await db.execute(
        select(BatchFilterOperation).where(BatchFilterOperation.batch_id == batch.id, _active(BatchFilterOperation))
    )
    for f in filters.scalars().all():
        events.append(dict(
            timestamp=f.filtered_at,
            event_type="filter",
            description=f"{f.filter_type.capitalize()} filtration, {f.volume_loss:.2f}L lost",
            reference_id=f.id,
            loss=f.volume_loss,
        ))

    runs = await db.execute(
        select(PackagingRun).where(PackagingRun.batch_id == batch.id, _active(PackagingRun))
    )
    for p in runs.scalars().all():
        events.append(dict(
            timestamp=p.packaged_at,
            event_type=p.kind,
            description=f"{p.kind.capitalize()} took {p.volume_taken:.2f}L",
            reference_id=p.id,
            outflow=p.volume_taken,
            loss=p.loss or 0.0,
        ))

    events.sort(key=lambda e: (e["timestamp"], e["event_type"], e["reference_id"]))
    return events


async def build_volume_trace(db: AsyncSession, batch: Batch) -> VolumeTrace:
    balance = batch.initial_volume
    events = [VolumeEvent(
        timestamp=batch.start_date,
        event_type="created",
        description=f"Batch {batch.display_name} started with {batch.initial_volume:.2f}L",
        reference_id=batch.id,
        running_balance=round(balance, 4),
    )]
    inflow = outflow = loss = 0.0
    for raw in await _collect_events(db, batch):
        raw.setdefault("inflow", 0.0)
        raw.setdefault("outflow", 0.0)
        raw.setdefault("loss", 0.0)
        inflow += raw["inflow"]
        outflow += raw["outflow"]
        loss += raw["loss"]
        balance += raw["inflow"] - raw["outflow"] - raw["loss"]
        events.append(VolumeEvent(running_balance=round(balance, 4), **raw))

    accounted = batch.initial_volume + inflow - outflow - loss
    discrepancy = round(batch.current_volume - accounted, 4)
    has_discrepancy = abs(discrepancy) > settings.RECONCILIATION_TOLERANCE_L
    if has_discrepancy:
        report_logger.warning(
            "volume_discrepancy",
            batch_id=batch.id,
            current_volume=batch.current_volume,
            accounted_volume=round(accounted, 4),
            discrepancy=discrepancy,
        )

    return VolumeTrace(
        batch_id=batch.id,
        batch_name=batch.display_name,
        initial_volume=batch.initial_volume,
        current_volume=batch.current_volume,
        total_inflow=round(inflow, 4),
        total_outflow=round(outflow, 4),
        total_loss=round(loss, 4),
        accounted_volume=round(accounted, 4),
        discrepancy=discrepancy,
        has_discrepancy=has_discrepancy,
        events=events,
    )


@log_operation("get_volume_trace", report_logger)
async def get_volume_trace(db: AsyncSession, batch_id: int) -> VolumeTrace:
    return await build_volume_trace(db, await _load_batch(db, batch_id))


async def _build_node(
    db: AsyncSession,
    batch: Batch,
    parent_batch_id: Optional[int],
    split_at: Optional[datetime],
    seen: Set[int],
) -> BatchTraceNode:
    seen.add(batch.id)
    node = BatchTraceNode(
        batch_id=batch.id,
        batch_name=batch.display_name,
        parent_batch_id=parent_batch_id,
        split_at=split_at,
        trace=await build_volume_trace(db, batch),
    )
    for child_id, child_split_at, _ in await find_children(db, batch.id):
        if child_id in seen:
            continue
        child = await db.get(Batch, child_id)
        if child is None or child.deleted_at is not None:
            continue
        node.children.append(await _build_node(db, child, batch.id, child_split_at, seen))
    return node


def _walk(node: BatchTraceNode):
    yield node
    for child in node.children:
        yield from _walk(child)


async def _packaged_volume(db: AsyncSession, batch_ids: List[int]) -> float:
    if not batch_ids:
        return 0.0
    result = await db.execute(
        select(PackagingRun.volume_taken).where(PackagingRun.batch_id.in_(batch_ids), _active(PackagingRun))
    )
    return sum(v or 0.0 for v in result.scalars().all())


async def _external_inflow(db: AsyncSession, batch_ids: List[int]) -> float:
    if not batch_ids:
        return 0.0
    result = await db.execute(
        select(BatchMergeHistory.volume_added).where(
            BatchMergeHistory.target_batch_id.in_(batch_ids),
            BatchMergeHistory.source_type != MergeSourceType.batch_transfer.value,
            _active(BatchMergeHistory),
        )
    )
    return sum(v or 0.0 for v in result.scalars().all())


@log_operation("get_batch_trace_report", report_logger)
async def get_batch_trace_report(db: AsyncSession, start_date: datetime, end_date: datetime) -> BatchTraceReport:
    """
    Base batches (not carved out of another batch) started in the window,
    each with its descendant tree and per-family totals.
    """
    start, end = as_naive_utc(start_date), as_naive_utc(end_date)
    result = await db.execute(
        select(Batch)
        .where(Batch.deleted_at.is_(None), Batch.start_date >= start, Batch.start_date <= end)
        .order_by(Batch.start_date, Batch.id)
    )

    families: List[BatchTraceNode] = []
    seen: Set[int] = set()
    totals = BatchFamilyTotals()
    flagged: List[int] = []

    for batch in result.scalars().all():
        if batch.id in seen or await find_parent_transfer(db, batch.id) is not None:
            continue
        root = await _build_node(db, batch, None, None, seen)
        families.append(root)

        nodes = list(_walk(root))
        ids = [n.batch_id for n in nodes]
        totals.initial_volume += root.trace.initial_volume
        totals.external_inflow += await _external_inflow(db, ids)
        totals.current_volume += sum(n.trace.current_volume for n in nodes)
        totals.total_loss += sum(n.trace.total_loss for n in nodes)
        totals.packaged_volume += await _packaged_volume(db, ids)
        totals.discrepancy += sum(n.trace.discrepancy for n in nodes)
        flagged.extend(n.batch_id for n in nodes if n.trace.has_discrepancy)

    for field in ("initial_volume", "external_inflow", "current_volume", "total_loss", "packaged_volume", "discrepancy"):
        setattr(totals, field, round(getattr(totals, field), 4))

    report_logger.info(
        "batch_trace_report_built",
        families=len(families),
        batches=len(seen),
        discrepancies=len(flagged),
    )
    return BatchTraceReport(
        start_date=start,
        end_date=end,
        generated_at=utcnow(),
        families=families,
        totals=totals,
        batches_with_discrepancy=flagged,
    )
