"""
Batch history read models.

get_activity_history() merges every ledger touching a batch into one
timeline, newest first. Measurements and additives recorded on an ancestor
before the split that produced this batch are included as inherited
entries; copies already made at split time are shown once.
"""
from typing import Dict, List, Set

from sqlalchemy import select, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError
from cellar.core.logging import report_logger, log_operation
from cellar.db.crud import get_batch
from cellar.db.models import (
    Batch, BatchMergeHistory, BatchTransfer, BatchRackingOperation, BatchFilterOperation, PackagingRun,
    BatchMeasurement, BatchAdditive,
)
from cellar.schemas import (
    BatchHistory, ActivityPage, HistoryEntry, MergeHistoryResponse, MeasurementResponse,
    AdditiveResponse, CompositionEntryResponse,
)
from cellar.services.additives import list_additives
from cellar.services.audit import get_audit_trail, parse_meta, AuditActions, AuditTargetTypes
from cellar.services.composition import active_entries
from cellar.services.lineage import resolve_ancestors, activity_cutoffs
from cellar.services.measurements import list_measurements

MAX_PAGE_SIZE = 100

CHANGE_ACTIONS = [
    AuditActions.BATCH_UPDATE,
    AuditActions.BATCH_STATUS_CHANGE,
    AuditActions.BATCH_STAGE_CHANGE,
    AuditActions.BATCH_DELETE,
]


def _measurement_entry(m: BatchMeasurement, batch_id: int, inherited_from=None) -> HistoryEntry:
    values = [
        f"{label}: {getattr(m, field)}"
        for label, field in (("SG", "specific_gravity"), ("ABV", "abv"), ("pH", "ph"), ("TA", "total_acidity"))
        if getattr(m, field) is not None
    ]
    kind = "Estimated measurement" if m.is_estimated else "Measurement"
    return HistoryEntry(
        timestamp=m.measurement_date,
        entry_type="measurement",
        batch_id=batch_id,
        reference_id=m.id,
        summary=f"{kind}{': ' + ', '.join(values) if values else ''}",
        inherited_from_batch_id=inherited_from,
        data={"is_estimated": m.is_estimated, "estimate_source": m.estimate_source, "notes": m.notes},
    )


def _additive_entry(a: BatchAdditive, batch_id: int, inherited_from=None) -> HistoryEntry:
    return HistoryEntry(
        timestamp=a.added_at,
        entry_type="additive",
        batch_id=batch_id,
        reference_id=a.id,
        summary=f"{a.additive_type} added: {a.additive_name} ({a.amount} {a.unit})",
        inherited_from_batch_id=inherited_from,
        data={"vessel_id": a.vessel_id, "added_by": a.added_by, "notes": a.notes},
    )


async def _change_entries(db: AsyncSession, batch_id: int) -> List[HistoryEntry]:
    entries = []
    for audit in await get_audit_trail(db, AuditTargetTypes.BATCH, batch_id, actions=CHANGE_ACTIONS):
        meta = parse_meta(audit)
        entries.append(HistoryEntry(
            timestamp=audit.created_at,
            entry_type=audit.action,
            batch_id=batch_id,
            reference_id=audit.id,
            summary=audit.description or audit.action,
            data={"changes": meta.get("changes", {}), "reason": meta.get("reason")},
        ))
    return entries


@log_operation("get_history", report_logger)
async def get_history(db: AsyncSession, batch_id: int) -> BatchHistory:
    """Batch detail with composition, readings, additions and audited field changes."""
    batch = await get_batch(db, batch_id)
    return BatchHistory(
        batch_id=batch.id,
        name=batch.display_name,
        status=batch.status,
        product_type=batch.product_type,
        fermentation_stage=batch.fermentation_stage,
        vessel_id=batch.vessel_id,
        start_date=batch.start_date,
        end_date=batch.end_date,
        origin_press_run_id=batch.origin_press_run_id,
        origin_juice_purchase_item_id=batch.origin_juice_purchase_item_id,
        composition=[
            CompositionEntryResponse.model_validate(e)
            for e in sorted(await active_entries(db, batch.id), key=lambda e: -(e.fraction_of_batch or 0.0))
        ],
        measurements=[MeasurementResponse.model_validate(m) for m in await list_measurements(db, batch.id)],
        additives=[AdditiveResponse.model_validate(a) for a in await list_additives(db, batch.id)],
        changes=await _change_entries(db, batch.id),
    )


async def _ledger_entries(db: AsyncSession, batch: Batch) -> List[HistoryEntry]:
    entries = []

    merges = await db.execute(
        select(BatchMergeHistory).where(
            BatchMergeHistory.target_batch_id == batch.id, BatchMergeHistory.deleted_at.is_(None)
        )
    )
    for m in merges.scalars().all():
        entries.append(HistoryEntry(
            timestamp=m.merged_at,
            entry_type="merge",
            batch_id=batch.id,
            reference_id=m.id,
            summary=(
                f"Merged {m.volume_added:.1f}L from {m.source_type.replace('_', ' ')}: "
                f"{m.target_volume_before:.1f}L -> {m.target_volume_after:.1f}L"
            ),
            data={"source_batch_id": m.source_batch_id, "notes": m.notes},
        ))

    transfers = await db.execute(
        select(BatchTransfer).where(
            BatchTransfer.deleted_at.is_(None),
            or_(
                BatchTransfer.source_batch_id == batch.id,
                BatchTransfer.destination_batch_id == batch.id,
                BatchTransfer.remaining_batch_id == batch.id,
            ),
        )
    )
    for t in transfers.scalars().all():
        if t.source_batch_id == t.destination_batch_id:
            summary = f"Moved {t.volume_transferred:.1f}L from vessel {t.source_vessel_id} to vessel {t.destination_vessel_id}"
        elif t.source_batch_id == batch.id:
            summary = f"Transferred {t.volume_transferred:.1f}L to batch {t.destination_batch_id}"
        elif t.remaining_batch_id == batch.id:
            summary = f"Left behind with {t.remaining_volume:.1f}L when batch {t.source_batch_id} was transferred"
        else:
            summary = f"Received {t.volume_transferred:.1f}L from batch {t.source_batch_id}"
        entries.append(HistoryEntry(
            timestamp=t.transferred_at,
            entry_type="transfer",
            batch_id=batch.id,
            reference_id=t.id,
            summary=summary,
            data={"is_merge": t.is_merge, "loss": t.loss, "notes": t.notes},
        ))

    rackings = await db.execute(
        select(BatchRackingOperation).where(
            BatchRackingOperation.batch_id == batch.id, BatchRackingOperation.deleted_at.is_(None)
        )
    )
    for r in rackings.scalars().all():
        entries.append(HistoryEntry(
            timestamp=r.racked_at,
            entry_type="racking",
            batch_id=batch.id,
            reference_id=r.id,
            summary=f"Racked: {r.volume_before:.1f}L -> {r.volume_after:.1f}L ({r.volume_loss:.1f}L loss)",
            data={"outcome": r.outcome, "destination_vessel_id": r.destination_vessel_id, "notes": r.notes},
        ))

    filters = await db.execute(
        select(BatchFilterOperation).where(
            BatchFilterOperation.batch_id == batch.id, BatchFilterOperation.deleted_at.is_(None)
        )
    )
    for f in filters.scalars().all():
        entries.append(HistoryEntry(
            timestamp=f.filtered_at,
            entry_type="filter",
            batch_id=batch.id,
            reference_id=f.id,
            summary=f"{f.filter_type.capitalize()} filtered: {f.volume_before:.1f}L -> {f.volume_after:.1f}L",
            data={"loss": f.volume_loss, "notes": f.notes},
        ))

    runs = await db.execute(
        select(PackagingRun).where(PackagingRun.batch_id == batch.id, PackagingRun.deleted_at.is_(None))
    )
    for p in runs.scalars().all():
        entries.append(HistoryEntry(
            timestamp=p.packaged_at,
            entry_type=p.kind,
            batch_id=batch.id,
            reference_id=p.id,
            summary=f"{p.kind.capitalize()}: {p.volume_taken:.1f}L",
            data={"loss": p.loss, "units_produced": p.units_produced},
        ))

    return entries


@log_operation("get_activity_history", report_logger)
async def get_activity_history(db: AsyncSession, batch_id: int, limit: int = 20, offset: int = 0) -> ActivityPage:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise BadRequestError(f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"limit": limit})
    if offset < 0:
        raise BadRequestError("offset must not be negative", details={"offset": offset})

    batch = await get_batch(db, batch_id)
    entries = [HistoryEntry(
        timestamp=batch.start_date,
        entry_type="creation",
        batch_id=batch.id,
        reference_id=batch.id,
        summary=f"Batch {batch.display_name} created with {batch.initial_volume:.1f}L",
        data={"parent_batch_id": batch.parent_batch_id, "is_legacy": batch.is_legacy},
    )]

    # ids of records already represented on this batch (directly or through copies)
    represented: Dict[str, Set[int]] = {"measurement": set(), "additive": set()}

    for m in await list_measurements(db, batch.id):
        entries.append(_measurement_entry(m, batch.id))
        if m.copied_from_id:
            represented["measurement"].add(m.copied_from_id)
    for a in await list_additives(db, batch.id):
        entries.append(_additive_entry(a, batch.id))
        if a.copied_from_id:
            represented["additive"].add(a.copied_from_id)

    for ancestor_id, cutoff in activity_cutoffs(await resolve_ancestors(db, batch.id)):
        for m in await list_measurements(db, ancestor_id, until=cutoff):
            if m.id not in represented["measurement"]:
                entries.append(_measurement_entry(m, batch.id, inherited_from=ancestor_id))
            if m.copied_from_id:
                represented["measurement"].add(m.copied_from_id)
        for a in await list_additives(db, ancestor_id, until=cutoff):
            if a.id not in represented["additive"]:
                entries.append(_additive_entry(a, batch.id, inherited_from=ancestor_id))
            if a.copied_from_id:
                represented["additive"].add(a.copied_from_id)

    entries.extend(await _ledger_entries(db, batch))
    entries.extend(await _change_entries(db, batch.id))
    entries.sort(key=lambda e: (e.timestamp, e.reference_id), reverse=True)

    page = entries[offset:offset + limit]
    return ActivityPage(
        batch_id=batch.id,
        items=page,
        total=len(entries),
        limit=limit,
        offset=offset,
        has_more=offset + len(page) < len(entries),
    )


async def get_merge_history(db: AsyncSession, batch_id: int) -> List[MergeHistoryResponse]:
    """Merges into a batch, newest first."""
    batch = await get_batch(db, batch_id)
    result = await db.execute(
        select(BatchMergeHistory)
        .where(BatchMergeHistory.target_batch_id == batch.id, BatchMergeHistory.deleted_at.is_(None))
        .order_by(desc(BatchMergeHistory.merged_at), desc(BatchMergeHistory.id))
    )
    return [MergeHistoryResponse.model_validate(m) for m in result.scalars().all()]
