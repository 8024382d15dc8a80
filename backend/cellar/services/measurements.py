"""
Measurement Series Service

Lab readings per batch and the fermentation-stage bookkeeping derived from
them:
- temperature correction of specific gravity at insert time
- duplicate guard on (batch, date, SG, pH) among real readings
- one-time original gravity latch
- not_started -> early once gravity has dropped enough
- stage persistence when a progress analysis disagrees with the stored stage
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, desc, false
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError, ConflictError, NotFoundError, UnitConversionError
from cellar.core.logging import measurement_logger, log_operation
from cellar.db.crud import get_batch
from cellar.db.database import utcnow, as_naive_utc
from cellar.db.enums import FermentationStage, ProductType, NON_FERMENTING_PRODUCTS
from cellar.db.models import Batch, BatchMeasurement
from cellar.db.transaction import transactional
from cellar.schemas import (
    MeasurementCreate, MeasurementUpdate, MeasurementResult, FermentationProgress, OperationResult,
)
from cellar.services import fermentation
from cellar.services.audit import log_audit, diff_fields, AuditActions, AuditTargetTypes
from cellar.services.org_settings import OrganizationSettings, DEFAULT_ORGANIZATION_SETTINGS
from cellar.services.units import to_liters

logger = logging.getLogger(__name__)


def product_ferments(product_type: str) -> bool:
    return ProductType(product_type) not in NON_FERMENTING_PRODUCTS


def _eq_or_null(column, value):
    return column.is_(None) if value is None else column == value


async def _find_duplicate(
    db: AsyncSession,
    batch_id: int,
    measurement_date: datetime,
    specific_gravity: Optional[float],
    ph: Optional[float],
    exclude_id: Optional[int] = None,
) -> Optional[BatchMeasurement]:
    query = select(BatchMeasurement).where(
        BatchMeasurement.batch_id == batch_id,
        BatchMeasurement.measurement_date == measurement_date,
        BatchMeasurement.is_estimated == false(),
        BatchMeasurement.deleted_at.is_(None),
        _eq_or_null(BatchMeasurement.specific_gravity, specific_gravity),
        _eq_or_null(BatchMeasurement.ph, ph),
    )
    if exclude_id is not None:
        query = query.where(BatchMeasurement.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


def _corrected_gravity(
    specific_gravity: Optional[float],
    temperature: Optional[float],
    org: OrganizationSettings,
):
    """(stored SG, raw SG or None when uncorrected)"""
    if specific_gravity is None or temperature is None or not org.temperature_correction_enabled:
        return specific_gravity, None
    corrected = fermentation.correct_gravity_for_temperature(
        specific_gravity, temperature, org.calibration_temp_c
    )
    return corrected, specific_gravity


def _volume_liters(volume: Optional[float], unit: Optional[str]) -> Optional[float]:
    if volume is None:
        return None
    try:
        return to_liters(volume, unit or "L")
    except UnitConversionError as e:
        raise BadRequestError(str(e), details={"volume_unit": unit})


def set_fermentation_stage(batch: Batch, stage: FermentationStage, at: Optional[datetime] = None) -> None:
    batch.fermentation_stage = stage.value
    batch.fermentation_stage_updated_at = at or utcnow()


def maybe_start_fermentation(
    batch: Batch,
    specific_gravity: Optional[float],
    org: OrganizationSettings,
    at: Optional[datetime] = None,
) -> bool:
    """Advance not_started -> early when SG has dropped far enough below OG."""
    if batch.fermentation_stage != FermentationStage.not_started.value:
        return False
    if not product_ferments(batch.product_type):
        return False
    if specific_gravity is None or batch.original_gravity is None:
        return False
    if batch.original_gravity - specific_gravity + 1e-9 < org.stage_start_gravity_drop:
        return False
    set_fermentation_stage(batch, FermentationStage.early, at)
    measurement_logger.info(
        "fermentation_started",
        batch_id=batch.id,
        original_gravity=batch.original_gravity,
        specific_gravity=specific_gravity,
    )
    return True


# ============================================================================
# Queries shared with the state machine
# ============================================================================

async def get_measurement(db: AsyncSession, measurement_id: int) -> BatchMeasurement:
    result = await db.execute(
        select(BatchMeasurement).where(
            BatchMeasurement.id == measurement_id, BatchMeasurement.deleted_at.is_(None)
        )
    )
    measurement = result.scalar_one_or_none()
    if measurement is None:
        raise NotFoundError("Measurement not found", details={"measurement_id": measurement_id})
    return measurement


async def list_measurements(
    db: AsyncSession,
    batch_id: int,
    with_gravity_only: bool = False,
    until: Optional[datetime] = None,
) -> List[BatchMeasurement]:
    """Active measurements for a batch, newest first."""
    query = select(BatchMeasurement).where(
        BatchMeasurement.batch_id == batch_id,
        BatchMeasurement.deleted_at.is_(None),
    )
    if with_gravity_only:
        query = query.where(BatchMeasurement.specific_gravity.isnot(None))
    if until is not None:
        query = query.where(BatchMeasurement.measurement_date <= until)
    result = await db.execute(
        query.order_by(desc(BatchMeasurement.measurement_date), desc(BatchMeasurement.id))
    )
    return list(result.scalars().all())


async def latest_measurement(db: AsyncSession, batch_id: int) -> Optional[BatchMeasurement]:
    measurements = await list_measurements(db, batch_id)
    return measurements[0] if measurements else None


async def add_estimated_measurement(
    db: AsyncSession,
    batch_id: int,
    measurement_date: datetime,
    estimate_source: str,
    specific_gravity: Optional[float] = None,
    abv: Optional[float] = None,
    ph: Optional[float] = None,
    total_acidity: Optional[float] = None,
    volume_liters: Optional[float] = None,
    notes: Optional[str] = None,
) -> BatchMeasurement:
    measurement = BatchMeasurement(
        batch_id=batch_id,
        measurement_date=measurement_date,
        specific_gravity=round(specific_gravity, 4) if specific_gravity is not None else None,
        abv=round(abv, 2) if abv is not None else None,
        ph=round(ph, 2) if ph is not None else None,
        total_acidity=round(total_acidity, 2) if total_acidity is not None else None,
        volume=volume_liters,
        volume_unit="L" if volume_liters is not None else None,
        volume_liters=volume_liters,
        is_estimated=True,
        estimate_source=estimate_source,
        notes=notes,
        taken_by="System (auto-calculated)",
    )
    db.add(measurement)
    await db.flush()
    return measurement


async def copy_measurements(
    db: AsyncSession,
    source_batch_id: int,
    dest_batch_id: int,
    until: datetime,
) -> List[BatchMeasurement]:
    """Copy readings dated at or before ``until`` onto a split child."""
    copies = []
    for m in reversed(await list_measurements(db, source_batch_id, until=until)):
        copy = BatchMeasurement(
            batch_id=dest_batch_id,
            measurement_date=m.measurement_date,
            specific_gravity=m.specific_gravity,
            raw_specific_gravity=m.raw_specific_gravity,
            abv=m.abv,
            ph=m.ph,
            total_acidity=m.total_acidity,
            temperature=m.temperature,
            volume=m.volume,
            volume_unit=m.volume_unit,
            volume_liters=m.volume_liters,
            is_estimated=m.is_estimated,
            estimate_source=m.estimate_source,
            copied_from_id=m.id,
            notes=m.notes,
            taken_by=m.taken_by,
        )
        db.add(copy)
        copies.append(copy)
    await db.flush()
    return copies


# ============================================================================
# Operations
# ============================================================================

@log_operation("add_measurement", measurement_logger)
@transactional("add_measurement")
async def add_measurement(
    db: AsyncSession,
    batch_id: int,
    reading: MeasurementCreate,
    org: OrganizationSettings = DEFAULT_ORGANIZATION_SETTINGS,
) -> MeasurementResult:
    batch = await get_batch(db, batch_id, lock=True)
    measurement_date = as_naive_utc(reading.measurement_date) or utcnow()
    specific_gravity, raw_gravity = _corrected_gravity(reading.specific_gravity, reading.temperature, org)

    duplicate = await _find_duplicate(db, batch.id, measurement_date, specific_gravity, reading.ph)
    if duplicate is not None:
        raise ConflictError(
            "A measurement with the same date, specific gravity and pH already exists for this batch",
            details={"batch_id": batch.id, "measurement_id": duplicate.id},
        )

    measurement = BatchMeasurement(
        batch_id=batch.id,
        measurement_date=measurement_date,
        specific_gravity=specific_gravity,
        raw_specific_gravity=raw_gravity,
        abv=reading.abv,
        ph=reading.ph,
        total_acidity=reading.total_acidity,
        temperature=reading.temperature,
        volume=reading.volume,
        volume_unit=reading.volume_unit if reading.volume is not None else None,
        volume_liters=_volume_liters(reading.volume, reading.volume_unit),
        notes=reading.notes,
        taken_by=reading.taken_by,
    )
    db.add(measurement)

    if batch.original_gravity is None and specific_gravity is not None:
        batch.original_gravity = specific_gravity
        measurement_logger.info("original_gravity_set", batch_id=batch.id, original_gravity=specific_gravity)

    stage_changed = maybe_start_fermentation(batch, specific_gravity, org, measurement_date)
    await db.flush()

    message = "Measurement added successfully"
    if raw_gravity is not None and raw_gravity != specific_gravity:
        message += f" (SG corrected from {raw_gravity:.4f} to {specific_gravity:.4f})"
    if stage_changed:
        message += "; fermentation stage advanced to early"

    return MeasurementResult(
        message=message,
        measurement_id=measurement.id,
        batch_id=batch.id,
        specific_gravity=specific_gravity,
        raw_specific_gravity=raw_gravity,
        original_gravity=batch.original_gravity,
        fermentation_stage=batch.fermentation_stage,
        stage_changed=stage_changed,
    )


@log_operation("update_measurement", measurement_logger)
@transactional("update_measurement")
async def update_measurement(
    db: AsyncSession,
    measurement_id: int,
    patch: MeasurementUpdate,
    org: OrganizationSettings = DEFAULT_ORGANIZATION_SETTINGS,
) -> MeasurementResult:
    measurement = await get_measurement(db, measurement_id)
    batch = await get_batch(db, measurement.batch_id, lock=True)
    fields = patch.model_dump(exclude_unset=True)
    tracked = ("measurement_date", "specific_gravity", "ph", "abv", "total_acidity", "temperature", "volume")
    before = {k: getattr(measurement, k) for k in tracked}

    if "measurement_date" in fields and fields["measurement_date"] is not None:
        measurement.measurement_date = as_naive_utc(fields["measurement_date"])
    for key in ("abv", "ph", "total_acidity", "temperature", "notes"):
        if key in fields:
            setattr(measurement, key, fields[key])

    if "specific_gravity" in fields or "temperature" in fields:
        raw = fields.get("specific_gravity", measurement.raw_specific_gravity or measurement.specific_gravity)
        measurement.specific_gravity, measurement.raw_specific_gravity = _corrected_gravity(
            raw, measurement.temperature, org
        )

    if "volume" in fields or "volume_unit" in fields:
        measurement.volume = fields.get("volume", measurement.volume)
        measurement.volume_unit = fields.get("volume_unit") or measurement.volume_unit or "L"
        measurement.volume_liters = _volume_liters(measurement.volume, measurement.volume_unit)

    if not measurement.is_estimated:
        duplicate = await _find_duplicate(
            db, batch.id, measurement.measurement_date, measurement.specific_gravity, measurement.ph,
            exclude_id=measurement.id,
        )
        if duplicate is not None:
            raise ConflictError(
                "Another measurement with the same date, specific gravity and pH already exists",
                details={"measurement_id": duplicate.id},
            )

    changes = diff_fields(before, {k: getattr(measurement, k) for k in tracked})
    stage_changed = maybe_start_fermentation(batch, measurement.specific_gravity, org)
    await db.flush()

    if changes:
        await log_audit(
            db,
            action=AuditActions.MEASUREMENT_UPDATE,
            target_type=AuditTargetTypes.MEASUREMENT,
            target_id=measurement.id,
            description=f"Measurement {measurement.id} on batch {batch.id} updated",
            meta={"batch_id": batch.id, "changes": changes},
        )

    return MeasurementResult(
        message="Measurement updated successfully" if changes else "No changes to apply",
        measurement_id=measurement.id,
        batch_id=batch.id,
        specific_gravity=measurement.specific_gravity,
        raw_specific_gravity=measurement.raw_specific_gravity,
        original_gravity=batch.original_gravity,
        fermentation_stage=batch.fermentation_stage,
        stage_changed=stage_changed,
    )


@log_operation("delete_measurement", measurement_logger)
@transactional("delete_measurement")
async def delete_measurement(db: AsyncSession, measurement_id: int) -> OperationResult:
    measurement = await get_measurement(db, measurement_id)
    measurement.deleted_at = utcnow()
    await log_audit(
        db,
        action=AuditActions.MEASUREMENT_DELETE,
        target_type=AuditTargetTypes.MEASUREMENT,
        target_id=measurement.id,
        description=f"Measurement {measurement.id} on batch {measurement.batch_id} deleted",
        meta={"batch_id": measurement.batch_id},
    )
    return OperationResult(message="Measurement deleted successfully", entity_id=measurement.id)


@log_operation("get_fermentation_progress", measurement_logger)
@transactional("get_fermentation_progress")
async def get_fermentation_progress(
    db: AsyncSession,
    batch_id: int,
    org: OrganizationSettings = DEFAULT_ORGANIZATION_SETTINGS,
    now: Optional[datetime] = None,
) -> FermentationProgress:
    """
    Analyze progress from the gravity series and persist the stage when it
    differs from the stored one. Products that do not ferment are reported
    as not_applicable and never updated.
    """
    batch = await get_batch(db, batch_id, lock=True)
    target_fg = batch.target_final_gravity or fermentation.target_fg_for_style(
        batch.sweetness_style, org.default_target_fg
    )

    if not product_ferments(batch.product_type):
        return FermentationProgress(
            batch_id=batch.id,
            original_gravity=batch.original_gravity,
            target_final_gravity=target_fg,
            stage=FermentationStage.not_applicable,
            recommended_action="Product does not ferment",
        )

    readings = fermentation.readings_from_measurements(
        await list_measurements(db, batch.id, with_gravity_only=True)
    )
    current = readings[0].specific_gravity if readings else None
    analysis = fermentation.analyze_fermentation_progress(
        original_gravity=batch.original_gravity,
        current_gravity=current,
        target_final_gravity=target_fg,
        readings=readings,
        thresholds=org.stage_thresholds,
        stall=org.stall,
        terminal_confirmation_hours=org.terminal_confirmation_hours,
        now=as_naive_utc(now),
    )

    persisted = False
    stored = batch.fermentation_stage
    if analysis.stage != FermentationStage.unknown and analysis.stage.value != stored:
        # A reading still at OG means fermentation has not begun
        if not (stored == FermentationStage.not_started.value and analysis.percent_fermented <= 0):
            set_fermentation_stage(batch, analysis.stage)
            await log_audit(
                db,
                action=AuditActions.BATCH_STAGE_CHANGE,
                target_type=AuditTargetTypes.BATCH,
                target_id=batch.id,
                description=f"Fermentation stage changed from {stored} to {analysis.stage.value}",
                meta={
                    "changes": {"fermentation_stage": {"old": stored, "new": analysis.stage.value}},
                    "reason": f"{analysis.percent_fermented}% fermented",
                },
            )
            persisted = True

    return FermentationProgress(
        batch_id=batch.id,
        original_gravity=batch.original_gravity,
        current_gravity=current,
        target_final_gravity=target_fg,
        percent_fermented=analysis.percent_fermented,
        stage=FermentationStage(batch.fermentation_stage) if persisted else analysis.stage,
        is_stalled=analysis.is_stalled,
        stall_days=org.stall.days if analysis.is_stalled else None,
        is_terminal_confirmed=analysis.is_terminal_confirmed,
        estimated_abv=(
            fermentation.calculate_abv(batch.original_gravity, current)
            if batch.original_gravity and current else None
        ),
        recommended_action=analysis.recommended_action,
        next_measurement_due=analysis.next_measurement_due,
        stage_persisted=persisted,
    )
