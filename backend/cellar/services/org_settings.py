"""
Organization settings resolver.

Operations receive an explicit OrganizationSettings value. The caller
resolves it once per request with load_organization_settings(); nothing in
the service layer looks settings up on its own.
"""
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.config import settings
from cellar.db.models import OrganizationSettingsRecord

logger = logging.getLogger(__name__)


class StageThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    early_max: float = settings.STAGE_EARLY_MAX_PERCENT
    mid_max: float = settings.STAGE_MID_MAX_PERCENT
    approaching_dry_max: float = settings.STAGE_APPROACHING_DRY_MAX_PERCENT


class StallSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = settings.STALL_DETECTION_ENABLED
    days: int = settings.STALL_DETECTION_DAYS
    threshold: float = settings.STALL_DETECTION_THRESHOLD


class OrganizationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: int = settings.DEFAULT_ORGANIZATION_ID
    temperature_correction_enabled: bool = settings.TEMPERATURE_CORRECTION_ENABLED
    calibration_temp_c: float = settings.CALIBRATION_TEMP_C
    stage_thresholds: StageThresholds = StageThresholds()
    stall: StallSettings = StallSettings()
    terminal_confirmation_hours: int = settings.TERMINAL_CONFIRMATION_HOURS
    default_target_fg: float = settings.DEFAULT_TARGET_FG
    stage_start_gravity_drop: float = settings.STAGE_START_GRAVITY_DROP
    partial_rack_min_remaining_l: float = settings.PARTIAL_RACK_MIN_REMAINING_L
    lineage_max_depth: int = settings.LINEAGE_MAX_DEPTH
    reconciliation_tolerance_l: float = settings.RECONCILIATION_TOLERANCE_L


DEFAULT_ORGANIZATION_SETTINGS = OrganizationSettings()


async def load_organization_settings(
    db: AsyncSession,
    organization_id: Optional[int] = None,
) -> OrganizationSettings:
    """Merge the organization's stored overrides onto application defaults."""
    org_id = organization_id or settings.DEFAULT_ORGANIZATION_ID
    result = await db.execute(
        select(OrganizationSettingsRecord).where(
            OrganizationSettingsRecord.organization_id == org_id
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        logger.debug(f"[Settings] No overrides for organization {org_id}, using defaults")
        return OrganizationSettings(organization_id=org_id)

    def pick(value, default):
        return default if value is None else value

    base = DEFAULT_ORGANIZATION_SETTINGS
    return OrganizationSettings(
        organization_id=org_id,
        temperature_correction_enabled=pick(row.temperature_correction_enabled, base.temperature_correction_enabled),
        calibration_temp_c=pick(row.calibration_temp_c, base.calibration_temp_c),
        stage_thresholds=StageThresholds(
            early_max=pick(row.stage_early_max_percent, base.stage_thresholds.early_max),
            mid_max=pick(row.stage_mid_max_percent, base.stage_thresholds.mid_max),
            approaching_dry_max=pick(
                row.stage_approaching_dry_max_percent, base.stage_thresholds.approaching_dry_max
            ),
        ),
        stall=StallSettings(
            enabled=pick(row.stall_detection_enabled, base.stall.enabled),
            days=pick(row.stall_detection_days, base.stall.days),
            threshold=pick(row.stall_detection_threshold, base.stall.threshold),
        ),
        terminal_confirmation_hours=pick(row.terminal_confirmation_hours, base.terminal_confirmation_hours),
        default_target_fg=pick(row.default_target_fg, base.default_target_fg),
    )
