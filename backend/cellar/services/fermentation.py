"""
Fermentation Calculations

Pure functions over gravity readings:
- percent fermented and stage from OG / current SG / target FG
- stall detection over a day window
- terminal confirmation by repeated hydrometer readings
- hydrometer temperature correction
- volume-weighted blend estimates and sugar-addition projections

Nothing here touches the database; measurements.py persists the results.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from cellar.db.database import utcnow
from cellar.db.enums import FermentationStage
from cellar.services.org_settings import (
    StageThresholds, StallSettings, DEFAULT_ORGANIZATION_SETTINGS,
)


DEFAULT_TARGET_FG_BY_STYLE = {
    "dry": 0.998,
    "semi-dry": 1.005,
    "semi-sweet": 1.012,
    "sweet": 1.020,
}

ABV_FACTOR = 131.25
# SG points contributed by 1 g/L of sucrose
SG_PER_GRAM_PER_LITER = 0.000385
# Gravity a fully fermented must is assumed to reach when projecting ABV
FULLY_FERMENTED_GRAVITY = 1.000


@dataclass(frozen=True)
class GravityReading:
    specific_gravity: float
    measurement_date: datetime
    method: Optional[str] = None  # hydrometer, refractometer, calculated


@dataclass(frozen=True)
class MeasurementFrequency:
    min_days: int
    max_days: int
    description: str


@dataclass(frozen=True)
class FermentationAnalysis:
    percent_fermented: float
    stage: FermentationStage
    is_stalled: bool
    days_since_last_measurement: float
    recommended_action: str
    next_measurement_due: Optional[datetime]
    is_terminal_confirmed: bool


# ============================================================================
# Core calculations
# ============================================================================

def calculate_percent_fermented(
    original_gravity: float,
    current_gravity: float,
    target_final_gravity: float,
) -> float:
    """
    Percent of the expected gravity drop already achieved, rounded to 0.1.

    May exceed 100 when the reading drops below target FG. Returns 0 when the
    reading is above OG or when OG is not above target FG.
    """
    if original_gravity <= 0 or current_gravity <= 0 or target_final_gravity <= 0:
        raise ValueError("Gravity readings must be positive numbers")

    if original_gravity < current_gravity:
        return 0.0
    if original_gravity <= target_final_gravity:
        return 0.0

    total_drop = original_gravity - target_final_gravity
    actual_drop = original_gravity - current_gravity
    return round(actual_drop / total_drop * 100, 1)


def determine_stage(
    percent_fermented: float,
    thresholds: StageThresholds = DEFAULT_ORGANIZATION_SETTINGS.stage_thresholds,
) -> FermentationStage:
    if percent_fermented < 0:
        return FermentationStage.unknown
    if percent_fermented < thresholds.early_max:
        return FermentationStage.early
    if percent_fermented < thresholds.mid_max:
        return FermentationStage.mid
    if percent_fermented < thresholds.approaching_dry_max:
        return FermentationStage.approaching_dry
    return FermentationStage.terminal


def target_fg_for_style(style: Optional[str], default: float) -> float:
    if not style:
        return default
    return DEFAULT_TARGET_FG_BY_STYLE.get(style.lower(), default)


def calculate_abv(original_gravity: float, final_gravity: float) -> float:
    return round(max(original_gravity - final_gravity, 0) * ABV_FACTOR, 2)


# ============================================================================
# Stall detection and terminal confirmation
# ============================================================================

def detect_stall(
    readings: Sequence[GravityReading],
    stall: StallSettings = DEFAULT_ORGANIZATION_SETTINGS.stall,
) -> bool:
    """
    Readings newest first. Stalled when the latest two readings are at least
    ``stall.days`` apart and moved less than ``stall.threshold``.
    """
    if not stall.enabled or len(readings) < 2:
        return False

    latest, previous = readings[0], readings[1]
    if not latest.specific_gravity or not previous.specific_gravity:
        return False

    days_between = abs((latest.measurement_date - previous.measurement_date).total_seconds()) / 86400
    if days_between < stall.days:
        return False

    return abs(latest.specific_gravity - previous.specific_gravity) < stall.threshold


def is_terminal_confirmed(
    readings: Sequence[GravityReading],
    confirmation_hours: int = DEFAULT_ORGANIZATION_SETTINGS.terminal_confirmation_hours,
) -> bool:
    """Two identical hydrometer readings at least ``confirmation_hours`` apart."""
    hydrometer = [r for r in readings if r.method in (None, "hydrometer")]
    if len(hydrometer) < 2:
        return False

    latest, previous = hydrometer[0], hydrometer[1]
    if latest.specific_gravity != previous.specific_gravity:
        return False

    hours_between = abs((latest.measurement_date - previous.measurement_date).total_seconds()) / 3600
    return hours_between >= confirmation_hours


# ============================================================================
# Measurement schedule
# ============================================================================

_FREQUENCIES = {
    FermentationStage.early: MeasurementFrequency(1, 2, "Active fermentation - measure frequently"),
    FermentationStage.mid: MeasurementFrequency(2, 3, "Fermentation slowing - moderate frequency"),
    FermentationStage.approaching_dry: MeasurementFrequency(3, 4, "Nearly complete - reduce frequency"),
    FermentationStage.terminal: MeasurementFrequency(7, 14, "Monitoring only - weekly checks"),
}
_DEFAULT_FREQUENCY = MeasurementFrequency(1, 3, "Take initial measurement to establish stage")


def recommended_frequency(stage: FermentationStage) -> MeasurementFrequency:
    return _FREQUENCIES.get(stage, _DEFAULT_FREQUENCY)


def days_since(last: Optional[datetime], now: Optional[datetime] = None) -> float:
    if last is None:
        return math.inf
    now = now or utcnow()
    return math.floor((now - last).total_seconds() / 86400)


def next_measurement_due(
    last: Optional[datetime],
    stage: FermentationStage,
    now: Optional[datetime] = None,
) -> datetime:
    if last is None:
        return now or utcnow()
    return last + timedelta(days=recommended_frequency(stage).max_days)


# ============================================================================
# Full analysis
# ============================================================================

def analyze_fermentation_progress(
    original_gravity: Optional[float],
    current_gravity: Optional[float],
    target_final_gravity: Optional[float],
    readings: Sequence[GravityReading],
    thresholds: StageThresholds = DEFAULT_ORGANIZATION_SETTINGS.stage_thresholds,
    stall: StallSettings = DEFAULT_ORGANIZATION_SETTINGS.stall,
    terminal_confirmation_hours: int = DEFAULT_ORGANIZATION_SETTINGS.terminal_confirmation_hours,
    now: Optional[datetime] = None,
) -> FermentationAnalysis:
    """Readings must be sorted newest first."""
    now = now or utcnow()
    last_date = readings[0].measurement_date if readings else None
    since = days_since(last_date, now)

    if not original_gravity or not current_gravity or not target_final_gravity:
        return FermentationAnalysis(
            percent_fermented=0.0,
            stage=FermentationStage.unknown,
            is_stalled=False,
            days_since_last_measurement=since,
            recommended_action="Record OG, current SG, and target FG to track progress",
            next_measurement_due=now,
            is_terminal_confirmed=False,
        )

    percent = calculate_percent_fermented(original_gravity, current_gravity, target_final_gravity)
    stage = determine_stage(percent, thresholds)

    stalled = stage != FermentationStage.terminal and detect_stall(readings, stall)
    confirmed = stage == FermentationStage.terminal and is_terminal_confirmed(
        readings, terminal_confirmation_hours
    )
    frequency = recommended_frequency(stage)
    due = next_measurement_due(last_date, stage, now)

    if stalled:
        action = "Fermentation may have stalled - consider temperature adjustment or yeast addition"
    elif stage == FermentationStage.terminal and not confirmed:
        action = "Take another hydrometer reading to confirm terminal gravity"
    elif since >= frequency.max_days:
        action = f"Measurement due - {frequency.description}"
    else:
        days_until = math.ceil((due - now).total_seconds() / 86400)
        action = f"Next measurement in {days_until} day(s)" if days_until > 0 else frequency.description

    return FermentationAnalysis(
        percent_fermented=percent,
        stage=stage,
        is_stalled=stalled,
        days_since_last_measurement=since,
        recommended_action=action,
        next_measurement_due=due,
        is_terminal_confirmed=confirmed,
    )


# ============================================================================
# Corrections and estimates
# ============================================================================

def _hydrometer_density_ratio(temp_f: float) -> float:
    return (
        1.00130346
        - 0.000134722124 * temp_f
        + 0.00000204052596 * temp_f ** 2
        - 0.00000000232820948 * temp_f ** 3
    )


def correct_gravity_for_temperature(
    specific_gravity: float,
    temperature_c: float,
    calibration_temp_c: float = DEFAULT_ORGANIZATION_SETTINGS.calibration_temp_c,
) -> float:
    """Adjust a hydrometer reading taken at temperature_c to the calibration temperature."""
    temp_f = temperature_c * 9 / 5 + 32
    cal_f = calibration_temp_c * 9 / 5 + 32
    corrected = specific_gravity * _hydrometer_density_ratio(temp_f) / _hydrometer_density_ratio(cal_f)
    return round(corrected, 4)


def estimate_blend(
    a_value: Optional[float],
    a_volume: float,
    b_value: Optional[float],
    b_volume: float,
) -> Optional[float]:
    """
    Volume-weighted average of two liquids' readings.
    One side missing: the other side's value. Both missing: None.
    """
    if a_value is None and b_value is None:
        return None
    if a_value is None:
        return b_value
    if b_value is None:
        return a_value
    total = a_volume + b_volume
    if total <= 0:
        return None
    return (a_value * a_volume + b_value * b_volume) / total


@dataclass(frozen=True)
class SugarProjection:
    specific_gravity: float
    abv: float
    gravity_increase: float


def project_sugar_addition(
    current_gravity: float,
    sugar_grams: float,
    volume_liters: float,
    original_gravity: Optional[float] = None,
) -> SugarProjection:
    """
    Estimated SG right after dissolving ``sugar_grams`` and the ABV reached
    if everything ferments to dryness.
    """
    if volume_liters <= 0:
        raise ValueError("volume_liters must be positive")
    increase = sugar_grams / volume_liters * SG_PER_GRAM_PER_LITER
    new_gravity = round(current_gravity + increase, 4)
    og = original_gravity if original_gravity else current_gravity
    abv = calculate_abv(og + increase, FULLY_FERMENTED_GRAVITY)
    return SugarProjection(specific_gravity=new_gravity, abv=abv, gravity_increase=round(increase, 4))


def readings_from_measurements(measurements) -> List[GravityReading]:
    """Measurements (newest first) with a gravity value, as GravityReading."""
    return [
        GravityReading(
            specific_gravity=m.specific_gravity,
            measurement_date=m.measurement_date,
            method="calculated" if m.is_estimated else None,
        )
        for m in measurements
        if m.specific_gravity is not None
    ]
