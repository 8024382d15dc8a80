from datetime import datetime, timedelta

import pytest

from cellar.db.enums import FermentationStage
from cellar.services.fermentation import (
    GravityReading, calculate_percent_fermented, determine_stage, detect_stall, is_terminal_confirmed,
    correct_gravity_for_temperature, estimate_blend, project_sugar_addition, calculate_abv,
    analyze_fermentation_progress, target_fg_for_style, next_measurement_due,
)
from cellar.services.org_settings import StallSettings, StageThresholds

pytestmark = pytest.mark.unit

NOW = datetime(2024, 10, 1, 12, 0, 0)


def reading(sg, days_ago=0.0, hours_ago=0.0, method=None):
    return GravityReading(
        specific_gravity=sg,
        measurement_date=NOW - timedelta(days=days_ago, hours=hours_ago),
        method=method,
    )


class TestPercentFermented:
    def test_midway(self):
        assert calculate_percent_fermented(1.050, 1.020, 1.000) == pytest.approx(60.0)

    def test_above_original_gravity_is_zero(self):
        assert calculate_percent_fermented(1.050, 1.055, 1.000) == 0.0

    def test_original_not_above_target_is_zero(self):
        assert calculate_percent_fermented(1.000, 0.999, 1.000) == 0.0

    def test_can_exceed_hundred(self):
        assert calculate_percent_fermented(1.050, 0.995, 1.000) > 100

    def test_non_positive_gravity_rejected(self):
        with pytest.raises(ValueError):
            calculate_percent_fermented(0, 1.0, 1.0)


@pytest.mark.parametrize("percent,stage", [
    (0, FermentationStage.early),
    (69.9, FermentationStage.early),
    (70, FermentationStage.mid),
    (89.9, FermentationStage.mid),
    (90, FermentationStage.approaching_dry),
    (98, FermentationStage.terminal),
    (120, FermentationStage.terminal),
    (-1, FermentationStage.unknown),
])
def test_determine_stage(percent, stage):
    assert determine_stage(percent) == stage


def test_determine_stage_custom_thresholds():
    thresholds = StageThresholds(early_max=50, mid_max=80, approaching_dry_max=95)
    assert determine_stage(60, thresholds) == FermentationStage.mid


class TestStall:
    def test_flat_readings_days_apart_are_stalled(self):
        readings = [reading(1.010, days_ago=0), reading(1.0105, days_ago=4)]
        assert detect_stall(readings) is True

    def test_readings_too_close_together(self):
        readings = [reading(1.010, days_ago=0), reading(1.0105, days_ago=1)]
        assert detect_stall(readings) is False

    def test_still_dropping(self):
        readings = [reading(1.010, days_ago=0), reading(1.020, days_ago=4)]
        assert detect_stall(readings) is False

    def test_disabled(self):
        readings = [reading(1.010, days_ago=0), reading(1.010, days_ago=5)]
        assert detect_stall(readings, StallSettings(enabled=False)) is False

    def test_single_reading(self):
        assert detect_stall([reading(1.010)]) is False


class TestTerminalConfirmation:
    def test_identical_readings_two_days_apart(self):
        readings = [reading(0.998, hours_ago=0), reading(0.998, hours_ago=48)]
        assert is_terminal_confirmed(readings) is True

    def test_identical_readings_too_close(self):
        readings = [reading(0.998, hours_ago=0), reading(0.998, hours_ago=24)]
        assert is_terminal_confirmed(readings) is False

    def test_estimates_do_not_count(self):
        readings = [reading(0.998, hours_ago=0), reading(0.998, hours_ago=72, method="calculated")]
        assert is_terminal_confirmed(readings) is False


class TestTemperatureCorrection:
    def test_at_calibration_temperature(self):
        assert correct_gravity_for_temperature(1.050, 15.56, 15.56) == pytest.approx(1.050)

    def test_warm_sample_reads_low(self):
        corrected = correct_gravity_for_temperature(1.050, 25.0, 15.56)
        assert corrected == pytest.approx(1.052, abs=5e-4)
        assert corrected > 1.050


class TestBlend:
    def test_volume_weighted(self):
        assert estimate_blend(1.010, 80, 1.020, 20) == pytest.approx(1.012)

    def test_missing_side_takes_other(self):
        assert estimate_blend(None, 80, 1.020, 20) == 1.020
        assert estimate_blend(3.4, 80, None, 20) == 3.4

    def test_both_missing(self):
        assert estimate_blend(None, 80, None, 20) is None


def test_sugar_projection():
    projection = project_sugar_addition(1.000, sugar_grams=2000, volume_liters=100)
    assert projection.gravity_increase == pytest.approx(0.0077, abs=1e-6)
    assert projection.specific_gravity == pytest.approx(1.0077, abs=1e-4)
    assert projection.abv == pytest.approx(1.01, abs=0.01)


def test_sugar_projection_uses_original_gravity():
    projection = project_sugar_addition(1.000, sugar_grams=2000, volume_liters=100, original_gravity=1.050)
    assert projection.abv == pytest.approx(calculate_abv(1.0577, 1.000), abs=0.01)


def test_sugar_projection_needs_volume():
    with pytest.raises(ValueError):
        project_sugar_addition(1.000, 100, 0)


def test_calculate_abv():
    assert calculate_abv(1.050, 1.000) == pytest.approx(6.56, abs=0.01)
    assert calculate_abv(1.000, 1.010) == 0


def test_target_fg_for_style():
    assert target_fg_for_style("Semi-Sweet", 0.998) == 1.012
    assert target_fg_for_style(None, 0.998) == 0.998
    assert target_fg_for_style("bone", 0.998) == 0.998


def test_next_measurement_due_follows_stage():
    last = NOW - timedelta(days=1)
    assert next_measurement_due(last, FermentationStage.terminal) == last + timedelta(days=14)
    assert next_measurement_due(None, FermentationStage.early, NOW) == NOW


class TestAnalysis:
    def test_missing_inputs(self):
        analysis = analyze_fermentation_progress(None, 1.020, 1.000, [], now=NOW)
        assert analysis.stage == FermentationStage.unknown
        assert analysis.next_measurement_due == NOW

    def test_terminal_needs_confirmation(self):
        readings = [reading(0.998, hours_ago=0), reading(1.002, days_ago=3)]
        analysis = analyze_fermentation_progress(1.050, 0.998, 0.998, readings, now=NOW)
        assert analysis.stage == FermentationStage.terminal
        assert analysis.is_terminal_confirmed is False
        assert "confirm" in analysis.recommended_action

    def test_stall_reported(self):
        readings = [reading(1.030, days_ago=0), reading(1.0305, days_ago=5)]
        analysis = analyze_fermentation_progress(1.050, 1.030, 1.000, readings, now=NOW)
        assert analysis.stage == FermentationStage.early
        assert analysis.is_stalled is True
        assert "stalled" in analysis.recommended_action
