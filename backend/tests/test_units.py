import pytest

from cellar.core.exceptions import UnitConversionError
from cellar.services.units import (
    convert, to_liters, from_liters, to_grams, normalize_unit, is_compatible, unit_family, UnitFamily,
)

pytestmark = pytest.mark.unit


def test_gallons_to_liters():
    assert to_liters(10, "gal") == pytest.approx(37.8541)


def test_liters_round_trip_through_gallons():
    assert from_liters(to_liters(5, "gal"), "gal") == pytest.approx(5)


def test_milliliters():
    assert to_liters(750, "mL") == pytest.approx(0.75)


def test_aliases_are_normalized():
    assert normalize_unit("liters") == "L"
    assert normalize_unit("Pounds") == "lb"
    assert normalize_unit(" kg ") == "kg"


def test_mass_conversion():
    assert to_grams(2, "lb") == pytest.approx(907.184)
    assert convert(1500, "g", "kg") == pytest.approx(1.5)


def test_cross_family_is_rejected():
    with pytest.raises(UnitConversionError):
        convert(1, "kg", "L")
    with pytest.raises(UnitConversionError):
        to_liters(1, "kg")
    with pytest.raises(UnitConversionError):
        to_grams(1, "L")


def test_unknown_unit_is_rejected():
    with pytest.raises(UnitConversionError):
        to_liters(1, "hogshead")


def test_families():
    assert unit_family("oz") == UnitFamily.mass
    assert unit_family("gal") == UnitFamily.volume
    assert is_compatible("g", "lb")
    assert not is_compatible("g", "L")
    assert not is_compatible("g", "bushel")
