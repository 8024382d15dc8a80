"""
Unit Conversion

Single conversion table keyed by unit family. Cross-family conversion
(mass <-> volume) is rejected instead of falling back to the raw value.
"""
import enum
from typing import Dict, Tuple

from cellar.core.exceptions import UnitConversionError


class UnitFamily(str, enum.Enum):
    mass = "mass"
    volume = "volume"


# Factors to the family base unit: grams for mass, liters for volume
MASS_UNITS: Dict[str, float] = {
    "g": 1.0,
    "kg": 1000.0,
    "lb": 453.592,
    "oz": 28.3495,
}

VOLUME_UNITS: Dict[str, float] = {
    "mL": 0.001,
    "L": 1.0,
    "gal": 3.78541,
}

GAL_TO_L = VOLUME_UNITS["gal"]
ML_TO_L = VOLUME_UNITS["mL"]
LB_TO_KG = MASS_UNITS["lb"] / 1000.0

_ALIASES = {
    "ml": "mL",
    "l": "L",
    "liter": "L",
    "liters": "L",
    "litre": "L",
    "gallon": "gal",
    "gallons": "gal",
    "gram": "g",
    "grams": "g",
    "kilogram": "kg",
    "kilograms": "kg",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    "ounce": "oz",
    "ounces": "oz",
}


def normalize_unit(unit: str) -> str:
    if unit in MASS_UNITS or unit in VOLUME_UNITS:
        return unit
    key = unit.strip()
    if key in MASS_UNITS or key in VOLUME_UNITS:
        return key
    alias = _ALIASES.get(key.lower())
    if alias is None:
        raise UnitConversionError(f"Unknown unit: {unit!r}")
    return alias


def unit_family(unit: str) -> UnitFamily:
    unit = normalize_unit(unit)
    if unit in MASS_UNITS:
        return UnitFamily.mass
    return UnitFamily.volume


def _factor(unit: str) -> Tuple[UnitFamily, float]:
    unit = normalize_unit(unit)
    if unit in MASS_UNITS:
        return UnitFamily.mass, MASS_UNITS[unit]
    return UnitFamily.volume, VOLUME_UNITS[unit]


def is_compatible(unit_a: str, unit_b: str) -> bool:
    try:
        return unit_family(unit_a) == unit_family(unit_b)
    except UnitConversionError:
        return False


def convert(amount: float, from_unit: str, to_unit: str) -> float:
    """Convert within one family. Raises UnitConversionError across families."""
    from_family, from_factor = _factor(from_unit)
    to_family, to_factor = _factor(to_unit)
    if from_family != to_family:
        raise UnitConversionError(
            f"Cannot convert {from_unit} ({from_family.value}) to {to_unit} ({to_family.value})"
        )
    return amount * from_factor / to_factor


def to_liters(amount: float, unit: str = "L") -> float:
    if unit_family(unit) != UnitFamily.volume:
        raise UnitConversionError(f"{unit} is not a volume unit")
    return convert(amount, unit, "L")


def from_liters(liters: float, unit: str = "L") -> float:
    if unit_family(unit) != UnitFamily.volume:
        raise UnitConversionError(f"{unit} is not a volume unit")
    return convert(liters, "L", unit)


def to_grams(amount: float, unit: str) -> float:
    if unit_family(unit) != UnitFamily.mass:
        raise UnitConversionError(f"{unit} is not a mass unit")
    return convert(amount, unit, "g")
