"""
Footwear measurement conversion. Canonical unit is millimetres.
"""
import math

CONVERSION_RATES = {
    "mm_to_inch": 0.0393701,
    "inch_to_mm": 25.4,
    "cm_to_mm": 10,
    "mm_to_cm": 0.1,
}

UNIT_SYSTEMS = ("mm", "us", "eu", "cm", "inch")

SIZE_RUNS = {
    "US_MENS": [7, 7.5, 8, 8.5, 9, 9.5, 10, 10.5, 11, 11.5, 12, 13],
    "US_WOMENS": [5, 5.5, 6, 6.5, 7, 7.5, 8, 8.5, 9, 9.5, 10],
    "EU": [38, 39, 40, 41, 42, 43, 44, 45, 46, 47],
}

WIDTH_PROFILES = ["B (Narrow)", "D (Standard)", "2E (Wide)", "4E (Extra Wide)"]


def _round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def format_measurement(mm: float, target_unit: str) -> str:
    """Render a millimetre value for display in the given unit system"""
    if target_unit == "inch":
        return f"{mm * CONVERSION_RATES['mm_to_inch']:.2f}\""
    if target_unit == "cm":
        return f"{mm * CONVERSION_RATES['mm_to_cm']:.1f} cm"
    if target_unit == "us":
        # Approximate men's sizing, US 9 is about 262 mm
        us_size = (mm - 180) / 8.46 + 1
        return f"US {_format_number(_round_half_up(us_size * 2) / 2)}"
    if target_unit == "eu":
        eu_size = mm / 6.67 + 2
        return f"EU {int(_round_half_up(eu_size))}"
    return f"{int(_round_half_up(mm))} mm"


def to_canonical(value: float, source_unit: str) -> float:
    if source_unit == "inch":
        return value * CONVERSION_RATES["inch_to_mm"]
    if source_unit == "cm":
        return value * CONVERSION_RATES["cm_to_mm"]
    return value


def from_canonical(mm: float, target_unit: str) -> float:
    if target_unit == "inch":
        return mm / CONVERSION_RATES["inch_to_mm"]
    if target_unit == "cm":
        return mm / CONVERSION_RATES["cm_to_mm"]
    return mm
