# Overview: Property value parsing and unit normalization for catalog search.

"""
Unit normalization for product properties.

Pricebook property values arrive as free text in mixed unit systems
("1-1/2\"", "3/4 in", "25mm", "2 ft", 12). normalize() parses the value and
converts it to the base unit of its measurement type so products can be
filtered across unit systems:

    length -> mm, area -> sq_m, volume -> l, weight -> kg,
    temperature -> c, time -> s, count -> ea

Everything here is pure: no DB access, no app context.
"""

from __future__ import annotations

import re
from typing import Optional


BASE_UNITS = {
    "length": "mm",
    "area": "sq_m",
    "volume": "l",
    "weight": "kg",
    "temperature": "c",
    "time": "s",
    "count": "ea",
}

# Multiply by factor to get the base unit
CONVERSION_TO_BASE = {
    # length
    "in": 25.4,
    "ft": 304.8,
    "yd": 914.4,
    "mi": 1609344.0,
    "mm": 1.0,
    "cm": 10.0,
    "m": 1000.0,
    "km": 1000000.0,
    # area
    "sq_ft": 0.092903,
    "sq_in": 0.00064516,
    "sq_yd": 0.836127,
    "sq_m": 1.0,
    "sq_km": 1000000.0,
    # volume
    "gal": 3.78541,
    "qt": 0.946353,
    "pt": 0.473176,
    "fl_oz": 0.0295735,
    "l": 1.0,
    "ml": 0.001,
    # weight
    "lb": 0.453592,
    "oz": 0.0283495,
    "kg": 1.0,
    "g": 0.001,
    "ton": 907.185,
    # time
    "s": 1.0,
    "min": 60.0,
    "hr": 3600.0,
    "day": 86400.0,
    # count
    "ea": 1.0,
    "pcs": 1.0,
    "ct": 1.0,
}

UNIT_TYPES = {
    **{u: "length" for u in ("in", "ft", "yd", "mi", "mm", "cm", "m", "km")},
    **{u: "area" for u in ("sq_ft", "sq_in", "sq_yd", "sq_m", "sq_km")},
    **{u: "volume" for u in ("gal", "qt", "pt", "fl_oz", "l", "ml")},
    **{u: "weight" for u in ("lb", "oz", "kg", "g", "ton")},
    **{u: "time" for u in ("s", "min", "hr", "day")},
    **{u: "count" for u in ("ea", "pcs", "ct")},
    "f": "temperature",
    "c": "temperature",
}

UNIT_ALIASES = {
    '"': "in",
    "''": "in",
    "inch": "in",
    "inches": "in",
    "'": "ft",
    "foot": "ft",
    "feet": "ft",
    "yard": "yd",
    "yards": "yd",
    "millimeter": "mm",
    "millimeters": "mm",
    "centimeter": "cm",
    "centimeters": "cm",
    "meter": "m",
    "meters": "m",
    "sq ft": "sq_ft",
    "sqft": "sq_ft",
    "square feet": "sq_ft",
    "sq in": "sq_in",
    "sq yd": "sq_yd",
    "sq m": "sq_m",
    "square meters": "sq_m",
    "gallon": "gal",
    "gallons": "gal",
    "quart": "qt",
    "quarts": "qt",
    "fl oz": "fl_oz",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    "ounce": "oz",
    "ounces": "oz",
    "kilogram": "kg",
    "kilograms": "kg",
    "gram": "g",
    "grams": "g",
    "tons": "ton",
    "°f": "f",
    "fahrenheit": "f",
    "°c": "c",
    "celsius": "c",
    "sec": "s",
    "seconds": "s",
    "minutes": "min",
    "hour": "hr",
    "hours": "hr",
    "days": "day",
    "each": "ea",
    "pc": "pcs",
}

# Fallback when no PropertyDefinition or unit says what a key measures
_KEY_PATTERNS = (
    ("temperature", ("temperature", "temp")),
    ("weight", ("weight", "mass")),
    ("area", ("area", "sq_")),
    ("volume", ("volume", "capacity")),
    ("time", ("duration", "cure_time", "time")),
    ("length", ("dimension", "width", "height", "length", "thickness", "diameter", "size", "depth")),
    ("count", ("count", "qty_per", "pieces")),
)

_FEET_INCHES = re.compile(r"^(\d+(?:\.\d+)?)\s*'\s*-?\s*(.+?)\s*(?:\"|in)?$")
_MIXED = re.compile(r"^(-?\d+)[\s-]+(\d+)\s*/\s*(\d+)")
_FRACTION = re.compile(r"^(-?\d+)\s*/\s*(\d+)")
_DECIMAL = re.compile(r"^(-?(?:\d+(?:\.\d*)?|\.\d+))")


def unit_code(raw: Optional[str]) -> Optional[str]:
    """Canonical unit code for a unit string, or None when unknown."""
    if raw is None:
        return None
    s = str(raw).strip().lower()
    if not s:
        return None
    s = UNIT_ALIASES.get(s, s)
    if s in UNIT_TYPES:
        return s
    return None


def measurement_type_for_key(key: str) -> str:
    k = (key or "").lower()
    for mtype, needles in _KEY_PATTERNS:
        if any(n in k for n in needles):
            return mtype
    return "other"


def _parse_leading_number(s: str) -> tuple[Optional[float], str]:
    m = _MIXED.match(s)
    if m:
        whole, num, den = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if den == 0:
            return None, s
        frac = num / den
        value = whole - frac if whole < 0 else whole + frac
        return value, s[m.end():]
    m = _FRACTION.match(s)
    if m:
        num, den = int(m.group(1)), int(m.group(2))
        if den == 0:
            return None, s
        return num / den, s[m.end():]
    m = _DECIMAL.match(s)
    if m:
        return float(m.group(1)), s[m.end():]
    return None, s


def parse_quantity(value) -> tuple[Optional[float], Optional[str]]:
    """
    Split a raw property value into (number, unit code).

    Handles plain numbers, decimals, fractions, mixed numbers ("1-1/2", "1 1/2"),
    inch/foot marks and feet-inches ("2' 6\""). Unknown unit text yields a None
    unit; an unparseable value yields (None, None).
    """
    if value is None or isinstance(value, bool):
        return None, None
    if isinstance(value, (int, float)):
        return float(value), None

    s = str(value).strip().lower()
    if not s:
        return None, None

    m = _FEET_INCHES.match(s)
    if m:
        inches, rest = _parse_leading_number(m.group(2).strip())
        if inches is not None and not rest.strip().strip('"'):
            return float(m.group(1)) * 12 + inches, "in"

    number, rest = _parse_leading_number(s)
    if number is None:
        return None, None
    return number, unit_code(rest)


def to_base(value: float, unit: Optional[str]) -> Optional[float]:
    """Convert value in unit to its measurement type's base unit."""
    if unit is None:
        return value
    if unit == "f":
        return (value - 32) * 5 / 9
    if unit == "c":
        return value
    factor = CONVERSION_TO_BASE.get(unit)
    if factor is None:
        return None
    return value * factor


def from_base(value: float, unit: str) -> Optional[float]:
    if unit == "f":
        return value * 9 / 5 + 32
    if unit == "c":
        return value
    factor = CONVERSION_TO_BASE.get(unit)
    if not factor:
        return None
    return value / factor


def convert(value: float, from_unit: str, to_unit: str) -> Optional[float]:
    """Convert between two units of the same measurement type; None if they differ."""
    src, dst = unit_code(from_unit), unit_code(to_unit)
    if src is None or dst is None or UNIT_TYPES[src] != UNIT_TYPES[dst]:
        return None
    base = to_base(value, src)
    if base is None:
        return None
    return from_base(base, dst)


def normalize(key: str, value, definition=None) -> tuple[Optional[float], Optional[str]]:
    """
    Normalize one property value.

    Returns (value in base unit, unit code the value was expressed in).
    The unit comes from the value text when it carries one, else from the
    PropertyDefinition's default unit. Values with no unit at all come back
    as plain numbers with a None unit. Never raises.

    definition: optional PropertyDefinition (or any object with unit and
    measurement_type attributes).
    """
    number, unit = parse_quantity(value)
    if number is None:
        return None, None

    if unit is None and definition is not None:
        unit = unit_code(getattr(definition, "unit", None))

    if unit is None:
        return number, None

    mtype = UNIT_TYPES[unit]
    declared = getattr(definition, "measurement_type", None) if definition is not None else None
    expected = declared if declared and declared != "other" else measurement_type_for_key(key)
    if expected != "other" and expected != mtype:
        # "2 ft" on a weight property: keep the number, drop the conversion
        return number, None

    return to_base(number, unit), unit
