"""
Well-known parameter codes.

The legacy UI enum (TEMPERATURE, HUMIDITY, PRESSURE) maps onto numeric API
codes in exactly one place: LEGACY_PARAMETER_CODES.
"""

from enum import Enum
from typing import Optional

TEMPERATURE_CODE = "4402"
HUMIDITY_CODE = "5402"
PRESSURE_CODE = "700"
WIND_SPEED_CODE = "WS"
WIND_DIRECTION_CODE = "WD"

DEFAULT_PARAMETER_CODE = TEMPERATURE_CODE

# Name fragments that mark a parameter as temperature-like (lower case)
TEMPERATURE_NAME_MARKERS = ("temperat", "температур")
TEMPERATURE_CODES = ("t", TEMPERATURE_CODE)


class LegacyParameter(str, Enum):
    """Parameters of the first client release."""
    TEMPERATURE = "TEMPERATURE"
    HUMIDITY = "HUMIDITY"
    PRESSURE = "PRESSURE"


LEGACY_PARAMETER_CODES = {
    LegacyParameter.TEMPERATURE: TEMPERATURE_CODE,
    LegacyParameter.HUMIDITY: HUMIDITY_CODE,
    LegacyParameter.PRESSURE: PRESSURE_CODE,
}


def to_legacy(parameter: LegacyParameter | str) -> Optional[LegacyParameter]:
    """LegacyParameter for an enum member or a case-insensitive name, or None."""
    if isinstance(parameter, LegacyParameter):
        return parameter
    try:
        return LegacyParameter(str(parameter).strip().upper())
    except ValueError:
        return None


def legacy_parameter_code(parameter: LegacyParameter | str) -> Optional[str]:
    """
    API code for a legacy parameter name.

    Args:
        parameter: LegacyParameter or its name, case-insensitive

    Returns:
        Parameter code, or None for unknown names
    """
    legacy = to_legacy(parameter)
    return LEGACY_PARAMETER_CODES[legacy] if legacy is not None else None


def is_temperature_like(code: str, name: str) -> bool:
    """Whether a parameter looks like air temperature by code or name."""
    if code.strip().lower() in TEMPERATURE_CODES:
        return True
    lowered = name.lower()
    return any(marker in lowered for marker in TEMPERATURE_NAME_MARKERS)


# Name fragments and short codes used to find a legacy parameter among a
# station's parameters (lower case)
LEGACY_MATCHERS = {
    LegacyParameter.TEMPERATURE: (TEMPERATURE_NAME_MARKERS, TEMPERATURE_CODES),
    LegacyParameter.HUMIDITY: (("humid", "влажн"), ("h", HUMIDITY_CODE)),
    LegacyParameter.PRESSURE: (("pressure", "давлен"), ("p", PRESSURE_CODE)),
}


def matches_legacy(parameter: LegacyParameter, code: str, name: str) -> bool:
    """Whether a station parameter corresponds to a legacy parameter."""
    name_markers, codes = LEGACY_MATCHERS[parameter]
    if code.strip().lower() in codes:
        return True
    lowered = name.lower()
    return any(marker in lowered for marker in name_markers)
