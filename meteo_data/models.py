"""
Pydantic models for parameter configuration and sensor readings.
"""

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from meteo_api.errors import ValidationError
from meteo_api.models import StationParameter

from .parameter_codes import (
    HUMIDITY_CODE,
    PRESSURE_CODE,
    TEMPERATURE_CODE,
    WIND_DIRECTION_CODE,
    WIND_SPEED_CODE,
    is_temperature_like,
)

STATION_NUMBER_PATTERN = re.compile(r"^\d{8}$")

# Marker for "no reading available"
UNAVAILABLE_VALUE = -1000.0


def is_valid_value(value: Optional[float]) -> bool:
    """A value is valid iff it is a finite number other than UNAVAILABLE_VALUE."""
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number != UNAVAILABLE_VALUE


def validate_station_number(station_number: str) -> str:
    """
    Check that a station number has exactly 8 digits.

    Args:
        station_number: Station number as entered or received

    Returns:
        The stripped station number

    Raises:
        ValidationError: If the number is not 8 digits
    """
    value = (station_number or "").strip()
    if not STATION_NUMBER_PATTERN.match(value):
        raise ValidationError(f"Station number must be exactly 8 digits, got '{station_number}'")
    return value


class ParameterConfig(BaseModel):
    """Display configuration of one measured parameter."""
    model_config = ConfigDict(frozen=True)

    code: str = Field(min_length=1, description="API parameter code (e.g. 4402, T)")
    name: str = Field(default="", description="Display name")
    unit: str = Field(default="", description="Measurement unit")
    description: str = Field(default="")
    category: str = Field(default="")
    display_order: int = Field(default=0, description="Order for UI display")
    is_default: bool = Field(default=False, description="Selected by default")

    @property
    def display_text(self) -> str:
        """Name and unit, e.g. 'Temperature (°C)'."""
        return f"{self.name} ({self.unit})" if self.unit else self.name

    @classmethod
    def from_station_parameter(cls, parameter: StationParameter, display_order: int) -> 'ParameterConfig':
        return cls(
            code=parameter.code,
            name=parameter.name or parameter.code,
            unit=parameter.unit,
            description=parameter.description,
            category=parameter.category,
            display_order=display_order,
            is_default=parameter.is_default
        )


def select_default_code(parameters: Sequence[ParameterConfig]) -> Optional[str]:
    """
    Choose the default parameter.

    Rule: an explicit default flag wins, then the first temperature-like
    parameter, then the first parameter.

    Args:
        parameters: Parameters in display order

    Returns:
        Code of the default parameter, or None for an empty list
    """
    for parameter in parameters:
        if parameter.is_default:
            return parameter.code

    for parameter in parameters:
        if is_temperature_like(parameter.code, parameter.name):
            return parameter.code

    return parameters[0].code if parameters else None


class ParameterConfigSet(BaseModel):
    """Ordered, code-unique parameter list of one station (or of all stations)."""
    model_config = ConfigDict(frozen=True)

    parameters: List[ParameterConfig] = Field(default_factory=list)
    default_parameter_code: Optional[str] = None

    @model_validator(mode='after')
    def check_consistency(self) -> 'ParameterConfigSet':
        codes = [p.code for p in self.parameters]
        if len(codes) != len(set(codes)):
            raise ValueError("Parameter codes must be unique")
        if self.default_parameter_code is not None and self.default_parameter_code not in codes:
            raise ValueError(f"Default parameter {self.default_parameter_code} is not in the set")
        return self

    @classmethod
    def from_parameters(cls, parameters: Sequence[ParameterConfig]) -> 'ParameterConfigSet':
        """Build a set and pick its default with select_default_code."""
        parameters = list(parameters)
        return cls(parameters=parameters, default_parameter_code=select_default_code(parameters))

    @classmethod
    def fallback(cls) -> 'ParameterConfigSet':
        """Parameters shown when the API is unavailable."""
        return cls.from_parameters(FALLBACK_PARAMETERS)

    @classmethod
    def empty(cls) -> 'ParameterConfigSet':
        return cls()

    @property
    def codes(self) -> List[str]:
        return [p.code for p in self.parameters]

    def get_by_code(self, code: str) -> Optional[ParameterConfig]:
        for parameter in self.parameters:
            if parameter.code == code:
                return parameter
        return None

    def get_default(self) -> Optional[ParameterConfig]:
        if self.default_parameter_code is not None:
            return self.get_by_code(self.default_parameter_code)
        return self.parameters[0] if self.parameters else None

    def has_parameter(self, code: str) -> bool:
        return self.get_by_code(code) is not None

    def by_category(self) -> Dict[str, List[ParameterConfig]]:
        grouped: Dict[str, List[ParameterConfig]] = {}
        for parameter in self.parameters:
            grouped.setdefault(parameter.category, []).append(parameter)
        return grouped

    def __len__(self) -> int:
        return len(self.parameters)


FALLBACK_PARAMETERS = (
    ParameterConfig(
        code=TEMPERATURE_CODE,
        name="Temperature",
        unit="°C",
        description="Air temperature",
        category="Meteorological",
        display_order=1,
        is_default=True
    ),
    ParameterConfig(
        code=HUMIDITY_CODE,
        name="Humidity",
        unit="%",
        description="Relative air humidity",
        category="Meteorological",
        display_order=2
    ),
    ParameterConfig(
        code=PRESSURE_CODE,
        name="Pressure",
        unit="hPa",
        description="Atmospheric pressure",
        category="Meteorological",
        display_order=3
    ),
    ParameterConfig(
        code=WIND_SPEED_CODE,
        name="Wind speed",
        unit="m/s",
        description="Wind speed",
        category="Wind",
        display_order=4
    ),
    ParameterConfig(
        code=WIND_DIRECTION_CODE,
        name="Wind direction",
        unit="°",
        description="Wind direction",
        category="Wind",
        display_order=5
    ),
)


@dataclass(frozen=True)
class LatestReading:
    """Latest value of a parameter, with its age."""
    value: float
    captured_at: Optional[float] = None
    is_stale: bool = False

    @property
    def is_available(self) -> bool:
        return is_valid_value(self.value)
