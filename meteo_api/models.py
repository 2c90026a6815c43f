"""
Pydantic models for the Meteo API v1 wire format.

Every endpoint except ``/auth/refresh`` and the parameter history endpoint wraps
its payload in a ``{"success": ..., "data": ...}`` envelope (ApiResponse).
"""

from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Standard response envelope."""
    success: bool = Field(description="Whether the server accepted the request")
    data: Optional[T] = Field(default=None, description="Endpoint payload")
    error: Optional[str] = Field(default=None, description="Server error text when success is false")


# ===================== AUTH =====================

class AuthTokens(BaseModel):
    """Tokens issued by login and register."""
    user_id: str = Field(description="Server-side user identifier")
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator('user_id', mode='before')
    @classmethod
    def coerce_user_id(cls, v: Any) -> str:
        """The server sends an integer id; it is kept as an opaque string."""
        return str(v)


class RefreshTokenResponse(BaseModel):
    """Response of /auth/refresh. Not wrapped in the standard envelope."""
    success: bool
    access_token: Optional[str] = None


class UserInfo(BaseModel):
    """Current user as returned by /auth/me."""
    id: str
    username: str
    email: str = ""
    role: str = "user"
    is_active: bool = True

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


# ===================== STATIONS =====================

class StationParameter(BaseModel):
    """Parameter metadata of one station, including per-user visibility."""
    code: str = Field(min_length=1, description="Parameter code, e.g. 4402 or T")
    name: str = Field(default="", description="Display name")
    unit: str = Field(default="", description="Measurement unit")
    description: str = Field(default="")
    category: str = Field(default="")
    is_visible: bool = Field(default=True, description="Visible for the current user")
    display_order: Optional[int] = Field(default=None)
    is_default: bool = Field(default=False)

    @field_validator('name', 'unit', 'description', 'category', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class StationInfo(BaseModel):
    """A weather station linked to the current user."""
    id: Optional[int] = None
    station_number: str = Field(default="", description="8-digit station number, empty when missing")
    name: str = Field(default="")
    custom_name: Optional[str] = None
    display_name: str = Field(default="", description="custom_name or name")
    location: str = Field(default="", description="Free-form location, may hold 'lat,lon'")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    is_favorite: bool = False
    is_active: bool = True
    parameters: List[StationParameter] = Field(default_factory=list)

    @field_validator('station_number', mode='before')
    @classmethod
    def coerce_station_number(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator('name', 'location', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator('latitude')
    @classmethod
    def drop_invalid_latitude(cls, v: Optional[float]) -> Optional[float]:
        """Out-of-range latitudes are treated as missing."""
        if v is not None and not -90.0 <= v <= 90.0:
            return None
        return v

    @field_validator('longitude')
    @classmethod
    def drop_invalid_longitude(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not -180.0 <= v <= 180.0:
            return None
        return v

    @field_validator('parameters', mode='before')
    @classmethod
    def accept_code_lists(cls, v: Any) -> Any:
        """Older servers send a plain list of parameter codes."""
        if v is None:
            return []
        return [{"code": item} if isinstance(item, str) else item for item in v]

    @model_validator(mode='after')
    def fill_display_name(self) -> 'StationInfo':
        if not self.display_name:
            self.display_name = self.custom_name or self.name or self.station_number
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class AddStationResponse(BaseModel):
    """Response of POST /stations."""
    user_station_id: Optional[int] = None
    station_number: str
    name: str = ""
    parameters: List[Any] = Field(default_factory=list)

    @field_validator('station_number', mode='before')
    @classmethod
    def coerce_station_number(cls, v: Any) -> str:
        return str(v)


class BulkVisibilityResult(BaseModel):
    """Response of the bulk parameter visibility update."""
    success: bool = True
    updated: int = Field(ge=0)
    total: int = Field(ge=0)


# ===================== SENSOR DATA =====================

class ParameterValue(BaseModel):
    """Latest value of one parameter at a station."""
    code: str
    name: str = ""
    value: Optional[float] = None
    unit: str = ""
    category: str = ""

    @field_validator('name', 'unit', 'category', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class StationLatestData(BaseModel):
    """Latest values of all parameters at a station."""
    station_number: str
    custom_name: Optional[str] = None
    is_favorite: bool = False
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    parameters: List[ParameterValue] = Field(default_factory=list)
    timestamp: Optional[datetime] = None

    @field_validator('station_number', mode='before')
    @classmethod
    def coerce_station_number(cls, v: Any) -> str:
        return str(v)

    def value_of(self, parameter_code: str) -> Optional[float]:
        """Value of a parameter, or None if the station did not report it."""
        for parameter in self.parameters:
            if parameter.code == parameter_code:
                return parameter.value
        return None


class HistoryPoint(BaseModel):
    """One point of a parameter history (unix seconds)."""
    time: int
    value: float


class HistoryParameter(BaseModel):
    code: str
    name: str = ""
    unit: str = ""
    category: str = ""


class ParameterHistory(BaseModel):
    """Response of the history endpoint. Not wrapped in the standard envelope."""
    success: bool
    station_number: Optional[str] = None
    parameter: Optional[HistoryParameter] = None
    data: List[HistoryPoint] = Field(default_factory=list)
    count: int = 0

    @field_validator('station_number', mode='before')
    @classmethod
    def coerce_station_number(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class SensorDataPoint(BaseModel):
    """A single (timestamp, value) sample handed to callers."""
    timestamp: datetime = Field(description="UTC timestamp of the sample")
    value: float = Field(description="Sensor value")

    @classmethod
    def from_history(cls, point: HistoryPoint) -> 'SensorDataPoint':
        return cls(
            timestamp=datetime.fromtimestamp(point.time, tz=timezone.utc),
            value=point.value
        )

    @property
    def time(self) -> int:
        """Unix seconds."""
        return int(self.timestamp.timestamp())
