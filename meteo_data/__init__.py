"""
Data module for the Meteo client.

Station list and management, latest and historical sensor values, and the
reconciled parameter configuration of each station.

Architecture:
- Models: ParameterConfig/ParameterConfigSet and value validity rules
- Parameter Codes: Well-known codes and the legacy parameter mapping
- Geo: Location parsing and distance helpers
- Cache: TTL cache of latest sensor values
- Stations: StationRepository for the user's stations
- Parameters: ParameterConfigResolver with per-key single loading
- Repository: SensorDataRepository for latest values and history
- Service: MeteoService facade returning Success/Failure
"""

from .models import (
    ParameterConfig,
    ParameterConfigSet,
    LatestReading,
    FALLBACK_PARAMETERS,
    UNAVAILABLE_VALUE,
    is_valid_value,
    validate_station_number
)

from .parameter_codes import (
    LegacyParameter,
    LEGACY_PARAMETER_CODES,
    DEFAULT_PARAMETER_CODE,
    legacy_parameter_code
)

from .geo import (
    DEFAULT_COORDINATE,
    parse_location,
    is_valid_coordinate,
    flat_earth_distance_km
)

from .cache import SensorValueCache, CachedValue
from .stations import StationRepository
from .parameters import ParameterConfigResolver, CacheState
from .repository import SensorDataRepository
from .service import MeteoService

__all__ = [
    # Facade
    'MeteoService',

    # Repositories
    'StationRepository',
    'SensorDataRepository',
    'ParameterConfigResolver',
    'CacheState',

    # Cache
    'SensorValueCache',
    'CachedValue',

    # Models
    'ParameterConfig',
    'ParameterConfigSet',
    'LatestReading',
    'FALLBACK_PARAMETERS',
    'UNAVAILABLE_VALUE',
    'is_valid_value',
    'validate_station_number',

    # Parameter codes
    'LegacyParameter',
    'LEGACY_PARAMETER_CODES',
    'DEFAULT_PARAMETER_CODE',
    'legacy_parameter_code',

    # Geo
    'DEFAULT_COORDINATE',
    'parse_location',
    'is_valid_coordinate',
    'flat_earth_distance_km',
]

__version__ = '0.1.0'
__description__ = 'Stations, sensor data and parameter configuration for the Meteo client'
