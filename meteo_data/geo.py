"""
Coordinate helpers for station placement.
"""

import logging
import math
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Used when a station's location cannot be parsed
DEFAULT_COORDINATE = (56.460337, 84.961591)

KM_PER_DEGREE = 111.0


def is_valid_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    """Whether latitude is in [-90, 90] and longitude in [-180, 180]."""
    if latitude is None or longitude is None:
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def parse_location(location: Optional[str]) -> Tuple[float, float]:
    """
    Parse a "lat,lon" string.

    Args:
        location: Location string, e.g. "56.46,84.96"

    Returns:
        (latitude, longitude); DEFAULT_COORDINATE when the string is empty,
        malformed or out of range
    """
    if not location:
        return DEFAULT_COORDINATE

    parts = [part.strip() for part in location.split(',')]
    if len(parts) != 2:
        logger.debug("Cannot parse location '%s', using default coordinate", location)
        return DEFAULT_COORDINATE

    try:
        latitude, longitude = float(parts[0]), float(parts[1])
    except ValueError:
        logger.debug("Cannot parse location '%s', using default coordinate", location)
        return DEFAULT_COORDINATE

    if not is_valid_coordinate(latitude, longitude):
        logger.debug("Location '%s' is out of range, using default coordinate", location)
        return DEFAULT_COORDINATE

    return latitude, longitude


def flat_earth_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Approximate distance between two points.

    Treats a degree of latitude as 111 km and scales longitude by the cosine
    of the mean latitude. Accurate enough for nearby stations.
    """
    mean_latitude = math.radians((lat1 + lat2) / 2.0)
    dy = (lat2 - lat1) * KM_PER_DEGREE
    dx = (lon2 - lon1) * KM_PER_DEGREE * math.cos(mean_latitude)
    return math.sqrt(dx * dx + dy * dy)


def in_bounds(latitude: float, longitude: float, north: float, south: float, east: float, west: float) -> bool:
    """Inclusive bounding-box test."""
    return south <= latitude <= north and west <= longitude <= east
