"""
Station repository: the user's station list and station management.
"""

import logging
import threading
from typing import List, Mapping, Optional, Tuple

from meteo_api.api_client import MeteoAPIClient
from meteo_api.errors import MeteoError, OperationCancelled, ValidationError
from meteo_api.models import StationInfo, StationParameter
from meteo_api.retry import OperationType, RetryExecutor, RetryPolicies
from meteo_auth.session import AuthSessionManager

from .geo import flat_earth_distance_km, in_bounds, parse_location
from .models import validate_station_number

logger = logging.getLogger(__name__)


def demo_stations() -> List[StationInfo]:
    """Stations shown in development mode when the station list cannot be loaded."""
    return [
        StationInfo(
            station_number="60000105",
            name="60000105",
            custom_name="Demo 105",
            location="56.460850,84.962327",
            latitude=56.460850,
            longitude=84.962327
        ),
        StationInfo(
            station_number="60000104",
            name="60000104",
            custom_name="Demo 104",
            location="56.460039,84.962282",
            latitude=56.460039,
            longitude=84.962282
        ),
        StationInfo(
            station_number="50000022",
            name="50000022",
            custom_name="Demo 022",
            location="56.460337,84.961591",
            latitude=56.460337,
            longitude=84.961591
        ),
    ]


def normalize_station(station: StationInfo) -> Optional[StationInfo]:
    """
    Make a station usable for map placement.

    Args:
        station: Station as received from the API

    Returns:
        Station with coordinates, or None if it has no number or no location at all
    """
    if not station.station_number:
        logger.warning("Skipped station without station number: %r", station.name)
        return None

    if station.has_coordinates:
        return station

    if not station.location:
        logger.warning("Skipped station %s without location", station.station_number)
        return None

    latitude, longitude = parse_location(station.location)
    return station.model_copy(update={'latitude': latitude, 'longitude': longitude})


class StationRepository:
    """
    Stations linked to the current user.

    The list is fetched once and kept for the process lifetime; the lock is
    held during the fetch so concurrent callers share a single network call.
    Any mutation invalidates the list.
    """

    def __init__(
        self,
        client: MeteoAPIClient,
        auth: AuthSessionManager,
        executor: Optional[RetryExecutor] = None,
        policies: Optional[RetryPolicies] = None,
        debug: bool = False
    ):
        """
        Initialize station repository.

        Args:
            client: API client
            auth: Session manager providing authorized calls
            executor: Retry executor
            policies: Retry policy registry
            debug: Substitute demo stations when loading fails
        """
        self._client = client
        self._auth = auth
        self._executor = executor or RetryExecutor()
        self._policies = policies or RetryPolicies()
        self._debug = debug

        self._stations: Optional[List[StationInfo]] = None
        self._lock = threading.RLock()

    # ===================== STATION LIST =====================

    def get_user_stations(self, cancel_event: Optional[threading.Event] = None) -> List[StationInfo]:
        """
        Get the user's stations, loading them on first use.

        In debug mode a failed load returns demo stations. Those are not
        cached, so the next call tries the server again.

        Returns:
            Stations with coordinates

        Raises:
            MeteoError: If loading fails (outside debug mode)
        """
        with self._lock:
            if self._stations is None:
                try:
                    self._stations = self._load_stations(cancel_event)
                except OperationCancelled:
                    raise
                except MeteoError as e:
                    if not self._debug:
                        raise
                    logger.warning("Could not load stations (%s), using demo stations", e.code)
                    return demo_stations()
            return list(self._stations)

    def _load_stations(self, cancel_event: Optional[threading.Event]) -> List[StationInfo]:
        policy = self._policies.policy_for(OperationType.STATION_DATA)
        received = self._executor.execute_or_raise(
            policy,
            lambda attempt: self._auth.authorized(self._client.get_stations),
            cancel_event=cancel_event,
            name="get_user_stations"
        )

        stations = [s for s in (normalize_station(station) for station in received) if s is not None]
        logger.info("Loaded %d stations (%d dropped)", len(stations), len(received) - len(stations))
        return stations

    def refresh_stations(self, cancel_event: Optional[threading.Event] = None) -> List[StationInfo]:
        """Discard the cached list and load it again."""
        self.invalidate()
        return self.get_user_stations(cancel_event)

    def invalidate(self) -> None:
        with self._lock:
            self._stations = None

    def get_station(self, station_number: str) -> Optional[StationInfo]:
        for station in self.get_user_stations():
            if station.station_number == station_number:
                return station
        return None

    def is_station_accessible(self, station_number: str) -> bool:
        """Whether the station is linked to the user. False if the list cannot be loaded."""
        try:
            return self.get_station(station_number) is not None
        except MeteoError as e:
            logger.warning("Could not check access to station %s: %s", station_number, e.code)
            return False

    def search_stations(self, query: str) -> List[StationInfo]:
        """Stations whose number, name, custom name or location contains the query."""
        needle = query.strip().lower()
        if not needle:
            return self.get_user_stations()

        return [
            station for station in self.get_user_stations()
            if needle in station.station_number.lower()
            or needle in station.name.lower()
            or needle in (station.custom_name or "").lower()
            or needle in station.location.lower()
        ]

    def get_stations_in_bounds(
        self,
        north: float,
        south: float,
        east: float,
        west: float
    ) -> List[StationInfo]:
        """
        Stations inside a bounding box (inclusive).

        Args:
            north: Northern latitude
            south: Southern latitude
            east: Eastern longitude
            west: Western longitude
        """
        return [
            station for station in self.get_user_stations()
            if in_bounds(station.latitude, station.longitude, north, south, east, west)
        ]

    def get_nearest_station(
        self,
        latitude: float,
        longitude: float,
        max_distance_km: float
    ) -> Optional[StationInfo]:
        """
        Closest station within a radius.

        Returns:
            Nearest station, or None if none is within max_distance_km
        """
        nearest: Optional[StationInfo] = None
        min_distance = float('inf')

        for station in self.get_user_stations():
            distance = flat_earth_distance_km(latitude, longitude, station.latitude, station.longitude)
            if distance <= max_distance_km and distance < min_distance:
                nearest = station
                min_distance = distance

        return nearest

    # ===================== PARAMETERS =====================

    def get_cached_station_parameters(self, station_number: str) -> List[StationParameter]:
        """Parameters embedded in the station list, without an extra request."""
        station = self.get_station(station_number)
        return list(station.parameters) if station else []

    def fetch_station_parameters(
        self,
        station_number: str,
        cancel_event: Optional[threading.Event] = None
    ) -> List[StationParameter]:
        """
        Load parameter metadata and visibility from /stations/{num}/parameters.

        Raises:
            MeteoError: If the request fails after retries
        """
        policy = self._policies.policy_for(OperationType.PARAMETER_METADATA)
        return self._executor.execute_or_raise(
            policy,
            lambda attempt: self._auth.authorized(
                lambda header: self._client.get_station_parameters(header, station_number)
            ),
            cancel_event=cancel_event,
            name=f"get_station_parameters({station_number})"
        )

    # ===================== MANAGEMENT =====================

    def add_station(self, station_number: str, custom_name: Optional[str] = None) -> StationInfo:
        """
        Link a station to the user.

        Raises:
            ValidationError: Station number is not 8 digits
        """
        station_number = validate_station_number(station_number)
        response = self._auth.authorized(
            lambda header: self._client.add_station(header, station_number, custom_name)
        )
        self.invalidate()
        logger.info("Station %s added", station_number)
        return StationInfo(
            station_number=response.station_number,
            name=response.name,
            custom_name=custom_name
        )

    def remove_station(self, station_number: str) -> None:
        station_number = validate_station_number(station_number)
        self._auth.authorized(lambda header: self._client.remove_station(header, station_number))
        self.invalidate()
        logger.info("Station %s removed", station_number)

    def update_station(
        self,
        station_number: str,
        custom_name: Optional[str] = None,
        is_favorite: Optional[bool] = None
    ) -> None:
        """Change the custom name and/or favorite flag of a station."""
        station_number = validate_station_number(station_number)
        self._auth.authorized(
            lambda header: self._client.update_station(
                header, station_number, custom_name=custom_name, is_favorite=is_favorite
            )
        )
        self.invalidate()

    def toggle_favorite(self, station_number: str) -> bool:
        """
        Flip the favorite flag of a station.

        Returns:
            The new flag value

        Raises:
            ValidationError: Unknown station
        """
        with self._lock:
            station = self.get_station(station_number)
            if station is None:
                raise ValidationError(f"Station {station_number} is not linked to this account")
            new_value = not station.is_favorite
            self.update_station(station_number, is_favorite=new_value)
            return new_value

    def update_parameter_visibility(self, station_number: str, parameter_code: str, is_visible: bool) -> None:
        station_number = validate_station_number(station_number)
        self._auth.authorized(
            lambda header: self._client.update_parameter_visibility(
                header, station_number, parameter_code, is_visible
            )
        )
        self.invalidate()

    def update_parameters_visibility(
        self,
        station_number: str,
        updates: Mapping[str, bool]
    ) -> Tuple[int, int]:
        """
        Change visibility of several parameters.

        Returns:
            (updated, total) as reported by the server
        """
        station_number = validate_station_number(station_number)
        if not updates:
            return (0, 0)

        result = self._auth.authorized(
            lambda header: self._client.update_parameters_visibility(header, station_number, updates)
        )
        self.invalidate()
        logger.info("Bulk visibility update for %s: %d of %d", station_number, result.updated, result.total)
        return (result.updated, result.total)
