"""
Facade between the UI layer and the Meteo data-access components.
Every public call returns Success or Failure and never raises.
"""

import logging
import threading
import time
from typing import Callable, Mapping, Optional, Sequence

from meteo_api.api_client import MeteoAPIClient
from meteo_api.config import MeteoConfig
from meteo_api.results import MeteoResult, catching
from meteo_api.retry import RetryExecutor, RetryPolicies
from meteo_api.state import AuthStatus, ObservableState, OperationStatus
from meteo_auth.session import AuthSessionManager
from meteo_auth.storage import SecureStorage, create_storage
from meteo_auth.token_store import AuthTokenStore

from .cache import SensorValueCache
from .parameter_codes import LegacyParameter
from .parameters import ParameterConfigResolver
from .repository import SensorDataRepository, TimeInput
from .stations import StationRepository

logger = logging.getLogger(__name__)


class MeteoService:
    """
    Entry point for the UI layer.

    Wraps the session manager, the station and sensor repositories and the
    parameter resolver. Exceptions are converted into Failure values;
    ``auth_status`` and ``config_status`` expose loading flags and the last
    error for binding.
    """

    def __init__(
        self,
        auth: AuthSessionManager,
        stations: StationRepository,
        parameters: ParameterConfigResolver,
        sensors: SensorDataRepository,
        client: Optional[MeteoAPIClient] = None
    ):
        """
        Initialize service from already constructed components.

        Args:
            auth: Session manager
            stations: Station repository
            parameters: Parameter configuration resolver
            sensors: Sensor data repository
            client: API client closed by ``close()``
        """
        self.auth = auth
        self.stations = stations
        self.parameters = parameters
        self.sensors = sensors
        self._client = client

        self.config_status: ObservableState[OperationStatus] = ObservableState(OperationStatus())

    @classmethod
    def from_config(
        cls,
        config: MeteoConfig,
        storage: Optional[SecureStorage] = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> 'MeteoService':
        """
        Build the whole component graph from configuration.

        Args:
            config: Client configuration
            storage: Session storage (default: from ``config.storage``)
            sleep: Backoff sleep function of the retry executor

        Returns:
            MeteoService instance
        """
        client = MeteoAPIClient.from_config(config)
        if storage is None:
            storage = create_storage(config.storage.backend, config.storage.path)

        executor = RetryExecutor(sleep=sleep)
        policies = RetryPolicies(overrides=config.retry)

        auth = AuthSessionManager(client, AuthTokenStore(storage), executor, policies)
        stations = StationRepository(client, auth, executor, policies, debug=config.debug)
        parameters = ParameterConfigResolver(stations, ttl_seconds=config.cache.parameter_config_ttl_seconds)
        cache = SensorValueCache(ttl_seconds=config.cache.sensor_value_ttl_seconds)
        sensors = SensorDataRepository(client, auth, cache, stations, executor, policies)

        logger.info("Meteo service initialized for %s", config.api.base_url)
        return cls(auth, stations, parameters, sensors, client=client)

    @property
    def auth_status(self) -> ObservableState[AuthStatus]:
        return self.auth.status

    # ===================== AUTH =====================

    def login(self, username: str, password: str, cancel_event: Optional[threading.Event] = None) -> MeteoResult:
        """
        Log in.

        Returns:
            Success(Session) or Failure with an auth, network or validation error
        """
        return catching(lambda: self.auth.login(username, password, cancel_event), "login")

    def register(
        self,
        username: str,
        password: str,
        email: str,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        return catching(lambda: self.auth.register(username, password, email, cancel_event), "register")

    def logout(self) -> MeteoResult:
        """End the session and drop every cached value of the previous user."""
        def action() -> None:
            self.auth.logout()
            self._reset_caches()

        return catching(action, "logout")

    def force_logout(self) -> None:
        self.auth.force_logout()
        self._reset_caches()

    def refresh_session(self, cancel_event: Optional[threading.Event] = None) -> MeteoResult:
        """Success(True) if the access token was replaced; Success(False) if the session ended."""
        return catching(lambda: self.auth.refresh_access_token(cancel_event), "refresh_session")

    def current_user(self) -> MeteoResult:
        return catching(self.auth.fetch_current_user, "current_user")

    def is_logged_in(self) -> bool:
        return self.auth.is_logged_in()

    def _reset_caches(self) -> None:
        self.stations.invalidate()
        self.parameters.clear()
        self.sensors.cache.clear()

    # ===================== STATIONS =====================

    def get_user_stations(self, cancel_event: Optional[threading.Event] = None) -> MeteoResult:
        return catching(lambda: self.stations.get_user_stations(cancel_event), "get_user_stations")

    def refresh_stations(self, cancel_event: Optional[threading.Event] = None) -> MeteoResult:
        return catching(lambda: self.stations.refresh_stations(cancel_event), "refresh_stations")

    def get_station(self, station_number: str) -> MeteoResult:
        return catching(lambda: self.stations.get_station(station_number), "get_station")

    def search_stations(self, query: str) -> MeteoResult:
        return catching(lambda: self.stations.search_stations(query), "search_stations")

    def get_stations_in_bounds(self, north: float, south: float, east: float, west: float) -> MeteoResult:
        return catching(
            lambda: self.stations.get_stations_in_bounds(north, south, east, west),
            "get_stations_in_bounds"
        )

    def get_nearest_station(self, latitude: float, longitude: float, max_distance_km: float) -> MeteoResult:
        return catching(
            lambda: self.stations.get_nearest_station(latitude, longitude, max_distance_km),
            "get_nearest_station"
        )

    def add_station(self, station_number: str, custom_name: Optional[str] = None) -> MeteoResult:
        return catching(lambda: self.stations.add_station(station_number, custom_name), "add_station")

    def remove_station(self, station_number: str) -> MeteoResult:
        """Unlink a station and forget its cached values and parameters."""
        def action() -> None:
            self.stations.remove_station(station_number)
            self.sensors.cache.remove_station(station_number)
            self.parameters.refresh(station_number)

        return catching(action, "remove_station")

    def update_station(
        self,
        station_number: str,
        custom_name: Optional[str] = None,
        is_favorite: Optional[bool] = None
    ) -> MeteoResult:
        return catching(
            lambda: self.stations.update_station(station_number, custom_name, is_favorite),
            "update_station"
        )

    def toggle_favorite(self, station_number: str) -> MeteoResult:
        return catching(lambda: self.stations.toggle_favorite(station_number), "toggle_favorite")

    # ===================== PARAMETERS =====================

    def _configuration(self, action: Callable, operation: str) -> MeteoResult:
        def tracked():
            with self.config_status.loading():
                return action()

        return catching(tracked, operation)

    def get_station_parameter_config(
        self,
        station_number: str,
        locale: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        """Success(ParameterConfigSet); the fallback set when nothing could be loaded."""
        return self._configuration(
            lambda: self.parameters.get_station_parameter_config(station_number, locale, cancel_event),
            "get_station_parameter_config"
        )

    def get_global_parameter_config(self, locale: Optional[str] = None) -> MeteoResult:
        return self._configuration(
            lambda: self.parameters.get_global_parameter_config(locale),
            "get_global_parameter_config"
        )

    def get_parameter_config(self, parameter_code: str, locale: Optional[str] = None) -> MeteoResult:
        return catching(lambda: self.parameters.get_parameter_config(parameter_code, locale), "get_parameter_config")

    def get_parameters_by_category(self, station_number: Optional[str] = None) -> MeteoResult:
        return catching(
            lambda: self.parameters.get_parameters_by_category(station_number),
            "get_parameters_by_category"
        )

    def legacy_parameter_code(self, station_number: str, legacy: LegacyParameter | str) -> MeteoResult:
        return catching(
            lambda: self.parameters.legacy_parameter_code(station_number, legacy),
            "legacy_parameter_code"
        )

    def update_parameter_visibility(self, station_number: str, parameter_code: str, is_visible: bool) -> MeteoResult:
        def action() -> None:
            self.stations.update_parameter_visibility(station_number, parameter_code, is_visible)
            self.parameters.refresh(station_number)

        return catching(action, "update_parameter_visibility")

    def update_parameters_visibility(self, station_number: str, updates: Mapping[str, bool]) -> MeteoResult:
        """Success((updated, total)) as reported by the server."""
        def action():
            result = self.stations.update_parameters_visibility(station_number, updates)
            self.parameters.refresh(station_number)
            return result

        return catching(action, "update_parameters_visibility")

    def refresh_parameters(self, station_number: Optional[str] = None) -> None:
        self.parameters.refresh(station_number)

    # ===================== SENSOR DATA =====================

    def get_sensor_data(
        self,
        station_number: str,
        parameter_code: str,
        start_time: TimeInput = None,
        end_time: TimeInput = None,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        return catching(
            lambda: self.sensors.get_sensor_data(
                station_number, parameter_code, start_time, end_time, limit, cancel_event
            ),
            "get_sensor_data"
        )

    def get_sensor_dataframe(
        self,
        station_number: str,
        parameter_code: str,
        start_time: TimeInput = None,
        end_time: TimeInput = None,
        limit: Optional[int] = None
    ) -> MeteoResult:
        return catching(
            lambda: self.sensors.get_sensor_dataframe(station_number, parameter_code, start_time, end_time, limit),
            "get_sensor_dataframe"
        )

    def get_latest_sensor_data(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        """Success(value); the value is UNAVAILABLE_VALUE when nothing could be loaded."""
        return catching(
            lambda: self.sensors.get_latest_sensor_data(station_number, parameter_code, cancel_event),
            "get_latest_sensor_data"
        )

    def get_latest_sensor_reading(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        return catching(
            lambda: self.sensors.get_latest_sensor_reading(station_number, parameter_code, cancel_event),
            "get_latest_sensor_reading"
        )

    def get_latest_multi_parameter_data(
        self,
        station_number: str,
        parameter_codes: Sequence[str],
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        return catching(
            lambda: self.sensors.get_latest_multi_parameter_data(station_number, parameter_codes, cancel_event),
            "get_latest_multi_parameter_data"
        )

    def get_all_stations_with_location_and_data(
        self,
        cancel_event: Optional[threading.Event] = None
    ) -> MeteoResult:
        """Success((stations, values by station number)) for the map screen."""
        return catching(
            lambda: self.sensors.get_all_stations_with_location_and_data(cancel_event),
            "get_all_stations_with_location_and_data"
        )

    def get_data_time_range(self, station_number: str, parameter_code: str) -> MeteoResult:
        return catching(
            lambda: self.sensors.get_data_time_range(station_number, parameter_code),
            "get_data_time_range"
        )

    # ===================== LIFECYCLE =====================

    def close(self) -> None:
        """Close the HTTP session."""
        if self._client is not None:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
