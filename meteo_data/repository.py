"""
SensorDataRepository: history and latest-value queries over the Meteo API.
Combines the retry executor, the sensor value cache and the session manager.
"""

import json
import logging
import math
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import pandas as pd
from dateutil import parser as date_parser

from meteo_api.api_client import MeteoAPIClient
from meteo_api.errors import MalformedJsonError, MeteoError, OperationCancelled, ValidationError
from meteo_api.models import SensorDataPoint, StationInfo, StationLatestData
from meteo_api.results import Success
from meteo_api.retry import OperationType, RetryExecutor, RetryPolicies
from meteo_auth.session import AuthSessionManager

from .cache import SensorValueCache
from .models import UNAVAILABLE_VALUE, LatestReading, is_valid_value
from .stations import StationRepository, normalize_station

logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_MAX_LIMIT = 10000

NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")

TimeInput = Union[datetime, int, float, str, None]

DATAFRAME_COLUMNS = ['timestamp', 'value', 'station', 'parameter']


def _finite_seconds(value: Union[int, float]) -> int:
    if not math.isfinite(value):
        raise ValidationError(f"Invalid time value: {value!r}")
    return int(value)


def to_unix_seconds(value: TimeInput) -> Optional[int]:
    """
    Convert a time argument to unix seconds.

    Args:
        value: datetime (naive means UTC), unix seconds, ISO 8601 string or None

    Returns:
        Unix seconds, or None

    Raises:
        ValidationError: If the value cannot be interpreted as a time
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid time value: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, (int, float)):
        return _finite_seconds(value)

    text = str(value).strip()
    if NUMBER_PATTERN.fullmatch(text):
        return _finite_seconds(float(text))
    try:
        return to_unix_seconds(date_parser.parse(text))
    except (ValueError, OverflowError) as e:
        raise ValidationError(f"Invalid time value: {value!r}") from e


def parse_raw_value(raw_text: Optional[str], parameter_code: str) -> Optional[float]:
    """
    Best-effort extraction of a latest value from an undecodable response.

    JSON bodies are searched for the parameter's entry or a ``value`` key;
    anything else yields its first number.

    Args:
        raw_text: Response body
        parameter_code: Requested parameter

    Returns:
        The value, or None if nothing usable was found
    """
    if not raw_text:
        return None

    try:
        payload = json.loads(raw_text)
    except ValueError:
        match = NUMBER_PATTERN.search(raw_text)
        return float(match.group()) if match else None

    candidate = None
    if isinstance(payload, (int, float)) and not isinstance(payload, bool):
        candidate = payload
    elif isinstance(payload, dict):
        data = payload.get('data', payload)
        if isinstance(data, dict):
            for parameter in data.get('parameters') or []:
                if isinstance(parameter, dict) and str(parameter.get('code')) == parameter_code:
                    candidate = parameter.get('value')
                    break
            else:
                candidate = data.get('value')

    try:
        return float(candidate) if candidate is not None else None
    except (TypeError, ValueError):
        return None


class SensorDataRepository:
    """
    Sensor data access for the UI layer.

    History queries propagate the final error. Latest-value queries never
    fail: they degrade to the cache and then to UNAVAILABLE_VALUE.
    """

    def __init__(
        self,
        client: MeteoAPIClient,
        auth: AuthSessionManager,
        cache: SensorValueCache,
        stations: StationRepository,
        executor: Optional[RetryExecutor] = None,
        policies: Optional[RetryPolicies] = None
    ):
        """
        Initialize repository.

        Args:
            client: API client
            auth: Session manager providing authorized calls
            cache: Latest value cache
            stations: Station repository for the per-station fallback
            executor: Retry executor
            policies: Retry policy registry
        """
        self._client = client
        self._auth = auth
        self.cache = cache
        self._stations = stations
        self._executor = executor or RetryExecutor()
        self._policies = policies or RetryPolicies()

    @property
    def _policy(self):
        return self._policies.policy_for(OperationType.SENSOR_DATA)

    # ===================== HISTORY =====================

    def get_sensor_data(
        self,
        station_number: str,
        parameter_code: str,
        start_time: TimeInput = None,
        end_time: TimeInput = None,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[SensorDataPoint]:
        """
        Retrieve the history of one parameter.

        Args:
            station_number: Station number
            parameter_code: Parameter code
            start_time: Optional start (datetime, unix seconds or ISO string)
            end_time: Optional end
            limit: Maximum number of points (server default 1000, at most 10000)
            cancel_event: Optional cancellation event

        Returns:
            List of SensorDataPoint objects

        Raises:
            ValidationError: Invalid time range or limit
            MeteoError: If every attempt fails
        """
        start = to_unix_seconds(start_time)
        end = to_unix_seconds(end_time)
        if start is not None and end is not None and start > end:
            raise ValidationError("start_time must not be after end_time")
        if limit is not None and not 1 <= limit <= HISTORY_MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {HISTORY_MAX_LIMIT}")

        history = self._executor.execute_or_raise(
            self._policy,
            lambda attempt: self._auth.authorized(
                lambda header: self._client.get_parameter_history(
                    header, station_number, parameter_code,
                    start_time=start, end_time=end, limit=limit
                )
            ),
            cancel_event=cancel_event,
            name=f"get_sensor_data({station_number}/{parameter_code})"
        )

        return [SensorDataPoint.from_history(point) for point in history.data]

    def get_sensor_dataframe(
        self,
        station_number: str,
        parameter_code: str,
        start_time: TimeInput = None,
        end_time: TimeInput = None,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> pd.DataFrame:
        """
        Retrieve parameter history as pandas DataFrame.

        Returns:
            DataFrame with columns: timestamp, value, station, parameter
        """
        points = self.get_sensor_data(
            station_number, parameter_code, start_time, end_time, limit, cancel_event
        )

        if not points:
            return pd.DataFrame(columns=DATAFRAME_COLUMNS)

        df = pd.DataFrame([
            {
                'timestamp': p.timestamp,
                'value': p.value,
                'station': station_number,
                'parameter': parameter_code
            }
            for p in points
        ])
        return df.sort_values('timestamp').reset_index(drop=True)

    def get_multi_parameter_data(
        self,
        station_number: str,
        parameter_codes: Sequence[str],
        start_time: TimeInput = None,
        end_time: TimeInput = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, List[SensorDataPoint]]:
        """History of several parameters fetched in parallel; failures yield empty lists."""
        return self._fan_out(
            parameter_codes,
            lambda code: self.get_sensor_data(
                station_number, code, start_time, end_time, cancel_event=cancel_event
            ),
            fallback=list,
            name=f"history of {station_number}"
        )

    def get_data_time_range(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        """
        First and last timestamp of the available history.

        Returns:
            (first, last), or (None, None) if there is no data or it cannot be loaded
        """
        try:
            points = self.get_sensor_data(station_number, parameter_code, cancel_event=cancel_event)
        except MeteoError as e:
            logger.warning("Failed to get time range for %s/%s: %s", station_number, parameter_code, e.code)
            return (None, None)

        if not points:
            return (None, None)

        timestamps = [p.timestamp for p in points]
        return (min(timestamps), max(timestamps))

    # ===================== LATEST VALUES =====================

    def _fetch_latest_value(self, station_number: str, parameter_code: str) -> float:
        """One attempt at reading the latest value from /data/{num}/latest."""
        try:
            data = self._auth.authorized(
                lambda header: self._client.get_station_latest_data(header, station_number)
            )
        except MalformedJsonError as e:
            value = parse_raw_value(e.raw_text, parameter_code)
            if value is None:
                raise
            logger.info("Recovered %s/%s from an undecodable response", station_number, parameter_code)
            return value

        self._cache_station_values(data)
        value = data.value_of(parameter_code)
        return UNAVAILABLE_VALUE if value is None else value

    def _cache_station_values(self, data: StationLatestData) -> None:
        for parameter in data.parameters:
            if is_valid_value(parameter.value):
                self.cache.put(data.station_number, parameter.code, parameter.value)

    def get_latest_sensor_data(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> float:
        """
        Latest value of a parameter.

        Args:
            station_number: Station number
            parameter_code: Parameter code
            cancel_event: Optional cancellation event

        Returns:
            Cached or fetched value; UNAVAILABLE_VALUE when neither is available
        """
        cached = self.cache.get(station_number, parameter_code)
        if cached is not None:
            return cached

        value = self._executor.execute_with_fallback(
            self._policy,
            UNAVAILABLE_VALUE,
            lambda attempt: self._fetch_latest_value(station_number, parameter_code),
            cancel_event=cancel_event,
            name=f"get_latest_sensor_data({station_number}/{parameter_code})"
        )

        if is_valid_value(value):
            self.cache.put(station_number, parameter_code, value)
        return value

    def get_latest_sensor_reading(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> LatestReading:
        """
        Latest value with its age.

        A failed fetch degrades to a stale cached value (``is_stale=True``)
        before falling back to UNAVAILABLE_VALUE.
        """
        entry = self.cache.get_entry(station_number, parameter_code)
        if entry is not None and not entry.is_stale(self.cache.now(), self.cache.ttl_seconds):
            return LatestReading(entry.value, entry.captured_at, is_stale=False)

        result = self._executor.execute(
            self._policy,
            lambda attempt: self._fetch_latest_value(station_number, parameter_code),
            cancel_event=cancel_event,
            name=f"get_latest_sensor_reading({station_number}/{parameter_code})"
        )

        if isinstance(result, Success) and is_valid_value(result.data):
            self.cache.put(station_number, parameter_code, result.data)
            return LatestReading(result.data, self.cache.now(), is_stale=False)

        if entry is not None:
            logger.info("Serving stale value for %s/%s", station_number, parameter_code)
            return LatestReading(entry.value, entry.captured_at, is_stale=True)

        return LatestReading(UNAVAILABLE_VALUE)

    def get_latest_multi_parameter_data(
        self,
        station_number: str,
        parameter_codes: Sequence[str],
        cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, float]:
        """
        Latest values of several parameters of one station.

        One request for the whole station is preferred; on failure the
        parameters are fetched individually in parallel.
        """
        try:
            data = self._executor.execute_or_raise(
                self._policy,
                lambda attempt: self._auth.authorized(
                    lambda header: self._client.get_station_latest_data(header, station_number)
                ),
                cancel_event=cancel_event,
                name=f"get_station_latest_data({station_number})"
            )
        except OperationCancelled:
            raise
        except MeteoError as e:
            logger.warning("Station request for %s failed (%s), fetching parameters one by one", station_number, e.code)
            return self._fan_out(
                parameter_codes,
                lambda code: self.get_latest_sensor_data(station_number, code, cancel_event),
                fallback=lambda: UNAVAILABLE_VALUE,
                name=f"latest values of {station_number}"
            )

        self._cache_station_values(data)
        result = {}
        for code in parameter_codes:
            value = data.value_of(code)
            result[code] = UNAVAILABLE_VALUE if value is None else value
        return result

    def is_data_available(
        self,
        station_number: str,
        parameter_code: str,
        cancel_event: Optional[threading.Event] = None
    ) -> bool:
        return is_valid_value(self.get_latest_sensor_data(station_number, parameter_code, cancel_event))

    @staticmethod
    def is_data_unavailable(value: Optional[float]) -> bool:
        return not is_valid_value(value)

    # ===================== ALL STATIONS =====================

    def _fetch_all_latest(self, cancel_event: Optional[threading.Event]) -> List[StationLatestData]:
        return self._executor.execute_or_raise(
            self._policy,
            lambda attempt: self._auth.authorized(self._client.get_latest_data),
            cancel_event=cancel_event,
            name="get_latest_data"
        )

    @staticmethod
    def _values_of(data: StationLatestData) -> Dict[str, float]:
        return {
            p.code: UNAVAILABLE_VALUE if p.value is None else p.value
            for p in data.parameters
        }

    def get_all_stations_latest_data(
        self,
        cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, Dict[str, float]]:
        """
        Latest values of every station of the user.

        Returns:
            Mapping station number -> parameter code -> value; empty on failure
        """
        try:
            all_data = self._fetch_all_latest(cancel_event)
        except MeteoError as e:
            logger.error("Failed to get latest data for all stations: %s", e.code)
            return {}

        for data in all_data:
            self._cache_station_values(data)
        return {data.station_number: self._values_of(data) for data in all_data}

    def get_all_stations_with_location_and_data(
        self,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[List[StationInfo], Dict[str, Dict[str, float]]]:
        """
        Stations with coordinates plus their latest values, for the map.

        Uses the bulk /data/latest endpoint; if it fails, loads the station
        list and fetches each station in parallel, an individual failure
        yielding an empty mapping for that station.

        Returns:
            (stations, values by station number)
        """
        try:
            all_data = self._fetch_all_latest(cancel_event)
        except OperationCancelled:
            raise
        except MeteoError as e:
            logger.warning("Bulk latest data failed (%s), falling back to per-station requests", e.code)
            return self._stations_with_data_per_station(cancel_event)

        stations = []
        values: Dict[str, Dict[str, float]] = {}
        for data in all_data:
            station = normalize_station(StationInfo(
                station_number=data.station_number,
                name=data.station_number,
                custom_name=data.custom_name,
                location=data.location or "",
                latitude=data.latitude,
                longitude=data.longitude,
                is_favorite=data.is_favorite
            ))
            if station is not None:
                stations.append(station)
            values[data.station_number] = self._values_of(data)
            self._cache_station_values(data)

        logger.debug("Received %d stations, %d placeable", len(all_data), len(stations))
        return stations, values

    def _stations_with_data_per_station(
        self,
        cancel_event: Optional[threading.Event]
    ) -> Tuple[List[StationInfo], Dict[str, Dict[str, float]]]:
        try:
            stations = self._stations.get_user_stations(cancel_event)
        except OperationCancelled:
            raise
        except MeteoError as e:
            logger.error("Station list unavailable as well: %s", e.code)
            return [], {}

        def fetch(station_number: str) -> Dict[str, float]:
            data = self._executor.execute_or_raise(
                self._policy,
                lambda attempt: self._auth.authorized(
                    lambda header: self._client.get_station_latest_data(header, station_number)
                ),
                cancel_event=cancel_event,
                name=f"get_station_latest_data({station_number})"
            )
            self._cache_station_values(data)
            return self._values_of(data)

        values = self._fan_out(
            [s.station_number for s in stations],
            fetch,
            fallback=dict,
            name="per-station latest data"
        )
        return stations, values

    # ===================== FAN-OUT =====================

    @staticmethod
    def _fan_out(
        items: Sequence[str],
        func: Callable[[str], T],
        fallback: Callable[[], T],
        name: str
    ) -> Dict[str, T]:
        """
        Run func for every item concurrently and join.

        A MeteoError for one item is logged and replaced by ``fallback()``.
        Cancellation cancels the pending items and propagates.
        """
        items = list(dict.fromkeys(items))
        if not items:
            return {}

        results: Dict[str, T] = {}
        with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix='meteo-fetch') as pool:
            futures = {pool.submit(func, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    results[item] = future.result()
                except OperationCancelled:
                    for pending in futures:
                        pending.cancel()
                    raise
                except MeteoError as e:
                    logger.warning("%s: %s failed (%s)", name, item, e.code)
                    results[item] = fallback()

        return {item: results[item] for item in items}
