"""
Parameter configuration resolver.

Reconciles parameter metadata from the station list, the per-station
parameters endpoint and a hardcoded fallback into one ParameterConfigSet per
(station, locale), cached with a TTL.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from meteo_api.errors import MeteoError
from meteo_api.models import StationParameter

from .models import ParameterConfig, ParameterConfigSet
from .parameter_codes import LEGACY_PARAMETER_CODES, LegacyParameter, matches_legacy, to_legacy
from .stations import StationRepository

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_LOCALE = "en"


class CacheState(str, Enum):
    """Lifecycle of one cache key."""
    EMPTY = "empty"
    LOADING = "loading"
    FRESH = "fresh"
    STALE = "stale"


def build_config_set(parameters: Sequence[StationParameter]) -> ParameterConfigSet:
    """
    Turn station parameters into a ParameterConfigSet.

    Hidden parameters are dropped. The rest are ordered by display_order
    (source position where it is missing) and deduplicated by code, keeping
    the first occurrence.

    Args:
        parameters: Parameters as received from the API

    Returns:
        ParameterConfigSet with its default chosen by select_default_code
    """
    visible = [(index, p) for index, p in enumerate(parameters) if p.is_visible]
    visible.sort(key=lambda item: (
        item[1].display_order if item[1].display_order is not None else item[0],
        item[0]
    ))

    configs: List[ParameterConfig] = []
    seen = set()
    for _, parameter in visible:
        if parameter.code in seen:
            continue
        seen.add(parameter.code)
        configs.append(ParameterConfig.from_station_parameter(parameter, display_order=len(configs) + 1))

    return ParameterConfigSet.from_parameters(configs)


class _PendingLoad:
    """A load in progress; waiters block until ``done``."""

    def __init__(self):
        self.done = False
        self.result: Optional[ParameterConfigSet] = None


@dataclass
class _Slot:
    config_set: Optional[ParameterConfigSet] = None
    loaded_at: Optional[float] = None
    pending: Optional[_PendingLoad] = field(default=None)


class ParameterConfigResolver:
    """
    Resolves the parameter configuration of stations.

    Per key the cache moves EMPTY -> LOADING -> FRESH, and FRESH turns STALE
    after the TTL. Callers that find a key LOADING wait for that load and get
    its result. Fallback results are returned but never cached. One condition
    variable guards every map.
    """

    def __init__(
        self,
        stations: StationRepository,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        default_locale: str = DEFAULT_LOCALE
    ):
        """
        Initialize resolver.

        Args:
            stations: Source of station parameters
            ttl_seconds: Age after which a cached set is reloaded
            clock: Time source in seconds (injectable for tests)
            default_locale: Locale used when none is given
        """
        self._stations = stations
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.default_locale = default_locale

        self._condition = threading.Condition()
        self._station_slots: Dict[Tuple[str, str], _Slot] = {}
        self._global_slots: Dict[str, _Slot] = {}
        self._parameter_cache: Dict[Tuple[str, str], Tuple[ParameterConfig, float]] = {}

    # ===================== CACHE MACHINERY =====================

    def _is_fresh(self, loaded_at: Optional[float]) -> bool:
        return loaded_at is not None and self._clock() - loaded_at < self.ttl_seconds

    def _state_of(self, slot: Optional[_Slot]) -> CacheState:
        if slot is None:
            return CacheState.EMPTY
        if slot.pending is not None:
            return CacheState.LOADING
        if slot.config_set is None:
            return CacheState.EMPTY
        return CacheState.FRESH if self._is_fresh(slot.loaded_at) else CacheState.STALE

    def _resolve(
        self,
        slots: Dict,
        key: Hashable,
        loader: Callable[[], Tuple[ParameterConfigSet, bool]]
    ) -> ParameterConfigSet:
        """
        Serve a fresh cached set or run the loader exactly once per key.

        The loader returns (config set, cacheable).
        """
        with self._condition:
            slot = slots.get(key)
            if slot is not None:
                if slot.pending is not None:
                    pending = slot.pending
                    logger.debug("Waiting for in-flight parameter load of %s", key)
                    while not pending.done:
                        self._condition.wait()
                    return pending.result
                if slot.config_set is not None and self._is_fresh(slot.loaded_at):
                    return slot.config_set
            else:
                slot = slots[key] = _Slot()

            pending = _PendingLoad()
            slot.pending = pending

        config_set: Optional[ParameterConfigSet] = None
        cacheable = False
        try:
            config_set, cacheable = loader()
        finally:
            with self._condition:
                pending.result = config_set if config_set is not None else ParameterConfigSet.fallback()
                pending.done = True
                # The slot may have been dropped by clear()/refresh() meanwhile
                if slots.get(key) is slot:
                    slot.pending = None
                    if cacheable:
                        slot.config_set = config_set
                        slot.loaded_at = self._clock()
                    elif slot.config_set is None:
                        del slots[key]
                self._condition.notify_all()

        return config_set

    def cache_state(self, station_number: str, locale: Optional[str] = None) -> CacheState:
        """Cache state of a station's configuration."""
        with self._condition:
            return self._state_of(self._station_slots.get((station_number, locale or self.default_locale)))

    def global_cache_state(self, locale: Optional[str] = None) -> CacheState:
        with self._condition:
            return self._state_of(self._global_slots.get(locale or self.default_locale))

    # ===================== LOADERS =====================

    def _load_station(
        self,
        station_number: str,
        cancel_event: Optional[threading.Event]
    ) -> Tuple[ParameterConfigSet, bool]:
        try:
            embedded = self._stations.get_cached_station_parameters(station_number)
            config_set = build_config_set(embedded)
            if config_set.parameters:
                logger.debug("Using %d parameters from station list for %s", len(config_set), station_number)
                return config_set, True
        except MeteoError as e:
            logger.warning("Station list unavailable for %s parameters: %s", station_number, e.code)

        try:
            fetched = self._stations.fetch_station_parameters(station_number, cancel_event=cancel_event)
            config_set = build_config_set(fetched)
            if config_set.parameters:
                logger.info("Loaded %d parameters for station %s", len(config_set), station_number)
                return config_set, True
            logger.warning("Station %s reported no visible parameters", station_number)
        except MeteoError as e:
            logger.warning("Failed to load parameters for station %s: %s", station_number, e.code)

        logger.info("Using fallback parameters for station %s", station_number)
        return ParameterConfigSet.fallback(), False

    def _load_global(self) -> Tuple[ParameterConfigSet, bool]:
        try:
            parameters: List[StationParameter] = []
            for station in self._stations.get_user_stations():
                parameters.extend(station.parameters)
            config_set = build_config_set(parameters)
            if config_set.parameters:
                return config_set, True
        except MeteoError as e:
            logger.warning("Failed to load global parameters: %s", e.code)

        logger.info("Using fallback global parameter configuration")
        return ParameterConfigSet.fallback(), False

    # ===================== CONFIG SETS =====================

    def get_station_parameter_config(
        self,
        station_number: str,
        locale: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ParameterConfigSet:
        """
        Parameter configuration of one station.

        Args:
            station_number: Station number
            locale: Locale of display names (defaults to default_locale)
            cancel_event: Optional cancellation event for the network fallback

        Returns:
            ParameterConfigSet; the fallback set when nothing could be loaded
        """
        key = (station_number, locale or self.default_locale)
        return self._resolve(
            self._station_slots, key, lambda: self._load_station(station_number, cancel_event)
        )

    def get_global_parameter_config(self, locale: Optional[str] = None) -> ParameterConfigSet:
        """Union of the parameters of all the user's stations."""
        return self._resolve(self._global_slots, locale or self.default_locale, self._load_global)

    def get_parameter_config(self, parameter_code: str, locale: Optional[str] = None) -> Optional[ParameterConfig]:
        """
        Configuration of a single parameter.

        Returns:
            ParameterConfig from the global set or the fallback set, or None
        """
        locale = locale or self.default_locale
        key = (parameter_code, locale)

        with self._condition:
            cached = self._parameter_cache.get(key)
            if cached is not None:
                if self._is_fresh(cached[1]):
                    return cached[0]
                del self._parameter_cache[key]

        global_set = self.get_global_parameter_config(locale)
        config = global_set.get_by_code(parameter_code)
        if config is not None and self.global_cache_state(locale) == CacheState.FRESH:
            with self._condition:
                self._parameter_cache[key] = (config, self._clock())
            return config

        return config or ParameterConfigSet.fallback().get_by_code(parameter_code)

    def get_multiple_parameter_configs(
        self,
        parameter_codes: Sequence[str],
        locale: Optional[str] = None
    ) -> Dict[str, ParameterConfig]:
        result = {}
        for code in parameter_codes:
            config = self.get_parameter_config(code, locale)
            if config is not None:
                result[code] = config
        return result

    # ===================== QUERIES =====================

    def is_parameter_available(self, station_number: str, parameter_code: str) -> bool:
        return self.get_station_parameter_config(station_number).has_parameter(parameter_code)

    def get_default_parameter(self, station_number: str) -> Optional[ParameterConfig]:
        return self.get_station_parameter_config(station_number).get_default()

    def get_parameters_by_category(
        self,
        station_number: Optional[str] = None,
        locale: Optional[str] = None
    ) -> Dict[str, List[ParameterConfig]]:
        config_set = (
            self.get_station_parameter_config(station_number, locale)
            if station_number is not None
            else self.get_global_parameter_config(locale)
        )
        return config_set.by_category()

    def search_parameters(
        self,
        query: str,
        station_number: Optional[str] = None,
        locale: Optional[str] = None
    ) -> List[ParameterConfig]:
        """Parameters whose code, name or description contains the query."""
        config_set = (
            self.get_station_parameter_config(station_number, locale)
            if station_number is not None
            else self.get_global_parameter_config(locale)
        )
        needle = query.strip().lower()
        return [
            p for p in config_set.parameters
            if needle in p.code.lower() or needle in p.name.lower() or needle in p.description.lower()
        ]

    def get_parameter_display_text(self, parameter_code: str, locale: Optional[str] = None) -> Optional[str]:
        config = self.get_parameter_config(parameter_code, locale)
        return config.display_text if config else None

    def get_parameter_unit(self, parameter_code: str) -> Optional[str]:
        config = self.get_parameter_config(parameter_code)
        return config.unit if config else None

    def legacy_parameter_code(self, station_number: str, legacy: LegacyParameter | str) -> str:
        """
        Code of a legacy parameter at a station.

        Prefers the station's own matching parameter and falls back to the
        fixed legacy mapping.

        Raises:
            ValueError: Unknown legacy parameter name
        """
        parameter = to_legacy(legacy)
        if parameter is None:
            raise ValueError(f"No code known for legacy parameter: {legacy}")

        fixed = LEGACY_PARAMETER_CODES[parameter]
        config_set = self.get_station_parameter_config(station_number)
        if config_set.has_parameter(fixed):
            return fixed

        for config in config_set.parameters:
            if matches_legacy(parameter, config.code, config.name):
                return config.code

        logger.debug("Legacy parameter %s not found at %s, using %s", parameter.value, station_number, fixed)
        return fixed

    # ===================== INVALIDATION =====================

    def refresh(self, station_number: Optional[str] = None) -> None:
        """
        Drop cached configuration.

        Args:
            station_number: Station to drop; None drops everything
        """
        with self._condition:
            if station_number is None:
                self._station_slots.clear()
                self._global_slots.clear()
                self._parameter_cache.clear()
                logger.debug("Cleared all parameter caches")
            else:
                for key in [k for k in self._station_slots if k[0] == station_number]:
                    del self._station_slots[key]
                logger.debug("Cleared parameter cache for station %s", station_number)

    def clear(self) -> None:
        self.refresh(None)
