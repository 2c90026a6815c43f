"""
In-memory cache of latest sensor values.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .models import UNAVAILABLE_VALUE, is_valid_value

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CachedValue:
    """A cached reading and when it was stored."""
    value: float
    captured_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.captured_at)

    def is_stale(self, now: float, ttl_seconds: float) -> bool:
        return self.age(now) >= ttl_seconds


class SensorValueCache:
    """
    Latest values keyed by (station number, parameter code).

    Only valid values are stored. ``get`` serves fresh entries; ``get_entry``
    also returns stale ones so callers can degrade gracefully. Unbounded and
    last-writer-wins.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize sensor value cache.

        Args:
            ttl_seconds: Age after which an entry is stale
            clock: Time source in seconds (injectable for tests)
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CachedValue] = {}
        self._lock = threading.Lock()

    @staticmethod
    def is_valid_value(value: Optional[float]) -> bool:
        return is_valid_value(value)

    def now(self) -> float:
        return self._clock()

    def put(self, station_number: str, parameter_code: str, value: float) -> bool:
        """
        Store a value.

        Returns:
            True if stored; invalid values (including the sentinel) are ignored
        """
        if not is_valid_value(value):
            logger.debug("Not caching invalid value %r for %s/%s", value, station_number, parameter_code)
            return False

        entry = CachedValue(value=float(value), captured_at=self._clock())
        with self._lock:
            self._entries[(station_number, parameter_code)] = entry
        logger.debug("Cached value for %s/%s: %s", station_number, parameter_code, value)
        return True

    def get_entry(self, station_number: str, parameter_code: str) -> Optional[CachedValue]:
        """Entry regardless of age, or None."""
        with self._lock:
            return self._entries.get((station_number, parameter_code))

    def get(self, station_number: str, parameter_code: str) -> Optional[float]:
        """
        Fresh value for a station and parameter.

        Returns:
            Cached value younger than the TTL, or None
        """
        entry = self.get_entry(station_number, parameter_code)
        if entry is None or entry.is_stale(self._clock(), self.ttl_seconds):
            return None
        return entry.value

    def has_value(self, station_number: str, parameter_code: str) -> bool:
        return self.get(station_number, parameter_code) is not None

    def values_for_parameter(self, parameter_code: str) -> Dict[str, float]:
        """Fresh values of one parameter across stations."""
        now = self._clock()
        with self._lock:
            return {
                station: entry.value
                for (station, code), entry in self._entries.items()
                if code == parameter_code and not entry.is_stale(now, self.ttl_seconds)
            }

    def stations_for_parameter(self, parameter_code: str) -> Set[str]:
        with self._lock:
            return {station for (station, code) in self._entries if code == parameter_code}

    def remove(self, station_number: str, parameter_code: str) -> None:
        with self._lock:
            self._entries.pop((station_number, parameter_code), None)

    def remove_station(self, station_number: str) -> int:
        """
        Drop every entry of a station.

        Returns:
            Number of removed entries
        """
        with self._lock:
            keys = [key for key in self._entries if key[0] == station_number]
            for key in keys:
                del self._entries[key]
        logger.debug("Removed %d cached values for station %s", len(keys), station_number)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.debug("Cleared sensor value cache (%d entries)", size)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def info(self) -> Dict[str, Any]:
        """Cache statistics for debugging."""
        now = self._clock()
        with self._lock:
            stale = sum(1 for entry in self._entries.values() if entry.is_stale(now, self.ttl_seconds))
            return {
                'size': len(self._entries),
                'stale': stale,
                'ttl_seconds': self.ttl_seconds,
                'unavailable_value': UNAVAILABLE_VALUE,
            }
