"""
Observable status holders for UI binding.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from .errors import MeteoError

logger = logging.getLogger(__name__)

S = TypeVar("S")


@dataclass(frozen=True)
class OperationStatus:
    """Loading flag and last error of a family of operations."""
    is_loading: bool = False
    last_error: Optional[MeteoError] = None


@dataclass(frozen=True)
class AuthStatus(OperationStatus):
    is_logged_in: bool = False


class ObservableState(Generic[S]):
    """
    Thread-safe holder of an immutable status value.

    Listeners are called synchronously with the new value after every change,
    outside the internal lock.
    """

    def __init__(self, initial: S):
        self._value = initial
        self._lock = threading.Lock()
        self._listeners: List[Callable[[S], None]] = []

    @property
    def value(self) -> S:
        with self._lock:
            return self._value

    def subscribe(self, listener: Callable[[S], None]) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes) -> S:
        """Replace fields of the current value and notify listeners."""
        with self._lock:
            self._value = replace(self._value, **changes)
            value = self._value
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("State listener failed")

        return value

    @contextmanager
    def loading(self) -> Iterator[None]:
        """
        Mark an operation as running for the duration of the block.

        A MeteoError escaping the block is recorded as ``last_error`` and re-raised.
        """
        self.update(is_loading=True, last_error=None)
        try:
            yield
        except MeteoError as e:
            self.update(is_loading=False, last_error=e)
            raise
        except Exception as e:
            self.update(is_loading=False, last_error=MeteoError.from_exception(e))
            raise
        else:
            self.update(is_loading=False)
