"""
Typed results handed to the UI layer.

The UI never receives raw exceptions: every facade call returns either
``Success(data)`` or ``Failure(error)``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from .errors import MeteoError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Successful outcome carrying the operation's data."""
    data: T

    @property
    def is_success(self) -> bool:
        return True

    def get_or_none(self) -> Optional[T]:
        return self.data

    def get_or_else(self, default: T) -> T:
        return self.data

    def map(self, transform: Callable[[T], Any]) -> 'MeteoResult':
        return Success(transform(self.data))


@dataclass(frozen=True)
class Failure:
    """Failed outcome carrying a MeteoError."""
    error: MeteoError

    @property
    def is_success(self) -> bool:
        return False

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        """User-facing message; never contains stack traces or internal text."""
        return self.error.user_message

    def get_or_none(self) -> None:
        return None

    def get_or_else(self, default: T) -> T:
        return default

    def map(self, transform: Callable[[Any], Any]) -> 'MeteoResult':
        return self


MeteoResult = Union[Success, Failure]


def catching(action: Callable[[], T], operation: str = "operation") -> MeteoResult:
    """
    Run an action and convert any exception into a Failure.

    Args:
        action: Zero-argument callable to execute
        operation: Name used in log messages

    Returns:
        Success with the action's return value, or Failure
    """
    try:
        return Success(action())
    except MeteoError as e:
        logger.warning("%s failed: [%s] %s", operation, e.code, e.message)
        return Failure(e)
    except Exception as e:
        logger.exception("%s failed with an unexpected error", operation)
        return Failure(MeteoError(f"{type(e).__name__}: {e}", cause=e))
