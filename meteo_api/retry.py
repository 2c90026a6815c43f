"""
Bounded retry with policy-driven backoff.

RetryExecutor runs a fallible operation up to ``max_attempts`` times. Errors are
classified into HTTP / network / decode / other; a policy decides which
classes (and which HTTP status codes) are worth another attempt. Everything
else fails fast.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorClass, HttpError, MeteoError, OperationCancelled, classify_error
from .results import Success

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})


class OperationType(str, Enum):
    """Operation classes that carry their own retry policy."""
    SENSOR_DATA = "sensor_data"
    STATION_DATA = "station_data"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PARAMETER_METADATA = "parameter_metadata"


class RetryPolicy(BaseModel):
    """Immutable retry configuration for one operation class."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, description="Total attempts including the first")
    base_delay: float = Field(default=1.0, ge=0.0, description="Delay before the first retry (seconds)")
    max_delay: float = Field(default=5.0, ge=0.0, description="Upper bound for any single delay (seconds)")
    use_exponential_backoff: bool = Field(default=False)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retryable_errors: FrozenSet[ErrorClass] = Field(
        default=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK}),
        description="Error classes that may be retried"
    )
    retryable_status_codes: Optional[FrozenSet[int]] = Field(
        default=SERVER_ERROR_STATUSES,
        description="HTTP statuses eligible for retry; None means any status"
    )

    @field_validator('max_attempts', mode='before')
    @classmethod
    def coerce_max_attempts(cls, v) -> int:
        """Zero or negative attempt budgets are coerced to a single attempt."""
        v = int(v)
        return v if v >= 1 else 1

    @field_validator('retryable_errors')
    @classmethod
    def reject_other(cls, v: FrozenSet[ErrorClass]) -> FrozenSet[ErrorClass]:
        if ErrorClass.OTHER in v:
            raise ValueError("Unclassified errors are never retried")
        return v

    def delay(self, attempt: int) -> float:
        """
        Delay to wait after the given zero-based attempt failed.

        Args:
            attempt: Index of the attempt that just failed

        Returns:
            Delay in seconds
        """
        if self.use_exponential_backoff:
            return min(self.max_delay, self.base_delay * self.backoff_multiplier ** attempt)
        return self.base_delay

    def should_retry(self, error: MeteoError) -> bool:
        """Whether the policy allows another attempt after this error."""
        error_class = classify_error(error)
        if error_class not in self.retryable_errors:
            return False
        if isinstance(error, HttpError) and self.retryable_status_codes is not None:
            return error.status_code in self.retryable_status_codes
        return True


DEFAULT_POLICIES: Dict[OperationType, RetryPolicy] = {
    OperationType.SENSOR_DATA: RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=3.0,
        use_exponential_backoff=False,
        retryable_errors=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK, ErrorClass.DECODE}),
        backoff_multiplier=2.0
    ),
    OperationType.STATION_DATA: RetryPolicy(
        max_attempts=2,
        base_delay=0.5,
        max_delay=2.0,
        use_exponential_backoff=True,
        retryable_errors=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK}),
        backoff_multiplier=2.0
    ),
    OperationType.AUTHENTICATION: RetryPolicy(
        max_attempts=2,
        base_delay=0.5,
        max_delay=1.0,
        use_exponential_backoff=False,
        retryable_errors=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK}),
        backoff_multiplier=1.5
    ),
    OperationType.CONFIGURATION: RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=5.0,
        use_exponential_backoff=False,
        retryable_errors=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK, ErrorClass.DECODE}),
        backoff_multiplier=2.0
    ),
    OperationType.PARAMETER_METADATA: RetryPolicy(
        max_attempts=2,
        base_delay=0.5,
        max_delay=2.0,
        use_exponential_backoff=True,
        retryable_errors=frozenset({ErrorClass.HTTP, ErrorClass.NETWORK}),
        backoff_multiplier=2.0
    ),
}


class RetryConfigSource(ABC):
    """External provider of retry policies (e.g. a remote config service)."""

    @abstractmethod
    def get_policy(self, operation: OperationType) -> Optional[RetryPolicy]:
        """
        Return the policy for an operation class, or None if it has none.

        May raise when the source is unavailable.
        """
        pass


class RetryPolicies:
    """
    Resolves the policy for an operation class.

    Lookup order: external source, local overrides (YAML config), hardcoded
    defaults. A failing source is logged and skipped.
    """

    def __init__(
        self,
        overrides: Optional[Mapping[OperationType, RetryPolicy]] = None,
        source: Optional[RetryConfigSource] = None
    ):
        self._overrides = dict(overrides or {})
        self._source = source

    def policy_for(self, operation: OperationType) -> RetryPolicy:
        if self._source is not None:
            try:
                policy = self._source.get_policy(operation)
                if policy is not None:
                    return policy
            except Exception as e:
                logger.warning(
                    "Retry config source failed for %s, using local policy: %s",
                    operation.value, e
                )

        if operation in self._overrides:
            return self._overrides[operation]

        return DEFAULT_POLICIES[operation]


@dataclass(frozen=True)
class RetryFailure:
    """All attempts failed, or the error was not retryable."""
    last_error: MeteoError
    attempts_made: int

    @property
    def is_success(self) -> bool:
        return False


RetryResult = Union[Success, RetryFailure]


class RetryExecutor:
    """
    Executes operations under a RetryPolicy.

    The operation receives the zero-based attempt index. ``sleep`` is
    injectable for tests; when a ``cancel_event`` is given the backoff wait is
    interruptible instead.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def execute(
        self,
        policy: RetryPolicy,
        operation: Callable[[int], T],
        cancel_event: Optional[threading.Event] = None,
        name: str = "operation"
    ) -> RetryResult:
        """
        Run an operation with retries.

        Args:
            policy: Retry policy to apply
            operation: Callable taking the attempt index
            cancel_event: Optional event; once set, no further attempts are made
            name: Operation name for log messages

        Returns:
            Success with the result, or RetryFailure with the last error
        """
        last_error: Optional[MeteoError] = None

        for attempt in range(policy.max_attempts):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("%s cancelled before attempt %d", name, attempt + 1)
                return RetryFailure(OperationCancelled(f"{name} cancelled"), attempt)

            try:
                logger.debug("%s attempt %d/%d", name, attempt + 1, policy.max_attempts)
                result = operation(attempt)
                if attempt > 0:
                    logger.info("%s succeeded on attempt %d", name, attempt + 1)
                return Success(result)

            except Exception as e:
                error = MeteoError.from_exception(e)
                last_error = error
                self._log_failure(name, error, attempt, policy)

                if not policy.should_retry(error):
                    logger.debug("%s: %s is not retryable, failing immediately", name, error.code)
                    return RetryFailure(error, attempt + 1)

                # No wait after the last attempt
                if attempt < policy.max_attempts - 1:
                    delay = policy.delay(attempt)
                    logger.debug("%s: waiting %.2fs before attempt %d", name, delay, attempt + 2)
                    if not self._pause(delay, cancel_event):
                        logger.info("%s cancelled during backoff", name)
                        return RetryFailure(OperationCancelled(f"{name} cancelled"), attempt + 1)

        logger.error("%s failed after %d attempts: %s", name, policy.max_attempts, last_error)
        return RetryFailure(last_error, policy.max_attempts)

    def execute_with_fallback(
        self,
        policy: RetryPolicy,
        fallback_value: T,
        operation: Callable[[int], T],
        cancel_event: Optional[threading.Event] = None,
        name: str = "operation"
    ) -> T:
        """
        Run an operation with retries, substituting a fallback on failure.

        Args:
            policy: Retry policy to apply
            fallback_value: Value returned when every attempt fails
            operation: Callable taking the attempt index
            cancel_event: Optional cancellation event
            name: Operation name for log messages

        Returns:
            The operation's result or the fallback value
        """
        result = self.execute(policy, operation, cancel_event=cancel_event, name=name)
        if isinstance(result, Success):
            return result.data

        logger.warning(
            "%s: using fallback value after %d failed attempts (%s)",
            name, result.attempts_made, result.last_error.code
        )
        return fallback_value

    def execute_or_raise(
        self,
        policy: RetryPolicy,
        operation: Callable[[int], T],
        cancel_event: Optional[threading.Event] = None,
        name: str = "operation"
    ) -> T:
        """
        Run an operation with retries and raise the final error on failure.

        Raises:
            MeteoError: The last error seen
        """
        result = self.execute(policy, operation, cancel_event=cancel_event, name=name)
        if isinstance(result, Success):
            return result.data
        raise result.last_error

    def _pause(self, seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """Wait between attempts. Returns False if cancelled while waiting."""
        if cancel_event is None:
            self._sleep(seconds)
            return True
        return not cancel_event.wait(seconds)

    @staticmethod
    def _log_failure(name: str, error: MeteoError, attempt: int, policy: RetryPolicy) -> None:
        if isinstance(error, HttpError):
            logger.warning(
                "%s: HTTP %d on attempt %d/%d, body: %s",
                name, error.status_code, attempt + 1, policy.max_attempts, error.body[:500]
            )
        else:
            logger.warning(
                "%s: %s on attempt %d/%d: %s",
                name, error.code, attempt + 1, policy.max_attempts, error.message
            )
