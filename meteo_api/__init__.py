"""
API module for the Meteo client.

This module provides the transport and resilience layer shared by the auth and
data modules: configuration, the error taxonomy, typed results, the retry
engine and the HTTP client for the Meteo API v1.

Architecture:
- Config: YAML-based configuration management
- Errors: MeteoError hierarchy and error classification
- Results: Success/Failure values handed to the UI layer
- Retry: Policy-driven retry executor with cancellation
- API Client: One method per Meteo API v1 endpoint
- State: Observable loading/error status
"""

from .errors import (
    ErrorClass,
    MeteoError,
    AuthError,
    InvalidCredentialsError,
    UserExistsError,
    NoTokenError,
    AuthServerError,
    SessionExpiredError,
    NetworkError,
    NetworkTimeoutError,
    NoConnectionError,
    ProtocolError,
    DecodeError,
    MalformedJsonError,
    HttpError,
    ApiRejectedError,
    ValidationError,
    OperationCancelled,
    classify_error
)

from .results import (
    Success,
    Failure,
    MeteoResult,
    catching
)

from .retry import (
    OperationType,
    RetryPolicy,
    RetryPolicies,
    RetryConfigSource,
    RetryExecutor,
    RetryFailure,
    DEFAULT_POLICIES
)

from .config import (
    MeteoConfig,
    APISettings,
    CacheSettings,
    StorageSettings,
    LoggingSettings,
    load_config,
    setup_logging
)

from .models import (
    ApiResponse,
    AuthTokens,
    RefreshTokenResponse,
    UserInfo,
    StationInfo,
    StationParameter,
    AddStationResponse,
    BulkVisibilityResult,
    ParameterValue,
    StationLatestData,
    HistoryPoint,
    ParameterHistory,
    SensorDataPoint
)

from .api_client import MeteoAPIClient

from .state import (
    ObservableState,
    OperationStatus,
    AuthStatus
)

__all__ = [
    # API Client
    'MeteoAPIClient',

    # Retry
    'OperationType',
    'RetryPolicy',
    'RetryPolicies',
    'RetryConfigSource',
    'RetryExecutor',
    'RetryFailure',
    'DEFAULT_POLICIES',

    # Results
    'Success',
    'Failure',
    'MeteoResult',
    'catching',

    # Models
    'ApiResponse',
    'AuthTokens',
    'RefreshTokenResponse',
    'UserInfo',
    'StationInfo',
    'StationParameter',
    'AddStationResponse',
    'BulkVisibilityResult',
    'ParameterValue',
    'StationLatestData',
    'HistoryPoint',
    'ParameterHistory',
    'SensorDataPoint',

    # Configuration
    'MeteoConfig',
    'APISettings',
    'CacheSettings',
    'StorageSettings',
    'LoggingSettings',
    'load_config',
    'setup_logging',

    # State
    'ObservableState',
    'OperationStatus',
    'AuthStatus',

    # Errors
    'ErrorClass',
    'MeteoError',
    'AuthError',
    'InvalidCredentialsError',
    'UserExistsError',
    'NoTokenError',
    'AuthServerError',
    'SessionExpiredError',
    'NetworkError',
    'NetworkTimeoutError',
    'NoConnectionError',
    'ProtocolError',
    'DecodeError',
    'MalformedJsonError',
    'HttpError',
    'ApiRejectedError',
    'ValidationError',
    'OperationCancelled',
    'classify_error',
]

__version__ = '0.1.0'
__description__ = 'Transport and resilience layer for the Meteo weather-station client'
