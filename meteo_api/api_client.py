"""
Meteo API v1 client.
Thin transport over requests.Session: builds requests, enforces per-call
timeouts and converts every failure into the MeteoError taxonomy. Retrying and
token handling live one layer up.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Type
from urllib.parse import quote, urljoin

import requests
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .config import MeteoConfig
from .errors import ApiRejectedError, HttpError, MalformedJsonError, MeteoError
from .models import (
    AddStationResponse,
    ApiResponse,
    AuthTokens,
    BulkVisibilityResult,
    ParameterHistory,
    RefreshTokenResponse,
    StationInfo,
    StationLatestData,
    StationParameter,
    UserInfo,
)
from .retry import OperationType

logger = logging.getLogger(__name__)


class MeteoAPIClient:
    """
    Client for the Meteo API v1.
    Each method performs exactly one HTTP call and raises MeteoError on failure.
    """

    def __init__(
        self,
        base_url: str,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        operation_timeouts: Optional[Mapping[OperationType, float]] = None,
        verify: bool | str = True,
        user_agent: str = "meteo-client/1.0",
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Meteo API client.

        Args:
            base_url: Base URL for API v1 endpoints
            connect_timeout: Connect timeout in seconds
            read_timeout: Default read timeout in seconds
            operation_timeouts: Per-operation read timeout overrides
            verify: TLS verification flag or path to a pinned CA bundle
            user_agent: User-Agent header value
            session: Optional pre-configured requests session
        """
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.operation_timeouts = dict(operation_timeouts or {})
        self.verify = verify

        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'application/json',
        })

    @classmethod
    def from_config(cls, config: MeteoConfig) -> 'MeteoAPIClient':
        """
        Create API client from configuration.

        Args:
            config: MeteoConfig object

        Returns:
            Configured MeteoAPIClient instance
        """
        return cls(
            base_url=config.api.base_url,
            connect_timeout=config.api.connect_timeout,
            read_timeout=config.api.read_timeout,
            operation_timeouts=config.api.operation_timeouts,
            verify=config.api.verify(),
            user_agent=config.api.user_agent
        )

    def timeout_for(self, operation: OperationType) -> tuple[float, float]:
        """(connect, read) timeout for an operation class."""
        return (self.connect_timeout, self.operation_timeouts.get(operation, self.read_timeout))

    def _request(
        self,
        method: str,
        path: str,
        operation: OperationType,
        auth: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None
    ) -> requests.Response:
        """
        Send one HTTP request.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            operation: Operation class, selects the read timeout
            auth: Value for the Authorization header
            params: Optional query parameters
            json: Optional JSON body

        Returns:
            Response with a 2xx status

        Raises:
            HttpError: Non-2xx status
            NetworkError: Transport failure
        """
        url = urljoin(self.base_url, path.lstrip('/'))
        headers = {'Authorization': auth} if auth else None

        logger.debug("%s %s params=%s", method, url, params)

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout_for(operation),
                verify=self.verify
            )
        except requests.RequestException as e:
            raise MeteoError.from_exception(e) from e

        logger.debug("%s %s -> %d", method, url, response.status_code)

        if not response.ok:
            raise HttpError(response.status_code, response.text)

        return response

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        """Parse the JSON body, keeping the raw text on failure."""
        try:
            return response.json()
        except ValueError as e:
            raise MalformedJsonError(
                f"Response is not valid JSON: {e}", raw_text=response.text, cause=e
            ) from e

    @staticmethod
    def _parse(model: Any, payload: Any, response: requests.Response) -> Any:
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise MalformedJsonError(
                f"Unexpected response shape: {e}", raw_text=response.text, cause=e
            ) from e

    @staticmethod
    def _parse_items(model: Type[BaseModel], items: List[Any], kind: str) -> List[Any]:
        """Validate list entries one at a time, skipping and logging the broken ones."""
        parsed = []
        for index, item in enumerate(items):
            try:
                parsed.append(model.model_validate(item))
            except PydanticValidationError as e:
                logger.warning("Skipping %s entry %d: %d validation errors", kind, index, e.error_count())
        return parsed

    def _call(
        self,
        method: str,
        path: str,
        data_type: Any,
        operation: OperationType,
        auth: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        require_data: bool = True
    ) -> Any:
        """
        Perform an enveloped call and return the unwrapped ``data`` payload.

        Raises:
            ApiRejectedError: Envelope reports ``success: false``
            MalformedJsonError: Body is not a valid envelope, or data is missing
        """
        response = self._request(method, path, operation, auth=auth, params=params, json=json)
        if not require_data and not response.content:
            return None

        payload = self._decode(response)
        envelope = self._parse(ApiResponse[data_type], payload, response)

        if not envelope.success:
            raise ApiRejectedError(envelope.error or f"{method} {path} was rejected by the server")

        if require_data and envelope.data is None:
            raise MalformedJsonError(f"{method} {path}: response data is null", raw_text=response.text)

        return envelope.data

    def _call_plain(
        self,
        method: str,
        path: str,
        model: Type[BaseModel],
        operation: OperationType,
        auth: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Perform a call whose body is not wrapped in the standard envelope."""
        response = self._request(method, path, operation, auth=auth, params=params)
        payload = self._decode(response)
        return self._parse(model, payload, response)

    @staticmethod
    def _segment(value: str) -> str:
        return quote(str(value), safe='')

    # ===================== AUTH =====================

    def login(self, username: str, password: str) -> AuthTokens:
        """
        Authenticate with username and password.

        Returns:
            Issued tokens
        """
        return self._call(
            'POST', 'auth/login', AuthTokens, OperationType.AUTHENTICATION,
            json={'username': username, 'password': password}
        )

    def register(self, username: str, email: str, password: str) -> AuthTokens:
        """Create an account and return its tokens."""
        return self._call(
            'POST', 'auth/register', AuthTokens, OperationType.AUTHENTICATION,
            json={'username': username, 'email': email, 'password': password}
        )

    def refresh(self, refresh_token: str) -> RefreshTokenResponse:
        """
        Exchange a refresh token for a new access token.

        The refresh token travels in the Authorization header and the
        response is not enveloped.
        """
        return self._call_plain(
            'POST', 'auth/refresh', RefreshTokenResponse, OperationType.AUTHENTICATION,
            auth=f"Bearer {refresh_token}"
        )

    def get_current_user(self, auth: str) -> UserInfo:
        return self._call('GET', 'auth/me', UserInfo, OperationType.AUTHENTICATION, auth=auth)

    # ===================== STATIONS =====================

    def get_stations(self, auth: str) -> List[StationInfo]:
        """
        List stations linked to the current user.

        Args:
            auth: Authorization header value

        Returns:
            List of StationInfo objects; entries that do not parse are skipped
        """
        items = self._call('GET', 'stations', List[Any], OperationType.STATION_DATA, auth=auth)
        return self._parse_items(StationInfo, items, 'station')

    def add_station(
        self,
        auth: str,
        station_number: str,
        custom_name: Optional[str] = None
    ) -> AddStationResponse:
        return self._call(
            'POST', 'stations', AddStationResponse, OperationType.STATION_DATA, auth=auth,
            json={'station_number': station_number, 'custom_name': custom_name}
        )

    def remove_station(self, auth: str, station_number: str) -> None:
        self._call(
            'DELETE', f"stations/{self._segment(station_number)}", Any,
            OperationType.STATION_DATA, auth=auth, require_data=False
        )

    def update_station(
        self,
        auth: str,
        station_number: str,
        custom_name: Optional[str] = None,
        is_favorite: Optional[bool] = None
    ) -> None:
        """
        Update station settings. Only the given fields are sent, as query parameters.
        """
        params: Dict[str, Any] = {}
        if custom_name is not None:
            params['custom_name'] = custom_name
        if is_favorite is not None:
            params['is_favorite'] = 'true' if is_favorite else 'false'

        self._call(
            'PATCH', f"stations/{self._segment(station_number)}", Any,
            OperationType.STATION_DATA, auth=auth, params=params, require_data=False
        )

    def get_station_parameters(self, auth: str, station_number: str) -> List[StationParameter]:
        """Parameter metadata and visibility for one station."""
        return self._call(
            'GET', f"stations/{self._segment(station_number)}/parameters",
            List[StationParameter], OperationType.PARAMETER_METADATA, auth=auth
        )

    def update_parameter_visibility(
        self,
        auth: str,
        station_number: str,
        parameter_code: str,
        is_visible: bool
    ) -> None:
        self._call(
            'PATCH',
            f"stations/{self._segment(station_number)}/parameters/{self._segment(parameter_code)}",
            Any, OperationType.PARAMETER_METADATA, auth=auth,
            json={'is_visible': is_visible}, require_data=False
        )

    def update_parameters_visibility(
        self,
        auth: str,
        station_number: str,
        updates: Mapping[str, bool]
    ) -> BulkVisibilityResult:
        """
        Update visibility of several parameters in one call.

        Args:
            auth: Authorization header value
            station_number: Station number
            updates: Mapping of parameter code to visibility

        Returns:
            Number of updated parameters and the total requested
        """
        body = {'parameters': [{'code': code, 'visible': visible} for code, visible in updates.items()]}
        return self._call(
            'PATCH', f"stations/{self._segment(station_number)}/parameters",
            BulkVisibilityResult, OperationType.PARAMETER_METADATA, auth=auth, json=body
        )

    # ===================== SENSOR DATA =====================

    def get_latest_data(self, auth: str) -> List[StationLatestData]:
        """Latest values for every station of the user in one call."""
        return self._call('GET', 'data/latest', List[StationLatestData], OperationType.SENSOR_DATA, auth=auth)

    def get_station_latest_data(self, auth: str, station_number: str) -> StationLatestData:
        return self._call(
            'GET', f"data/{self._segment(station_number)}/latest",
            StationLatestData, OperationType.SENSOR_DATA, auth=auth
        )

    def get_parameter_history(
        self,
        auth: str,
        station_number: str,
        parameter_code: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: Optional[int] = None
    ) -> ParameterHistory:
        """
        Time series of one parameter.

        Args:
            auth: Authorization header value
            station_number: Station number
            parameter_code: Parameter code
            start_time: Optional start, unix seconds
            end_time: Optional end, unix seconds
            limit: Optional maximum number of points

        Returns:
            ParameterHistory (top-level ``success``, no envelope)

        Raises:
            ApiRejectedError: If the server reports ``success: false``
        """
        params = {
            key: value for key, value in (
                ('start_time', start_time), ('end_time', end_time), ('limit', limit)
            ) if value is not None
        }

        history = self._call_plain(
            'GET',
            f"data/{self._segment(station_number)}/{self._segment(parameter_code)}/history",
            ParameterHistory, OperationType.SENSOR_DATA, auth=auth, params=params or None
        )

        if not history.success:
            raise ApiRejectedError(f"History request for {station_number}/{parameter_code} was rejected")

        return history

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False
