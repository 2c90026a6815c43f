"""
Unit tests for API module components.
Tests errors, results, retry engine, configuration, HTTP client and state
in isolation with mocking.
"""

import pytest
from unittest.mock import Mock, MagicMock
import json
import logging
import threading
import tempfile

import requests
import yaml

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from meteo_api import (
    ErrorClass,
    MeteoError,
    NetworkTimeoutError,
    NoConnectionError,
    ProtocolError,
    MalformedJsonError,
    HttpError,
    ApiRejectedError,
    ValidationError,
    OperationCancelled,
    classify_error,
    Success,
    Failure,
    catching,
    OperationType,
    RetryPolicy,
    RetryPolicies,
    RetryConfigSource,
    RetryExecutor,
    RetryFailure,
    DEFAULT_POLICIES,
    MeteoConfig,
    APISettings,
    LoggingSettings,
    load_config,
    setup_logging,
    MeteoAPIClient,
    StationInfo,
    SensorDataPoint,
    HistoryPoint,
    ObservableState,
    OperationStatus
)


def make_response(status=200, payload=None, text=None):
    """Build a mock requests.Response."""
    response = Mock(spec=requests.Response)
    response.status_code = status
    response.ok = 200 <= status < 300
    if text is None:
        text = json.dumps(payload) if payload is not None else ""
    response.text = text
    response.content = text.encode('utf-8')
    if payload is not None:
        response.json.return_value = payload
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response


class TestErrors:
    """Unit tests for the error taxonomy."""

    def test_requests_timeout_maps_to_network_timeout(self):
        """Test requests.Timeout conversion."""
        error = MeteoError.from_exception(requests.Timeout("read timed out"))
        assert isinstance(error, NetworkTimeoutError)
        assert classify_error(error) == ErrorClass.NETWORK

    def test_connection_error_maps_to_no_connection(self):
        """Test requests.ConnectionError conversion."""
        error = MeteoError.from_exception(requests.ConnectionError("refused"))
        assert isinstance(error, NoConnectionError)

    def test_other_request_exception_maps_to_protocol_error(self):
        """Test generic RequestException conversion."""
        error = MeteoError.from_exception(requests.TooManyRedirects("loop"))
        assert isinstance(error, ProtocolError)

    def test_json_error_maps_to_decode(self):
        """Test JSONDecodeError keeps the raw document."""
        try:
            json.loads("{broken")
        except json.JSONDecodeError as e:
            error = MeteoError.from_exception(e)

        assert isinstance(error, MalformedJsonError)
        assert error.raw_text == "{broken"
        assert classify_error(error) == ErrorClass.DECODE

    def test_meteo_error_passes_through(self):
        """Test that MeteoError instances are returned unchanged."""
        original = HttpError(503, "busy")
        assert MeteoError.from_exception(original) is original

    def test_unknown_exception_is_other(self):
        """Test classification of unrelated exceptions."""
        assert classify_error(KeyError("x")) == ErrorClass.OTHER
        assert classify_error(ValidationError("bad")) == ErrorClass.OTHER

    def test_http_error_code_and_message(self):
        """Test HttpError keeps status and exposes a safe message."""
        error = HttpError(503, "Traceback (most recent call last): ...")
        assert error.status_code == 503
        assert error.code == "NETWORK_HTTP_503"
        assert "Traceback" not in error.user_message


class TestResults:
    """Unit tests for Success/Failure."""

    def test_success_accessors(self):
        """Test Success accessors and map."""
        result = Success(2)
        assert result.is_success
        assert result.get_or_none() == 2
        assert result.get_or_else(5) == 2
        assert result.map(lambda x: x * 10).data == 20

    def test_failure_accessors(self):
        """Test Failure accessors."""
        result = Failure(NoConnectionError("socket closed"))
        assert not result.is_success
        assert result.kind == "network"
        assert result.code == "NETWORK_NO_CONNECTION"
        assert result.get_or_none() is None
        assert result.get_or_else(5) == 5
        assert result.map(lambda x: x * 10) is result

    def test_catching_wraps_meteo_error(self):
        """Test that MeteoError becomes Failure."""
        def boom():
            raise ApiRejectedError("nope")

        result = catching(boom, "test")
        assert isinstance(result, Failure)
        assert isinstance(result.error, ApiRejectedError)

    def test_catching_hides_unexpected_errors(self):
        """Test that unexpected exceptions do not leak internal text."""
        def boom():
            raise RuntimeError("secret internal detail")

        result = catching(boom, "test")
        assert isinstance(result, Failure)
        assert "secret" not in result.message

    def test_catching_returns_success(self):
        """Test normal completion."""
        assert catching(lambda: [1, 2]).data == [1, 2]


class TestRetryPolicy:
    """Unit tests for RetryPolicy."""

    def test_max_attempts_coerced(self):
        """Test that 0 or negative attempts become 1."""
        assert RetryPolicy(max_attempts=0).max_attempts == 1
        assert RetryPolicy(max_attempts=-3).max_attempts == 1

    def test_other_not_allowed_as_retryable(self):
        """Test that OTHER cannot be configured as retryable."""
        with pytest.raises(Exception):
            RetryPolicy(retryable_errors=frozenset({ErrorClass.OTHER}))

    def test_constant_delay(self):
        """Test non-exponential delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0, use_exponential_backoff=False)
        assert policy.delay(0) == 1.0
        assert policy.delay(5) == 1.0

    def test_exponential_delay_is_capped(self):
        """Test exponential delay with cap."""
        policy = RetryPolicy(
            base_delay=0.5, max_delay=2.0, use_exponential_backoff=True, backoff_multiplier=2.0
        )
        assert policy.delay(0) == 0.5
        assert policy.delay(1) == 1.0
        assert policy.delay(2) == 2.0
        assert policy.delay(10) == 2.0

    def test_should_retry_status_codes(self):
        """Test that only server-side statuses are retried."""
        policy = DEFAULT_POLICIES[OperationType.STATION_DATA]
        assert policy.should_retry(HttpError(503))
        assert not policy.should_retry(HttpError(404))
        assert not policy.should_retry(HttpError(401))

    def test_should_retry_error_classes(self):
        """Test decode errors per policy."""
        assert DEFAULT_POLICIES[OperationType.SENSOR_DATA].should_retry(MalformedJsonError("x"))
        assert not DEFAULT_POLICIES[OperationType.STATION_DATA].should_retry(MalformedJsonError("x"))
        assert not DEFAULT_POLICIES[OperationType.SENSOR_DATA].should_retry(ValidationError("x"))

    def test_default_policies_cover_all_operations(self):
        """Test hardcoded defaults."""
        for operation in OperationType:
            assert operation in DEFAULT_POLICIES
        assert DEFAULT_POLICIES[OperationType.SENSOR_DATA].max_attempts == 3
        assert DEFAULT_POLICIES[OperationType.AUTHENTICATION].max_attempts == 2


class TestRetryPolicies:
    """Unit tests for policy lookup."""

    def test_defaults_without_overrides(self):
        """Test fallback to hardcoded defaults."""
        policies = RetryPolicies()
        assert policies.policy_for(OperationType.CONFIGURATION) == DEFAULT_POLICIES[OperationType.CONFIGURATION]

    def test_override_wins(self):
        """Test local overrides."""
        override = RetryPolicy(max_attempts=7)
        policies = RetryPolicies(overrides={OperationType.SENSOR_DATA: override})
        assert policies.policy_for(OperationType.SENSOR_DATA) is override
        assert policies.policy_for(OperationType.STATION_DATA) == DEFAULT_POLICIES[OperationType.STATION_DATA]

    def test_failing_source_is_skipped(self):
        """Test that an unavailable external source falls back."""
        source = Mock(spec=RetryConfigSource)
        source.get_policy.side_effect = RuntimeError("remote config down")

        policies = RetryPolicies(source=source)
        assert policies.policy_for(OperationType.SENSOR_DATA) == DEFAULT_POLICIES[OperationType.SENSOR_DATA]

    def test_source_policy_used(self):
        """Test external source takes precedence."""
        remote = RetryPolicy(max_attempts=9)
        source = Mock(spec=RetryConfigSource)
        source.get_policy.return_value = remote

        policies = RetryPolicies(overrides={OperationType.SENSOR_DATA: RetryPolicy(max_attempts=2)}, source=source)
        assert policies.policy_for(OperationType.SENSOR_DATA) is remote


class TestRetryExecutor:
    """Unit tests for RetryExecutor."""

    @pytest.fixture
    def sleep(self):
        """Recording sleep replacement."""
        return Mock()

    @pytest.fixture
    def executor(self, sleep):
        """Executor that never really sleeps."""
        return RetryExecutor(sleep=sleep)

    def test_success_first_attempt(self, executor, sleep):
        """Test immediate success."""
        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], lambda attempt: 42)
        assert isinstance(result, Success)
        assert result.data == 42
        sleep.assert_not_called()

    def test_attempt_index_passed(self, executor):
        """Test that the operation receives zero-based attempt indexes."""
        seen = []

        def operation(attempt):
            seen.append(attempt)
            if attempt < 2:
                raise requests.Timeout()
            return "ok"

        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], operation)
        assert result.data == "ok"
        assert seen == [0, 1, 2]

    def test_exhausts_attempts(self, executor, sleep):
        """Test three timeouts under the sensor policy."""
        operation = Mock(side_effect=requests.Timeout())

        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], operation)

        assert isinstance(result, RetryFailure)
        assert result.attempts_made == 3
        assert isinstance(result.last_error, NetworkTimeoutError)
        assert operation.call_count == 3
        # No sleep after the last attempt
        assert sleep.call_count == 2
        sleep.assert_called_with(1.0)

    def test_exponential_backoff_delays(self, sleep):
        """Test delays grow exponentially up to the cap."""
        policy = RetryPolicy(
            max_attempts=4, base_delay=0.5, max_delay=1.5,
            use_exponential_backoff=True, backoff_multiplier=2.0,
            retryable_errors=frozenset({ErrorClass.NETWORK})
        )
        executor = RetryExecutor(sleep=sleep)

        executor.execute(policy, Mock(side_effect=requests.ConnectionError()))

        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0, 1.5]

    def test_non_retryable_fails_immediately(self, executor):
        """Test 404 is not retried."""
        operation = Mock(side_effect=HttpError(404, "not found"))

        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], operation)

        assert result.attempts_made == 1
        assert operation.call_count == 1

    def test_cancelled_before_start(self, executor):
        """Test that a set cancel event prevents any attempt."""
        cancel = threading.Event()
        cancel.set()
        operation = Mock(return_value=1)

        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], operation, cancel_event=cancel)

        assert isinstance(result.last_error, OperationCancelled)
        operation.assert_not_called()

    def test_cancelled_during_backoff(self, executor):
        """Test that cancelling between attempts stops retrying."""
        cancel = threading.Event()

        def operation(attempt):
            cancel.set()
            raise requests.Timeout()

        result = executor.execute(DEFAULT_POLICIES[OperationType.SENSOR_DATA], operation, cancel_event=cancel)

        assert isinstance(result.last_error, OperationCancelled)
        assert result.attempts_made == 1

    def test_execute_with_fallback(self, executor):
        """Test fallback value on failure."""
        value = executor.execute_with_fallback(
            DEFAULT_POLICIES[OperationType.SENSOR_DATA], -1000.0, Mock(side_effect=requests.Timeout())
        )
        assert value == -1000.0

    def test_execute_or_raise(self, executor):
        """Test that the last error is raised."""
        with pytest.raises(NoConnectionError):
            executor.execute_or_raise(
                DEFAULT_POLICIES[OperationType.STATION_DATA], Mock(side_effect=requests.ConnectionError())
            )


class TestMeteoConfig:
    """Unit tests for configuration management."""

    @pytest.fixture
    def config_dict(self):
        """Minimal valid configuration."""
        return {
            'api': {'base_url': 'http://localhost:8085/api/v1'},
            'retry': {
                'sensor_data': {'max_attempts': 5, 'retryable_errors': ['network']}
            },
            'storage': {'backend': 'memory'},
            'logging': {'level': 'debug'}
        }

    def test_from_dict(self, config_dict):
        """Test nested sections and defaults."""
        config = MeteoConfig.from_dict(config_dict)

        assert config.api.base_url == 'http://localhost:8085/api/v1/'
        assert (config.api.connect_timeout, config.api.read_timeout) == (10.0, 30.0)
        assert config.retry[OperationType.SENSOR_DATA].max_attempts == 5
        assert config.retry[OperationType.SENSOR_DATA].retryable_errors == frozenset({ErrorClass.NETWORK})
        assert config.cache.sensor_value_ttl_seconds == 300
        assert config.cache.parameter_config_ttl_seconds == 900
        assert config.logging.level == 'DEBUG'
        assert config.debug is False

    def test_operation_timeout_override(self):
        """Test per-operation read timeout reaches the client."""
        config = MeteoConfig.from_dict({'api': {'base_url': 'http://x/', 'operation_timeouts': {'sensor_data': 5}}})
        client = MeteoAPIClient.from_config(config)

        assert client.timeout_for(OperationType.SENSOR_DATA) == (10.0, 5.0)
        assert client.timeout_for(OperationType.STATION_DATA) == (10.0, 30.0)
        client.close()

    def test_pinning_requires_bundle(self):
        """Test certificate pinning validation."""
        with pytest.raises(Exception):
            APISettings(base_url='http://x/', certificate_pinning=True)

        settings = APISettings(base_url='http://x/', certificate_pinning=True, pinned_cert_path='ca.pem')
        assert settings.verify() == 'ca.pem'

    def test_invalid_log_level(self):
        """Test log level validation."""
        with pytest.raises(ValueError):
            LoggingSettings(level='LOUD')

    def test_setup_logging_closes_replaced_handlers(self):
        """Test reconfiguring logging closes the previous log file."""
        with tempfile.TemporaryDirectory() as tmp:
            settings = LoggingSettings(file=str(Path(tmp) / 'logs' / 'meteo.log'))
            setup_logging(settings)
            first = [h for h in logging.getLogger('meteo_api').handlers if isinstance(h, logging.FileHandler)]

            setup_logging(settings)

            assert len(first) == 1
            assert first[0].stream is None
            assert first[0] not in logging.getLogger('meteo_data').handlers

            setup_logging(LoggingSettings())

    def test_file_storage_requires_path(self, config_dict):
        """Test storage validation."""
        config_dict['storage'] = {'backend': 'file'}
        with pytest.raises(Exception):
            MeteoConfig.from_dict(config_dict)

    def test_yaml_round_trip(self, config_dict):
        """Test loading and saving YAML."""
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'meteo_config.yaml'
            with open(path, 'w', encoding='utf-8') as f:
                yaml.dump(config_dict, f)

            config = load_config(path)
            saved = Path(tmp) / 'saved.yaml'
            config.save_yaml(saved)

            assert MeteoConfig.from_yaml(saved) == config

    def test_missing_file(self):
        """Test FileNotFoundError for missing config."""
        with pytest.raises(FileNotFoundError):
            MeteoConfig.from_yaml('/nonexistent/meteo_config.yaml')

    def test_invalid_yaml(self):
        """Test ValueError on invalid YAML."""
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'bad.yaml'
            path.write_text("api: [unclosed", encoding='utf-8')
            with pytest.raises(ValueError):
                MeteoConfig.from_yaml(path)


class TestModels:
    """Unit tests for wire models."""

    def test_station_number_coerced(self):
        """Test numeric station numbers become strings."""
        station = StationInfo(station_number=60000105, name="Tomsk")
        assert station.station_number == "60000105"
        assert station.display_name == "Tomsk"

    def test_custom_name_is_display_name(self):
        """Test display name preference."""
        station = StationInfo(station_number="60000105", name="Tomsk", custom_name="Home")
        assert station.display_name == "Home"

    def test_invalid_coordinates_dropped(self):
        """Test out-of-range coordinates become None."""
        station = StationInfo(station_number="60000105", latitude=95.0, longitude=84.0)
        assert station.latitude is None
        assert not station.has_coordinates

    def test_parameter_code_list_accepted(self):
        """Test parameters given as bare codes."""
        station = StationInfo(station_number="60000105", parameters=["4402", "5402"])
        assert [p.code for p in station.parameters] == ["4402", "5402"]

    def test_history_point_to_utc(self):
        """Test conversion of unix seconds."""
        point = SensorDataPoint.from_history(HistoryPoint(time=1700000000, value=-3.5))
        assert point.timestamp.tzinfo is not None
        assert point.time == 1700000000
        assert point.value == -3.5


class TestMeteoAPIClient:
    """Unit tests for MeteoAPIClient with a mocked session."""

    @pytest.fixture
    def session(self):
        """Mock requests session."""
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        return session

    @pytest.fixture
    def client(self, session):
        """Client bound to the mock session."""
        return MeteoAPIClient(
            base_url='http://api.test/api/v1',
            operation_timeouts={OperationType.SENSOR_DATA: 5.0},
            session=session
        )

    def test_login_request(self, client, session):
        """Test login body and envelope unwrapping."""
        session.request.return_value = make_response(payload={
            'success': True,
            'data': {'user_id': 7, 'access_token': 'A', 'refresh_token': 'R'}
        })

        tokens = client.login('demoUser', 'demoPass')

        assert tokens.access_token == 'A'
        assert tokens.user_id == '7'
        args, kwargs = session.request.call_args
        assert args == ('POST', 'http://api.test/api/v1/auth/login')
        assert kwargs['json'] == {'username': 'demoUser', 'password': 'demoPass'}
        assert kwargs['timeout'] == (10.0, 30.0)

    def test_refresh_uses_bearer_refresh_token(self, client, session):
        """Test refresh token header and plain response."""
        session.request.return_value = make_response(payload={'success': True, 'access_token': 'A2'})

        response = client.refresh('R')

        assert response.access_token == 'A2'
        assert session.request.call_args.kwargs['headers'] == {'Authorization': 'Bearer R'}

    def test_http_error_raised(self, client, session):
        """Test non-2xx status conversion."""
        session.request.return_value = make_response(status=503, text='maintenance')

        with pytest.raises(HttpError) as exc_info:
            client.get_stations('Bearer A')

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == 'maintenance'

    def test_transport_error_converted(self, client, session):
        """Test requests exceptions become NetworkError."""
        session.request.side_effect = requests.Timeout()

        with pytest.raises(NetworkTimeoutError):
            client.get_stations('Bearer A')

    def test_malformed_json_keeps_raw_text(self, client, session):
        """Test undecodable body."""
        session.request.return_value = make_response(text='<html>oops</html>')

        with pytest.raises(MalformedJsonError) as exc_info:
            client.get_station_latest_data('Bearer A', '60000105')

        assert exc_info.value.raw_text == '<html>oops</html>'

    def test_envelope_rejection(self, client, session):
        """Test success=false envelope."""
        session.request.return_value = make_response(payload={'success': False, 'error': 'Station not found'})

        with pytest.raises(ApiRejectedError):
            client.get_station_parameters('Bearer A', '60000105')

    def test_update_station_query_params(self, client, session):
        """Test PATCH /stations/{num} query parameters."""
        session.request.return_value = make_response(payload={'success': True, 'data': None})

        client.update_station('Bearer A', '60000105', custom_name='Home', is_favorite=True)

        args, kwargs = session.request.call_args
        assert args == ('PATCH', 'http://api.test/api/v1/stations/60000105')
        assert kwargs['params'] == {'custom_name': 'Home', 'is_favorite': 'true'}

    def test_bulk_visibility_body(self, client, session):
        """Test bulk visibility request body."""
        session.request.return_value = make_response(payload={
            'success': True, 'data': {'success': True, 'updated': 2, 'total': 2}
        })

        result = client.update_parameters_visibility('Bearer A', '60000105', {'4402': True, 'WS': False})

        assert (result.updated, result.total) == (2, 2)
        assert session.request.call_args.kwargs['json'] == {
            'parameters': [{'code': '4402', 'visible': True}, {'code': 'WS', 'visible': False}]
        }

    def test_history_not_enveloped(self, client, session):
        """Test history parsing, query and operation timeout."""
        session.request.return_value = make_response(payload={
            'success': True,
            'station_number': '60000105',
            'parameter': {'code': '4402', 'name': 'Temperature', 'unit': '°C'},
            'data': [{'time': 1700000000, 'value': 1.5}, {'time': 1700000600, 'value': 1.7}],
            'count': 2
        })

        history = client.get_parameter_history('Bearer A', '60000105', '4402', start_time=1700000000, limit=10)

        assert history.count == 2
        assert [p.value for p in history.data] == [1.5, 1.7]
        args, kwargs = session.request.call_args
        assert args[1] == 'http://api.test/api/v1/data/60000105/4402/history'
        assert kwargs['params'] == {'start_time': 1700000000, 'limit': 10}
        assert kwargs['timeout'] == (10.0, 5.0)

    def test_history_rejected(self, client, session):
        """Test top-level success=false in history."""
        session.request.return_value = make_response(payload={'success': False, 'data': []})

        with pytest.raises(ApiRejectedError):
            client.get_parameter_history('Bearer A', '60000105', '4402')

    def test_delete_with_empty_body(self, client, session):
        """Test DELETE tolerates an empty body."""
        session.request.return_value = make_response(status=204, text='')

        assert client.remove_station('Bearer A', '60000105') is None

    def test_broken_station_entries_skipped(self, client, session):
        """Test one bad station entry does not fail the whole list."""
        session.request.return_value = make_response(payload={
            'success': True,
            'data': [
                {'station_number': '60000105', 'name': 'Tomsk', 'location': '56.46,84.96'},
                {'name': 'broken', 'latitude': 56.0, 'longitude': 85.0},
                'garbage'
            ]
        })

        stations = client.get_stations('Bearer A')

        assert [s.station_number for s in stations] == ['60000105', '']
        assert stations[1].name == 'broken'

    def test_from_config(self):
        """Test client creation from configuration."""
        config = MeteoConfig.from_dict({'api': {'base_url': 'http://api.test/api/v1', 'read_timeout': 12}})
        client = MeteoAPIClient.from_config(config)
        assert client.base_url == 'http://api.test/api/v1/'
        assert client.timeout_for(OperationType.STATION_DATA) == (10.0, 12.0)
        client.close()


class TestObservableState:
    """Unit tests for ObservableState."""

    def test_listeners_notified(self):
        """Test update notification and unsubscribe."""
        state = ObservableState(OperationStatus())
        seen = []
        unsubscribe = state.subscribe(seen.append)

        state.update(is_loading=True)
        unsubscribe()
        state.update(is_loading=False)

        assert len(seen) == 1
        assert seen[0].is_loading

    def test_loading_records_error(self):
        """Test loading() context manager error capture."""
        state = ObservableState(OperationStatus())

        with pytest.raises(HttpError):
            with state.loading():
                raise HttpError(500)

        assert state.value.is_loading is False
        assert isinstance(state.value.last_error, HttpError)

    def test_failing_listener_does_not_break_update(self):
        """Test that listener exceptions are contained."""
        state = ObservableState(OperationStatus())
        state.subscribe(Mock(side_effect=RuntimeError("ui crashed")))

        assert state.update(is_loading=True).is_loading
