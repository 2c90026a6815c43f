"""
Authenticated session lifecycle: login, register, token refresh and logout.
"""

import logging
import threading
from typing import Callable, Optional, TypeVar

from meteo_api.api_client import MeteoAPIClient
from meteo_api.errors import (
    ApiRejectedError,
    AuthServerError,
    DecodeError,
    HttpError,
    InvalidCredentialsError,
    MeteoError,
    NetworkError,
    NoTokenError,
    OperationCancelled,
    SessionExpiredError,
    UserExistsError,
    ValidationError,
)
from meteo_api.models import AuthTokens, UserInfo
from meteo_api.results import Success
from meteo_api.retry import OperationType, RetryExecutor, RetryPolicies
from meteo_api.state import AuthStatus, ObservableState

from .storage import StorageError
from .token_store import AuthTokenStore, Session, token_preview

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREDENTIAL_REJECTION_STATUSES = {400, 401, 403, 422}


class AuthSessionManager:
    """
    Owns the current session.

    A single reentrant lock serializes login, register, refresh, logout and
    header reads, so no caller ever sees a half-updated session. Failed
    refreshes clear the session (fail-closed).
    """

    def __init__(
        self,
        client: MeteoAPIClient,
        token_store: AuthTokenStore,
        executor: Optional[RetryExecutor] = None,
        policies: Optional[RetryPolicies] = None
    ):
        """
        Initialize session manager.

        Args:
            client: API client used for the auth endpoints
            token_store: Where the session is persisted
            executor: Retry executor (default: one with real sleeping)
            policies: Retry policy registry (default: hardcoded policies)
        """
        self._client = client
        self._store = token_store
        self._executor = executor or RetryExecutor()
        self._policies = policies or RetryPolicies()
        self._lock = threading.RLock()

        self.status: ObservableState[AuthStatus] = ObservableState(
            AuthStatus(is_logged_in=token_store.has_session())
        )

    # ===================== LOGIN / REGISTER =====================

    def login(
        self,
        username: str,
        password: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Session:
        """
        Authenticate and persist the new session.

        Args:
            username: Account name
            password: Account password
            cancel_event: Optional cancellation event

        Returns:
            The stored Session

        Raises:
            InvalidCredentialsError: Credentials rejected
            AuthServerError: Server failure or unreadable response
            NetworkError: Transport failure after retries
        """
        if not username or not password:
            raise ValidationError("Username and password are required")

        with self.status.loading():
            with self._lock:
                tokens = self._authenticate(
                    lambda: self._client.login(username, password),
                    "login", cancel_event, registering=False
                )
                session = self._session_from(tokens, username=username, email="")
                self._store.save_session(session)
            self.status.update(is_logged_in=True)

        logger.info("User %s logged in (token %s)", username, token_preview(session.access_token))
        return session

    def register(
        self,
        username: str,
        password: str,
        email: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Session:
        """
        Create an account, then persist its session.

        Raises:
            UserExistsError: Account already exists
            InvalidCredentialsError: Registration data rejected
            AuthServerError: Server failure or unreadable response
            NetworkError: Transport failure after retries
        """
        if not username or not password or not email:
            raise ValidationError("Username, password and email are required")

        with self.status.loading():
            with self._lock:
                tokens = self._authenticate(
                    lambda: self._client.register(username, email, password),
                    "register", cancel_event, registering=True
                )
                session = self._session_from(tokens, username=username, email=email)
                self._store.save_session(session)
            self.status.update(is_logged_in=True)

        logger.info("User %s registered", username)
        return session

    def _authenticate(
        self,
        call: Callable[[], AuthTokens],
        name: str,
        cancel_event: Optional[threading.Event],
        registering: bool
    ) -> AuthTokens:
        policy = self._policies.policy_for(OperationType.AUTHENTICATION)
        result = self._executor.execute(policy, lambda attempt: call(), cancel_event=cancel_event, name=name)

        if isinstance(result, Success):
            return result.data

        error = result.last_error
        mapped = self._map_auth_error(error, registering)
        if mapped is error:
            raise error
        raise mapped from error

    @staticmethod
    def _map_auth_error(error: MeteoError, registering: bool) -> MeteoError:
        """Translate transport errors into the auth taxonomy."""
        if isinstance(error, (NetworkError, OperationCancelled, ValidationError)):
            return error

        if isinstance(error, HttpError):
            if registering and (error.status_code == 409 or 'exist' in error.body.lower()):
                return UserExistsError(f"Registration rejected: HTTP {error.status_code}", cause=error)
            if error.status_code in CREDENTIAL_REJECTION_STATUSES:
                return InvalidCredentialsError(f"Credentials rejected: HTTP {error.status_code}", cause=error)
            return AuthServerError(f"Auth server error: HTTP {error.status_code}", cause=error)

        if isinstance(error, ApiRejectedError):
            if registering and 'exist' in error.message.lower():
                return UserExistsError(error.message, cause=error)
            return InvalidCredentialsError(error.message, cause=error)

        if isinstance(error, DecodeError):
            return AuthServerError(f"Unreadable auth response: {error.message}", cause=error)

        return AuthServerError(error.message, cause=error)

    @staticmethod
    def _session_from(tokens: AuthTokens, username: str, email: str) -> Session:
        return Session(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            user_id=tokens.user_id,
            username=username,
            email=email
        )

    # ===================== TOKENS =====================

    def get_authorization_header(self) -> Optional[str]:
        """
        Authorization header for the current session.

        Returns:
            "Bearer <access token>", or None when logged out
        """
        with self._lock:
            session = self._store.load_session()
            return session.authorization_header() if session else None

    def refresh_access_token(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Obtain a new access token with the refresh token.

        Any failure (no refresh token, HTTP error, unreadable body,
        ``success: false``, missing token) clears the whole session.
        A cancelled refresh leaves the session untouched.

        Returns:
            True if the access token was replaced
        """
        with self._lock:
            refresh_token = self._store.get_refresh_token()
            if not refresh_token:
                logger.warning("No refresh token available, clearing session")
                self._clear_session(NoTokenError())
                return False

            policy = self._policies.policy_for(OperationType.AUTHENTICATION)
            result = self._executor.execute(
                policy,
                lambda attempt: self._client.refresh(refresh_token),
                cancel_event=cancel_event,
                name="refresh"
            )

            if not isinstance(result, Success):
                if isinstance(result.last_error, OperationCancelled):
                    logger.info("Token refresh cancelled")
                    return False
                logger.warning("Token refresh failed (%s), clearing session", result.last_error.code)
                self._clear_session(SessionExpiredError(cause=result.last_error))
                return False

            response = result.data
            if not response.success or not response.access_token:
                logger.warning("Token refresh rejected by server, clearing session")
                self._clear_session(SessionExpiredError("Refresh rejected"))
                return False

            self._store.update_access_token(response.access_token)
            logger.info("Access token refreshed: %s", token_preview(response.access_token))
            return True

    def _refresh_after_rejection(self, rejected_header: str) -> bool:
        """Refresh unless another thread already replaced the rejected token."""
        with self._lock:
            current = self.get_authorization_header()
            if current is not None and current != rejected_header:
                return True
            return self.refresh_access_token()

    def authorized(self, request: Callable[[str], T]) -> T:
        """
        Run a request with the current Authorization header.

        On HTTP 401 the access token is refreshed once and the request repeated.

        Args:
            request: Callable taking the header value

        Returns:
            The request's result

        Raises:
            NoTokenError: Not logged in
            SessionExpiredError: Refresh failed; the session has been cleared
        """
        header = self.get_authorization_header()
        if header is None:
            raise NoTokenError("No valid authentication token")

        try:
            return request(header)
        except HttpError as e:
            if e.status_code != 401:
                raise
            logger.info("Access token rejected (HTTP 401), refreshing")
            if not self._refresh_after_rejection(header):
                raise SessionExpiredError(cause=e) from e

        header = self.get_authorization_header()
        if header is None:
            raise SessionExpiredError()
        return request(header)

    # ===================== USER / LOGOUT =====================

    def fetch_current_user(self) -> UserInfo:
        """
        Load the current user from /auth/me and store username and email.

        Returns:
            UserInfo of the logged-in user
        """
        user = self.authorized(self._client.get_current_user)
        with self._lock:
            self._store.update_user_info(user.username, user.email)
        return user

    def is_logged_in(self) -> bool:
        return self._store.has_session()

    def current_session(self) -> Optional[Session]:
        return self._store.load_session()

    def logout(self) -> None:
        """End the session and clear all stored credentials."""
        with self._lock:
            self._clear_session()
        logger.info("User logged out, all auth data cleared")

    def force_logout(self) -> None:
        """Clear all state without preconditions. Never raises."""
        with self._lock:
            try:
                self._store.clear()
            except StorageError as e:
                logger.error("Could not clear stored session: %s", e)
            self.status.update(is_logged_in=False, is_loading=False)
        logger.info("Forced logout")

    def _clear_session(self, error: Optional[MeteoError] = None) -> None:
        self._store.clear()
        self.status.update(is_logged_in=False, last_error=error)
