"""
Error taxonomy for the Meteo client.

Every failure the data-access layer can surface is a MeteoError subclass with a
stable ``code`` for programmatic handling and a ``user_message`` that is safe to
show in a UI. Foreign exceptions (requests, json, pydantic) are converted with
``MeteoError.from_exception`` so callers never have to know about transport
libraries.
"""

import json
from enum import Enum
from typing import Optional

import requests
from pydantic import ValidationError as PydanticValidationError


class ErrorClass(str, Enum):
    """Coarse error classes used by retry policies."""
    HTTP = "http"
    NETWORK = "network"
    DECODE = "decode"
    OTHER = "other"


class MeteoError(Exception):
    """Base exception for all Meteo client errors."""

    code: str = "UNKNOWN_ERROR"
    kind: str = "unknown"
    default_user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.default_user_message)
        self.message = message or self.default_user_message
        self.cause = cause

    @property
    def user_message(self) -> str:
        """Human-readable message that never leaks internal details."""
        return self.default_user_message

    @staticmethod
    def from_exception(exc: BaseException) -> 'MeteoError':
        """
        Convert any exception into the Meteo error taxonomy.

        Args:
            exc: Exception raised by a lower layer

        Returns:
            MeteoError instance (the same object if it already is one)
        """
        if isinstance(exc, MeteoError):
            return exc
        if isinstance(exc, requests.Timeout):
            return NetworkTimeoutError(str(exc), cause=exc)
        if isinstance(exc, requests.ConnectionError):
            return NoConnectionError(str(exc), cause=exc)
        if isinstance(exc, requests.HTTPError) and exc.response is not None:
            return HttpError(exc.response.status_code, exc.response.text, cause=exc)
        if isinstance(exc, requests.RequestException):
            return ProtocolError(str(exc), cause=exc)
        if isinstance(exc, json.JSONDecodeError):
            return MalformedJsonError(str(exc), raw_text=exc.doc, cause=exc)
        if isinstance(exc, PydanticValidationError):
            return MalformedJsonError(f"Unexpected response shape: {exc}", cause=exc)
        return MeteoError(f"{type(exc).__name__}: {exc}", cause=exc)


# ===================== AUTH =====================

class AuthError(MeteoError):
    """Base class for authentication failures."""
    code = "AUTH_ERROR"
    kind = "auth"
    default_user_message = "Authentication failed."


class InvalidCredentialsError(AuthError):
    """Username or password rejected by the server."""
    code = "AUTH_INVALID_CREDENTIALS"
    default_user_message = "Invalid username or password."


class UserExistsError(AuthError):
    """Registration attempted for an existing account."""
    code = "AUTH_USER_EXISTS"
    default_user_message = "An account with this name already exists."


class NoTokenError(AuthError):
    """No access token is stored; the user is not logged in."""
    code = "AUTH_NO_TOKEN"
    default_user_message = "Please log in to continue."


class AuthServerError(AuthError):
    """Auth endpoint failed for reasons unrelated to the credentials."""
    code = "AUTH_SERVER_ERROR"
    default_user_message = "The authentication service is unavailable. Please try later."


class SessionExpiredError(AuthError):
    """Token refresh failed and the session was cleared."""
    code = "AUTH_SESSION_EXPIRED"
    default_user_message = "Your session has expired. Please log in again."


# ===================== NETWORK =====================

class NetworkError(MeteoError):
    """Base class for transport failures."""
    code = "NETWORK_ERROR"
    kind = "network"
    default_user_message = "Network error. Check your connection."


class NetworkTimeoutError(NetworkError):
    code = "NETWORK_TIMEOUT"
    default_user_message = "The request took too long."


class NoConnectionError(NetworkError):
    code = "NETWORK_NO_CONNECTION"
    default_user_message = "Check your internet connection."


class ProtocolError(NetworkError):
    code = "NETWORK_PROTOCOL_ERROR"


# ===================== DATA =====================

class DecodeError(MeteoError):
    """Base class for undecodable server responses."""
    code = "DATA_DECODE_ERROR"
    kind = "decode"
    default_user_message = "Could not process the server response."


class MalformedJsonError(DecodeError):
    """Response body is not the JSON we expected. Keeps the raw text."""
    code = "DATA_MALFORMED_JSON"

    def __init__(
        self,
        message: Optional[str] = None,
        raw_text: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause=cause)
        self.raw_text = raw_text


class HttpError(MeteoError):
    """Non-2xx HTTP response. Status code and body are kept for diagnostics."""
    code = "NETWORK_HTTP_ERROR"
    kind = "http"

    def __init__(self, status_code: int, body: str = "", cause: Optional[BaseException] = None):
        super().__init__(f"HTTP {status_code}: {body[:200]}", cause=cause)
        self.status_code = status_code
        self.body = body
        self.code = f"NETWORK_HTTP_{status_code}"

    @property
    def user_message(self) -> str:
        if self.status_code == 401:
            return "Authorization required."
        if self.status_code == 404:
            return "Data not found."
        if self.status_code == 503:
            return "The service is temporarily unavailable."
        if self.status_code >= 500:
            return "Server error. Please try later."
        return f"Network error ({self.status_code})."


class ApiRejectedError(MeteoError):
    """Server answered 2xx but the envelope reported ``success: false``."""
    code = "API_REJECTED"
    kind = "api"
    default_user_message = "The server rejected the request."


class ValidationError(MeteoError):
    """Caller supplied an invalid argument."""
    code = "DATA_VALIDATION_ERROR"
    kind = "validation"

    @property
    def user_message(self) -> str:
        return self.message


class OperationCancelled(MeteoError):
    """Caller lost interest before the operation finished."""
    code = "OPERATION_CANCELLED"
    kind = "cancelled"
    default_user_message = "The operation was cancelled."


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Map an exception onto the coarse classes retry policies reason about.

    Args:
        exc: Exception raised by an operation

    Returns:
        ErrorClass for the exception
    """
    error = MeteoError.from_exception(exc)
    if isinstance(error, HttpError):
        return ErrorClass.HTTP
    if isinstance(error, NetworkError):
        return ErrorClass.NETWORK
    if isinstance(error, DecodeError):
        return ErrorClass.DECODE
    return ErrorClass.OTHER
