"""
Persistence of the authenticated session.
"""

import logging
import threading
import time
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from meteo_api.errors import NoTokenError, ValidationError

from .storage import SecureStorage

logger = logging.getLogger(__name__)

KEY_ACCESS_TOKEN = "access_token"
KEY_REFRESH_TOKEN = "refresh_token"
KEY_USER_ID = "user_id"
KEY_USERNAME = "username"
KEY_EMAIL = "email"
KEY_SAVED_AT = "saved_at"

SESSION_KEYS = (KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, KEY_USER_ID, KEY_USERNAME, KEY_EMAIL, KEY_SAVED_AT)


def token_preview(token: Optional[str]) -> str:
    """Loggable prefix of a token; never the whole value."""
    if not token:
        return "No token"
    return f"{token[:10]}..."


class Session(BaseModel):
    """Authenticated session. Both tokens are always present."""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    user_id: str = Field(default="")
    username: str = Field(default="")
    email: str = Field(default="")

    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    def __repr__(self) -> str:
        return (
            f"Session(user_id={self.user_id!r}, username={self.username!r}, "
            f"access_token={token_preview(self.access_token)!r})"
        )

    __str__ = __repr__


class AuthTokenStore:
    """
    Reads and writes the session through a SecureStorage.

    All fields are written in one storage edit under the store lock, so the
    stored session is either complete or absent.
    """

    def __init__(self, storage: SecureStorage, clock: Callable[[], float] = time.time):
        self._storage = storage
        self._clock = clock
        self._lock = threading.RLock()

    def save_session(self, session: Session) -> None:
        """
        Persist a complete session, replacing any previous one.

        Args:
            session: Session to store
        """
        with self._lock:
            self._storage.edit({
                KEY_ACCESS_TOKEN: session.access_token,
                KEY_REFRESH_TOKEN: session.refresh_token,
                KEY_USER_ID: session.user_id,
                KEY_USERNAME: session.username,
                KEY_EMAIL: session.email,
                KEY_SAVED_AT: int(self._clock()),
            })
            logger.debug("Session saved for user %s", session.user_id)

    def load_session(self) -> Optional[Session]:
        """
        Load the stored session.

        Returns:
            Session, or None when nothing (or only half a session) is stored.
            A half session is removed from storage.
        """
        with self._lock:
            access_token = self._storage.get_string(KEY_ACCESS_TOKEN)
            refresh_token = self._storage.get_string(KEY_REFRESH_TOKEN)

            if not access_token and not refresh_token:
                return None

            if not access_token or not refresh_token:
                logger.warning("Stored session is incomplete, clearing it")
                self.clear()
                return None

            return Session(
                access_token=access_token,
                refresh_token=refresh_token,
                user_id=self._storage.get_string(KEY_USER_ID, ""),
                username=self._storage.get_string(KEY_USERNAME, ""),
                email=self._storage.get_string(KEY_EMAIL, "")
            )

    def update_access_token(self, access_token: str) -> None:
        """
        Replace the access token of the existing session.

        Raises:
            ValidationError: If the token is empty
            NoTokenError: If there is no session to update
        """
        if not access_token:
            raise ValidationError("Access token must not be empty")

        with self._lock:
            if not self._storage.get_string(KEY_REFRESH_TOKEN):
                raise NoTokenError("Cannot update access token without a stored session")
            self._storage.edit({
                KEY_ACCESS_TOKEN: access_token,
                KEY_SAVED_AT: int(self._clock()),
            })
            logger.debug("Access token updated: %s", token_preview(access_token))

    def update_user_info(self, username: str, email: str) -> None:
        with self._lock:
            if not self._storage.get_string(KEY_ACCESS_TOKEN):
                raise NoTokenError("Cannot update user info without a stored session")
            self._storage.edit({KEY_USERNAME: username, KEY_EMAIL: email})

    def get_access_token(self) -> Optional[str]:
        session = self.load_session()
        return session.access_token if session else None

    def get_refresh_token(self) -> Optional[str]:
        session = self.load_session()
        return session.refresh_token if session else None

    def saved_at(self) -> Optional[int]:
        """Unix time of the last write, or None without a session."""
        with self._lock:
            if not self._storage.contains(KEY_SAVED_AT):
                return None
            return self._storage.get_long(KEY_SAVED_AT)

    def has_session(self) -> bool:
        return self.load_session() is not None

    def clear(self) -> None:
        """Remove every session field."""
        with self._lock:
            self._storage.edit({key: None for key in SESSION_KEYS})
            logger.debug("Session cleared")
