"""
Auth module for the Meteo client.

Handles the authenticated session: login and registration against the
Meteo API v1, access-token refresh, logout and session persistence.

Architecture:
- Storage: Key-value backends (in-memory, YAML file)
- Token Store: Atomic persistence of the Session
- Session Manager: Session lifecycle and authorized request helper
"""

from .storage import (
    SecureStorage,
    InMemoryStorage,
    YamlFileStorage,
    StorageError,
    create_storage
)

from .token_store import (
    AuthTokenStore,
    Session,
    token_preview
)

from .session import AuthSessionManager

__all__ = [
    # Session manager
    'AuthSessionManager',

    # Token store
    'AuthTokenStore',
    'Session',
    'token_preview',

    # Storage
    'SecureStorage',
    'InMemoryStorage',
    'YamlFileStorage',
    'create_storage',

    # Errors
    'StorageError',
]

__version__ = '0.1.0'
__description__ = 'Session management for the Meteo weather-station client'
