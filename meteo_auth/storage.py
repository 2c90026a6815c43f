"""
Key-value storage backends for session persistence.
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the storage backend cannot be read or written."""
    pass


class SecureStorage(ABC):
    """
    Abstract key-value store for credentials.

    Values are strings or integers. ``edit`` applies several writes as one
    unit: readers never observe a subset of them.
    """

    @abstractmethod
    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def get_long(self, key: str, default: int = 0) -> int:
        pass

    @abstractmethod
    def edit(self, changes: Mapping[str, Any]) -> None:
        """
        Apply several writes at once.

        Args:
            changes: Mapping of key to new value; None removes the key
        """
        pass

    @abstractmethod
    def contains(self, key: str) -> bool:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def put_string(self, key: str, value: str) -> None:
        self.edit({key: value})

    def put_long(self, key: str, value: int) -> None:
        self.edit({key: int(value)})

    def remove(self, key: str) -> None:
        self.edit({key: None})


class InMemoryStorage(SecureStorage):
    """Process-local storage; contents are lost on exit."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            value = self._data.get(key)
        return default if value is None else str(value)

    def get_long(self, key: str, default: int = 0) -> int:
        with self._lock:
            value = self._data.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def edit(self, changes: Mapping[str, Any]) -> None:
        with self._lock:
            for key, value in changes.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the current contents."""
        with self._lock:
            return dict(self._data)


class YamlFileStorage(InMemoryStorage):
    """
    Storage persisted to a YAML file.

    Every edit rewrites the file through a temporary file and ``os.replace``,
    so a crash never leaves a partially written session on disk.
    """

    def __init__(self, path: str | Path):
        """
        Initialize file storage.

        Args:
            path: Location of the YAML file (created on first write)

        Raises:
            StorageError: If an existing file cannot be parsed
        """
        self.path = Path(path).expanduser()
        super().__init__(self._read())

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StorageError(f"Cannot read session file {self.path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageError(f"Session file {self.path} does not contain a mapping")
        return data

    def _write(self, data: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix='.session-', suffix='.yaml')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(dict(data), f, default_flow_style=False, allow_unicode=True)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Cannot write session file {self.path}: {e}") from e

    def edit(self, changes: Mapping[str, Any]) -> None:
        with self._lock:
            updated = dict(self._data)
            for key, value in changes.items():
                if value is None:
                    updated.pop(key, None)
                else:
                    updated[key] = value
            self._write(updated)
            self._data = updated

    def clear(self) -> None:
        with self._lock:
            self._write({})
            self._data = {}


def create_storage(backend: str = 'memory', path: Optional[str | Path] = None) -> SecureStorage:
    """
    Build the storage backend named in the configuration.

    Args:
        backend: 'memory' or 'file'
        path: Session file for the file backend

    Returns:
        SecureStorage instance
    """
    if backend == 'memory':
        return InMemoryStorage()
    if backend == 'file':
        if path is None:
            raise ValueError("File storage requires a path")
        logger.info("Using file session storage at %s", path)
        return YamlFileStorage(path)
    raise ValueError(f"Unknown storage backend: {backend}")
