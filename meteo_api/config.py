"""
Configuration management for the Meteo client.
Handles loading and validation of settings from YAML files.
"""

import logging
import yaml
from pathlib import Path
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from .retry import OperationType, RetryPolicy

PACKAGE_LOGGERS = ('meteo_api', 'meteo_auth', 'meteo_data')
HTTP_LOGGER = 'meteo_api.api_client'


class APISettings(BaseModel):
    """API connection settings."""
    base_url: str = Field(description="Base URL for API v1, e.g. http://host:8085/api/v1/")
    connect_timeout: float = Field(default=10.0, gt=0, description="Connect timeout in seconds")
    read_timeout: float = Field(default=30.0, gt=0, description="Read timeout in seconds")
    operation_timeouts: Dict[OperationType, float] = Field(
        default_factory=dict,
        description="Per-operation read timeout overrides in seconds"
    )
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    certificate_pinning: bool = Field(default=False, description="Verify against a pinned certificate bundle")
    pinned_cert_path: Optional[str] = Field(default=None, description="Path to the pinned CA bundle")
    user_agent: str = Field(default="meteo-client/1.0", description="User-Agent header")

    @field_validator('base_url')
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        """Ensure base URL ends with a slash so relative paths resolve under it."""
        v = v.strip()
        if not v:
            raise ValueError("base_url must not be empty")
        return v if v.endswith('/') else v + '/'

    @model_validator(mode='after')
    def check_pinning(self) -> 'APISettings':
        if self.certificate_pinning and not self.pinned_cert_path:
            raise ValueError("certificate_pinning requires pinned_cert_path")
        return self

    def verify(self) -> bool | str:
        """Value for the ``verify`` argument of requests."""
        if self.certificate_pinning:
            return self.pinned_cert_path
        return self.verify_ssl


class CacheSettings(BaseModel):
    """In-memory caching settings."""
    sensor_value_ttl_seconds: float = Field(default=300.0, gt=0, description="Latest sensor value TTL")
    parameter_config_ttl_seconds: float = Field(default=900.0, gt=0, description="Parameter config TTL")


class StorageSettings(BaseModel):
    """Where the auth session is persisted."""
    backend: Literal['memory', 'file'] = Field(default='memory')
    path: Optional[str] = Field(default=None, description="Session file for the file backend")

    @model_validator(mode='after')
    def check_path(self) -> 'StorageSettings':
        if self.backend == 'file' and not self.path:
            raise ValueError("storage backend 'file' requires path")
        return self


class LoggingSettings(BaseModel):
    """Logging configuration settings."""
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    file: Optional[str] = Field(default=None)
    verbose_http: bool = Field(default=False, description="Log every HTTP request at DEBUG")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper


class MeteoConfig(BaseModel):
    """Complete Meteo client configuration."""
    api: APISettings
    retry: Dict[OperationType, RetryPolicy] = Field(default_factory=dict)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    debug: bool = Field(default=False, description="Development mode; enables demo-station fallback")

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> 'MeteoConfig':
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            MeteoConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f)

            if config_data is None:
                raise ValueError("Empty configuration file")

            return cls(**config_data)

        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")
        except Exception as e:
            raise ValueError(f"Error loading configuration: {e}")

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'MeteoConfig':
        """Create configuration from dictionary."""
        return cls(**config_dict)

    def save_yaml(self, config_path: str | Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            config_path: Path where to save configuration
        """
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self.model_dump(mode='json')

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_dict, f, default_flow_style=False, allow_unicode=True)


def load_config(config_path: Optional[str | Path] = None) -> MeteoConfig:
    """
    Load configuration from file.

    Args:
        config_path: Optional path to config file

    Returns:
        MeteoConfig instance
    """
    if config_path is None:
        # Try to find config in common locations
        possible_paths = [
            Path('meteo_config.yaml'),
            Path('config/meteo_config.yaml'),
            Path('../config/meteo_config.yaml'),
        ]

        for path in possible_paths:
            if path.exists():
                return MeteoConfig.from_yaml(path)

        # The API URL has no sensible default
        raise FileNotFoundError(
            "No configuration file found. Please create meteo_config.yaml with the API base_url."
        )

    return MeteoConfig.from_yaml(config_path)


def setup_logging(settings: LoggingSettings) -> None:
    """
    Configure the package loggers from LoggingSettings.

    Args:
        settings: Logging section of the configuration
    """
    formatter = logging.Formatter(settings.format)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    for name in PACKAGE_LOGGERS:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(settings.level)
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
        for handler in handlers:
            handler.setFormatter(formatter)
            package_logger.addHandler(handler)

    if settings.verbose_http:
        logging.getLogger(HTTP_LOGGER).setLevel(logging.DEBUG)
