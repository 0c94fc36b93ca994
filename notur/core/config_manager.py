from __future__ import annotations

import json
import os
import pathlib
from copy import deepcopy
from typing import Any, Callable, Dict, List, Optional, Set, Union

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from notur.core.base import NoturManager
from notur.utils.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


class ConfigSchema(BaseModel):
    """Schema for validating configuration data.

    This model defines the expected structure and default values for the
    extension core configuration.
    """
    registry: Dict[str, Any] = Field(
        default_factory=lambda: {
            'url': 'https://raw.githubusercontent.com/notur/registry/main',
            'cache_path': None,
            'cache_ttl': 3600,
            'timeout': 30.0,
            'connect_timeout': 10.0,
            'download_timeout': 120.0,
        },
        description='Remote registry index settings',
    )
    signing: Dict[str, Any] = Field(
        default_factory=lambda: {
            'require_signatures': False,
            'public_key': '',
        },
        description='Archive signature settings',
    )
    logging: Dict[str, Any] = Field(
        default_factory=lambda: {
            'level': 'INFO',
            'format': 'json',
            'file': {
                'enabled': False,
                'path': 'logs/notur.log',
                'rotation': '10 MB',
                'retention': '30 days',
            },
            'console': {
                'enabled': True,
                'level': 'INFO',
            },
        },
        description='Logging settings',
    )

    @model_validator(mode='after')
    def validate_cache_ttl(self) -> 'ConfigSchema':
        """Validate that the registry cache TTL is an integer number of seconds."""
        ttl = self.registry.get('cache_ttl')
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise ValueError('Registry cache TTL must be an integer.')
        return self

    @model_validator(mode='after')
    def validate_public_key(self) -> 'ConfigSchema':
        """Validate that a public key is set when signatures are required."""
        signing = self.signing
        if signing.get('require_signatures', False) and not signing.get('public_key', ''):
            raise ValueError(
                'A public key must be set when signatures are required. '
                'Provide the hex-encoded Ed25519 key in signing.public_key.'
            )
        return self


class ConfigManager(NoturManager):
    """Configuration manager for the extension core.

    This manager handles loading, validating, and providing access to
    configuration settings from files and environment variables.

    Attributes:
        _config_path: Path to the configuration file
        _env_prefix: Prefix for environment variables
        _config: The loaded configuration
        _loaded_from_file: Whether configuration was loaded from a file
        _env_vars_applied: Set of applied environment variables
        _listeners: Dictionary of config change listeners
    """

    def __init__(
            self,
            config_path: Optional[Union[str, pathlib.Path]] = None,
            env_prefix: str = 'NOTUR_'
    ) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
            env_prefix: Prefix for environment variables
        """
        super().__init__(name='config_manager')
        self._config_path = pathlib.Path(config_path) if config_path else pathlib.Path('notur.yaml')
        self._env_prefix = env_prefix
        self._config: Dict[str, Any] = {}
        self._loaded_from_file = False
        self._env_vars_applied: Set[str] = set()
        self._listeners: Dict[str, List[Callable[[str, Any], None]]] = {}

    def initialize(self) -> None:
        """Initialize the configuration manager.

        Loads configuration from default schema, file, and environment variables.

        Raises:
            ConfigurationError: If the file cannot be parsed or the result is invalid
        """
        self._config = ConfigSchema().model_dump()
        self._load_from_file()
        self._apply_env_vars()
        self._validate_config()

        self._initialized = True
        self._healthy = True
        logger.debug(
            'config_loaded',
            path=str(self._config_path),
            from_file=self._loaded_from_file,
            env_vars=sorted(self._env_vars_applied),
        )

    def shutdown(self) -> None:
        """Drop listeners and mark the manager uninitialized."""
        self._listeners.clear()
        self._initialized = False
        self._healthy = False

    def _load_from_file(self) -> None:
        """Load configuration from a file.

        Reads and parses the configuration file if it exists.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        if not self._config_path.exists():
            return

        suffix = self._config_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(
                f'Unsupported config file format: {self._config_path.suffix}',
                config_key='config_path'
            )

        try:
            content = self._config_path.read_text(encoding='utf-8')
            if suffix == '.json':
                file_config = json.loads(content) if content.strip() else None
            else:
                file_config = yaml.safe_load(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f'Error parsing config file {self._config_path}: {str(e)}',
                config_key='config_path'
            ) from e

        if file_config:
            if not isinstance(file_config, dict):
                raise ConfigurationError(
                    f'Config file {self._config_path} must contain a mapping',
                    config_key='config_path'
                )
            self._merge_config(file_config)
            self._loaded_from_file = True

    def _merge_config(self, overrides: Dict[str, Any], target: Optional[Dict[str, Any]] = None) -> None:
        """Recursively merge ``overrides`` into the loaded configuration."""
        target = self._config if target is None else target
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._merge_config(value, target[key])
            else:
                target[key] = deepcopy(value)

    def _apply_env_vars(self) -> None:
        """Apply environment variables to the configuration.

        ``NOTUR_REGISTRY_CACHE_TTL`` maps to ``registry.cache_ttl``: the first
        segment selects the section and the remainder is the key.
        """
        for env_name, env_value in os.environ.items():
            if not env_name.startswith(self._env_prefix):
                continue

            parts = env_name[len(self._env_prefix):].lower().split('_', 1)
            if len(parts) != 2 or parts[0] not in self._config:
                continue

            self._set_nested_value(self._config, parts, self._parse_env_value(env_value))
            self._env_vars_applied.add(env_name)

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable values into appropriate types.

        Args:
            value: The string value from the environment

        Returns:
            The parsed value (bool, int, float, or string)
        """
        if value.lower() in ('true', 'yes', 'on'):
            return True
        if value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if value.isdigit() or (value.startswith('-') and value[1:].isdigit()):
                return int(value)
            return float(value)
        except ValueError:
            return value

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any) -> None:
        """Set a nested value in the configuration dictionary.

        Args:
            config: The configuration dictionary
            path: List of keys forming the path to the value
            value: The value to set
        """
        if not path:
            return

        if len(path) == 1:
            config[path[0]] = value
            return

        key = path[0]
        if not isinstance(config.get(key), dict):
            config[key] = {}

        self._set_nested_value(config[key], path[1:], value)

    def _validate_config(self) -> None:
        """Validate the configuration against the schema.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            self._config = ConfigSchema(**self._config).model_dump()
        except ValidationError as e:
            errors = e.errors()
            error_details = ', '.join((
                f"{'.'.join((str(loc) for loc in error['loc']))}: {error['msg']}"
                for error in errors
            ))
            raise ConfigurationError(
                f'Invalid configuration: {error_details}',
                details={'validation_errors': errors}
            ) from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            default: Default value if the key doesn't exist

        Returns:
            The configuration value or default

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot access configuration before initialization',
                config_key=key
            )

        result: Any = self._config
        try:
            for part in key.split('.'):
                result = result[part]
            return result
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by key and notify listeners.

        Args:
            key: The configuration key (dot-separated for nested values)
            value: The value to set

        Raises:
            ConfigurationError: If the manager isn't initialized or the value is invalid
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot set configuration before initialization',
                config_key=key
            )

        previous = deepcopy(self._config)
        self._set_nested_value(self._config, key.split('.'), value)
        try:
            self._validate_config()
        except ConfigurationError:
            self._config = previous
            raise

        section = key.split('.', 1)[0]
        for listener in self._listeners.get(section, []):
            listener(key, value)

    def register_listener(self, section: str, callback: Callable[[str, Any], None]) -> None:
        """Register a callback invoked when a key under ``section`` changes."""
        self._listeners.setdefault(section, []).append(callback)

    def unregister_listener(self, section: str, callback: Callable[[str, Any], None]) -> None:
        """Remove a previously registered change callback."""
        if callback in self._listeners.get(section, []):
            self._listeners[section].remove(callback)

    def as_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the effective configuration."""
        return deepcopy(self._config)

    def status(self) -> Dict[str, Any]:
        """Get the status of the configuration manager."""
        status = super().status()
        status.update({
            'config_path': str(self._config_path),
            'loaded_from_file': self._loaded_from_file,
            'env_vars_applied': len(self._env_vars_applied),
        })
        return status
