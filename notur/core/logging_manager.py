from __future__ import annotations

import logging
import logging.handlers
import os
import pathlib
import sys
from typing import Any, List, Optional, Union

import structlog
from pythonjsonlogger import jsonlogger

from notur.core.base import NoturManager
from notur.utils.exceptions import ConfigurationError


class LoggingManager(NoturManager):
    """Manages logging configuration for the extension core.

    Configures the standard library root logger with console and rotating
    file handlers and routes structlog through it, so component loggers
    obtained with ``structlog.get_logger`` end up in the same handlers.
    """

    LOG_LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, config_manager: Any) -> None:
        """Initialize the Logging Manager.

        Args:
            config_manager: The Configuration Manager to use for logging settings.
        """
        super().__init__(name="logging_manager")
        self._config_manager = config_manager
        self._root_logger: Optional[logging.Logger] = None
        self._file_handler: Optional[logging.Handler] = None
        self._console_handler: Optional[logging.Handler] = None
        self._handlers: List[logging.Handler] = []
        self._enable_structlog = False

    def initialize(self) -> None:
        """Set up handlers and structlog from the ``logging`` config section.

        Raises:
            ConfigurationError: If a handler cannot be created.
        """
        logging_config = self._config_manager.get("logging", {}) or {}
        log_level = self._level(logging_config.get("level", "INFO"))
        log_format = str(logging_config.get("format", "json")).lower()

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        self._root_logger = root_logger

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        if log_format == "json":
            self._enable_structlog = True
            formatter = self._create_json_formatter()
        else:
            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )

        console_config = logging_config.get("console", {}) or {}
        if console_config.get("enabled", True):
            self._console_handler = logging.StreamHandler(sys.stdout)
            self._console_handler.setLevel(self._level(console_config.get("level", "INFO")))
            self._console_handler.setFormatter(formatter)
            self._add_handler(root_logger, self._console_handler)

        file_config = logging_config.get("file", {}) or {}
        if file_config.get("enabled", False):
            file_path = pathlib.Path(file_config.get("path", "logs/notur.log"))
            try:
                os.makedirs(file_path.parent, exist_ok=True)
                self._file_handler = logging.handlers.RotatingFileHandler(
                    file_path,
                    maxBytes=self._parse_rotation(file_config.get("rotation", "10 MB")),
                    backupCount=self._parse_retention(file_config.get("retention", "30 days")),
                )
            except OSError as e:
                raise ConfigurationError(
                    f"Cannot open log file {file_path}: {e}",
                    config_key="logging.file.path",
                ) from e
            self._file_handler.setLevel(log_level)
            self._file_handler.setFormatter(formatter)
            self._add_handler(root_logger, self._file_handler)

        self._configure_structlog()

        register = getattr(self._config_manager, "register_listener", None)
        if callable(register):
            register("logging", self._on_config_changed)

        self._initialized = True
        self._healthy = True

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler) -> None:
        logger.addHandler(handler)
        self._handlers.append(handler)

    def _level(self, value: Any) -> int:
        return self.LOG_LEVELS.get(str(value).lower(), logging.INFO)

    @staticmethod
    def _parse_rotation(rotation: Any) -> int:
        """Parse a rotation size such as ``"10 MB"`` into bytes."""
        if isinstance(rotation, str) and "MB" in rotation:
            return int(rotation.split()[0]) * 1024 * 1024
        if isinstance(rotation, int):
            return rotation
        return 10 * 1024 * 1024

    @staticmethod
    def _parse_retention(retention: Any) -> int:
        """Parse a retention such as ``"30 days"`` into a backup count."""
        if isinstance(retention, str) and "days" in retention:
            return int(retention.split()[0])
        if isinstance(retention, int):
            return retention
        return 30

    def _create_json_formatter(self) -> logging.Formatter:
        """Create a JSON formatter for log records.

        Returns:
            logging.Formatter: A formatter that outputs logs in JSON format.
        """
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            json_ensure_ascii=False,
        )

    def _configure_structlog(self) -> None:
        """Route structlog events through the standard library handlers."""
        processors: List[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
        ]
        if self._enable_structlog:
            # Event keys become LogRecord extras, rendered as JSON fields.
            processors.append(structlog.stdlib.render_to_log_kwargs)
        else:
            processors.extend([
                structlog.processors.format_exc_info,
                structlog.processors.KeyValueRenderer(key_order=["event"]),
            ])

        structlog.configure(
            processors=processors,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )

    def get_logger(self, name: str) -> Union[logging.Logger, Any]:
        """Get a logger for a specific component.

        Args:
            name: The name of the component requesting a logger.

        Returns:
            A structlog logger once initialized, a plain logger before.
        """
        if not self._initialized:
            return logging.getLogger(name)
        return structlog.get_logger(name)

    def _on_config_changed(self, key: str, value: Any) -> None:
        """Handle configuration changes for logging.

        Args:
            key: The configuration key that changed.
            value: The new value.
        """
        if key == "logging.level" and self._root_logger:
            level = self._level(value)
            self._root_logger.setLevel(level)
            if self._file_handler:
                self._file_handler.setLevel(level)
        elif key == "logging.console.level" and self._console_handler:
            self._console_handler.setLevel(self._level(value))

    def shutdown(self) -> None:
        """Detach and close every handler this manager installed."""
        unregister = getattr(self._config_manager, "unregister_listener", None)
        if callable(unregister):
            unregister("logging", self._on_config_changed)

        for handler in self._handlers:
            if self._root_logger:
                self._root_logger.removeHandler(handler)
            handler.close()

        self._handlers = []
        self._file_handler = None
        self._console_handler = None
        self._initialized = False
        self._healthy = False
