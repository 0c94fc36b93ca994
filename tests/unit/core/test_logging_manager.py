"""Unit tests for the Logging Manager."""

import json
import logging
from unittest.mock import MagicMock

import pytest
import structlog

from notur.core.logging_manager import LoggingManager
from notur.utils.exceptions import ConfigurationError


@pytest.fixture
def logging_config(tmp_path):
    """Create a logging configuration for testing."""
    return {
        "level": "INFO",
        "format": "json",
        "file": {
            "enabled": True,
            "path": str(tmp_path / "logs" / "notur.log"),
            "rotation": "1 MB",
            "retention": "5 days",
        },
        "console": {"enabled": False, "level": "DEBUG"},
    }


@pytest.fixture
def config_manager_mock(logging_config):
    """Create a mock ConfigManager for the LoggingManager."""
    config_manager = MagicMock()
    config_manager.get.return_value = logging_config
    return config_manager


@pytest.fixture
def logging_manager(config_manager_mock):
    manager = LoggingManager(config_manager_mock)
    yield manager
    manager.shutdown()
    structlog.reset_defaults()


def test_logging_manager_initialization(logging_manager, config_manager_mock, tmp_path):
    """Test that the LoggingManager initializes correctly."""
    logging_manager.initialize()

    assert logging_manager.initialized
    assert logging_manager.healthy
    assert (tmp_path / "logs").is_dir()
    config_manager_mock.get.assert_called_with("logging", {})
    config_manager_mock.register_listener.assert_called_once_with(
        "logging", logging_manager._on_config_changed
    )


def test_rotating_file_handler_settings(logging_manager):
    logging_manager.initialize()

    handler = logging_manager._file_handler
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 1024 * 1024
    assert handler.backupCount == 5


def test_structlog_events_are_written_as_json(logging_manager, tmp_path):
    """Key/value events logged via structlog become JSON fields."""
    logging_manager.initialize()

    structlog.get_logger("notur.test").info("archive_packed", files=3)
    logging_manager._file_handler.flush()

    lines = (tmp_path / "logs" / "notur.log").read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["message"] == "archive_packed"
    assert record["files"] == 3
    assert record["levelname"] == "INFO"
    assert record["name"] == "notur.test"


def test_text_format(config_manager_mock, logging_config, tmp_path):
    logging_config["format"] = "text"
    manager = LoggingManager(config_manager_mock)
    manager.initialize()
    try:
        structlog.get_logger("notur.test").warning("registry_using_stale_cache", path="x")
        manager._file_handler.flush()
    finally:
        manager.shutdown()
        structlog.reset_defaults()

    content = (tmp_path / "logs" / "notur.log").read_text(encoding="utf-8")
    assert "WARNING" in content
    assert "event='registry_using_stale_cache'" in content
    assert "path='x'" in content


def test_level_filtering(logging_manager, tmp_path):
    logging_manager.initialize()

    structlog.get_logger("notur.test").debug("hidden_event")
    logging_manager._file_handler.flush()

    assert "hidden_event" not in (tmp_path / "logs" / "notur.log").read_text(encoding="utf-8")


def test_config_change_updates_levels(logging_manager):
    logging_manager.initialize()

    logging_manager._on_config_changed("logging.level", "ERROR")

    assert logging.getLogger().level == logging.ERROR
    assert logging_manager._file_handler.level == logging.ERROR


def test_console_handler(config_manager_mock, logging_config):
    logging_config["file"]["enabled"] = False
    logging_config["console"]["enabled"] = True
    manager = LoggingManager(config_manager_mock)
    manager.initialize()
    try:
        assert manager._console_handler is not None
        assert manager._console_handler.level == logging.DEBUG
        manager._on_config_changed("logging.console.level", "warning")
        assert manager._console_handler.level == logging.WARNING
    finally:
        manager.shutdown()
        structlog.reset_defaults()


def test_handlers_attached_to_root_logger(config_manager_mock, logging_config):
    """Console and file handlers are both installed and tracked for shutdown."""
    logging_config["console"]["enabled"] = True
    manager = LoggingManager(config_manager_mock)
    manager.initialize()
    try:
        root = logging.getLogger()
        assert manager._handlers == [manager._console_handler, manager._file_handler]
        assert all(handler in root.handlers for handler in manager._handlers)
    finally:
        manager.shutdown()
        structlog.reset_defaults()

    assert not any(handler in logging.getLogger().handlers for handler in manager._handlers)


def test_unwritable_log_path(config_manager_mock, logging_config, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    logging_config["file"]["path"] = str(blocker / "notur.log")

    manager = LoggingManager(config_manager_mock)
    with pytest.raises(ConfigurationError):
        manager.initialize()


def test_get_logger(logging_manager):
    """Plain loggers before initialization, structlog loggers after."""
    assert isinstance(logging_manager.get_logger("notur.x"), logging.Logger)

    logging_manager.initialize()

    assert hasattr(logging_manager.get_logger("notur.x"), "bind")


def test_shutdown_removes_handlers(logging_manager, config_manager_mock):
    logging_manager.initialize()
    handler = logging_manager._file_handler

    logging_manager.shutdown()

    assert handler not in logging.getLogger().handlers
    assert not logging_manager.initialized
    config_manager_mock.unregister_listener.assert_called_once()
