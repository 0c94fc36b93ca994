"""Core package containing the configuration and logging managers."""

from notur.core.base import NoturManager
from notur.core.config_manager import ConfigManager, ConfigSchema
from notur.core.logging_manager import LoggingManager
