from __future__ import annotations

import abc
from typing import Any, Dict


class NoturManager(abc.ABC):
    """Base class for the long-lived managers of the Notur core.

    Managers are plain objects constructed and owned by the caller; there is
    no process-wide registry of them.
    """

    def __init__(self, name: str) -> None:
        """Initialize the manager with a name.

        Args:
            name: The name of the manager
        """
        self._name: str = name
        self._initialized: bool = False
        self._healthy: bool = False

    @abc.abstractmethod
    def initialize(self) -> None:
        """Initialize the manager.

        Raises:
            ConfigurationError: If initialization fails
        """

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Release any resources held by the manager."""

    def status(self) -> Dict[str, Any]:
        """Get the current status of the manager.

        Returns:
            Dictionary containing status information
        """
        return {
            'name': self._name,
            'initialized': self._initialized,
            'healthy': self._healthy
        }

    @property
    def name(self) -> str:
        """Get the manager's name."""
        return self._name

    @property
    def initialized(self) -> bool:
        """Check if the manager is initialized."""
        return self._initialized

    @property
    def healthy(self) -> bool:
        """Check if the manager is healthy."""
        return self._healthy
