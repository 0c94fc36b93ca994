"""Extension packaging and dependency management core for Notur."""

from notur.__version__ import __version__

__all__ = ["__version__"]
