from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence


class NoturError(Exception):
    """Base exception for all Notur errors."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            **kwargs: Additional error information
        """
        details: Dict[str, Any] = dict(kwargs.pop("details", None) or {})
        details.update({key: value for key, value in kwargs.items() if value is not None})
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ConfigurationError(NoturError):
    """Exception raised for configuration-related errors."""

    def __init__(
            self, message: str, *, config_key: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            config_key: The configuration key that caused the error.
            **kwargs: Additional error information.
        """
        super().__init__(message, config_key=config_key, **kwargs)
        self.config_key = config_key


class ManifestValidationError(NoturError):
    """Exception raised when an extension manifest fails validation.

    Every problem found in a single validation pass is carried in ``errors``.
    """

    def __init__(
            self,
            message: str,
            *,
            errors: Optional[Sequence[str]] = None,
            path: Optional[str] = None,
            **kwargs: Any
    ) -> None:
        """Initialize a ManifestValidationError.

        Args:
            message: A descriptive error message.
            errors: Field-level validation messages.
            path: The manifest file that failed, if loaded from disk.
            **kwargs: Additional error information.
        """
        self.errors: List[str] = list(errors or [])
        self.path = path
        super().__init__(message, errors=self.errors or None, path=path, **kwargs)

    def __str__(self) -> str:
        """String representation."""
        if self.errors:
            return f"{self.message}: " + "; ".join(self.errors)
        return super().__str__()


class DependencyError(NoturError):
    """Base exception for dependency resolution errors."""


class CircularDependencyError(DependencyError):
    """Raised when dependency resolution re-enters an in-progress node."""

    def __init__(self, node: str, chain: Optional[Sequence[str]] = None) -> None:
        self.node = node
        self.chain: List[str] = list(chain or [node, node])
        super().__init__(
            f"Circular dependency detected involving extension: {node} "
            f"({' -> '.join(self.chain)})",
            node=node,
            chain=self.chain,
        )


class MissingDependencyError(DependencyError):
    """Raised by callers whose policy is to abort on missing dependencies."""

    def __init__(self, missing: Mapping[str, Sequence[str]]) -> None:
        self.missing: Dict[str, List[str]] = {
            extension_id: list(deps) for extension_id, deps in missing.items()
        }
        pairs = ", ".join(
            f"{extension_id} requires {', '.join(deps)}"
            for extension_id, deps in self.missing.items()
        )
        super().__init__(f"Missing dependencies: {pairs}", missing=self.missing)


class PackageError(NoturError):
    """Exception raised for errors in extension packaging."""

    def __init__(
            self, message: str, *, archive_path: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a PackageError.

        Args:
            message: A descriptive error message.
            archive_path: The archive being packed or unpacked.
            **kwargs: Additional error information.
        """
        super().__init__(message, archive_path=archive_path, **kwargs)
        self.archive_path = archive_path


class UnsafePathError(PackageError):
    """Raised when an archive entry would be written outside the target directory."""

    def __init__(
            self,
            entry_path: str,
            reason: str,
            *,
            archive_path: Optional[str] = None
    ) -> None:
        self.entry_path = entry_path
        self.reason = reason
        super().__init__(
            f"Unsafe archive entry {entry_path!r}: {reason}",
            archive_path=archive_path,
            entry_path=entry_path,
        )


class ChecksumMismatchError(PackageError):
    """Raised when extracted files do not match their recorded checksums.

    ``failures`` lists every offending path with its reason, e.g.
    ``"src/main.py (hash mismatch)"``; ``paths`` lists the bare paths.
    """

    def __init__(
            self,
            failures: Sequence[str],
            paths: Sequence[str],
            *,
            base_dir: Optional[str] = None,
            archive_path: Optional[str] = None
    ) -> None:
        self.failures: List[str] = list(failures)
        self.paths: List[str] = list(paths)
        super().__init__(
            "Checksum verification failed for: " + ", ".join(self.failures),
            archive_path=archive_path,
            base_dir=base_dir,
            failures=self.failures,
        )


class SigningError(NoturError):
    """Exception raised for errors in archive signing."""


class VerificationError(NoturError):
    """Exception raised when verification cannot be performed."""


class SignatureFormatError(VerificationError):
    """Raised for malformed hex keys or signatures."""

    def __init__(self, message: str, *, parameter: Optional[str] = None) -> None:
        super().__init__(message, parameter=parameter)
        self.parameter = parameter


class RegistryError(NoturError):
    """Exception raised for errors in registry operations."""

    def __init__(
            self, message: str, *, extension_id: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a RegistryError.

        Args:
            message: A descriptive error message.
            extension_id: The extension the operation concerned.
            **kwargs: Additional error information.
        """
        super().__init__(message, extension_id=extension_id, **kwargs)
        self.extension_id = extension_id


class NetworkError(RegistryError):
    """Raised for transport failures, non-200 responses and undecodable bodies."""

    def __init__(
            self,
            message: str,
            *,
            url: str,
            status_code: Optional[int] = None,
            **kwargs: Any
    ) -> None:
        """Initialize a NetworkError.

        Args:
            message: A descriptive error message.
            url: The URL that failed.
            status_code: HTTP status code, when a response was received.
            **kwargs: Additional error information.
        """
        super().__init__(message, url=url, status_code=status_code, **kwargs)
        self.url = url
        self.status_code = status_code


class InstallationError(NoturError):
    """Exception raised when an archive cannot be prepared for installation."""

    def __init__(
            self, message: str, *, extension_id: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, extension_id=extension_id, **kwargs)
        self.extension_id = extension_id
