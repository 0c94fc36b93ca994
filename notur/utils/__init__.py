"""Utility functions and classes for the Notur extension core."""

from notur.utils.exceptions import (
    ChecksumMismatchError,
    CircularDependencyError,
    ConfigurationError,
    DependencyError,
    InstallationError,
    ManifestValidationError,
    MissingDependencyError,
    NetworkError,
    NoturError,
    PackageError,
    RegistryError,
    SignatureFormatError,
    SigningError,
    UnsafePathError,
    VerificationError,
)
