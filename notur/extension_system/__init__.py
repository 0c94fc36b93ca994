"""Extension packaging system for Notur.

This package decides the load order of extensions and produces and consumes
their distributable archives.

Modules:
    schema: Structural validation of manifests and registry indexes
    manifest: Extension manifest model
    capability: Major-version gating of optional capabilities
    dependency: Load-order resolution
    package: Archive packing and unpacking with checksums
    signing: Detached Ed25519 signatures
    repository: Registry index client and cache
    installer: Export and install preparation
"""

from __future__ import annotations

from notur.extension_system.capability import CapabilityMatcher
from notur.extension_system.dependency import DependencyResolver, build_graph
from notur.extension_system.installer import ExportResult, ExtensionInstaller, PreparedExtension
from notur.extension_system.manifest import ExtensionManifest
from notur.extension_system.package import ExtensionArchive, PackResult, archive_filename
from notur.extension_system.repository import RegistryClient, RegistryExtension, RegistryIndex
from notur.extension_system.schema import SchemaValidator
from notur.extension_system.signing import SignatureVerifier

__all__ = [
    "CapabilityMatcher",
    "DependencyResolver",
    "build_graph",
    "ExportResult",
    "ExtensionInstaller",
    "PreparedExtension",
    "ExtensionManifest",
    "ExtensionArchive",
    "PackResult",
    "archive_filename",
    "RegistryClient",
    "RegistryExtension",
    "RegistryIndex",
    "SchemaValidator",
    "SignatureVerifier",
]
