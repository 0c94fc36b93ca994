"""Extension export and install preparation.

The installer ties the archive codec, signature checks and the registry
client together. It produces verified, unpacked extension trees in a
directory chosen by the caller; copying them into place, running
migrations and recording the installation belong to the host.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Union

import structlog

from notur.extension_system.manifest import ExtensionManifest
from notur.extension_system.package import ExtensionArchive, archive_filename
from notur.extension_system.repository import RegistryClient
from notur.extension_system.signing import SignatureVerifier
from notur.utils.exceptions import ConfigurationError, InstallationError

if TYPE_CHECKING:
    from notur.core.config_manager import ConfigManager

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]


@dataclass
class ExportResult:
    """Files written by :meth:`ExtensionInstaller.export`.

    Attributes:
        manifest: Manifest of the exported extension
        archive_path: The ``.notur`` archive
        checksum_path: The ``.sha256`` sidecar
        sha256: Digest of the archive
        signature_path: The ``.sig`` sidecar, if the archive was signed
    """

    manifest: ExtensionManifest
    archive_path: Path
    checksum_path: Path
    sha256: str
    signature_path: Optional[Path] = None


@dataclass
class PreparedExtension:
    """An archive unpacked, verified and ready to be installed.

    Attributes:
        manifest: Manifest loaded from the unpacked tree
        path: Directory the archive was unpacked into
        checksums: Checksums recorded in the archive
    """

    manifest: ExtensionManifest
    path: Path
    checksums: Dict[str, str] = field(default_factory=dict)


class ExtensionInstaller:
    """Exports extension directories and prepares archives for installation.

    Attributes:
        archive: Archive codec
        verifier: Signature verifier
        registry: Registry client used by :meth:`install_from_registry`
        require_signatures: Reject archives without a valid ``.sig`` sidecar
        public_key: Hex public key signatures are checked against
    """

    def __init__(
            self,
            archive: Optional[ExtensionArchive] = None,
            verifier: Optional[SignatureVerifier] = None,
            registry: Optional[RegistryClient] = None,
            require_signatures: bool = False,
            public_key: str = ""
    ) -> None:
        """Initialize the installer.

        Raises:
            ConfigurationError: If signatures are required without a public key
        """
        if require_signatures and not public_key:
            raise ConfigurationError(
                "A public key is required when signatures are required",
                config_key="signing.public_key",
            )

        self.archive = archive or ExtensionArchive()
        self.verifier = verifier or SignatureVerifier()
        self.registry = registry
        self.require_signatures = require_signatures
        self.public_key = public_key

    @classmethod
    def from_config(
            cls, config: ConfigManager, registry: Optional[RegistryClient] = None
    ) -> ExtensionInstaller:
        """Build an installer from the ``signing`` and ``registry`` sections."""
        return cls(
            registry=registry or RegistryClient.from_config(config),
            require_signatures=bool(config.get("signing.require_signatures", False)),
            public_key=config.get("signing.public_key", "") or "",
        )

    def export(
            self,
            source_dir: PathLike,
            output_dir: PathLike,
            secret_key: Optional[str] = None
    ) -> ExportResult:
        """Pack an extension directory for distribution.

        Args:
            source_dir: Extension directory containing its manifest
            output_dir: Directory receiving the archive and its sidecars
            secret_key: Hex secret key; the archive is signed when given

        Returns:
            Paths of everything written

        Raises:
            ManifestValidationError: If the extension manifest is invalid
            PackageError: If packing fails
        """
        manifest = ExtensionManifest.load(source_dir)
        output = Path(output_dir)
        output.mkdir(parents=True, exist_ok=True)

        archive_path = output / archive_filename(manifest.id, manifest.version)
        self.archive.pack(source_dir, archive_path)
        checksum_path, digest = self.archive.write_checksum_sidecar(archive_path)

        signature_path = None
        if secret_key:
            signature_path = self.verifier.sign_to_sidecar(archive_path, secret_key)

        logger.info(
            "extension_exported",
            extension_id=manifest.id,
            version=manifest.version,
            archive=str(archive_path),
            signed=signature_path is not None,
        )
        return ExportResult(
            manifest=manifest,
            archive_path=archive_path,
            checksum_path=checksum_path,
            sha256=digest,
            signature_path=signature_path,
        )

    def prepare(
            self,
            archive_path: PathLike,
            target_dir: PathLike,
            expected_sha256: Optional[str] = None
    ) -> PreparedExtension:
        """Verify and unpack an archive.

        Args:
            archive_path: The ``.notur`` archive
            target_dir: Directory to unpack into
            expected_sha256: Published digest of the whole archive, if known

        Returns:
            The unpacked extension

        Raises:
            InstallationError: If the signature or archive digest is rejected,
                or the archive holds no manifest
            UnsafePathError: If the archive contains an unsafe entry
            ChecksumMismatchError: If unpacked files fail verification
            ManifestValidationError: If the unpacked manifest is invalid
        """
        archive = Path(archive_path)
        if not archive.is_file():
            raise InstallationError(f"Archive not found: {archive}")

        if self.require_signatures:
            self._check_signature(archive)

        if expected_sha256:
            if not self.verifier.verify_checksum(archive, expected_sha256):
                raise InstallationError(
                    f"Archive checksum does not match the published SHA-256 for {archive.name}"
                )
            logger.debug("archive_checksum_verified", archive=str(archive))

        target = Path(target_dir)
        checksums = self.archive.unpack(archive, target, verify_checksums=True)

        try:
            manifest = ExtensionManifest.load(target)
        except FileNotFoundError as e:
            raise InstallationError(f"Archive {archive.name} contains no extension manifest") from e

        logger.info(
            "extension_prepared",
            extension_id=manifest.id,
            version=manifest.version,
            path=str(target),
        )
        return PreparedExtension(manifest=manifest, path=target, checksums=checksums)

    def _check_signature(self, archive: Path) -> None:
        sidecar = archive.with_name(archive.name + ExtensionArchive.SIGNATURE_SUFFIX)
        if not sidecar.exists():
            raise InstallationError(
                f"Signature file not found and signatures are required: {sidecar}"
            )

        if not self.verifier.verify_sidecar(archive, self.public_key):
            raise InstallationError(f"Signature verification failed for {archive.name}")

        logger.info("signature_verified", archive=str(archive))

    def install_from_registry(
            self,
            extension_id: str,
            target_dir: PathLike,
            version: Optional[str] = None,
            work_dir: Optional[PathLike] = None
    ) -> PreparedExtension:
        """Download an extension from the registry and prepare it.

        Args:
            extension_id: Registry id of the extension
            target_dir: Directory to unpack into
            version: Version to install; defaults to the latest published one
            work_dir: Directory for the downloaded archive; a temporary one is
                used and removed afterwards if omitted

        Raises:
            InstallationError: If no registry is configured or the extension
                has no installable version
            RegistryError: If the registry lookup or download fails
        """
        if self.registry is None:
            raise InstallationError("No registry client configured", extension_id=extension_id)

        extension = self.registry.get_extension(extension_id)
        if extension is None:
            raise InstallationError(
                f"Extension '{extension_id}' not found in registry", extension_id=extension_id
            )

        version = version or extension.latest_version
        if not version:
            raise InstallationError(
                f"Extension '{extension_id}' has no published version", extension_id=extension_id
            )

        expected = self.registry.get_expected_archive_checksum(extension_id, version)

        if work_dir is not None:
            return self._download_and_prepare(
                extension_id, version, Path(work_dir), target_dir, expected
            )

        with tempfile.TemporaryDirectory(prefix="notur-") as tmp:
            return self._download_and_prepare(extension_id, version, Path(tmp), target_dir, expected)

    def _download_and_prepare(
            self,
            extension_id: str,
            version: str,
            work_dir: Path,
            target_dir: PathLike,
            expected_sha256: Optional[str]
    ) -> PreparedExtension:
        work_dir.mkdir(parents=True, exist_ok=True)
        archive_path = work_dir / archive_filename(extension_id, version)

        self.registry.download(extension_id, version, archive_path)
        if self.require_signatures:
            sidecar = archive_path.with_name(archive_path.name + ExtensionArchive.SIGNATURE_SUFFIX)
            self.registry.download_signature(extension_id, version, sidecar)

        prepared = self.prepare(archive_path, target_dir, expected_sha256=expected_sha256)
        if prepared.manifest.id != extension_id:
            raise InstallationError(
                f"Downloaded archive declares '{prepared.manifest.id}', expected '{extension_id}'",
                extension_id=extension_id,
            )
        return prepared
