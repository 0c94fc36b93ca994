"""Extension archive packing and unpacking.

This module defines the ``.notur`` container: a gzip-compressed tar holding
``checksums.json`` at its root plus every packed file at its relative path.
Archives may travel with two sidecars: ``<archive>.sig`` holding a detached
Ed25519 signature and ``<archive>.sha256`` holding the whole-archive digest.
"""

from __future__ import annotations

import hashlib
import hmac
import io
import json
import os
import posixpath
import re
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set, Tuple, Union

import structlog

from notur.utils.exceptions import ChecksumMismatchError, PackageError, UnsafePathError

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")


def archive_filename(extension_id: str, version: str) -> str:
    """Conventional archive name, e.g. ``acme-analytics-1.2.0.notur``."""
    return f"{extension_id.replace('/', '-')}-{version}.notur"


def calculate_file_hash(path: PathLike, algo: str = "sha256") -> str:
    """Calculate the lowercase hex digest of a file.

    Args:
        path: Path to the file
        algo: Any algorithm name accepted by :func:`hashlib.new`

    Returns:
        Hex digest of the file hash
    """
    hasher = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def validate_entry_path(entry_path: str, archive_path: Optional[str] = None) -> str:
    """Check an archive entry path and return its normalized form.

    Absolute paths, ``..`` segments and NUL bytes are rejected outright.

    Raises:
        UnsafePathError: If the entry cannot be extracted safely.
    """
    if "\x00" in entry_path:
        raise UnsafePathError(entry_path, "contains a NUL byte", archive_path=archive_path)

    if entry_path.startswith(("/", "\\")) or _WINDOWS_DRIVE.match(entry_path):
        raise UnsafePathError(entry_path, "absolute path", archive_path=archive_path)

    segments = re.split(r"[\\/]", entry_path)
    if ".." in segments:
        raise UnsafePathError(entry_path, "parent directory reference", archive_path=archive_path)

    normalized = posixpath.normpath(entry_path.replace("\\", "/"))
    if normalized in ("", "."):
        return "."
    return normalized


def resolve_inside(base_dir: Path, relative_path: str, archive_path: Optional[str] = None) -> Path:
    """Resolve ``relative_path`` under ``base_dir`` and ensure it stays inside.

    Raises:
        UnsafePathError: If the resolved destination escapes ``base_dir``.
    """
    root = base_dir.resolve()
    destination = (root / relative_path).resolve()
    if destination != root and root not in destination.parents:
        raise UnsafePathError(
            relative_path, f"resolves outside of {root}", archive_path=archive_path
        )
    return destination


@dataclass
class PackResult:
    """Outcome of :meth:`ExtensionArchive.pack`.

    Attributes:
        archive_path: Path of the written archive
        checksums: Relative path to SHA-256 hex digest, sorted by path
    """

    archive_path: Path
    checksums: Dict[str, str] = field(default_factory=dict)


class ExtensionArchive:
    """Packs extension directories into checksummed archives and unpacks them.

    The codec holds no state between calls; one instance can be shared by
    any number of callers.
    """

    CHECKSUMS_FILE = "checksums.json"
    SIGNATURE_SUFFIX = ".sig"
    CHECKSUM_SUFFIX = ".sha256"
    HASH_ALGO = "sha256"

    # Directory names skipped wherever they appear in a relative path.
    EXCLUDED_SEGMENTS = frozenset({
        "node_modules",
        "vendor",
        "__pycache__",
        ".git",
        ".hg",
        ".svn",
        ".idea",
        ".vscode",
    })

    def __init__(self, excluded_segments: Optional[Set[str]] = None) -> None:
        """Initialize the codec.

        Args:
            excluded_segments: Replaces the default excluded directory names
        """
        self.excluded_segments = frozenset(
            excluded_segments if excluded_segments is not None else self.EXCLUDED_SEGMENTS
        )

    def pack(
            self,
            source_dir: PathLike,
            output_path: PathLike,
            checksums: Optional[Mapping[str, str]] = None
    ) -> PackResult:
        """Pack a directory into an archive.

        Args:
            source_dir: Directory containing the extension
            output_path: Path where the archive will be written
            checksums: Checksum map to record instead of the computed one. Its
                keys must match the selected files exactly.

        Returns:
            The archive path and the recorded checksums

        Raises:
            PackageError: If the source is missing, the supplied checksums do
                not cover the selected files, or writing fails
        """
        source = Path(source_dir)
        output = Path(output_path)

        if not source.is_dir():
            raise PackageError(f"Source directory does not exist: {source}")
        source = source.resolve()

        files = self.collect_files(source)
        own_outputs = self._own_outputs(source, output)
        if own_outputs:
            files = [rel for rel in files if rel not in own_outputs]

        if checksums is None:
            recorded = {rel: calculate_file_hash(source / rel) for rel in files}
        else:
            supplied = set(checksums)
            selected = set(files)
            if supplied != selected:
                unknown = sorted(supplied - selected)
                unlisted = sorted(selected - supplied)
                raise PackageError(
                    "Supplied checksums do not match the packed files "
                    f"(not packed: {unknown}, not listed: {unlisted})",
                    archive_path=str(output),
                )
            recorded = {rel: str(checksums[rel]).lower() for rel in files}

        output.parent.mkdir(parents=True, exist_ok=True)
        if output.exists():
            output.unlink()

        manifest_bytes = (json.dumps(recorded, indent=2) + "\n").encode("utf-8")

        try:
            with tarfile.open(output, "w:gz") as tar:
                info = tarfile.TarInfo(self.CHECKSUMS_FILE)
                info.size = len(manifest_bytes)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(manifest_bytes))

                for rel in files:
                    full_path = source / rel
                    stat = full_path.stat()
                    info = tarfile.TarInfo(rel)
                    info.size = stat.st_size
                    info.mtime = int(stat.st_mtime)
                    info.mode = stat.st_mode & 0o777
                    with open(full_path, "rb") as f:
                        tar.addfile(info, f)
        except (OSError, tarfile.TarError) as e:
            raise PackageError(
                f"Failed to create archive at {output}: {e}", archive_path=str(output)
            ) from e

        logger.info("archive_packed", archive=str(output), files=len(recorded))
        return PackResult(archive_path=output, checksums=recorded)

    def collect_files(self, source_dir: PathLike) -> List[str]:
        """List the files :meth:`pack` would include, sorted lexicographically.

        Paths use forward slashes and are relative to ``source_dir``.
        """
        source = Path(source_dir)
        files: List[str] = []

        for root, dirs, filenames in os.walk(source):
            dirs[:] = [d for d in dirs if d not in self.excluded_segments]
            root_path = Path(root)
            for filename in filenames:
                rel = (root_path / filename).relative_to(source).as_posix()
                if self._is_excluded(rel):
                    continue
                files.append(rel)

        files.sort()
        return files

    def _is_excluded(self, relative_path: str) -> bool:
        if relative_path == self.CHECKSUMS_FILE:
            return True
        return any(segment in self.excluded_segments for segment in relative_path.split("/"))

    def _own_outputs(self, source: Path, output: Path) -> Set[str]:
        """Relative paths of the archive being written and its sidecars.

        Only non-empty when ``output`` lies inside ``source``; an archive
        exported into its own source tree must not pack a previous copy of
        itself.
        """
        resolved = output.resolve()
        if source not in resolved.parents:
            return set()

        rel = resolved.relative_to(source).as_posix()
        return {rel, rel + self.SIGNATURE_SUFFIX, rel + self.CHECKSUM_SUFFIX}

    def unpack(
            self,
            archive_path: PathLike,
            target_dir: PathLike,
            verify_checksums: bool = True
    ) -> Dict[str, str]:
        """Extract an archive into ``target_dir``.

        Every entry is validated before anything is written; one unsafe entry
        aborts the whole extraction.

        Args:
            archive_path: Path to the archive
            target_dir: Directory to extract into (created if needed)
            verify_checksums: Re-hash extracted files against ``checksums.json``

        Returns:
            The checksums recorded in the archive (empty for legacy archives)

        Raises:
            UnsafePathError: If an entry would escape ``target_dir``
            ChecksumMismatchError: If verification finds missing, altered or
                unlisted files
            PackageError: If the archive cannot be read
        """
        archive = Path(archive_path)
        target = Path(target_dir)

        if not archive.exists():
            raise PackageError(f"Archive not found: {archive}", archive_path=str(archive))

        target.mkdir(parents=True, exist_ok=True)
        extracted: List[str] = []

        try:
            with tarfile.open(archive, "r:*") as tar:
                plan = self._plan_extraction(tar.getmembers(), target, str(archive))

                for member, relative, destination in plan:
                    if member.isdir():
                        destination.mkdir(parents=True, exist_ok=True)
                        continue

                    destination.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        raise PackageError(
                            f"Cannot read archive entry {member.name}", archive_path=str(archive)
                        )
                    with source, open(destination, "wb") as f:
                        for chunk in iter(lambda: source.read(65536), b""):
                            f.write(chunk)
                    extracted.append(relative)
        except (OSError, tarfile.TarError) as e:
            raise PackageError(
                f"Failed to extract archive {archive}: {e}", archive_path=str(archive)
            ) from e

        checksums = self._load_checksums_file(target / self.CHECKSUMS_FILE, str(archive))

        if verify_checksums and checksums:
            unlisted = sorted(
                rel for rel in extracted
                if rel != self.CHECKSUMS_FILE and rel not in checksums
            )
            self._verify(target, checksums, unlisted=unlisted, archive_path=str(archive))

        logger.info(
            "archive_unpacked",
            archive=str(archive),
            target=str(target),
            files=len(extracted),
            verified=bool(verify_checksums and checksums),
        )
        return checksums

    def _plan_extraction(
            self,
            members: List[tarfile.TarInfo],
            target: Path,
            archive_path: str
    ) -> List[Tuple[tarfile.TarInfo, str, Path]]:
        plan: List[Tuple[tarfile.TarInfo, str, Path]] = []
        file_paths: Set[str] = set()
        dir_paths: Set[str] = set()

        for member in members:
            relative = validate_entry_path(member.name, archive_path)

            if not (member.isfile() or member.isdir()):
                raise UnsafePathError(
                    member.name, "links and special files are not allowed", archive_path=archive_path
                )

            destination = resolve_inside(target, relative, archive_path)
            if member.isfile() and relative == ".":
                raise UnsafePathError(member.name, "empty file name", archive_path=archive_path)

            # A path must not be both a file and a directory across entries.
            parents = self._parent_paths(relative)
            if (file_paths & parents) or (member.isfile() and relative in dir_paths) or (
                    member.isdir() and relative in file_paths):
                raise UnsafePathError(
                    member.name, "conflicts with another archive entry", archive_path=archive_path
                )
            dir_paths |= parents
            if member.isfile():
                file_paths.add(relative)
            else:
                dir_paths.add(relative)

            plan.append((member, relative, destination))

        return plan

    @staticmethod
    def _parent_paths(relative: str) -> Set[str]:
        segments = relative.split("/")
        return {"/".join(segments[:i]) for i in range(1, len(segments))}

    @staticmethod
    def _load_checksums_file(path: Path, archive_path: Optional[str] = None) -> Dict[str, str]:
        if not path.exists():
            return {}

        try:
            decoded = json.loads(path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise PackageError(
                f"Invalid checksum manifest in archive: {e}", archive_path=archive_path
            ) from e

        if not isinstance(decoded, dict):
            raise PackageError(
                "Invalid checksum manifest in archive: expected a JSON object",
                archive_path=archive_path,
            )
        return {str(rel): str(digest) for rel, digest in decoded.items()}

    def verify_checksums(self, base_dir: PathLike, checksums: Mapping[str, str]) -> None:
        """Verify that files under ``base_dir`` match their recorded checksums.

        Raises:
            ChecksumMismatchError: Listing every missing or altered file
        """
        self._verify(Path(base_dir), checksums)

    def _verify(
            self,
            base_dir: Path,
            checksums: Mapping[str, str],
            unlisted: Optional[List[str]] = None,
            archive_path: Optional[str] = None
    ) -> None:
        failures: List[str] = []
        paths: List[str] = []

        for relative_path, expected in checksums.items():
            try:
                full_path = resolve_inside(base_dir, validate_entry_path(relative_path))
            except UnsafePathError:
                failures.append(f"{relative_path} (unsafe path)")
                paths.append(relative_path)
                continue

            if not full_path.is_file():
                failures.append(f"{relative_path} (missing)")
                paths.append(relative_path)
                continue

            actual = calculate_file_hash(full_path, self.HASH_ALGO)
            if not hmac.compare_digest(str(expected).lower(), actual):
                failures.append(f"{relative_path} (hash mismatch)")
                paths.append(relative_path)

        for relative_path in unlisted or []:
            failures.append(f"{relative_path} (unlisted)")
            paths.append(relative_path)

        if failures:
            logger.warning("checksum_verification_failed", base_dir=str(base_dir), failures=failures)
            raise ChecksumMismatchError(
                failures, paths, base_dir=str(base_dir), archive_path=archive_path
            )

    def read_checksums(self, archive_path: PathLike) -> Optional[Dict[str, str]]:
        """Read ``checksums.json`` from an archive without extracting it.

        Returns:
            The checksum map, or None if the archive has none or cannot be read
        """
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                try:
                    member = tar.getmember(self.CHECKSUMS_FILE)
                except KeyError:
                    return None
                source = tar.extractfile(member)
                if source is None:
                    return None
                with source:
                    decoded = json.loads(source.read().decode("utf-8"))
        except (OSError, tarfile.TarError, ValueError) as e:
            logger.warning("checksums_unreadable", archive=str(archive_path), error=str(e))
            return None

        if not isinstance(decoded, dict):
            return None
        return {str(rel): str(digest) for rel, digest in decoded.items()}

    def write_checksum_sidecar(self, archive_path: PathLike) -> Tuple[Path, str]:
        """Write ``<archive>.sha256`` containing ``<hex>  <filename>``.

        Returns:
            The sidecar path and the archive digest
        """
        archive = Path(archive_path)
        digest = calculate_file_hash(archive, self.HASH_ALGO)
        sidecar = archive.with_name(archive.name + self.CHECKSUM_SUFFIX)
        sidecar.write_text(f"{digest}  {archive.name}\n", encoding="utf-8")
        return sidecar, digest

    def read_checksum_sidecar(self, archive_path: PathLike) -> Optional[str]:
        """Return the digest from ``<archive>.sha256``, or None if absent."""
        archive = Path(archive_path)
        sidecar = archive.with_name(archive.name + self.CHECKSUM_SUFFIX)
        if not sidecar.exists():
            return None

        content = sidecar.read_text(encoding="utf-8").strip()
        if not content:
            return None
        return content.split()[0].lower()
