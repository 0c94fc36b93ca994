"""Unit tests for extension archive packing and unpacking."""

import hashlib
import io
import json
import tarfile

import pytest

from notur.extension_system.package import (
    ExtensionArchive,
    archive_filename,
    validate_entry_path,
)
from notur.utils.exceptions import ChecksumMismatchError, PackageError, UnsafePathError


@pytest.fixture
def archive():
    return ExtensionArchive()


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_tar(path, entries):
    """Write a tar.gz whose members are ``(name, bytes)`` pairs or TarInfo objects."""
    with tarfile.open(path, "w:gz") as tar:
        for entry in entries:
            if isinstance(entry, tarfile.TarInfo):
                tar.addfile(entry)
                continue
            name, data = entry
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def test_archive_filename():
    assert archive_filename("acme/analytics", "1.2.0") == "acme-analytics-1.2.0.notur"


def test_pack_excludes_dependency_and_vcs_directories(archive, extension_dir, tmp_path):
    """node_modules and .git never appear in the checksum map."""
    result = archive.pack(extension_dir, tmp_path / "out" / "ext.notur")

    assert list(result.checksums) == [
        "README.md",
        "extension.yaml",
        "resources/frontend/bundle.js",
        "src/ServiceProvider.php",
    ]
    assert not any("node_modules" in p or ".git" in p for p in result.checksums)
    assert result.archive_path.exists()


def test_pack_skips_its_own_output_and_sidecars(archive, extension_dir):
    output = extension_dir / "dist" / "ext.notur"
    output.parent.mkdir()
    output.write_bytes(b"previous archive")
    (extension_dir / "dist" / "ext.notur.sha256").write_text("00  ext.notur\n", encoding="utf-8")
    (extension_dir / "dist" / "ext.notur.sig").write_text("00", encoding="utf-8")
    (extension_dir / "dist" / "notes.txt").write_text("kept", encoding="utf-8")

    result = archive.pack(extension_dir, output)

    assert "dist/notes.txt" in result.checksums
    assert not any(rel.startswith("dist/ext.notur") for rel in result.checksums)
    archive.unpack(output, extension_dir.parent / "out")


def test_pack_records_sha256(archive, extension_dir, tmp_path):
    result = archive.pack(extension_dir, tmp_path / "ext.notur")

    expected = _sha256((extension_dir / "README.md").read_bytes())
    assert result.checksums["README.md"] == expected
    assert archive.read_checksums(result.archive_path) == result.checksums


def test_pack_regenerates_existing_checksums_file(archive, extension_dir, tmp_path):
    """A stale checksums.json in the source is neither packed nor trusted."""
    (extension_dir / "checksums.json").write_text('{"README.md": "00"}', encoding="utf-8")

    result = archive.pack(extension_dir, tmp_path / "ext.notur")

    assert "checksums.json" not in result.checksums
    assert result.checksums["README.md"] != "00"
    assert (extension_dir / "checksums.json").read_text(encoding="utf-8") == '{"README.md": "00"}'


def test_pack_with_supplied_checksums(archive, extension_dir, tmp_path):
    """A supplied map is written as given when it covers exactly the packed files."""
    files = archive.collect_files(extension_dir)
    supplied = {rel: "AA" * 32 for rel in files}

    result = archive.pack(extension_dir, tmp_path / "ext.notur", checksums=supplied)

    assert result.checksums == {rel: "aa" * 32 for rel in files}
    assert archive.read_checksums(result.archive_path) == result.checksums


def test_pack_rejects_incomplete_supplied_checksums(archive, extension_dir, tmp_path):
    with pytest.raises(PackageError, match="do not match"):
        archive.pack(extension_dir, tmp_path / "ext.notur", checksums={"README.md": "aa"})


def test_pack_missing_source(archive, tmp_path):
    with pytest.raises(PackageError):
        archive.pack(tmp_path / "nope", tmp_path / "ext.notur")


def test_round_trip(archive, extension_dir, tmp_path):
    """Unpacking reproduces every packed file byte for byte."""
    result = archive.pack(extension_dir, tmp_path / "ext.notur")
    target = tmp_path / "unpacked"

    checksums = archive.unpack(result.archive_path, target)

    assert checksums == result.checksums
    for rel, digest in result.checksums.items():
        data = (target / rel).read_bytes()
        assert data == (extension_dir / rel).read_bytes()
        assert _sha256(data) == digest
    assert not (target / "node_modules").exists()


def test_verify_checksums_names_the_altered_file(archive, extension_dir, tmp_path):
    result = archive.pack(extension_dir, tmp_path / "ext.notur")
    target = tmp_path / "unpacked"
    archive.unpack(result.archive_path, target)

    (target / "src" / "ServiceProvider.php").write_text("<?php // evil\n", encoding="utf-8")

    with pytest.raises(ChecksumMismatchError) as exc_info:
        archive.verify_checksums(target, result.checksums)

    assert exc_info.value.paths == ["src/ServiceProvider.php"]
    assert str(exc_info.value) == (
        "Checksum verification failed for: src/ServiceProvider.php (hash mismatch)"
    )


def test_verify_checksums_aggregates_failures(archive, tmp_path):
    (tmp_path / "a.txt").write_bytes(b"a")
    (tmp_path / "b.txt").write_bytes(b"b")
    checksums = {
        "a.txt": _sha256(b"a"),
        "b.txt": _sha256(b"not b"),
        "c.txt": _sha256(b"c"),
        "../escape.txt": _sha256(b"x"),
    }

    with pytest.raises(ChecksumMismatchError) as exc_info:
        archive.verify_checksums(tmp_path, checksums)

    assert exc_info.value.failures == [
        "b.txt (hash mismatch)",
        "c.txt (missing)",
        "../escape.txt (unsafe path)",
    ]


def test_verify_checksums_accepts_uppercase_digests(archive, tmp_path):
    (tmp_path / "a.txt").write_bytes(b"a")

    archive.verify_checksums(tmp_path, {"a.txt": _sha256(b"a").upper()})


def test_unpack_detects_tampered_member(archive, tmp_path):
    """A member whose bytes differ from checksums.json fails the unpack."""
    checksums = {"main.php": _sha256(b"original")}
    path = _write_tar(tmp_path / "bad.notur", [
        ("checksums.json", json.dumps(checksums).encode()),
        ("main.php", b"tampered"),
    ])

    with pytest.raises(ChecksumMismatchError) as exc_info:
        archive.unpack(path, tmp_path / "out")

    assert exc_info.value.failures == ["main.php (hash mismatch)"]


def test_unpack_reports_unlisted_files(archive, tmp_path):
    """Files smuggled in next to a valid checksum map are reported."""
    checksums = {"main.php": _sha256(b"ok")}
    path = _write_tar(tmp_path / "extra.notur", [
        ("checksums.json", json.dumps(checksums).encode()),
        ("main.php", b"ok"),
        ("backdoor.php", b"<?php"),
    ])

    with pytest.raises(ChecksumMismatchError) as exc_info:
        archive.unpack(path, tmp_path / "out")

    assert exc_info.value.failures == ["backdoor.php (unlisted)"]


def test_unpack_without_verification(archive, tmp_path):
    checksums = {"main.php": _sha256(b"original")}
    path = _write_tar(tmp_path / "bad.notur", [
        ("checksums.json", json.dumps(checksums).encode()),
        ("main.php", b"tampered"),
    ])

    assert archive.unpack(path, tmp_path / "out", verify_checksums=False) == checksums
    assert (tmp_path / "out" / "main.php").read_bytes() == b"tampered"


def test_unpack_legacy_archive_without_checksums(archive, tmp_path):
    path = _write_tar(tmp_path / "legacy.notur", [("main.php", b"<?php")])

    assert archive.unpack(path, tmp_path / "out") == {}
    assert (tmp_path / "out" / "main.php").exists()


@pytest.mark.parametrize(
    "entry_name",
    ["../../etc/passwd", "/etc/passwd", "C:/Windows/evil.dll", "a/../../b", "..\\evil"],
)
def test_unpack_rejects_unsafe_paths_before_writing(archive, tmp_path, entry_name):
    """One unsafe entry aborts the unpack before anything is written."""
    path = _write_tar(tmp_path / "evil.notur", [
        ("innocent.txt", b"hello"),
        (entry_name, b"root::0:0"),
    ])
    target = tmp_path / "out"

    with pytest.raises(UnsafePathError):
        archive.unpack(path, target)

    assert not (target / "innocent.txt").exists()
    assert not (tmp_path / "etc").exists()


@pytest.mark.parametrize(
    "names",
    [("x", "x/y"), ("x/y", "x"), ("x/y/z", "x/y")],
)
def test_unpack_rejects_file_directory_conflicts(archive, tmp_path, names):
    path = _write_tar(tmp_path / "conflict.notur", [(name, b"data") for name in names])
    target = tmp_path / "out"

    with pytest.raises(UnsafePathError, match="conflicts"):
        archive.unpack(path, target)

    assert list(target.iterdir()) == []


def test_unpack_directory_entry_conflicting_with_file(archive, tmp_path):
    directory = tarfile.TarInfo("x")
    directory.type = tarfile.DIRTYPE
    path = _write_tar(tmp_path / "conflict.notur", [("x", b"data"), directory])

    with pytest.raises(UnsafePathError, match="conflicts"):
        archive.unpack(path, tmp_path / "out")


def test_unpack_wraps_filesystem_errors(archive, tmp_path):
    """Write failures surface as PackageError naming the archive."""
    path = _write_tar(tmp_path / "ext.notur", [("x/y", b"data")])
    target = tmp_path / "out"
    target.mkdir()
    (target / "x").write_bytes(b"already a file")

    with pytest.raises(PackageError) as exc_info:
        archive.unpack(path, target)

    assert exc_info.value.details["archive_path"] == str(path)
    assert isinstance(exc_info.value.__cause__, OSError)


def test_unpack_rejects_links(archive, tmp_path):
    link = tarfile.TarInfo("config")
    link.type = tarfile.SYMTYPE
    link.linkname = "/etc/passwd"
    path = _write_tar(tmp_path / "link.notur", [link])

    with pytest.raises(UnsafePathError, match="links"):
        archive.unpack(path, tmp_path / "out")


@pytest.mark.parametrize(
    "entry_name, reason",
    [
        ("a\x00b", "NUL"),
        ("/abs", "absolute"),
        ("\\\\server\\share", "absolute"),
        ("d:evil", "absolute"),
        ("x/../y", "parent"),
    ],
)
def test_validate_entry_path_rejects(entry_name, reason):
    with pytest.raises(UnsafePathError, match=reason):
        validate_entry_path(entry_name)


def test_validate_entry_path_normalizes():
    assert validate_entry_path("./src//main.php") == "src/main.php"
    assert validate_entry_path("src\\main.php") == "src/main.php"


def test_unpack_missing_archive(archive, tmp_path):
    with pytest.raises(PackageError, match="not found"):
        archive.unpack(tmp_path / "missing.notur", tmp_path / "out")


def test_unpack_corrupt_archive(archive, tmp_path):
    path = tmp_path / "corrupt.notur"
    path.write_bytes(b"definitely not a tarball")

    with pytest.raises(PackageError):
        archive.unpack(path, tmp_path / "out")


def test_read_checksums_absent_or_unreadable(archive, tmp_path):
    legacy = _write_tar(tmp_path / "legacy.notur", [("main.php", b"<?php")])
    corrupt = tmp_path / "corrupt.notur"
    corrupt.write_bytes(b"junk")

    assert archive.read_checksums(legacy) is None
    assert archive.read_checksums(corrupt) is None
    assert archive.read_checksums(tmp_path / "missing.notur") is None


def test_checksum_sidecar(archive, extension_dir, tmp_path):
    """The .sha256 sidecar holds the archive digest and file name."""
    result = archive.pack(extension_dir, tmp_path / "acme-analytics-1.2.0.notur")

    sidecar, digest = archive.write_checksum_sidecar(result.archive_path)

    assert sidecar.name == "acme-analytics-1.2.0.notur.sha256"
    assert sidecar.read_text(encoding="utf-8") == f"{digest}  acme-analytics-1.2.0.notur\n"
    assert digest == _sha256(result.archive_path.read_bytes())
    assert archive.read_checksum_sidecar(result.archive_path) == digest
    assert archive.read_checksum_sidecar(tmp_path / "other.notur") is None
