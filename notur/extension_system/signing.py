"""Extension archive signing and verification utilities.

Archives are signed with detached Ed25519 signatures over their raw bytes.
Keys and signatures are exchanged as lowercase hex: a 32-byte public key,
a 64-byte secret key laid out as ``seed || public key`` and a 64-byte
signature.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
from pathlib import Path
from typing import Dict, Union

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from notur.extension_system.package import ExtensionArchive, calculate_file_hash
from notur.utils.exceptions import ConfigurationError, SignatureFormatError, SigningError

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

PUBLIC_KEY_BYTES = 32
SECRET_KEY_BYTES = 64
SIGNATURE_BYTES = 64


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _decode_hex(value: str, expected_length: int, parameter: str) -> bytes:
    """Decode a hex parameter and check its byte length.

    Raises:
        SignatureFormatError: If the value is not hex or has the wrong length
    """
    if not isinstance(value, str):
        raise SignatureFormatError(f"{parameter} must be a hex string", parameter=parameter)

    try:
        raw = binascii.unhexlify(value.strip())
    except (binascii.Error, ValueError) as e:
        raise SignatureFormatError(f"{parameter} is not valid hex: {e}", parameter=parameter) from e

    if len(raw) != expected_length:
        raise SignatureFormatError(
            f"{parameter} must be {expected_length} bytes, got {len(raw)}",
            parameter=parameter,
        )
    return raw


class SignatureVerifier:
    """Produces and checks detached Ed25519 signatures over archive files.

    Constructing a verifier checks the cryptography backend once. A platform
    without Ed25519 support is a configuration problem, so it fails here
    rather than on every call.
    """

    def __init__(self) -> None:
        """Initialize the verifier.

        Raises:
            ConfigurationError: If the platform does not support Ed25519
        """
        try:
            Ed25519PrivateKey.generate()
        except UnsupportedAlgorithm as e:
            raise ConfigurationError(
                "Ed25519 signatures are not supported by the installed cryptography backend",
                config_key="signing",
            ) from e

    @staticmethod
    def generate_keypair() -> Dict[str, str]:
        """Generate a new signing keypair.

        Returns:
            ``{"public": <64 hex chars>, "secret": <128 hex chars>}``
        """
        private_key = Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public = _raw_public_bytes(private_key.public_key())
        return {
            "public": public.hex(),
            "secret": (seed + public).hex(),
        }

    def _load_secret_key(self, secret_key_hex: str) -> Ed25519PrivateKey:
        raw = _decode_hex(secret_key_hex, SECRET_KEY_BYTES, "secret_key")
        seed, public = raw[:32], raw[32:]
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        if not hmac.compare_digest(_raw_public_bytes(private_key.public_key()), public):
            raise SignatureFormatError(
                "secret_key does not embed the public key derived from its seed",
                parameter="secret_key",
            )
        return private_key

    def sign(self, file_path: PathLike, secret_key_hex: str) -> str:
        """Sign a file.

        Args:
            file_path: File whose full contents are signed
            secret_key_hex: Secret key in hex

        Returns:
            Detached signature in hex

        Raises:
            SignatureFormatError: If the secret key is malformed
            SigningError: If the file cannot be read
        """
        private_key = self._load_secret_key(secret_key_hex)

        try:
            data = Path(file_path).read_bytes()
        except OSError as e:
            raise SigningError(f"Cannot read file to sign: {file_path}: {e}") from e

        signature = private_key.sign(data).hex()
        logger.debug("file_signed", path=str(file_path))
        return signature

    def verify(self, file_path: PathLike, signature_hex: str, public_key_hex: str) -> bool:
        """Verify a detached signature.

        Args:
            file_path: Signed file
            signature_hex: Signature in hex
            public_key_hex: Public key in hex

        Returns:
            True if the signature is valid, False on any cryptographic mismatch
            or when the file cannot be read

        Raises:
            SignatureFormatError: If the signature or key is malformed
        """
        signature = _decode_hex(signature_hex, SIGNATURE_BYTES, "signature")
        raw_public = _decode_hex(public_key_hex, PUBLIC_KEY_BYTES, "public_key")

        try:
            public_key = Ed25519PublicKey.from_public_bytes(raw_public)
        except ValueError as e:
            raise SignatureFormatError(f"public_key is invalid: {e}", parameter="public_key") from e

        try:
            data = Path(file_path).read_bytes()
        except OSError as e:
            logger.warning("signature_target_unreadable", path=str(file_path), error=str(e))
            return False

        try:
            public_key.verify(signature, data)
        except InvalidSignature:
            logger.warning("signature_invalid", path=str(file_path))
            return False

        return True

    @staticmethod
    def verify_checksum(file_path: PathLike, expected_hash_hex: str, algo: str = "sha256") -> bool:
        """Compare a file's digest with an expected hex digest in constant time.

        Returns:
            False when the digest differs or the file is missing
        """
        path = Path(file_path)
        if not path.is_file():
            return False

        try:
            hashlib.new(algo)
        except ValueError as e:
            raise SignatureFormatError(f"Unsupported hash algorithm: {algo}", parameter="algo") from e

        actual = calculate_file_hash(path, algo)
        return hmac.compare_digest(actual, expected_hash_hex.strip().lower())

    def sign_to_sidecar(self, archive_path: PathLike, secret_key_hex: str) -> Path:
        """Sign an archive and write the hex signature to ``<archive>.sig``."""
        archive = Path(archive_path)
        signature = self.sign(archive, secret_key_hex)
        sidecar = archive.with_name(archive.name + ExtensionArchive.SIGNATURE_SUFFIX)
        sidecar.write_text(signature, encoding="utf-8")
        logger.info("archive_signed", archive=str(archive), signature=str(sidecar))
        return sidecar

    def verify_sidecar(self, archive_path: PathLike, public_key_hex: str) -> bool:
        """Verify an archive against its ``<archive>.sig`` sidecar.

        Returns:
            False if the sidecar is missing or the signature does not match

        Raises:
            SignatureFormatError: If the sidecar or key is malformed
        """
        archive = Path(archive_path)
        sidecar = archive.with_name(archive.name + ExtensionArchive.SIGNATURE_SUFFIX)
        if not sidecar.exists():
            logger.warning("signature_missing", archive=str(archive))
            return False

        return self.verify(archive, sidecar.read_text(encoding="utf-8").strip(), public_key_hex)
