"""Registry index client and local cache.

The registry is a static ``registry.json`` document listing publishable
extensions. This module fetches it, keeps a timestamped copy on disk and
answers lookups from that copy while it is fresh.
"""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

import httpx
import pydantic
import semver
import structlog
from pydantic import ConfigDict, Field, model_validator

from notur.extension_system.package import archive_filename
from notur.extension_system.schema import SchemaValidator
from notur.utils.exceptions import NetworkError, RegistryError

if TYPE_CHECKING:
    from notur.core.config_manager import ConfigManager

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

DEFAULT_REGISTRY_URL = "https://raw.githubusercontent.com/notur/registry/main"
INDEX_FILE = "registry.json"
USER_AGENT = "Notur-RegistryClient/1.0"
FETCHED_AT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class RegistryExtension(pydantic.BaseModel):
    """A single extension record from the registry index.

    Keys the model does not declare are kept and written back to the cache.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    description: str = ""
    version: Optional[str] = None
    latest_version: Optional[str] = None
    repository: Optional[str] = None
    archive_url: Optional[str] = None
    signature_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    sha256: Optional[Union[str, Dict[str, str]]] = None

    @model_validator(mode="after")
    def default_latest_version(self) -> RegistryExtension:
        if not self.latest_version and self.version:
            self.latest_version = self.version
        return self

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on id, name, description or any tag."""
        needle = query.lower()
        fields = [self.id, self.name, self.description, *self.tags]
        return any(needle in str(value).lower() for value in fields)

    def expected_checksum(self, version: str) -> Optional[str]:
        """Published SHA-256 of the archive for ``version``, if any."""
        if isinstance(self.sha256, str) and self.sha256.strip():
            return self.sha256.strip().lower()
        if isinstance(self.sha256, dict):
            value = self.sha256.get(version)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
        return None

    def _expand(self, template: str, version: str) -> str:
        replacements = {
            "{id}": self.id,
            "{version}": version,
            "{archive}": archive_filename(self.id, version),
        }
        for token, value in replacements.items():
            template = template.replace(token, value)
        return template

    def archive_url_for(self, version: str) -> str:
        """Resolve the download URL of the archive for ``version``.

        An ``archive_url`` template wins; otherwise the GitHub release asset
        URL is derived from ``repository``.

        Raises:
            RegistryError: If the record has neither
        """
        if self.archive_url:
            return self._expand(self.archive_url, version)

        if not self.repository:
            raise RegistryError(
                f"Extension '{self.id}' has no repository URL", extension_id=self.id
            )

        return (
            f"{self.repository.rstrip('/')}/releases/download/v{version}/"
            f"{archive_filename(self.id, version)}"
        )

    def signature_url_for(self, version: str) -> str:
        if self.signature_url:
            return self._expand(self.signature_url, version)
        return self.archive_url_for(version) + ".sig"


class RegistryIndex(pydantic.BaseModel):
    """The parsed registry index document."""

    model_config = ConfigDict(extra="allow")

    version: str
    updated_at: Optional[str] = None
    extensions: List[RegistryExtension] = Field(default_factory=list)

    @classmethod
    def from_document(cls, document: Any) -> RegistryIndex:
        """Validate and parse a decoded ``registry.json`` document.

        Raises:
            RegistryError: If the document does not have the index structure
        """
        errors = SchemaValidator.validate_registry_index(document)
        if errors:
            raise RegistryError("Invalid registry index: " + "; ".join(errors))

        try:
            return cls.model_validate(document)
        except pydantic.ValidationError as e:
            raise RegistryError(f"Invalid registry index: {e}") from e

    def get(self, extension_id: str) -> Optional[RegistryExtension]:
        for extension in self.extensions:
            if extension.id == extension_id:
                return extension
        return None

    def search(self, query: str) -> List[RegistryExtension]:
        return [extension for extension in self.extensions if extension.matches(query)]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class WrappedCache:
    """Cache file written by :meth:`RegistryClient.sync_to_cache`."""

    fetched_at: str
    registry: Dict[str, Any]

    def fetched_time(self) -> Optional[datetime.datetime]:
        try:
            parsed = datetime.datetime.strptime(self.fetched_at, FETCHED_AT_FORMAT)
        except ValueError:
            try:
                parsed = datetime.datetime.fromisoformat(self.fetched_at.replace("Z", "+00:00"))
            except ValueError:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=datetime.timezone.utc)
        return parsed

    def is_expired(self, ttl: int, now: Optional[datetime.datetime] = None) -> bool:
        """Whether the entry is older than ``ttl`` seconds.

        A non-positive ``ttl`` disables expiry. An unreadable timestamp
        cannot be aged and counts as fresh.
        """
        if ttl <= 0:
            return False
        fetched = self.fetched_time()
        if fetched is None:
            return False
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return (now - fetched).total_seconds() > ttl


@dataclass(frozen=True)
class LegacyCache:
    """Bare index document cached without a timestamp; it never expires."""

    registry: Dict[str, Any]

    def is_expired(self, ttl: int, now: Optional[datetime.datetime] = None) -> bool:
        return False


CacheEntry = Union[WrappedCache, LegacyCache]


def decode_cache_document(document: Any) -> Optional[CacheEntry]:
    """Classify a decoded cache file as wrapped or legacy.

    Returns:
        None if the document is not a JSON object
    """
    if not isinstance(document, dict):
        return None
    if "fetched_at" in document and isinstance(document.get("registry"), dict):
        return WrappedCache(fetched_at=str(document["fetched_at"]), registry=document["registry"])
    return LegacyCache(registry=document)


@dataclass(frozen=True)
class AvailableUpdate:
    extension_id: str
    installed_version: str
    latest_version: str


def _parse_version(value: str) -> Optional[semver.Version]:
    try:
        return semver.Version.parse(value.strip().lstrip("v"), optional_minor_and_patch=True)
    except ValueError:
        return None


class RegistryClient:
    """Client for the remote registry index.

    Attributes:
        registry_url: Base URL that holds ``registry.json``
        cache_ttl: Seconds a cached index stays fresh; ``<= 0`` never expires
        cache_path: Local cache file used for lookups, if any
    """

    def __init__(
            self,
            registry_url: str = DEFAULT_REGISTRY_URL,
            cache_ttl: int = 3600,
            cache_path: Optional[PathLike] = None,
            client: Optional[httpx.Client] = None,
            timeout: float = 30.0,
            connect_timeout: float = 10.0,
            download_timeout: float = 120.0
    ) -> None:
        """Initialize a registry client.

        Args:
            registry_url: Base URL that holds ``registry.json``
            cache_ttl: Cache lifetime in seconds
            cache_path: Local cache file consulted by lookups
            client: HTTP client to use; one is created (and owned) if omitted
            timeout: Total timeout for index and sidecar requests
            connect_timeout: Connect timeout for every request
            download_timeout: Total timeout for archive downloads
        """
        self.registry_url = registry_url.rstrip("/")
        self.cache_ttl = int(cache_ttl)
        self.cache_path = Path(cache_path) if cache_path is not None else None
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.download_timeout = httpx.Timeout(download_timeout, connect=connect_timeout)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self.timeout)
        # Network results only; lookups may also be served from the cache.
        self._index: Optional[RegistryIndex] = None
        self._lookup_index: Optional[RegistryIndex] = None

    @classmethod
    def from_config(
            cls, config: ConfigManager, client: Optional[httpx.Client] = None
    ) -> RegistryClient:
        """Build a client from the ``registry`` configuration section."""
        return cls(
            registry_url=config.get("registry.url", DEFAULT_REGISTRY_URL),
            cache_ttl=config.get("registry.cache_ttl", 3600),
            cache_path=config.get("registry.cache_path"),
            client=client,
            timeout=config.get("registry.timeout", 30.0),
            connect_timeout=config.get("registry.connect_timeout", 10.0),
            download_timeout=config.get("registry.download_timeout", 120.0),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def index_url(self) -> str:
        return f"{self.registry_url}/{INDEX_FILE}"

    def fetch_index(self, refresh: bool = False) -> RegistryIndex:
        """Fetch ``registry.json`` once per client instance.

        Args:
            refresh: Request the index again even if it was already fetched

        Raises:
            NetworkError: On transport failure, a non-200 status or a body
                that is not JSON
            RegistryError: If the JSON is not a registry index
        """
        if self._index is not None and not refresh:
            return self._index

        url = self.index_url
        try:
            response = self._client.get(
                url,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                timeout=self.timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch registry index from {url}: {e}", url=url) from e

        if response.status_code != 200:
            raise NetworkError(
                f"Registry returned HTTP {response.status_code} for {url}",
                url=url,
                status_code=response.status_code,
            )

        try:
            document = response.json()
        except ValueError as e:
            raise NetworkError(f"Registry index at {url} is not valid JSON", url=url) from e

        self._index = RegistryIndex.from_document(document)
        self._lookup_index = self._index
        logger.info("registry_fetched", url=url, extensions=len(self._index.extensions))
        return self._index

    def search(self, query: str) -> List[RegistryExtension]:
        """Find extensions whose id, name, description or tags contain ``query``."""
        return self._get_index_with_cache().search(query)

    def get_extension(self, extension_id: str) -> Optional[RegistryExtension]:
        return self._get_index_with_cache().get(extension_id)

    def _require_extension(self, extension_id: str) -> RegistryExtension:
        extension = self.get_extension(extension_id)
        if extension is None:
            raise RegistryError(
                f"Extension '{extension_id}' not found in registry", extension_id=extension_id
            )
        return extension

    def download(self, extension_id: str, version: str, target_path: PathLike) -> Path:
        """Download an extension archive.

        Returns:
            The path written

        Raises:
            RegistryError: If the extension or its repository URL is unknown
            NetworkError: On transport failure or a non-200 response
        """
        extension = self._require_extension(extension_id)
        url = extension.archive_url_for(version)
        target = self._stream_to_file(
            url, target_path, self.download_timeout, f"extension '{extension_id}' v{version}"
        )
        logger.info("archive_downloaded", extension_id=extension_id, version=version, url=url)
        return target

    def download_signature(self, extension_id: str, version: str, target_path: PathLike) -> Path:
        """Download the ``.sig`` sidecar for an archive."""
        extension = self._require_extension(extension_id)
        url = extension.signature_url_for(version)
        return self._stream_to_file(
            url, target_path, self.timeout, f"signature for '{extension_id}' v{version}"
        )

    def _stream_to_file(
            self, url: str, target_path: PathLike, timeout: httpx.Timeout, what: str
    ) -> Path:
        target = Path(target_path)
        target.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._client.stream(
                    "GET",
                    url,
                    headers={"User-Agent": USER_AGENT},
                    timeout=timeout,
                    follow_redirects=True,
            ) as response:
                if response.status_code != 200:
                    raise NetworkError(
                        f"Download returned HTTP {response.status_code} for {what}",
                        url=url,
                        status_code=response.status_code,
                    )
                with open(target, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=8192):
                        f.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise NetworkError(f"Failed to download {what}: {e}", url=url) from e

        return target

    def get_expected_archive_checksum(self, extension_id: str, version: str) -> Optional[str]:
        extension = self.get_extension(extension_id)
        if extension is None:
            return None
        return extension.expected_checksum(version)

    def find_updates(self, installed: Mapping[str, str]) -> List[AvailableUpdate]:
        """Compare installed versions with the registry's latest versions.

        Args:
            installed: Extension id mapped to its installed version

        Returns:
            One entry per extension with a newer published version. Entries
            that are not in the registry or do not parse as versions are skipped.
        """
        updates: List[AvailableUpdate] = []

        for extension_id, current in installed.items():
            extension = self.get_extension(extension_id)
            if extension is None or not extension.latest_version:
                continue

            current_ver = _parse_version(current)
            latest_ver = _parse_version(extension.latest_version)
            if current_ver is None or latest_ver is None:
                logger.warning(
                    "version_compare_failed",
                    extension_id=extension_id,
                    installed=current,
                    latest=extension.latest_version,
                )
                continue

            if latest_ver > current_ver:
                updates.append(AvailableUpdate(extension_id, current, extension.latest_version))

        return updates

    def sync_to_cache(self, cache_path: Optional[PathLike] = None) -> int:
        """Fetch the index from the registry and write it to the cache with a timestamp.

        Returns:
            Number of extensions in the synced index
        """
        path = self._cache_path_or_raise(cache_path)
        index = self.fetch_index(refresh=True)

        path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "fetched_at": datetime.datetime.now(datetime.timezone.utc).strftime(FETCHED_AT_FORMAT),
            "registry": index.to_document(),
        }
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")

        logger.info("registry_cached", path=str(path), extensions=len(index.extensions))
        return len(index.extensions)

    def load_from_cache(
            self, cache_path: Optional[PathLike] = None, ignore_expiry: bool = False
    ) -> Optional[RegistryIndex]:
        """Load the index from a cache file.

        Args:
            cache_path: Cache file; defaults to the configured one
            ignore_expiry: Return expired data instead of treating it as a miss

        Returns:
            The cached index, or None if the cache is missing, unreadable,
            invalid or expired
        """
        path = self._cache_path_or_raise(cache_path)
        if not path.exists():
            return None

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("registry_cache_unreadable", path=str(path), error=str(e))
            return None

        entry = decode_cache_document(document)
        if entry is None:
            return None

        if not ignore_expiry and entry.is_expired(self.cache_ttl):
            logger.debug("registry_cache_expired", path=str(path), ttl=self.cache_ttl)
            return None

        try:
            return RegistryIndex.from_document(entry.registry)
        except RegistryError as e:
            logger.warning("registry_cache_invalid", path=str(path), error=str(e))
            return None

    def is_cache_fresh(self, cache_path: Optional[PathLike] = None) -> bool:
        return self.load_from_cache(cache_path) is not None

    def _cache_path_or_raise(self, cache_path: Optional[PathLike]) -> Path:
        if cache_path is not None:
            return Path(cache_path)
        if self.cache_path is not None:
            return self.cache_path
        raise RegistryError("No registry cache path configured")

    def _get_index_with_cache(self) -> RegistryIndex:
        if self._lookup_index is not None:
            return self._lookup_index

        if self.cache_path is None:
            return self.fetch_index()

        cached = self.load_from_cache()
        if cached is not None:
            self._lookup_index = cached
            return cached

        try:
            self.sync_to_cache()
        except (RegistryError, OSError) as e:
            stale = self.load_from_cache(ignore_expiry=True)
            if stale is None:
                raise
            logger.warning("registry_using_stale_cache", path=str(self.cache_path), error=str(e))
            self._lookup_index = stale
            return stale

        return self.fetch_index()
