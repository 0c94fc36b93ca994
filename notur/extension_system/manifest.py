from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic
import yaml
from pydantic import ConfigDict, Field, field_validator

from notur.extension_system.capability import CapabilityMatcher
from notur.extension_system.schema import SchemaValidator
from notur.utils.exceptions import ManifestValidationError

MANIFEST_FILENAMES = ("extension.yaml", "extension.yml", "extension.json")


class ExtensionAuthor(pydantic.BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    email: Optional[str] = None
    url: Optional[str] = None


class ExtensionManifest(pydantic.BaseModel):
    """Parsed extension descriptor.

    Instances are immutable. Construct them with :meth:`from_dict` or
    :meth:`load`, which run the structural schema check first and report
    every problem at once through :class:`ManifestValidationError`.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str
    entrypoint: str
    description: str = ""
    license: str = ""
    authors: List[ExtensionAuthor] = Field(default_factory=list)
    requires: Dict[str, str] = Field(default_factory=dict)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    capabilities: Optional[Dict[str, str]] = None
    tags: List[str] = Field(default_factory=list)
    path: Optional[str] = Field(default=None, exclude=True)

    @field_validator('capabilities', mode='before')
    @classmethod
    def stringify_capabilities(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(key): str(value) for key, value in v.items()}
        return v

    @classmethod
    def from_dict(cls, data: Any, path: Optional[Union[str, Path]] = None) -> ExtensionManifest:
        """Build a manifest from an already parsed document.

        Args:
            data: The parsed descriptor.
            path: Where the descriptor came from, for error messages.

        Raises:
            ManifestValidationError: If the document fails the schema check.
        """
        source = str(path) if path is not None else "<memory>"
        errors = SchemaValidator.validate_manifest(data)
        if errors:
            raise ManifestValidationError(
                f"Invalid extension manifest at '{source}'", errors=errors, path=source
            )

        try:
            return cls.model_validate({**data, 'path': str(path) if path is not None else None})
        except pydantic.ValidationError as e:
            messages = [
                f"$.{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise ManifestValidationError(
                f"Invalid extension manifest at '{source}'", errors=messages, path=source
            ) from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> ExtensionManifest:
        """Load a manifest from a descriptor file or an extension directory.

        Directories are searched for ``extension.yaml``, ``extension.yml`` and
        ``extension.json`` in that order.

        Raises:
            FileNotFoundError: If no descriptor exists.
            ManifestValidationError: If the descriptor cannot be parsed or is invalid.
        """
        path = Path(path)
        if path.is_dir():
            for filename in MANIFEST_FILENAMES:
                candidate = path / filename
                if candidate.exists():
                    path = candidate
                    break
            else:
                raise FileNotFoundError(f"No extension manifest found in: {path}")

        if not path.exists():
            raise FileNotFoundError(f"Manifest not found: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                if path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ManifestValidationError(
                f"Cannot parse extension manifest at '{path}'", errors=[str(e)], path=str(path)
            ) from e

        return cls.from_dict(data, path=path)

    @property
    def base_path(self) -> Optional[Path]:
        """Directory the manifest was loaded from, if any."""
        return Path(self.path).parent if self.path else None

    @property
    def vendor(self) -> str:
        return self.id.split('/', 1)[0]

    @property
    def dependency_ids(self) -> List[str]:
        return list(self.dependencies)

    def has_capabilities_declared(self) -> bool:
        return self.capabilities is not None

    def is_capability_enabled(
            self,
            capability_id: str,
            major_version: int,
            default_if_missing: bool = False
    ) -> bool:
        """Check whether a capability is enabled for the host's major version.

        Manifests that declare no ``capabilities`` block at all get
        ``default_if_missing``; a declared block without the capability
        disables it.
        """
        if self.capabilities is None:
            return default_if_missing

        constraint = self.capabilities.get(capability_id)
        if constraint is None:
            return False

        return CapabilityMatcher.matches(constraint, major_version)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        if not data.get('authors'):
            data.pop('authors', None)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
