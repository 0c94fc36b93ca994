"""Structural validation of extension manifests and registry indexes.

The schemas below use a small subset of JSON Schema: ``type`` (a name or a
list of names), ``required``, ``properties``, ``items``,
``additionalProperties`` and ``pattern``. Validation never stops at the
first problem; every error found is returned so a single pass reports
everything wrong with a document.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Union

EXTENSION_ID_PATTERN = r"^[a-z0-9-]+/[a-z0-9-]+$"

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "version", "entrypoint"],
    "properties": {
        "id": {"type": "string", "pattern": EXTENSION_ID_PATTERN},
        "name": {"type": "string"},
        "version": {"type": "string"},
        "entrypoint": {"type": "string"},
        "description": {"type": "string"},
        "license": {"type": "string"},
        "authors": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": {"type": "string"},
                    "email": {"type": "string"},
                    "url": {"type": "string"},
                },
            },
        },
        "requires": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "dependencies": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "capabilities": {
            "type": "object",
            "additionalProperties": {"type": ["string", "integer"]},
        },
        "tags": {"type": "array", "items": {"type": "string"}},
    },
}

REGISTRY_INDEX_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["version", "extensions"],
    "properties": {
        "version": {"type": "string"},
        "updated_at": {"type": "string"},
        "extensions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "name"],
                "properties": {
                    "id": {"type": "string", "pattern": EXTENSION_ID_PATTERN},
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "latest_version": {"type": "string"},
                    "version": {"type": "string"},
                    "repository": {"type": "string"},
                    "archive_url": {"type": "string"},
                    "signature_url": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "sha256": {
                        "type": ["string", "object"],
                        "additionalProperties": {"type": "string"},
                    },
                },
            },
        },
    },
}


def _type_matches(value: Any, type_name: str) -> bool:
    if type_name == "object":
        return isinstance(value, Mapping)
    if type_name == "array":
        return isinstance(value, list)
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "null":
        return value is None
    return True


def _describe(type_spec: Union[str, List[str]]) -> str:
    if isinstance(type_spec, list):
        return " or ".join(type_spec)
    return type_spec


class SchemaValidator:
    """Validates parsed documents against the fixed schema tables."""

    @classmethod
    def validate_manifest(cls, document: Any) -> List[str]:
        """Validate an extension manifest.

        Args:
            document: The parsed manifest (any mapping).

        Returns:
            Human-readable error strings; empty when the manifest is valid.
        """
        return cls.validate(document, MANIFEST_SCHEMA)

    @classmethod
    def validate_registry_index(cls, document: Any) -> List[str]:
        """Validate a registry index document."""
        return cls.validate(document, REGISTRY_INDEX_SCHEMA)

    @classmethod
    def is_valid_manifest(cls, document: Any) -> bool:
        return not cls.validate_manifest(document)

    @classmethod
    def is_valid_registry_index(cls, document: Any) -> bool:
        return not cls.validate_registry_index(document)

    @classmethod
    def validate(cls, document: Any, schema: Mapping[str, Any], path: str = "$") -> List[str]:
        """Validate ``document`` against ``schema``.

        Args:
            document: The value to check. It is never modified.
            schema: A schema table in the subset described in the module docstring.
            path: JSON path prefix used in error messages.

        Returns:
            Accumulated error strings such as ``"$.id: does not match pattern ..."``.
        """
        errors: List[str] = []

        type_spec = schema.get("type")
        if type_spec is not None and not cls._check_type(document, type_spec):
            errors.append(f"{path}: expected type '{_describe(type_spec)}'")
            return errors

        if isinstance(document, Mapping):
            for key in document:
                if not isinstance(key, str):
                    errors.append(f"{path}: property name {key!r} is not a string")

            for required in schema.get("required", []):
                if required not in document:
                    errors.append(f"{path}: missing required property '{required}'")

            properties: Mapping[str, Any] = schema.get("properties", {})
            for name, prop_schema in properties.items():
                if name in document:
                    errors.extend(cls._validate_value(document[name], prop_schema, f"{path}.{name}"))

            extra_schema = schema.get("additionalProperties")
            if isinstance(extra_schema, Mapping):
                for name, value in document.items():
                    if name not in properties:
                        errors.extend(cls._validate_value(value, extra_schema, f"{path}.{name}"))

        elif isinstance(document, list) and isinstance(schema.get("items"), Mapping):
            for index, item in enumerate(document):
                errors.extend(cls._validate_value(item, schema["items"], f"{path}[{index}]"))

        return errors

    @classmethod
    def _validate_value(cls, value: Any, schema: Mapping[str, Any], path: str) -> List[str]:
        type_spec = schema.get("type")
        if type_spec is not None and not cls._check_type(value, type_spec):
            return [f"{path}: expected {_describe(type_spec)}"]

        errors: List[str] = []
        if isinstance(value, (Mapping, list)):
            errors.extend(cls.validate(value, schema, path))

        pattern = schema.get("pattern")
        if pattern is not None and isinstance(value, str) and not re.search(pattern, value):
            errors.append(f"{path}: does not match pattern '{pattern}'")

        return errors

    @staticmethod
    def _check_type(value: Any, type_spec: Union[str, List[str]]) -> bool:
        if isinstance(type_spec, list):
            return any(_type_matches(value, name) for name in type_spec)
        return _type_matches(value, type_spec)
