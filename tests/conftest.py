"""Pytest configuration and fixtures for Notur tests."""

from pathlib import Path
from typing import Any, Callable, Dict, Generator, List

import httpx
import pytest
import yaml

from notur.core.config_manager import ConfigManager


@pytest.fixture
def manifest_data() -> Dict[str, Any]:
    """A valid extension manifest document."""
    return {
        "id": "acme/analytics",
        "name": "Acme Analytics",
        "version": "1.2.0",
        "entrypoint": "Acme\\Analytics\\AnalyticsServiceProvider",
        "description": "Server usage dashboards",
        "license": "MIT",
        "authors": [{"name": "Acme Devs", "email": "dev@acme.test"}],
        "dependencies": {"acme/core": "^1.0"},
        "capabilities": {"routes": "^1", "health": 1},
        "tags": ["dashboard", "metrics"],
    }


@pytest.fixture
def extension_dir(tmp_path: Path, manifest_data: Dict[str, Any]) -> Path:
    """An extension source tree including directories that must not be packed."""
    root = tmp_path / "acme-analytics"
    (root / "src").mkdir(parents=True)
    (root / "resources" / "frontend").mkdir(parents=True)
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / ".git").mkdir()

    (root / "extension.yaml").write_text(yaml.safe_dump(manifest_data), encoding="utf-8")
    (root / "src" / "ServiceProvider.php").write_text("<?php // provider\n", encoding="utf-8")
    (root / "resources" / "frontend" / "bundle.js").write_text("console.log('hi');\n", encoding="utf-8")
    (root / "README.md").write_text("# Acme Analytics\n", encoding="utf-8")
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    return root


@pytest.fixture
def registry_document() -> Dict[str, Any]:
    """A registry index with one dashboard extension and one without tags."""
    return {
        "version": "1.0",
        "updated_at": "2026-01-01T00:00:00Z",
        "extensions": [
            {
                "id": "acme/analytics",
                "name": "Acme Analytics",
                "description": "Server usage charts",
                "latest_version": "1.2.0",
                "repository": "https://github.com/acme/analytics",
                "tags": ["dashboard"],
                "sha256": {"1.2.0": "AB" * 32},
            },
            {
                "id": "acme/backups",
                "name": "Backups",
                "description": "Scheduled backups",
                "version": "0.9.0",
                "repository": "https://github.com/acme/backups/",
            },
        ],
    }


@pytest.fixture
def mock_http() -> Callable[..., httpx.Client]:
    """Build an httpx client whose requests are answered by ``routes``.

    ``routes`` maps a URL to a response or a callable returning one. Every
    request is appended to the returned client's ``requests`` list.
    """

    def factory(routes: Dict[str, Any]) -> httpx.Client:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            route = routes.get(str(request.url))
            if route is None:
                return httpx.Response(404, text="not found")
            if callable(route):
                return route(request)
            return route

        client = httpx.Client(transport=httpx.MockTransport(handler))
        client.requests = requests  # type: ignore[attr-defined]
        return client

    return factory


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary configuration file for testing."""
    test_config = {
        "registry": {
            "url": "https://registry.test/main",
            "cache_path": str(tmp_path / "cache" / "registry.json"),
            "cache_ttl": 60,
        },
        "signing": {"require_signatures": False},
        "logging": {
            "level": "DEBUG",
            "format": "text",
            "file": {"enabled": False},
            "console": {"enabled": True, "level": "DEBUG"},
        },
    }

    config_file = tmp_path / "notur.yaml"
    config_file.write_text(yaml.safe_dump(test_config), encoding="utf-8")
    return config_file


@pytest.fixture
def config_manager(temp_config_file: Path) -> Generator[ConfigManager, None, None]:
    """Create a ConfigManager instance for testing."""
    manager = ConfigManager(config_path=temp_config_file)
    manager.initialize()
    yield manager
    manager.shutdown()

