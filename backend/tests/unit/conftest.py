"""
Unit test fixtures and helpers.

Provides lightweight fixtures for unit testing that do NOT touch the
network or run npm.
"""

import json
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridge_console.config import Settings
from bridge_console.plugins.registry import NpmRegistryClient


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the host environment and any .env file."""
    return Settings(_env_file=None, port=8581, command_timeout=30)


@pytest.fixture
def write_package() -> Callable[..., Path]:
    """Factory creating ``<base>/<name>/package.json`` and optional extra files."""

    def _write(
        base: Path,
        name: str,
        version: Optional[str] = "1.0.0",
        keywords: Optional[List[str]] = None,
        description: Optional[str] = None,
        schema: Optional[dict] = None,
        changelog: Optional[str] = None,
    ) -> Path:
        package_dir = base / name
        package_dir.mkdir(parents=True, exist_ok=True)
        manifest = {"name": name, "keywords": ["homebridge-plugin"] if keywords is None else keywords}
        if version is not None:
            manifest["version"] = version
        if description is not None:
            manifest["description"] = description
        (package_dir / "package.json").write_text(json.dumps(manifest))
        if schema is not None:
            (package_dir / "config.schema.json").write_text(json.dumps(schema))
        if changelog is not None:
            (package_dir / "CHANGELOG.md").write_text(changelog)
        return package_dir

    return _write


@pytest.fixture
def passthrough_registry() -> MagicMock:
    """Registry double whose enrich() returns the record unchanged."""
    registry = MagicMock(spec=NpmRegistryClient)
    registry.enrich = AsyncMock(side_effect=lambda plugin: plugin)
    return registry


class RecordingSink:
    """Output sink collecting every chunk it receives."""

    def __init__(self):
        self.chunks: List[str] = []

    async def __call__(self, chunk: str) -> None:
        self.chunks.append(chunk)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
