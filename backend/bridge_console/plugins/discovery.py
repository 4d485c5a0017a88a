"""
Installed Plugin Discovery

Scans the plugin search paths for Homebridge plugins, validates their
package.json, and enriches each plugin with npm registry data.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from ..config import Settings
from .exceptions import ManifestValidationError
from .models import (
    DEFAULT_INSTALLED_VERSION,
    DiscoveryResult,
    InstalledModule,
    PackageManifest,
    PluginRecord,
    clean_description,
    is_certified,
    is_plugin_name,
)
from .registry import NpmRegistryClient

logger = logging.getLogger(__name__)

MANIFEST_FILE = "package.json"
SCHEMA_FILE = "config.schema.json"


def read_manifest(package_dir: Path) -> PackageManifest:
    """
    Load and validate ``package.json`` from a package directory.

    Raises:
        ManifestValidationError: The file is unreadable, not JSON, or lacks
            the fields the console relies on.
    """
    manifest_path = package_dir / MANIFEST_FILE
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ManifestValidationError(str(manifest_path), str(e))

    if not isinstance(data, dict):
        raise ManifestValidationError(str(manifest_path), "expected a JSON object")

    try:
        return PackageManifest.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ManifestValidationError(str(manifest_path), errors)


def sort_plugins(plugins: Sequence[PluginRecord]) -> List[PluginRecord]:
    """Plugins with updates first, then alphabetical."""
    return sorted(plugins, key=lambda p: (not p.update_available, p.name))


class PluginDiscovery:
    """
    Finds installed Homebridge plugins.

    Each call to ``discover`` is a fresh pass over the filesystem; the
    returned DiscoveryResult is what callers hold on to.
    """

    def __init__(
        self,
        settings: Settings,
        base_paths: Sequence[str],
        registry: NpmRegistryClient,
    ):
        self.settings = settings
        self.base_paths = list(base_paths)
        self.registry = registry

    def list_modules(self) -> List[InstalledModule]:
        """
        Every package directory directly inside the search paths.

        Scope directories (``@scope``) contribute their children as
        ``@scope/name``.
        """
        modules = []
        for base in self.base_paths:
            base_path = Path(base)
            try:
                children = sorted(base_path.iterdir())
            except OSError as e:
                logger.warning(f"Cannot read plugin directory {base}: {e}")
                continue

            for child in children:
                if not child.is_dir():
                    continue
                if child.name.startswith("@"):
                    try:
                        scope_children = sorted(c for c in child.iterdir() if c.is_dir())
                    except OSError as e:
                        logger.warning(f"Cannot read plugin scope directory {child}: {e}")
                        continue
                    for scoped in scope_children:
                        modules.append(
                            InstalledModule(
                                name=f"{child.name}/{scoped.name}",
                                path=base,
                                install_path=str(scoped),
                            )
                        )
                    continue
                modules.append(InstalledModule(name=child.name, path=base, install_path=str(child)))
        return modules

    def is_global(self, path: str) -> bool:
        custom = self.settings.custom_plugin_path
        if not custom:
            return True
        return Path(path).resolve() != Path(custom).resolve()

    def parse_package(self, manifest: PackageManifest, path: str) -> PluginRecord:
        """Build the (not yet enriched) record for a package found under ``path``."""
        package_dir = Path(path) / manifest.name
        return PluginRecord(
            name=manifest.name,
            description=clean_description(manifest.description, manifest.name),
            certified_plugin=is_certified(manifest.name),
            installed_version=manifest.version or DEFAULT_INSTALLED_VERSION,
            global_install=self.is_global(path),
            settings_schema=(package_dir / SCHEMA_FILE).exists(),
            install_path=path,
        )

    def _collect(self) -> List[PluginRecord]:
        plugins: List[PluginRecord] = []

        for module in self.list_modules():
            if not is_plugin_name(module.name):
                continue
            if not (Path(module.install_path) / MANIFEST_FILE).exists():
                continue

            try:
                manifest = read_manifest(Path(module.install_path))
            except ManifestValidationError as e:
                logger.error(f'Failed to parse plugin "{module.name}": {e.message}')
                continue

            if not manifest.is_plugin:
                continue

            plugin = self.parse_package(manifest, module.path)
            existing = next((i for i, p in enumerate(plugins) if p.name == plugin.name), None)
            if existing is None:
                plugins.append(plugin)
            elif not plugin.global_install and plugins[existing].global_install:
                # a custom path install shadows the global one
                plugins[existing] = plugin

        return plugins

    async def discover(self) -> DiscoveryResult:
        """Scan, enrich and sort the installed plugins."""
        plugins = self._collect()
        enriched = await asyncio.gather(*(self.registry.enrich(p) for p in plugins))
        logger.info(f"Discovered {len(enriched)} installed plugins")
        return DiscoveryResult(plugins=tuple(sort_plugins(enriched)))

    def find_modules(self, name: str) -> List[InstalledModule]:
        return [m for m in self.list_modules() if m.name == name]

    async def load_package(self, package_dir: Path, path: Optional[str] = None) -> PluginRecord:
        """
        Parse and enrich an arbitrary package, plugin keyword not required.

        Used for the Homebridge core package.
        """
        manifest = read_manifest(package_dir)
        plugin = self.parse_package(manifest, path or str(package_dir.parent))
        return await self.registry.enrich(plugin)
