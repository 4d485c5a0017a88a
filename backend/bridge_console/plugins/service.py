"""
Plugin Management Service

Composes path resolution, discovery, the registry clients and the command
runner into the operations the console exposes: list, search, install,
update, uninstall, and read a plugin's config schema, changelog and
release notes.

Operations that need to know what is installed accept an optional
DiscoveryResult. When none is given a fresh discovery pass is run.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import Settings, load_bridge_pin
from .discovery import MANIFEST_FILE, SCHEMA_FILE, PluginDiscovery
from .exceptions import ManifestValidationError, PluginConfigurationError, PluginNotFoundError
from .models import DiscoveryResult, PluginRecord, ReleaseNotes
from .paths import PluginPathResolver
from .registry import GitHubReleaseClient, NpmRegistryClient
from .runner import CommandRunner, InstallPathLocks, OutputSink

logger = logging.getLogger(__name__)

CHANGELOG_FILE = "CHANGELOG.md"
HOMEBRIDGE_PACKAGE = "homebridge"
ALEXA_PLUGIN = "homebridge-alexa"


class PluginsService:
    """Plugin management operations."""

    def __init__(
        self,
        settings: Settings,
        resolver: Optional[PluginPathResolver] = None,
        registry: Optional[NpmRegistryClient] = None,
        releases: Optional[GitHubReleaseClient] = None,
        discovery: Optional[PluginDiscovery] = None,
        runner: Optional[CommandRunner] = None,
        locks: Optional[InstallPathLocks] = None,
    ):
        self.settings = settings
        self.resolver = resolver or PluginPathResolver(settings)
        self.npm = self.resolver.npm_command()
        self.registry = registry or NpmRegistryClient(settings)
        self.releases = releases or GitHubReleaseClient(settings)
        self.discovery = discovery or PluginDiscovery(settings, self.resolver.base_paths(), self.registry)
        self.runner = runner or CommandRunner(settings)
        self.locks = locks or InstallPathLocks()

    async def close(self):
        await self.registry.close()
        await self.releases.close()

    # ------------------------------------------------------------------
    #  Queries
    # ------------------------------------------------------------------

    async def discover(self) -> DiscoveryResult:
        return await self.discovery.discover()

    async def _resolve(self, discovery: Optional[DiscoveryResult]) -> DiscoveryResult:
        return discovery if discovery is not None else await self.discover()

    async def _require(self, name: str, discovery: Optional[DiscoveryResult]) -> PluginRecord:
        plugin = (await self._resolve(discovery)).find(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        return plugin

    async def list_installed(self, discovery: Optional[DiscoveryResult] = None) -> List[PluginRecord]:
        """Installed plugins, plugins with updates first."""
        return list((await self._resolve(discovery)).plugins)

    async def list_outdated(self, discovery: Optional[DiscoveryResult] = None) -> List[PluginRecord]:
        return (await self._resolve(discovery)).outdated

    async def search(self, query: str, discovery: Optional[DiscoveryResult] = None) -> List[PluginRecord]:
        """Search the registry; installed plugins take precedence over registry rows."""
        installed = (await self._resolve(discovery)).plugins
        return await self.registry.search(query, installed)

    async def lookup(self, name: str, discovery: Optional[DiscoveryResult] = None) -> List[PluginRecord]:
        installed = (await self._resolve(discovery)).plugins
        return await self.registry.lookup(name, installed)

    async def get_config_schema(self, name: str, discovery: Optional[DiscoveryResult] = None) -> Dict[str, Any]:
        """
        The plugin's config.schema.json.

        The console's own schema gets its port default set to the port it
        listens on, and homebridge-alexa gets the bridge pin as its pin
        default.

        Raises:
            PluginNotFoundError: Unknown plugin or no schema file.
            ManifestValidationError: The schema file is not valid JSON or
                its "schema" member is not an object.
        """
        plugin = await self._require(name, discovery)
        schema_path = Path(plugin.install_path) / name / SCHEMA_FILE
        if not schema_path.exists():
            raise PluginNotFoundError(name, "No config schema for plugin")

        try:
            config_schema = json.loads(schema_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ManifestValidationError(str(schema_path), str(e))

        if not isinstance(config_schema, dict):
            raise ManifestValidationError(str(schema_path), "expected a JSON object")
        if not isinstance(config_schema.get("schema", {}), dict):
            raise ManifestValidationError(str(schema_path), "schema: expected a JSON object")

        if name == self.settings.ui_plugin_name:
            self._set_default(config_schema, "port", self.settings.port)
        if name == ALEXA_PLUGIN:
            self._set_default(config_schema, "pin", load_bridge_pin(self.settings))

        return config_schema

    @staticmethod
    def _set_default(config_schema: Dict[str, Any], prop: str, value: Any):
        properties = config_schema.get("schema", {}).get("properties")
        if isinstance(properties, dict) and isinstance(properties.get(prop), dict):
            properties[prop]["default"] = value

    async def get_changelog(self, name: str, discovery: Optional[DiscoveryResult] = None) -> Dict[str, str]:
        """
        The CHANGELOG.md shipped inside the plugin package.

        Raises:
            PluginNotFoundError: Unknown plugin or no changelog file.
        """
        plugin = await self._require(name, discovery)
        changelog = Path(plugin.install_path) / plugin.name / CHANGELOG_FILE
        if not changelog.exists():
            raise PluginNotFoundError(name, "No changelog for plugin")
        return {"changelog": changelog.read_text(encoding="utf-8")}

    async def get_latest_release(self, name: str, discovery: Optional[DiscoveryResult] = None) -> ReleaseNotes:
        plugin = await self._require(name, discovery)
        return await self.releases.get_latest_release(plugin)

    async def get_homebridge_package(self) -> PluginRecord:
        """
        The installed Homebridge core package.

        Raises:
            PluginConfigurationError: Homebridge cannot be found.
        """
        override = self.settings.homebridge_package_path
        if override:
            package_dir = Path(override)
            if (package_dir / MANIFEST_FILE).exists():
                return await self.discovery.load_package(package_dir)
            logger.error(f'"homebridgePackagePath" ({override}) does not exist')

        installs = self.discovery.find_modules(HOMEBRIDGE_PACKAGE)
        if len(installs) > 1:
            logger.warning("Multiple Instances Of Homebridge Found Installed")
            for instance in installs:
                logger.warning(instance.install_path)

        if not installs:
            logger.error("Unable To Find Homebridge Installation")
            raise PluginConfigurationError("Unable To Find Homebridge Installation")

        module = installs[0]
        return await self.discovery.load_package(Path(module.install_path), module.path)

    # ------------------------------------------------------------------
    #  npm commands
    # ------------------------------------------------------------------

    def _install_options(self, install_path: str) -> List[str]:
        """``--save`` when installing into a custom path that has its own package.json."""
        custom = self.settings.custom_plugin_path
        if custom and Path(install_path).resolve() == Path(custom).resolve():
            if (Path(custom).parent / MANIFEST_FILE).exists():
                return ["--save"]
        return []

    async def _run_npm(self, args: List[str], install_path: str, sink: OutputSink) -> bool:
        cwd = str(Path(install_path).resolve().parent)
        async with self.locks.hold(cwd):
            return await self.runner.run([*self.npm, *args], cwd, sink)

    def _default_install_path(self, discovery: DiscoveryResult) -> str:
        if self.settings.custom_plugin_path:
            return self.settings.custom_plugin_path

        # install next to the console itself
        own = discovery.find(self.settings.ui_plugin_name)
        if own and own.install_path:
            return own.install_path

        if self.discovery.base_paths:
            return self.discovery.base_paths[0]

        raise PluginConfigurationError("Unable to determine where plugins should be installed")

    async def install_plugin(
        self, name: str, sink: OutputSink, discovery: Optional[DiscoveryResult] = None
    ) -> bool:
        install_path = self._default_install_path(await self._resolve(discovery))
        args = ["install", "--unsafe-perm", *self._install_options(install_path), f"{name}@latest"]
        return await self._run_npm(args, install_path, sink)

    async def update_plugin(
        self, name: str, sink: OutputSink, discovery: Optional[DiscoveryResult] = None
    ) -> bool:
        plugin = await self._require(name, discovery)
        args = ["install", "--unsafe-perm", *self._install_options(plugin.install_path), f"{name}@latest"]
        return await self._run_npm(args, plugin.install_path, sink)

    async def uninstall_plugin(
        self, name: str, sink: OutputSink, discovery: Optional[DiscoveryResult] = None
    ) -> bool:
        plugin = await self._require(name, discovery)
        args = ["uninstall", "--unsafe-perm", *self._install_options(plugin.install_path), name]
        try:
            return await self._run_npm(args, plugin.install_path, sink)
        finally:
            self.ensure_custom_plugin_dir()

    async def update_homebridge(self, sink: OutputSink) -> bool:
        homebridge = await self.get_homebridge_package()
        args = ["install", "--unsafe-perm", *self._install_options(homebridge.install_path), f"{homebridge.name}@latest"]
        return await self._run_npm(args, homebridge.install_path, sink)

    def ensure_custom_plugin_dir(self):
        """
        Re-create the custom plugin directory.

        npm deletes a node_modules directory when the last package in it is
        removed.
        """
        custom = self.settings.custom_plugin_path
        if not custom or Path(custom).exists():
            return

        logger.warning(f"Custom plugin directory was removed. Re-creating: {custom}")
        try:
            Path(custom).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to recreate custom plugin directory")
            logger.error(str(e))
