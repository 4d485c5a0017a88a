"""
Plugin Management for the Bridge Console

Discovers the Homebridge plugins installed on the host, looks them up on the
npm registry, and installs, updates and removes them by running npm inside a
pseudo-terminal.

This package provides:
    - PluginPathResolver: npm binary and plugin search path resolution
    - PluginDiscovery: Installed plugin scan and manifest validation
    - NpmRegistryClient / GitHubReleaseClient: Registry metadata, search, release notes
    - CommandRunner: npm execution with streamed terminal output
    - PluginsService: The operations exposed by the web layer

Usage:
    from bridge_console.plugins import create_plugins_service

    service = create_plugins_service(settings)
    discovery = await service.discover()
    outdated = await service.list_outdated(discovery)

    async def sink(chunk: str):
        print(chunk, end="")

    await service.update_plugin("homebridge-hue", sink, discovery)
"""

import logging

logger = logging.getLogger(__name__)

# Public API exports - noqa needed for module re-exports
from ..config import Settings  # noqa: E402
from .discovery import PluginDiscovery, read_manifest, sort_plugins  # noqa: E402
from .exceptions import (  # noqa: E402
    CommandFailedError,
    CommandInProgressError,
    ManifestValidationError,
    PluginConfigurationError,
    PluginManagerError,
    PluginNotFoundError,
    RegistryError,
)
from .models import DiscoveryResult, PackageManifest, PluginLinks, PluginRecord, ReleaseNotes  # noqa: E402
from .paths import PluginPathResolver  # noqa: E402
from .registry import GitHubReleaseClient, NpmRegistryClient, update_available  # noqa: E402
from .runner import CommandCompleted, CommandRunner, InstallPathLocks, OutputChunk  # noqa: E402
from .service import PluginsService  # noqa: E402


def create_plugins_service(settings: Settings) -> PluginsService:
    """Build a PluginsService wired with the default collaborators."""
    resolver = PluginPathResolver(settings)
    registry = NpmRegistryClient(settings)
    service = PluginsService(
        settings,
        resolver=resolver,
        registry=registry,
        discovery=PluginDiscovery(settings, resolver.base_paths(), registry),
    )
    logger.info(f"Plugin search paths: {', '.join(service.discovery.base_paths) or '(none)'}")
    return service


__all__ = [
    # Services
    "PluginsService",
    "create_plugins_service",
    "PluginPathResolver",
    "PluginDiscovery",
    "NpmRegistryClient",
    "GitHubReleaseClient",
    "CommandRunner",
    "InstallPathLocks",
    # Models
    "PluginRecord",
    "PluginLinks",
    "PackageManifest",
    "DiscoveryResult",
    "ReleaseNotes",
    "OutputChunk",
    "CommandCompleted",
    # Helpers
    "read_manifest",
    "sort_plugins",
    "update_available",
    # Exceptions
    "PluginManagerError",
    "PluginNotFoundError",
    "ManifestValidationError",
    "RegistryError",
    "CommandFailedError",
    "CommandInProgressError",
    "PluginConfigurationError",
]
