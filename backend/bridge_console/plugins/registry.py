"""
npm Registry and GitHub Release Clients

Looks plugins up on the public npm registry to find their latest version,
homepage and maintainer, searches the registry for installable plugins, and
fetches the latest GitHub release notes of a plugin.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
import semver
from pydantic import ValidationError

from ..config import Settings
from ..services.http_client import HttpClient, RetryPolicy
from .exceptions import PluginNotFoundError, RegistryError
from .models import (
    PLUGIN_KEYWORD,
    PackageMetadata,
    PluginLinks,
    PluginRecord,
    RegistryDocument,
    ReleaseNotes,
    SearchObject,
    clean_description,
    is_certified,
    is_plugin_name,
)

logger = logging.getLogger(__name__)

SEARCH_SIZE = 30
GITHUB_PREFIX = "https://github.com/"


def update_available(installed_version: Optional[str], latest_version: Optional[str]) -> bool:
    """
    True when the installed version is strictly lower than the latest.

    Missing or non-semver versions never report an update.
    """
    if not installed_version or not latest_version:
        return False
    try:
        return semver.Version.parse(installed_version) < semver.Version.parse(latest_version)
    except ValueError:
        logger.debug(f"Cannot compare versions {installed_version!r} and {latest_version!r}")
        return False


def npm_package_url(name: str) -> str:
    return f"https://www.npmjs.com/package/{name}"


class NpmRegistryClient:
    """Async client for the public npm registry."""

    SERVICE = "npm registry"

    def __init__(self, settings: Settings, http_client: Optional[HttpClient] = None):
        self.settings = settings
        self.registry_url = settings.npm_registry_url.rstrip("/")
        self.http = http_client or HttpClient(
            retry_policy=RetryPolicy(max_retries=settings.registry_max_retries),
            timeout=settings.registry_timeout,
            user_agent=settings.user_agent,
        )

    async def close(self):
        await self.http.close()

    def _package_url(self, name: str) -> str:
        # scoped names keep their "@" but encode the "/"
        return f"{self.registry_url}/{quote(name, safe='@')}"

    async def _get_document(self, name: str) -> Dict[str, Any]:
        try:
            return await self.http.get_json(self._package_url(name))
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise PluginNotFoundError(name)
            raise RegistryError(self.SERVICE, str(e), status=e.response.status_code)
        except (httpx.HTTPError, ValueError) as e:
            raise RegistryError(self.SERVICE, str(e) or type(e).__name__)

    async def get_package_metadata(self, name: str) -> PackageMetadata:
        """
        Fetch the latest-version metadata of a package.

        Raises:
            PluginNotFoundError: The registry does not know the package.
            RegistryError: The registry could not be queried or sent a
                malformed document.
        """
        pkg = await self._get_document(name)
        try:
            document = RegistryDocument.model_validate(pkg)
        except ValidationError as e:
            raise RegistryError(self.SERVICE, f"malformed package document for {name} ({e.error_count()} errors)")

        return document.to_metadata(name)

    async def enrich(self, plugin: PluginRecord) -> PluginRecord:
        """
        Add registry data to an installed plugin.

        Never raises: a plugin the registry does not know (or cannot be
        reached for) is marked as a private package.
        """
        try:
            metadata = await self.get_package_metadata(plugin.name)
        except PluginNotFoundError:
            return self._mark_private(plugin)
        except RegistryError as e:
            logger.error(f"[{plugin.name}] {e.message}")
            return self._mark_private(plugin)

        plugin.public_package = True
        plugin.latest_version = metadata.latest_version
        plugin.update_available = update_available(plugin.installed_version, metadata.latest_version)
        plugin.links = PluginLinks(
            npm=npm_package_url(plugin.name),
            homepage=metadata.homepage,
            bugs=metadata.bugs_url,
        )
        plugin.author = metadata.maintainer_name
        return plugin

    @staticmethod
    def _mark_private(plugin: PluginRecord) -> PluginRecord:
        plugin.public_package = False
        plugin.latest_version = None
        plugin.update_available = False
        plugin.links = PluginLinks()
        return plugin

    async def search(self, query: str, installed: Sequence[PluginRecord] = ()) -> List[PluginRecord]:
        """
        Search the registry for plugins.

        Installed plugins are returned in place of their registry entry.
        When the keyword search finds nothing and the query looks like a
        plugin name, an exact-name lookup is tried instead.
        """
        query = (query or "").strip()
        text = f"{query} keywords:{PLUGIN_KEYWORD} not:deprecated".strip()
        installed_by_name = {p.name: p for p in installed}

        try:
            results = await self.http.get_json(
                f"{self.registry_url}/-/v1/search",
                params={"text": text, "size": SEARCH_SIZE},
            )
        except (httpx.HTTPError, ValueError) as e:
            raise RegistryError(self.SERVICE, str(e) or type(e).__name__)

        if not isinstance(results, dict) or not isinstance(results.get("objects") or [], list):
            raise RegistryError(self.SERVICE, "malformed search response")

        plugins = []
        for obj in results.get("objects") or []:
            try:
                pkg = SearchObject.model_validate(obj).package
            except ValidationError as e:
                logger.debug(f"Skipping malformed search result: {e.error_count()} errors")
                continue

            name = pkg.name or ""
            if not is_plugin_name(name):
                continue
            if name in installed_by_name:
                plugins.append(installed_by_name[name])
                continue

            plugins.append(
                PluginRecord(
                    name=name,
                    public_package=True,
                    installed_version=None,
                    latest_version=pkg.version,
                    last_updated=pkg.date,
                    description=clean_description(pkg.description, name),
                    links=pkg.links,
                    author=pkg.publisher.username,
                    certified_plugin=is_certified(name),
                )
            )

        if not plugins and is_plugin_name(query):
            return await self.lookup(query, installed)

        return plugins

    async def lookup(self, name: str, installed: Sequence[PluginRecord] = ()) -> List[PluginRecord]:
        """
        Fetch a single plugin by its exact name.

        Returns an empty list when the package does not exist, is not a
        Homebridge plugin, or the registry cannot be reached.
        """
        try:
            metadata = await self.get_package_metadata(name)
        except PluginNotFoundError:
            return []
        except RegistryError as e:
            logger.error("Failed to search npm registry")
            logger.error(e.message)
            return []

        if PLUGIN_KEYWORD not in metadata.keywords:
            return []

        for plugin in installed:
            if plugin.name == metadata.name:
                return [plugin]

        return [
            PluginRecord(
                name=metadata.name,
                description=clean_description(metadata.description, metadata.name),
                certified_plugin=is_certified(metadata.name),
                public_package=True,
                latest_version=metadata.latest_version,
                last_updated=metadata.last_updated,
                update_available=False,
                links=PluginLinks(
                    npm=npm_package_url(metadata.name),
                    homepage=metadata.homepage,
                    bugs=metadata.bugs_url,
                ),
                author=metadata.maintainer_name,
            )
        ]


def github_repo_from_homepage(homepage: Optional[str]) -> Optional[str]:
    """``https://github.com/owner/repo#readme`` -> ``owner/repo``"""
    if not homepage or not homepage.startswith(GITHUB_PREFIX):
        return None
    repo = homepage[len(GITHUB_PREFIX):].split("#readme")[0].strip("/")
    return repo or None


class GitHubReleaseClient:
    """Fetches release notes from the GitHub REST API."""

    def __init__(self, settings: Settings, http_client: Optional[HttpClient] = None):
        self.api_url = settings.github_api_url.rstrip("/")
        headers = {"Accept": "application/vnd.github.v3+json"}
        if settings.github_token:
            headers["Authorization"] = f"token {settings.github_token}"
        self.http = http_client or HttpClient(
            retry_policy=RetryPolicy(max_retries=0),
            timeout=settings.registry_timeout,
            user_agent=settings.user_agent,
            headers=headers,
        )

    async def close(self):
        await self.http.close()

    async def get_latest_release(self, plugin: PluginRecord) -> ReleaseNotes:
        """
        Latest release of the GitHub repository a plugin's homepage points at.

        Raises:
            PluginNotFoundError: No GitHub homepage, no release, or GitHub
                could not be queried.
        """
        repo = github_repo_from_homepage(plugin.links.homepage)
        if not repo:
            raise PluginNotFoundError(plugin.name, "No GitHub repository for plugin")

        try:
            release = await self.http.get_json(f"{self.api_url}/repos/{repo}/releases/latest")
            return ReleaseNotes(name=release.get("name"), changelog=release.get("body"))
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.debug(f"No release notes for {plugin.name} ({repo}): {e}")
            raise PluginNotFoundError(plugin.name, "No release found for plugin")
