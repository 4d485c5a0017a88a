"""
Plugin Data Models

Pydantic models for installed and registry-known plugins, plus the
discovery result value passed between plugin operations.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Naming conventions shared by discovery and the registry search
PLUGIN_PREFIX = "homebridge-"
PLUGIN_KEYWORD = "homebridge-plugin"
CERTIFIED_PREFIX = "@homebridge/homebridge-"
DEFAULT_INSTALLED_VERSION = "0.0.1"

_URL_PATTERN = re.compile(r"(?:https?|ftp)://[\n\S]+")


def is_plugin_name(name: str) -> bool:
    """True for ``homebridge-*`` and ``@scope/homebridge-*`` package names."""
    if name.startswith("@"):
        _, _, name = name.partition("/")
    return name.startswith(PLUGIN_PREFIX)


def is_certified(name: str) -> bool:
    return name.startswith(CERTIFIED_PREFIX)


def clean_description(description: Optional[str], fallback: str) -> str:
    """Strip URLs from a package description, falling back to the package name."""
    if not description:
        return fallback
    return _URL_PATTERN.sub("", description).strip()


class PluginLinks(BaseModel):
    """Links shown next to a plugin"""

    npm: Optional[str] = None
    homepage: Optional[str] = None
    bugs: Optional[str] = None


class PluginRecord(BaseModel):
    """
    A discovered or registry-known plugin.

    Serialised with camelCase keys, the shape the browser UI consumes.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    description: Optional[str] = None
    certified_plugin: bool = False
    public_package: bool = False
    installed_version: Optional[str] = None
    latest_version: Optional[str] = None
    last_updated: Optional[str] = None
    update_available: bool = False
    install_path: Optional[str] = None
    global_install: bool = False
    settings_schema: bool = False
    links: PluginLinks = Field(default_factory=PluginLinks)
    author: Optional[str] = None


class PackageManifest(BaseModel):
    """The subset of package.json the console relies on."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    version: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)

    @field_validator("keywords", mode="before")
    @classmethod
    def keywords_default(cls, v):
        # npm tolerates "keywords": null
        return [] if v is None else v

    @property
    def is_plugin(self) -> bool:
        return PLUGIN_KEYWORD in self.keywords


@dataclass(frozen=True)
class InstalledModule:
    """A package directory found on one of the search paths."""

    name: str
    path: str  # containing search directory
    install_path: str  # full package directory


class PackageMetadata(BaseModel):
    """Latest-version metadata fetched from the npm registry."""

    name: str
    latest_version: Optional[str] = None
    homepage: Optional[str] = None
    bugs_url: Optional[str] = None
    maintainer_name: Optional[str] = None
    last_updated: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class RegistryMaintainer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


class RegistryDocument(BaseModel):
    """The subset of an npm registry package document the console reads."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    homepage: Optional[str] = None
    bugs: Optional[Dict[str, Any]] = None
    dist_tags: Dict[str, str] = Field(default_factory=dict, alias="dist-tags")
    maintainers: List[RegistryMaintainer] = Field(default_factory=list)
    time: Dict[str, Optional[str]] = Field(default_factory=dict)
    keywords: List[str] = Field(default_factory=list)

    @field_validator("dist_tags", "time", mode="before")
    @classmethod
    def null_mapping(cls, v):
        return {} if v is None else v

    @field_validator("maintainers", "keywords", mode="before")
    @classmethod
    def null_list(cls, v):
        return [] if v is None else v

    @field_validator("bugs", mode="before")
    @classmethod
    def bugs_object(cls, v):
        # "bugs" may also be a bare URL string
        return v if isinstance(v, dict) else None

    def to_metadata(self, fallback_name: str) -> PackageMetadata:
        bugs_url = self.bugs.get("url") if self.bugs else None
        return PackageMetadata(
            name=self.name or fallback_name,
            latest_version=self.dist_tags.get("latest"),
            homepage=self.homepage,
            bugs_url=bugs_url if isinstance(bugs_url, str) else None,
            maintainer_name=self.maintainers[0].name if self.maintainers else None,
            last_updated=self.time.get("modified"),
            description=self.description,
            keywords=self.keywords,
        )


class SearchPublisher(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = None


class SearchPackage(BaseModel):
    """One ``package`` entry of a registry search response."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    version: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None
    links: PluginLinks = Field(default_factory=PluginLinks)
    publisher: SearchPublisher = Field(default_factory=SearchPublisher)

    @field_validator("links", "publisher", mode="before")
    @classmethod
    def null_object(cls, v):
        return {} if v is None else v


class SearchObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    package: SearchPackage


class ReleaseNotes(BaseModel):
    """Latest GitHub release of a plugin"""

    name: Optional[str] = None
    changelog: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DiscoveryResult:
    """
    Outcome of one discovery pass.

    Held by the caller and handed to operations that need to know what is
    installed, so staleness is visible instead of hidden in module state.
    """

    plugins: Tuple[PluginRecord, ...] = ()
    discovered_at: datetime = field(default_factory=_utcnow)

    def find(self, name: str) -> Optional[PluginRecord]:
        for plugin in self.plugins:
            if plugin.name == name:
                return plugin
        return None

    def is_stale(self, max_age: float, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return (now - self.discovered_at).total_seconds() > max_age

    @property
    def outdated(self) -> List[PluginRecord]:
        return [p for p in self.plugins if p.update_available]
