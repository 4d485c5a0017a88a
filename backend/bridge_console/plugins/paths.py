"""
Plugin Search Path Resolution

Works out where npm lives and which node_modules directories Homebridge
loads plugins from. Mirrors the lookup Homebridge itself performs:

    custom plugin path > NODE_PATH > module lookup chain > system defaults
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from ..config import Settings

logger = logging.getLogger(__name__)

NPM_FLAGS = ["--no-update-notifier"]


def query_npm_global_prefix(npm_command: List[str]) -> Optional[str]:
    """Ask npm for its global install prefix (``npm -g prefix``)."""
    try:
        result = subprocess.run(
            [*npm_command, "-g", "prefix"],
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not query the npm global prefix: {e}")
        return None
    prefix = result.stdout.strip()
    return prefix or None


def node_modules_chain(start: Path) -> List[str]:
    """
    The node_modules directories Node.js would search from ``start``.

    One ``<dir>/node_modules`` entry per ancestor, nearest first, skipping
    directories that are themselves named node_modules.
    """
    paths = []
    for directory in [start, *start.parents]:
        if directory.name == "node_modules":
            continue
        paths.append(str(directory / "node_modules"))
    return paths


class PluginPathResolver:
    """
    Resolves the npm binary and the plugin search paths.

    Platform, environment and the global prefix query are injectable so the
    Windows and POSIX rules can be exercised on any host.
    """

    def __init__(
        self,
        settings: Settings,
        platform: str = sys.platform,
        environ: Optional[Mapping[str, str]] = None,
        prefix_query: Callable[[List[str]], Optional[str]] = query_npm_global_prefix,
        cwd: Optional[Path] = None,
    ):
        self.settings = settings
        self.platform = platform
        self.environ = os.environ if environ is None else environ
        self.prefix_query = prefix_query
        self.cwd = cwd or Path.cwd()

    @property
    def is_windows(self) -> bool:
        return self.platform == "win32"

    def npm_command(self) -> List[str]:
        """
        The argv prefix used to invoke npm.

        On Windows npm is not reliably on PATH for services, so the
        per-user and program-files installs are checked. When neither exists
        plugin management degrades and plain ``npm`` is tried anyway.
        """
        if self.is_windows:
            candidates = []
            if self.environ.get("APPDATA"):
                candidates.append(Path(self.environ["APPDATA"]) / "npm" / "npm.cmd")
            if self.environ.get("ProgramFiles"):
                candidates.append(Path(self.environ["ProgramFiles"]) / "nodejs" / "npm.cmd")

            existing = [c for c in candidates if c.exists()]
            if existing:
                return [str(existing[0]), *NPM_FLAGS]

            logger.error("ERROR: Cannot find npm binary. You will not be able to manage plugins or update homebridge.")
            logger.error("ERROR: You might be able to fix this problem by running: npm install -g npm")

        # Linux and macOS resolve npm through PATH
        return ["npm", *NPM_FLAGS]

    def base_paths(self) -> List[str]:
        """Ordered, de-duplicated list of existing plugin search directories."""
        paths = node_modules_chain(self.cwd)

        if self.settings.custom_plugin_path:
            paths.insert(0, self.settings.custom_plugin_path)

        node_path = [p for p in self.environ.get("NODE_PATH", "").split(os.pathsep) if p]
        if node_path:
            paths = node_path + paths
        else:
            paths.extend(self._default_paths())

        seen = set()
        unique = []
        for path in paths:
            if path not in seen:
                seen.add(path)
                unique.append(path)

        resolved = [p for p in unique if Path(p).is_dir()]
        logger.debug(f"Plugin search paths: {resolved}")
        return resolved

    def _default_paths(self) -> List[str]:
        if self.is_windows:
            appdata = self.environ.get("APPDATA")
            return [str(Path(appdata) / "npm" / "node_modules")] if appdata else []

        paths = ["/usr/local/lib/node_modules", "/usr/lib/node_modules"]
        prefix = self.prefix_query(self.npm_command())
        if prefix:
            paths.append(str(Path(prefix) / "lib" / "node_modules"))
        return paths
