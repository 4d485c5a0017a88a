"""
Bridge Console Application Configuration

Settings for the plugin management backend. Every field can be overridden
via environment variables with the HB_CONSOLE_ prefix
(e.g. HB_CONSOLE_CUSTOM_PLUGIN_PATH, HB_CONSOLE_SUDO).
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_PIN = "031-45-154"


class Settings(BaseSettings):
    """Console settings"""

    # Application
    app_name: str = "homebridge-config-ui-x"
    app_version: str = "4.5.1"
    debug: bool = False
    host: str = "0.0.0.0"  # nosec B104 - console is meant to be reachable on the LAN
    port: int = 8080

    # The console is itself installed as a Homebridge plugin under this name
    ui_plugin_name: str = "homebridge-config-ui-x"

    # Plugin locations
    custom_plugin_path: Optional[str] = Field(
        default=None,
        description="Alternate node_modules directory plugins are installed into",
    )
    homebridge_package_path: Optional[str] = Field(
        default=None,
        description="Explicit path to the homebridge package directory",
    )
    homebridge_config_path: Optional[str] = Field(
        default=None,
        description="Path to the Homebridge config.json (source of the bridge pin)",
    )
    bridge_pin: str = Field(default=DEFAULT_BRIDGE_PIN)

    # Command execution
    sudo: bool = Field(default=False, description="Run npm through sudo -E -n")
    minimum_node_version: str = "10.17.0"
    command_timeout: int = Field(default=300, ge=1, description="Seconds before npm is sent SIGTERM")
    term_cols: int = 80
    term_rows: int = 30

    # Registries
    npm_registry_url: str = "https://registry.npmjs.org"
    github_api_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    registry_timeout: float = Field(default=5.0, gt=0)
    registry_max_retries: int = Field(default=1, ge=0, le=5)

    # Seconds a discovery result is reused by the web layer
    discovery_max_age: int = Field(default=60, ge=0)

    # CORS
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"

    @field_validator("port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("custom_plugin_path", "homebridge_package_path")
    @classmethod
    def resolve_directory(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return str(Path(v).expanduser().resolve())

    @property
    def user_agent(self) -> str:
        return self.app_name

    class Config:
        env_file = ".env"
        env_prefix = "HB_CONSOLE_"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()


def load_bridge_pin(settings: Settings) -> str:
    """
    Read the bridge pin from the Homebridge config.json.

    Falls back to the configured ``bridge_pin`` when no config file is set
    or it cannot be read.
    """
    if not settings.homebridge_config_path:
        return settings.bridge_pin

    config_path = Path(settings.homebridge_config_path)
    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
        return config["bridge"]["pin"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Could not read bridge pin from {config_path}: {e}")
        return settings.bridge_pin
