"""
Unit tests for console settings.

Tests defaults, environment overrides, validators and bridge pin loading.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from bridge_console.config import DEFAULT_BRIDGE_PIN, Settings, load_bridge_pin


@pytest.mark.unit
class TestSettings:
    """Test Settings defaults and validation."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.command_timeout == 300
        assert settings.registry_timeout == 5.0
        assert (settings.term_cols, settings.term_rows) == (80, 30)
        assert settings.sudo is False
        assert settings.custom_plugin_path is None

    def test_environment_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("HB_CONSOLE_SUDO", "true")
        monkeypatch.setenv("HB_CONSOLE_PORT", "8581")
        settings = Settings(_env_file=None)
        assert settings.sudo is True
        assert settings.port == 8581

    @pytest.mark.parametrize("port", [0, -1, 70000])
    def test_invalid_port(self, port: int) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, port=port)

    def test_custom_path_made_absolute(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        settings = Settings(_env_file=None, custom_plugin_path="storage/node_modules")
        assert settings.custom_plugin_path == str((tmp_path / "storage" / "node_modules").resolve())

    def test_empty_custom_path_is_none(self) -> None:
        assert Settings(_env_file=None, custom_plugin_path="").custom_plugin_path is None


@pytest.mark.unit
class TestLoadBridgePin:
    """Test reading the bridge pin from the Homebridge config."""

    def test_default_without_config(self) -> None:
        assert load_bridge_pin(Settings(_env_file=None)) == DEFAULT_BRIDGE_PIN

    def test_reads_config(self, tmp_path: Path) -> None:
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"bridge": {"pin": "111-22-333"}}))
        assert load_bridge_pin(Settings(_env_file=None, homebridge_config_path=str(config))) == "111-22-333"

    def test_falls_back_on_bad_config(self, tmp_path: Path, caplog) -> None:
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"platforms": []}))

        pin = load_bridge_pin(Settings(_env_file=None, homebridge_config_path=str(config)))

        assert pin == DEFAULT_BRIDGE_PIN
        assert "Could not read bridge pin" in caplog.text
