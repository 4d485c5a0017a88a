"""
Unit tests for plugin manager exceptions.
"""

import pytest

from bridge_console.plugins.exceptions import (
    CommandFailedError,
    CommandInProgressError,
    ManifestValidationError,
    PluginConfigurationError,
    PluginManagerError,
    PluginNotFoundError,
    RegistryError,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    """Test status codes, messages and serialisation."""

    @pytest.mark.parametrize(
        "exc,status_code",
        [
            (PluginNotFoundError("homebridge-hue"), 404),
            (ManifestValidationError("/x/package.json", "name: missing"), 422),
            (RegistryError("npm registry", "timed out"), 502),
            (CommandFailedError("npm install"), 500),
            (CommandInProgressError("/usr/lib"), 409),
            (PluginConfigurationError("npm not found"), 503),
        ],
    )
    def test_status_codes(self, exc: PluginManagerError, status_code: int) -> None:
        assert isinstance(exc, PluginManagerError)
        assert exc.status_code == status_code

    def test_not_found_messages(self) -> None:
        assert PluginNotFoundError("homebridge-hue").message == 'Plugin "homebridge-hue" Not Found'
        assert PluginNotFoundError("homebridge-hue", "No changelog for plugin").message == (
            "No changelog for plugin: homebridge-hue"
        )

    def test_to_dict(self) -> None:
        exc = CommandFailedError("npm install homebridge-hue@latest", exit_code=1)
        assert exc.to_dict() == {
            "error_type": "CommandFailedError",
            "message": "Command failed. Please review log for details.",
            "details": {"command": "npm install homebridge-hue@latest", "exit_code": 1},
        }
