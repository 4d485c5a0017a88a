"""
Plugin Manager Exceptions

Defines the exception hierarchy for plugin discovery, registry access and
npm command execution. All exceptions inherit from PluginManagerError and
carry the HTTP status code the web layer responds with.
"""

from typing import Any, Dict, Optional


class PluginManagerError(Exception):
    """
    Base exception for all plugin manager errors.

    Callers can catch every plugin manager failure with a single handler.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize plugin manager error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary of additional error details.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class PluginNotFoundError(PluginManagerError):
    """
    A plugin, or one of its files, does not exist.

    Raised for unknown plugins, missing config schemas, missing changelogs
    and unavailable release notes.
    """

    status_code = 404

    def __init__(self, name: str, detail: Optional[str] = None) -> None:
        self.name = name
        message = f'Plugin "{name}" Not Found' if detail is None else f"{detail}: {name}"
        super().__init__(message=message, details={"name": name})


class ManifestValidationError(PluginManagerError):
    """A package.json or config.schema.json is malformed or has the wrong types."""

    status_code = 422

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        super().__init__(
            message=f"Invalid package manifest {path}: {detail}",
            details={"path": path, "detail": detail},
        )


class RegistryError(PluginManagerError):
    """
    The npm registry or GitHub API could not be reached or answered badly.

    Batch operations degrade the affected record instead of raising this.
    """

    status_code = 502

    def __init__(self, service: str, detail: str, status: Optional[int] = None) -> None:
        self.service = service
        self.status = status
        super().__init__(
            message=f"{service} request failed: {detail}",
            details={"service": service, "status": status, "detail": detail},
        )


class CommandFailedError(PluginManagerError):
    """An npm command exited with a non-zero code (or was terminated)."""

    status_code = 500

    def __init__(self, command: str, exit_code: Optional[int] = None) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(
            message="Command failed. Please review log for details.",
            details={"command": command, "exit_code": exit_code},
        )


class CommandInProgressError(PluginManagerError):
    """Another npm command is already running against the same install path."""

    status_code = 409

    def __init__(self, install_path: str) -> None:
        self.install_path = install_path
        super().__init__(
            message=f"Another plugin operation is already running in {install_path}",
            details={"install_path": install_path},
        )


class PluginConfigurationError(PluginManagerError):
    """
    The host is not set up for plugin management.

    Raised when npm or the Homebridge installation cannot be located, or no
    install location can be determined.
    """

    status_code = 503
