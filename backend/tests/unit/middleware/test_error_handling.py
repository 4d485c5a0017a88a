"""
Unit tests for API error handling.

Builds a minimal FastAPI app with the console's exception handlers.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bridge_console.middleware.error_handling import ErrorType, register_exception_handlers
from bridge_console.plugins.exceptions import (
    CommandInProgressError,
    ManifestValidationError,
    RegistryError,
)


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise CommandInProgressError("/usr/lib")

    @app.get("/manifest")
    async def manifest():
        raise ManifestValidationError("/usr/lib/node_modules/homebridge-x/package.json", "name: Field required")

    @app.get("/registry")
    async def registry():
        raise RegistryError("npm registry", "timed out")

    @app.get("/crash")
    async def crash():
        raise ValueError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.unit
class TestExceptionHandlers:
    """Test status codes and response bodies."""

    @pytest.mark.parametrize(
        "path,status_code,error_type",
        [
            ("/conflict", 409, ErrorType.CONFLICT_ERROR),
            ("/manifest", 422, ErrorType.VALIDATION_ERROR),
            ("/registry", 502, ErrorType.EXTERNAL_API_ERROR),
        ],
    )
    def test_plugin_errors(self, client: TestClient, path: str, status_code: int, error_type: str) -> None:
        response = client.get(path)

        assert response.status_code == status_code
        body = response.json()
        assert body["success"] is False
        assert body["error"] == error_type
        assert body["path"] == path
        assert body["method"] == "GET"
        assert len(body["error_id"]) == 8

    def test_unexpected_error_hidden(self, client: TestClient, caplog) -> None:
        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["message"] == "Internal server error occurred"
        assert "secret internals" not in response.text
        assert "secret internals" in caplog.text
