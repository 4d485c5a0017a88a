"""
API Error Handling for the Bridge Console
Maps plugin manager exceptions to standardized JSON error responses
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..plugins.exceptions import PluginManagerError

logger = logging.getLogger(__name__)


class ErrorType:
    """Standard error types for consistent handling"""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND_ERROR = "not_found_error"
    CONFLICT_ERROR = "conflict_error"
    SERVICE_ERROR = "service_error"
    EXTERNAL_API_ERROR = "external_api_error"
    INTERNAL_ERROR = "internal_error"


ERROR_TYPES = {
    404: ErrorType.NOT_FOUND_ERROR,
    409: ErrorType.CONFLICT_ERROR,
    422: ErrorType.VALIDATION_ERROR,
    500: ErrorType.INTERNAL_ERROR,
    502: ErrorType.EXTERNAL_API_ERROR,
    503: ErrorType.SERVICE_ERROR,
}


class APIErrorResponse(BaseModel):
    """Standardized API error response"""

    success: bool = False
    error: str
    message: str
    error_class: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    path: Optional[str] = None
    method: Optional[str] = None


def error_type_for(exc: PluginManagerError) -> str:
    return ERROR_TYPES.get(exc.status_code, ErrorType.INTERNAL_ERROR)


async def plugin_error_handler(request: Request, exc: PluginManagerError) -> JSONResponse:
    """Render a PluginManagerError with its own status code"""
    error_response = APIErrorResponse(
        error=error_type_for(exc),
        message=exc.message,
        error_class=exc.__class__.__name__,
        details=exc.details,
        path=str(request.url.path),
        method=request.method,
    )

    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code} error ({error_response.error_id}): {exc.message}")
    else:
        logger.warning(f"HTTP {exc.status_code} error: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=error_response.model_dump(mode="json"))


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected exceptions with traceback and hide the details from the client"""
    error_response = APIErrorResponse(
        error=ErrorType.INTERNAL_ERROR,
        message="Internal server error occurred",
        path=str(request.url.path),
        method=request.method,
    )
    logger.exception(f"Unexpected error ({error_response.error_id}): {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response.model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(PluginManagerError, plugin_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
