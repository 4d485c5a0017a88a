"""
Bridge Console FastAPI Application
Plugin management backend for the Homebridge administration console
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .middleware.error_handling import register_exception_handlers
from .plugins import PluginsService, create_plugins_service
from .routes import plugins

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan management."""
    settings: Settings = app.state.settings
    logger.info(f"Starting {settings.app_name} v{settings.app_version}...")

    if getattr(app.state, "plugins_service", None) is None:
        app.state.plugins_service = create_plugins_service(settings)
    app.state.discovery = None

    yield

    logger.info("Shutting down...")
    await app.state.plugins_service.close()


def create_app(settings: Optional[Settings] = None, plugins_service: Optional[PluginsService] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Homebridge Config UI X",
        description="Plugin management backend for the Homebridge console",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.plugins_service = plugins_service
    app.state.discovery = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )

    register_exception_handlers(app)
    app.include_router(plugins.router, prefix="/api", tags=["Plugins"])

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy", "version": settings.app_version}

    return app


settings = get_settings()
configure_logging(settings)
app = create_app(settings)


def run():
    """Serve the console with uvicorn."""
    uvicorn.run(
        "bridge_console.main:app",
        host=settings.host,  # nosec B104 - binds all interfaces by default
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
