"""
Plugin Management API Routes

REST endpoints for listing, searching and inspecting plugins, and a
WebSocket endpoint that streams npm output while plugins are installed,
updated or removed.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect

from ..plugins.exceptions import PluginManagerError
from ..plugins.models import DiscoveryResult, PluginRecord, ReleaseNotes
from ..plugins.service import PluginsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plugins", tags=["plugins"])

ACTIONS = ("install", "uninstall", "update", "homebridge-update")


def get_plugins_service(request: Request) -> PluginsService:
    return request.app.state.plugins_service


async def refresh_discovery(app: FastAPI) -> DiscoveryResult:
    discovery = await app.state.plugins_service.discover()
    app.state.discovery = discovery
    return discovery


async def cached_discovery(app: FastAPI) -> DiscoveryResult:
    """The last discovery result, refreshed once it is older than ``discovery_max_age``."""
    service: PluginsService = app.state.plugins_service
    discovery = getattr(app.state, "discovery", None)
    if discovery is None or discovery.is_stale(service.settings.discovery_max_age):
        discovery = await refresh_discovery(app)
    return discovery


async def get_discovery(request: Request) -> DiscoveryResult:
    return await cached_discovery(request.app)


# =============================================================================
# Installed Plugins
# =============================================================================


@router.get(
    "",
    response_model=List[PluginRecord],
    summary="List installed plugins",
    description="Scan the plugin search paths; plugins with updates come first.",
)
async def list_installed(request: Request):
    discovery = await refresh_discovery(request.app)
    return list(discovery.plugins)


@router.get(
    "/outdated",
    response_model=List[PluginRecord],
    summary="List plugins with updates",
)
async def list_outdated(request: Request):
    discovery = await refresh_discovery(request.app)
    return discovery.outdated


@router.get(
    "/homebridge",
    response_model=PluginRecord,
    summary="Get the Homebridge core package",
)
async def get_homebridge_package(service: PluginsService = Depends(get_plugins_service)):
    return await service.get_homebridge_package()


# =============================================================================
# Registry
# =============================================================================


@router.get(
    "/search/{query}",
    response_model=List[PluginRecord],
    summary="Search the npm registry for plugins",
)
async def search_plugins(
    query: str,
    service: PluginsService = Depends(get_plugins_service),
    discovery: DiscoveryResult = Depends(get_discovery),
):
    return await service.search(query, discovery)


@router.get(
    "/lookup/{plugin_name:path}",
    response_model=List[PluginRecord],
    summary="Look up a plugin by its exact name",
)
async def lookup_plugin(
    plugin_name: str,
    service: PluginsService = Depends(get_plugins_service),
    discovery: DiscoveryResult = Depends(get_discovery),
):
    return await service.lookup(plugin_name, discovery)


# =============================================================================
# Plugin Files and Release Notes
# =============================================================================


@router.get(
    "/config-schema/{plugin_name:path}",
    summary="Get a plugin's config schema",
)
async def get_config_schema(
    plugin_name: str,
    service: PluginsService = Depends(get_plugins_service),
    discovery: DiscoveryResult = Depends(get_discovery),
) -> Dict[str, Any]:
    return await service.get_config_schema(plugin_name, discovery)


@router.get(
    "/changelog/{plugin_name:path}",
    summary="Get a plugin's changelog",
)
async def get_changelog(
    plugin_name: str,
    service: PluginsService = Depends(get_plugins_service),
    discovery: DiscoveryResult = Depends(get_discovery),
) -> Dict[str, str]:
    return await service.get_changelog(plugin_name, discovery)


@router.get(
    "/release/{plugin_name:path}",
    response_model=ReleaseNotes,
    summary="Get a plugin's latest GitHub release",
)
async def get_latest_release(
    plugin_name: str,
    service: PluginsService = Depends(get_plugins_service),
    discovery: DiscoveryResult = Depends(get_discovery),
):
    return await service.get_latest_release(plugin_name, discovery)


# =============================================================================
# Command Streaming
# =============================================================================


async def run_action(websocket: WebSocket, message: Dict[str, Any]):
    """Run one install/uninstall/update request, streaming npm output to the socket."""
    service: PluginsService = websocket.app.state.plugins_service
    action = message.get("action")
    plugin_name = message.get("pluginName")

    async def sink(chunk: str):
        try:
            await websocket.send_json({"event": "stdout", "data": chunk})
        except Exception as e:
            # the command keeps running when the browser goes away
            logger.debug(f"Dropping output for closed socket: {e}")

    if action not in ACTIONS:
        await websocket.send_json(
            {"event": "error", "message": f"Unknown action: {action}", "errorType": "InvalidRequest"}
        )
        return
    if action != "homebridge-update" and not plugin_name:
        await websocket.send_json(
            {"event": "error", "message": "pluginName is required", "errorType": "InvalidRequest"}
        )
        return

    logger.info(f"Plugin action requested: {action} {plugin_name or ''}".rstrip())

    try:
        if action == "homebridge-update":
            await service.update_homebridge(sink)
        elif action == "install":
            await service.install_plugin(plugin_name, sink, await cached_discovery(websocket.app))
        elif action == "update":
            await service.update_plugin(plugin_name, sink, await cached_discovery(websocket.app))
        else:
            await service.uninstall_plugin(plugin_name, sink, await cached_discovery(websocket.app))
    except PluginManagerError as e:
        logger.warning(f"Plugin action {action} failed: {e.message}")
        await websocket.send_json({"event": "error", "message": e.message, "errorType": e.__class__.__name__})
        return
    finally:
        # installed set may have changed
        websocket.app.state.discovery = None

    await websocket.send_json({"event": "result", "success": True})


@router.websocket("/ws")
async def plugin_command_websocket(websocket: WebSocket):
    """
    Command stream for plugin installs, updates and removals.

    Client messages: ``{"action": "install", "pluginName": "homebridge-foo"}``.
    Server messages: ``{"event": "stdout", "data": ...}`` for each chunk of
    terminal output, then ``{"event": "result", "success": true}`` or
    ``{"event": "error", "message": ..., "errorType": ...}``.
    """
    await websocket.accept()
    logger.info("Plugin command WebSocket connected")

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json(
                    {"event": "error", "message": "Expected a JSON object", "errorType": "InvalidRequest"}
                )
                continue
            await run_action(websocket, message)
    except WebSocketDisconnect:
        logger.info("Plugin command WebSocket disconnected")
