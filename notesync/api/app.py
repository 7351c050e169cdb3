"""FastAPI application for NoteSync.

This module provides the main FastAPI application with:
- Request logging
- Exception handlers for sync engine errors
- Sync, encryption and health routes
- WebSocket support for real-time updates
- Background scheduler for auto-sync
- A shutdown guard that lets an in-flight sync finish before exit
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request

from notesync import __version__
from notesync.api.exceptions import sync_error_handler, unhandled_exception_handler
from notesync.api.scheduler import AutoSyncScheduler
from notesync.api.websocket import notify_ui, websocket_endpoint
from notesync.core.config import AppConfig, load_config, set_config
from notesync.core.errors import SyncError
from notesync.core.service import SyncService
from notesync.utils.logging import (
    attach_websocket_log_handler,
    detach_websocket_log_handler,
    set_logging_level,
    setup_logging,
)

logger = logging.getLogger(__name__)


class ApiHost:
    """Host hooks for the API server: WebSocket notifications and shutdown handlers."""

    def __init__(self):
        self._shutdown_handlers: list[Callable[[], Awaitable[Any]]] = []

    def on_before_shutdown(self, handler: Callable[[], Awaitable[Any]]) -> None:
        self._shutdown_handlers.append(handler)

    async def notify_ui(self, event: str, payload: dict[str, Any]) -> None:
        await notify_ui(event, payload)

    async def run_shutdown_handlers(self) -> None:
        for handler in self._shutdown_handlers:
            decision = await handler()
            logger.info(f"Shutdown handler finished: {decision}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    - Startup: load config, build the sync service, start the scheduler
    - Shutdown: run the shutdown guard, stop the scheduler, close the remote
    """
    logger.info("NoteSync API starting up...")

    config: AppConfig = getattr(app.state, "config", None) or load_config()
    set_config(config)
    app.state.config = config
    if not getattr(app.state, "skip_logging_setup", False):
        setup_logging(config)
        attach_websocket_log_handler(asyncio.get_running_loop(), config)
    logger.info(f"Configuration loaded from {config.general.config_file or 'defaults'}")

    host = ApiHost()
    app.state.host = host
    app.state.service = None
    app.state.scheduler = None
    app.state.startup_error = None

    try:
        service = await SyncService.from_config(config, notify=host.notify_ui)
    except SyncError as e:
        logger.error(f"Sync service unavailable: {e.message}")
        app.state.startup_error = e.message
        service = None

    if service is not None:
        app.state.service = service
        service.guard.install(host)
        saved_level = await service.store.get_setting("log_level")
        if saved_level and not getattr(app.state, "skip_logging_setup", False):
            set_logging_level(saved_level)

        scheduler = AutoSyncScheduler(service)
        await scheduler.start()
        app.state.scheduler = scheduler
        if config.sync.auto_sync and config.sync.sync_on_startup:
            app.state.startup_task = asyncio.create_task(scheduler.run_now())

    yield

    logger.info("NoteSync API shutting down...")
    await host.run_shutdown_handlers()
    if app.state.scheduler:
        await app.state.scheduler.stop()
    if app.state.service:
        await app.state.service.close()
    detach_websocket_log_handler()


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Use this configuration instead of loading it at startup

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="NoteSync API",
        description="REST API for NoteSync - note sync with optional end-to-end encryption",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    if config is not None:
        app.state.config = config
        app.state.skip_logging_setup = True

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        logger.debug(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"{request.method} {request.url.path} - {response.status_code}")
        return response

    # Exception handlers
    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Register API routes
    from notesync.api.routes import encryption, health, sync, system

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
    app.include_router(encryption.router, prefix="/api/encryption", tags=["Encryption"])
    app.include_router(system.router, prefix="/api/system", tags=["System"])

    app.add_api_websocket_route("/api/ws", websocket_endpoint)

    @app.get("/")
    async def root():
        """Root endpoint - returns API information."""
        return {
            "name": "NoteSync API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health",
        }

    logger.debug("FastAPI application created")
    return app


# Create the application instance
app = create_app()
