"""Dependency injection for FastAPI endpoints."""

import logging
from typing import Annotated

from fastapi import Depends, Request

from notesync.api.scheduler import AutoSyncScheduler
from notesync.core.config import AppConfig
from notesync.core.errors import NotAuthenticated
from notesync.core.service import SyncService

logger = logging.getLogger(__name__)


def get_service(request: Request) -> SyncService:
    """Get the sync service built during application startup.

    Raises:
        NotAuthenticated: The remote could not be set up at startup
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise NotAuthenticated(getattr(request.app.state, "startup_error", None) or "Sync service is not configured")
    return service


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_scheduler(request: Request) -> AutoSyncScheduler | None:
    return getattr(request.app.state, "scheduler", None)


# Type aliases for dependency injection
ServiceDep = Annotated[SyncService, Depends(get_service)]
ConfigDep = Annotated[AppConfig, Depends(get_app_config)]
SchedulerDep = Annotated[AutoSyncScheduler | None, Depends(get_scheduler)]
