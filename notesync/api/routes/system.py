"""Runtime system settings."""

import logging
from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel

from notesync.api.dependencies import ConfigDep, ServiceDep
from notesync.utils.logging import get_current_log_level, set_logging_level

logger = logging.getLogger(__name__)

router = APIRouter()

LOG_LEVEL_SETTING = "log_level"


class LogLevelPayload(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@router.get("/log-level")
async def get_log_level(service: ServiceDep, config: ConfigDep) -> dict:
    """Return the persisted log level preference and the level in effect."""
    level = await service.store.get_setting(LOG_LEVEL_SETTING)
    return {"log_level": level or config.general.log_level, "active": get_current_log_level()}


@router.put("/log-level")
async def update_log_level(payload: LogLevelPayload, service: ServiceDep) -> dict:
    """Update the runtime log level and persist the preference."""
    await service.store.set_setting(LOG_LEVEL_SETTING, payload.level)
    set_logging_level(payload.level)
    logger.info(f"Log level changed to {payload.level}")
    return {"log_level": payload.level, "active": get_current_log_level()}
