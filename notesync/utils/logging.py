"""Centralized logging utilities."""
from __future__ import annotations

import asyncio
import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.logging import RichHandler

from notesync.core.config import AppConfig

LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_current_levelno = logging.INFO
_current_levelname = "INFO"


def _parse_level(value: str | int) -> tuple[int, str]:
    if isinstance(value, int):
        return value, logging.getLevelName(value)
    level_name = str(value).upper()
    if level_name not in LEVEL_NAMES:
        raise ValueError(f"Unsupported log level: {value}")
    return logging.getLevelName(level_name), level_name


class SeverityOverrideFilter(logging.Filter):
    """Rewrite record levels per logger name or ``log_category`` extra.

    Keys are logger names (matched by prefix, so ``notesync.core`` covers
    ``notesync.core.merge``) or explicit categories passed as
    ``extra={"log_category": ...}``.
    """

    def __init__(self, category_levels: Mapping[str, str]):
        super().__init__()
        self.category_levels = {
            category: _parse_level(level)[0] for category, level in category_levels.items()
        }

    def _match(self, record: logging.LogRecord) -> int | None:
        category = getattr(record, "log_category", None)
        if category and category in self.category_levels:
            return self.category_levels[category]
        best: str | None = None
        for name in self.category_levels:
            if record.name == name or record.name.startswith(f"{name}."):
                if best is None or len(name) > len(best):
                    best = name
        return self.category_levels[best] if best else None

    def filter(self, record: logging.LogRecord) -> bool:
        forced = getattr(record, "force_level", None)
        if forced:
            levelno, levelname = _parse_level(forced)
            record.levelno = levelno
            record.levelname = levelname
            return True

        levelno = self._match(record)
        if levelno is not None:
            record.levelno = levelno
            record.levelname = logging.getLevelName(levelno)
        return True


def build_console_handler(level_name: str) -> logging.Handler:
    levelno, _ = _parse_level(level_name)
    handler = RichHandler(rich_tracebacks=True, show_time=False)
    handler.setLevel(levelno)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def build_file_handler(config: AppConfig) -> logging.Handler:
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_dir / config.general.log_file_name,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def setup_logging(config: AppConfig, *, level_name: str | None = None, log_to_file: bool = True) -> Path:
    """Configure root logging handlers.

    Returns the path to the primary log file for reference or tests.
    """

    effective_level = (level_name or config.general.log_level).upper()
    levelno, levelname = _parse_level(effective_level)
    global _current_levelno, _current_levelname
    _current_levelno = levelno
    _current_levelname = levelname
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(levelno)

    filter_ = SeverityOverrideFilter(config.general.log_overrides)

    # Overrides may ask for more detail than the root level lets through.
    for name, level in config.general.log_overrides.items():
        logging.getLogger(name).setLevel(_parse_level(level)[0])

    console_handler = build_console_handler(effective_level)
    console_handler.addFilter(filter_)
    root.addHandler(console_handler)

    if log_to_file:
        file_handler = build_file_handler(config)
        file_handler.addFilter(filter_)
        root.addHandler(file_handler)

    logging.captureWarnings(True)

    # Make sure uvicorn and other libraries propagate to the root logger
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(logger_name).handlers.clear()
        logging.getLogger(logger_name).propagate = True

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(levelno, logging.WARNING))

    return config.log_dir / config.general.log_file_name


# Logger module -> component name shown in the web UI log panel
_COMPONENTS: Mapping[str, str] = {
    "notesync.core.sync": "sync",
    "notesync.core.lifecycle": "sync",
    "notesync.core.merge": "sync",
    "notesync.core.media": "media",
    "notesync.core.encryption": "encryption",
    "notesync.core.store": "store",
    "notesync.sources.remote": "remote",
    "notesync.api.scheduler": "scheduler",
}


def component_for(record: logging.LogRecord) -> str:
    """UI component for a record: explicit ``log_category`` first, then its module."""
    category = getattr(record, "log_category", None)
    if category:
        return category
    for prefix, component in _COMPONENTS.items():
        if record.name == prefix or record.name.startswith(f"{prefix}."):
            return component
    return "api"


class WebSocketLogHandler(logging.Handler):
    """Forward log records to connected WebSocket clients on ``loop``."""

    def __init__(self, loop: asyncio.AbstractEventLoop, overrides: Mapping[str, str]):
        super().__init__(level=logging.DEBUG)
        self.loop = loop
        self.addFilter(SeverityOverrideFilter(overrides))

    def emit(self, record: logging.LogRecord) -> None:
        # Skip records emitted by the broadcaster itself
        if record.name.startswith(("uvicorn.access", "notesync.api.websocket")) or self.loop.is_closed():
            return

        from notesync.api.websocket import send_log_entry

        try:
            message = record.getMessage()
            asyncio.run_coroutine_threadsafe(
                send_log_entry(component_for(record), record.levelname, message), self.loop
            )
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)


_ws_handler: WebSocketLogHandler | None = None


def attach_websocket_log_handler(loop: asyncio.AbstractEventLoop, config: AppConfig) -> None:
    """Attach the WebSocket log handler to the root logger."""

    global _ws_handler

    root = logging.getLogger()
    detach_websocket_log_handler()

    handler = WebSocketLogHandler(loop, config.general.log_overrides)
    handler.setLevel(_current_levelno)
    root.addHandler(handler)
    _ws_handler = handler


def detach_websocket_log_handler() -> None:
    global _ws_handler
    if _ws_handler is not None:
        logging.getLogger().removeHandler(_ws_handler)
        _ws_handler.close()
        _ws_handler = None


def set_logging_level(level_name: str | int) -> None:
    """Change logging level for all handlers at runtime."""

    levelno, levelname = _parse_level(level_name)
    global _current_levelno, _current_levelname
    _current_levelno = levelno
    _current_levelname = levelname

    root = logging.getLogger()
    root.setLevel(levelno)
    for handler in root.handlers:
        # The file handler keeps everything
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            continue
        handler.setLevel(levelno)


def get_current_log_level() -> str:
    """Return the currently active logging level."""

    return _current_levelname
