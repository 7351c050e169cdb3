"""Shutdown guard: let an in-flight sync finish, bounded by a deadline."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from notesync.core.models import ShutdownDecision
from notesync.core.sync import HostLifecycle, SyncCoordinator

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 60.0


class LifecycleGuard:
    """Delays host shutdown until sync is idle or the deadline passes.

    Exit is always allowed in the end: a hung remote never keeps the
    application alive past ``timeout``.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        *,
        auto_sync: bool = False,
        timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ):
        self.coordinator = coordinator
        self.auto_sync = auto_sync
        self.timeout = timeout
        self._host: HostLifecycle | None = None
        self._task: asyncio.Task[ShutdownDecision] | None = None

    def install(self, host: HostLifecycle) -> None:
        """Register the shutdown handler with the host."""
        self._host = host
        host.on_before_shutdown(self.handle_shutdown)

    async def _notify(self, event: str, payload: dict[str, Any] | None = None) -> None:
        if self._host is None:
            return
        try:
            result = self._host.notify_ui(event, payload or {})
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Shutdown notification %s failed: %s", event, exc)

    def _remote_ready(self) -> bool:
        authenticator = self.coordinator.authenticator
        return authenticator is None or authenticator.is_authenticated

    async def handle_shutdown(self) -> ShutdownDecision:
        """
        Handle a close request.

        Repeated close requests while the first is still being handled share
        the same shutdown task.

        Returns:
            ShutdownDecision, always allowed
        """
        if self._task is None:
            self._task = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._task)

    async def _shutdown(self) -> ShutdownDecision:
        if self.coordinator.is_busy:
            logger.info("Sync in progress, waiting up to %.0fs before exit", self.timeout)
            await self._notify("syncClosingShow", {"reason": "waiting"})
            try:
                await asyncio.wait_for(self.coordinator.wait_until_idle(), self.timeout)
                return ShutdownDecision(allowed=True, reason="sync_finished")
            except asyncio.TimeoutError:
                logger.warning("Sync did not finish within %.0fs, exiting anyway", self.timeout)
                return ShutdownDecision(allowed=True, reason="timeout")
            finally:
                await self._notify("syncClosingHide")

        if not (self.auto_sync and self._remote_ready()):
            return ShutdownDecision(allowed=True, reason="idle")

        logger.info("Running final sync before exit")
        await self._notify("syncClosingShow", {"reason": "final_sync"})
        # Shielded so the timeout stops our wait, not the sync itself.
        sync_task = asyncio.ensure_future(self.coordinator.sync())
        try:
            result = await asyncio.wait_for(asyncio.shield(sync_task), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Final sync did not finish within %.0fs, exiting anyway", self.timeout)
            return ShutdownDecision(allowed=True, reason="timeout")
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Final sync failed: %s", exc)
            return ShutdownDecision(allowed=True, reason="sync_failed")
        finally:
            await self._notify("syncClosingHide")

        if not result.success:
            logger.warning("Final sync failed: %s", result.message)
            return ShutdownDecision(allowed=True, reason="sync_failed")
        return ShutdownDecision(allowed=True, reason="synced")
