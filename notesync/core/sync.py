"""Sync coordinator: decides between upload, download and merge and runs it.

One coordinator owns one single-flight gate. The UI, the auto-sync timer and
the shutdown guard all go through it; whoever loses the race gets an
``AlreadyInProgress`` result immediately instead of queueing.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import socket
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from notesync.core.checksum import checksum
from notesync.core.encryption import EncryptionEnvelope, EncryptionState, get_encryption_state
from notesync.core.errors import (
    AlreadyInProgress,
    EncryptionRequired,
    FatalInput,
    NotAuthenticated,
    RemoteChanged,
    RemoteUnavailable,
    SyncError,
    describe_error,
)
from notesync.core.media import MediaReconciler
from notesync.core.merge import is_empty, merge_snapshots
from notesync.core.models import (
    EXPORT_VERSION,
    ExportedSnapshot,
    MergeStrategy,
    ReconcileResult,
    RemoteSnapshotInfo,
    SyncAction,
    SyncMetadata,
    SyncResult,
    SyncState,
    utc_now_iso,
)
from notesync.core.store import LocalStore
from notesync.sources.remote.base import Authenticator, RemoteStore

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[str, dict[str, Any]], Awaitable[None] | None]


class HostLifecycle(Protocol):
    """Hooks a host application exposes to the sync engine."""

    def on_before_shutdown(self, handler: Callable[[], Awaitable[Any]]) -> None: ...

    def notify_ui(self, event: str, payload: dict[str, Any]) -> Awaitable[None] | None: ...


@dataclass
class _Decision:
    action: SyncAction
    exported: ExportedSnapshot
    remote_info: RemoteSnapshotInfo | None
    metadata: SyncMetadata
    last_sync: str | None


class SyncCoordinator:
    """Runs sync, upload and download attempts through a single-flight gate."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        *,
        authenticator: Authenticator | None = None,
        encryption: EncryptionState | None = None,
        media: MediaReconciler | None = None,
        notify: NotifyCallback | None = None,
        max_version_retries: int = 3,
        device_id: str | None = None,
    ):
        self.store = store
        self.remote = remote
        self.authenticator = authenticator
        self.encryption = encryption or get_encryption_state()
        self.media = media
        self.notify = notify
        self.max_version_retries = max_version_retries
        self.device_id = device_id or socket.gethostname()

        self._lock = threading.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._state = SyncState.IDLE
        self._operation: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def wait_until_idle(self) -> None:
        """Return once no sync holds the gate."""
        await self._idle.wait()

    async def _set_state(self, state: SyncState) -> None:
        self._state = state
        await self._emit("syncProgress", {"state": state.value, "operation": self._operation})

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.notify is None:
            return
        try:
            result = self.notify(event, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("UI notification %s failed: %s", event, exc)

    @asynccontextmanager
    async def _gate(self, operation: str) -> AsyncIterator[None]:
        if not self._lock.acquire(blocking=False):
            raise AlreadyInProgress()
        self._idle.clear()
        self._operation = operation
        try:
            yield
        finally:
            self._state = SyncState.IDLE
            self._operation = None
            self._lock.release()
            self._idle.set()

    async def _run(self, operation: str, action: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        """Run ``action`` under the gate and turn failures into results."""
        try:
            async with self._gate(operation):
                await self._emit("syncStarted", {"operation": operation})
                try:
                    self._ensure_authenticated()
                    result = await action()
                except SyncError as e:
                    return await self._fail(operation, e)
                except Exception as e:  # pylint: disable=broad-except
                    logger.exception("Unexpected error during %s", operation)
                    return await self._fail(operation, SyncError(str(e)))

                if result.success and self.media is not None and operation != "reset":
                    result.media = await self._reconcile_media()

                await self._emit("syncCompleted", {"operation": operation, **result.to_dict()})
                if result.stats.get("added") or result.stats.get("updated") or result.stats.get("deleted"):
                    await self._emit(
                        "dataUpdated",
                        {"action": result.action.value if result.action else None, "stats": result.stats},
                    )
                return result
        except AlreadyInProgress as e:
            logger.info("%s skipped: another sync is in progress", operation)
            return SyncResult(success=False, error=e.code, message=describe_error(e))

    async def _fail(self, operation: str, error: SyncError) -> SyncResult:
        self._state = SyncState.FAILED
        logger.error("%s failed (%s): %s", operation.capitalize(), error.code, error.message)
        message = describe_error(error)
        await self._emit("syncFailed", {"operation": operation, "error": error.code, "message": message})
        return SyncResult(success=False, error=error.code, message=message)

    def _ensure_authenticated(self) -> None:
        if self.authenticator is not None and not self.authenticator.is_authenticated:
            raise NotAuthenticated()

    # ------------------------------------------------------------------
    # Payload handling
    # ------------------------------------------------------------------

    def _require_passphrase(self) -> str:
        passphrase = self.encryption.passphrase
        if not passphrase:
            raise EncryptionRequired()
        return passphrase

    async def _encode(self, payload: dict[str, Any], version: int) -> tuple[bytes, bool]:
        payload = dict(payload)
        payload["_sync_meta"] = {
            "sync_version": version,
            "uploaded_at": utc_now_iso(),
            "device": self.device_id,
        }
        if self.encryption.enabled:
            settings = self.encryption.settings
            envelope = await EncryptionEnvelope.encrypt_async(
                payload,
                self._require_passphrase(),
                salt_b64=settings.salt,
                iterations=settings.iterations,
            )
            return json.dumps(envelope).encode("utf-8"), True
        return json.dumps(payload, ensure_ascii=False).encode("utf-8"), False

    async def _fetch(self, remote_info: RemoteSnapshotInfo) -> dict[str, Any]:
        raw = await self.remote.download_snapshot(remote_info.file_id)
        try:
            blob = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FatalInput(f"Remote snapshot is not valid JSON: {e}") from e

        if EncryptionEnvelope.is_envelope(blob):
            payload = await EncryptionEnvelope.decrypt_async(blob, self._require_passphrase())
        elif remote_info.encrypted:
            raise FatalInput("Remote snapshot is marked encrypted but is not an envelope")
        else:
            payload = blob

        if not isinstance(payload, dict):
            raise FatalInput("Remote snapshot is not a JSON object")
        return payload

    async def _push(
        self,
        payload: dict[str, Any],
        content_checksum: str,
        remote_info: RemoteSnapshotInfo | None,
        last_seen_version: int,
    ) -> tuple[str, int]:
        expected = remote_info.version if remote_info else 0
        # Versions never go backwards, even after another device reset the remote
        version = max(expected, last_seen_version) + 1
        data, encrypted = await self._encode(payload, version)
        receipt = await self.remote.upload_snapshot(
            data,
            checksum=content_checksum,
            version=version,
            encrypted=encrypted,
            expected_version=expected,
        )
        logger.info("Uploaded snapshot version %d (%d bytes)", receipt.version, len(data))
        return receipt.file_id, receipt.version

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    async def _decide(
        self,
        local_snapshot: dict[str, Any] | None,
        last_sync: str | None,
        last_seen_remote_sync_version: int | None,
    ) -> _Decision:
        await self._set_state(SyncState.DECIDING)
        metadata = await self.store.load_sync_metadata()
        if local_snapshot is None:
            exported = await self.store.export_snapshot()
        else:
            exported = ExportedSnapshot(payload=local_snapshot, checksum=checksum(local_snapshot))

        last_sync = last_sync if last_sync is not None else metadata.last_sync
        last_seen = (
            last_seen_remote_sync_version
            if last_seen_remote_sync_version is not None
            else metadata.remote_sync_version
        )

        remote_info = await self.remote.get_snapshot_metadata()
        if remote_info is None:
            action = SyncAction.UPLOAD
        else:
            if remote_info.encrypted and not self.encryption.passphrase:
                raise EncryptionRequired()

            local_changed = exported.checksum != metadata.local_checksum
            remote_changed = remote_info.version > last_seen or (
                remote_info.checksum is not None and remote_info.checksum != metadata.remote_checksum
            )

            if is_empty(exported.payload) and remote_info.version > 0:
                action = SyncAction.DOWNLOAD
            elif local_changed and remote_changed:
                action = SyncAction.MERGE
            elif remote_changed:
                action = SyncAction.DOWNLOAD
            elif local_changed:
                action = SyncAction.UPLOAD
            else:
                action = SyncAction.NONE

        if action in (SyncAction.UPLOAD, SyncAction.MERGE) and self.encryption.enabled:
            self._require_passphrase()

        logger.debug(
            "Sync decision: %s (local=%s, remote version=%s, last seen=%s)",
            action.value,
            exported.checksum[:12],
            remote_info.version if remote_info else None,
            last_seen,
        )
        return _Decision(action, exported, remote_info, metadata, last_sync)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _do_upload(self, decision: _Decision) -> SyncResult:
        await self._set_state(SyncState.UPLOADING)
        file_id, version = await self._push(
            decision.exported.payload,
            decision.exported.checksum,
            decision.remote_info,
            decision.metadata.remote_sync_version,
        )

        await self._set_state(SyncState.APPLYING)
        metadata = decision.metadata
        metadata.local_checksum = decision.exported.checksum
        metadata.remote_checksum = decision.exported.checksum
        metadata.remote_file_id = file_id
        metadata.remote_sync_version = version
        return await self._commit(SyncAction.UPLOAD, metadata, {"uploaded": 1})

    async def _do_download(self, decision: _Decision, strategy: MergeStrategy) -> SyncResult:
        assert decision.remote_info is not None
        await self._set_state(SyncState.DOWNLOADING)
        payload = await self._fetch(decision.remote_info)
        remote_checksum = checksum(payload)

        await self._set_state(SyncState.APPLYING)
        imported = await self.store.import_snapshot(payload, strategy)

        metadata = decision.metadata
        metadata.local_checksum = remote_checksum
        metadata.remote_checksum = decision.remote_info.checksum or remote_checksum
        metadata.remote_file_id = decision.remote_info.file_id
        metadata.remote_sync_version = max(metadata.remote_sync_version, decision.remote_info.version)
        stats = {
            "added": imported.added,
            "updated": imported.updated,
            "conflicted": imported.conflicted,
            "deleted": imported.deleted,
        }
        return await self._commit(SyncAction.DOWNLOAD, metadata, stats)

    async def _do_merge(self, decision: _Decision) -> SyncResult:
        assert decision.remote_info is not None
        await self._set_state(SyncState.MERGING)
        remote_payload = await self._fetch(decision.remote_info)
        outcome = merge_snapshots(decision.exported.payload, remote_payload, last_sync=decision.last_sync)
        merged_checksum = checksum(outcome.payload)

        await self._set_state(SyncState.UPLOADING)
        file_id, version = await self._push(
            outcome.payload, merged_checksum, decision.remote_info, decision.metadata.remote_sync_version
        )

        await self._set_state(SyncState.APPLYING)
        await self.store.import_snapshot(outcome.payload, MergeStrategy.FORCE)

        metadata = decision.metadata
        metadata.local_checksum = merged_checksum
        metadata.remote_checksum = merged_checksum
        metadata.remote_file_id = file_id
        metadata.remote_sync_version = version
        return await self._commit(SyncAction.MERGE, metadata, outcome.stats(), conflicts=outcome.conflicts)

    async def _commit(
        self,
        action: SyncAction,
        metadata: SyncMetadata,
        stats: dict[str, int],
        conflicts: list[dict[str, Any]] | None = None,
    ) -> SyncResult:
        metadata.last_sync = utc_now_iso()
        metadata.last_sync_version = EXPORT_VERSION
        await self.store.save_sync_metadata(metadata)
        logger.info("Sync finished: %s %s", action.value, stats)
        return SyncResult(
            success=True,
            action=action,
            stats=stats,
            conflicts=list(conflicts or []),
            metadata=metadata,
        )

    async def _sync_once(
        self,
        local_snapshot: dict[str, Any] | None,
        strategy: MergeStrategy,
        last_sync: str | None,
        last_seen_remote_sync_version: int | None,
    ) -> SyncResult:
        decision = await self._decide(local_snapshot, last_sync, last_seen_remote_sync_version)

        if decision.action is SyncAction.UPLOAD:
            return await self._do_upload(decision)
        if decision.action is SyncAction.DOWNLOAD:
            return await self._do_download(decision, strategy)
        if decision.action is SyncAction.MERGE:
            return await self._do_merge(decision)

        await self._set_state(SyncState.APPLYING)
        metadata = decision.metadata
        metadata.last_sync = utc_now_iso()
        await self.store.save_sync_metadata(metadata)
        logger.debug("Sync finished: nothing to do")
        return SyncResult(success=True, action=SyncAction.NONE, metadata=metadata)

    async def _with_version_retries(self, attempt: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        retries = 0
        while True:
            try:
                return await attempt()
            except RemoteChanged:
                if retries >= self.max_version_retries:
                    raise
                retries += 1
                logger.info(
                    "Remote changed during sync, retrying (%d/%d)",
                    retries,
                    self.max_version_retries,
                )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def sync(
        self,
        local_snapshot: dict[str, Any] | None = None,
        strategy: MergeStrategy | str = MergeStrategy.MERGE,
        last_sync: str | None = None,
        last_seen_remote_sync_version: int | None = None,
    ) -> SyncResult:
        """
        Run one full sync attempt.

        Args:
            local_snapshot: Snapshot to sync instead of a fresh export
            strategy: Strategy used when importing a downloaded snapshot
            last_sync: Override the persisted last sync time
            last_seen_remote_sync_version: Override the persisted remote version

        Returns:
            SyncResult describing the action taken or the error
        """
        strategy = MergeStrategy(strategy)

        async def attempt() -> SyncResult:
            return await self._sync_once(local_snapshot, strategy, last_sync, last_seen_remote_sync_version)

        return await self._run("sync", lambda: self._with_version_retries(attempt))

    async def upload(self) -> SyncResult:
        """Upload the local state, replacing the remote snapshot."""

        async def attempt() -> SyncResult:
            await self._set_state(SyncState.DECIDING)
            metadata = await self.store.load_sync_metadata()
            exported = await self.store.export_snapshot()
            remote_info = await self.remote.get_snapshot_metadata()
            if self.encryption.enabled:
                self._require_passphrase()
            decision = _Decision(SyncAction.UPLOAD, exported, remote_info, metadata, metadata.last_sync)
            return await self._do_upload(decision)

        return await self._run("upload", lambda: self._with_version_retries(attempt))

    async def download(self, strategy: MergeStrategy | str = MergeStrategy.MERGE) -> SyncResult:
        """Download the remote snapshot and import it with ``strategy``."""
        strategy = MergeStrategy(strategy)

        async def attempt() -> SyncResult:
            await self._set_state(SyncState.DECIDING)
            metadata = await self.store.load_sync_metadata()
            remote_info = await self.remote.get_snapshot_metadata()
            if remote_info is None:
                raise RemoteUnavailable("No remote snapshot to download", status_code=404)
            if remote_info.encrypted and not self.encryption.passphrase:
                raise EncryptionRequired()
            exported = await self.store.export_snapshot()
            decision = _Decision(SyncAction.DOWNLOAD, exported, remote_info, metadata, metadata.last_sync)
            return await self._do_download(decision, strategy)

        return await self._run("download", attempt)

    async def reset_remote(self) -> SyncResult:
        """Delete the remote snapshot and forget all sync metadata."""

        async def attempt() -> SyncResult:
            await self._set_state(SyncState.APPLYING)
            existed = await self.remote.delete_snapshot()
            await self.store.reset_sync_metadata()
            return SyncResult(
                success=True,
                action=SyncAction.NONE,
                message="Remote snapshot deleted" if existed else "No remote snapshot",
                metadata=SyncMetadata(),
            )

        return await self._run("reset", attempt)

    async def reconcile_media(self) -> ReconcileResult:
        """Reconcile media on its own, outside a snapshot sync."""
        if self.media is None:
            return ReconcileResult()
        try:
            async with self._gate("media"):
                self._ensure_authenticated()
                return await self._reconcile_media()
        except SyncError as e:
            logger.info("Media reconciliation skipped (%s): %s", e.code, e.message)
            return ReconcileResult(errors={"*": describe_error(e)}, error=e.code)

    async def _reconcile_media(self) -> ReconcileResult:
        assert self.media is not None
        try:
            bodies = await self.store.note_bodies()
            return await self.media.reconcile_all(bodies)
        except (SyncError, OSError) as e:
            logger.warning(f"Media reconciliation failed: {e}")
            return ReconcileResult(errors={"*": str(e)}, error=e.code if isinstance(e, SyncError) else None)

    async def status(self) -> dict[str, Any]:
        metadata = await self.store.load_sync_metadata()
        return {
            "state": self._state.value,
            "busy": self.is_busy,
            "operation": self._operation,
            "metadata": metadata.to_dict(),
            "encryption": self.encryption.status(),
            "remote": self.authenticator.get_auth_status() if self.authenticator else None,
        }
