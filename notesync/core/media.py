"""Reconcile media attachments between the local media folder and the remote."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import aiofiles.os

from notesync.core.errors import SyncError
from notesync.core.models import MediaBlob, ReconcileResult
from notesync.sources.remote.base import RemoteStore

logger = logging.getLogger(__name__)

MEDIA_TOKEN = re.compile(r"media://([a-z0-9]+)", re.IGNORECASE)


@dataclass
class ReconcilePlan:
    """Operations needed to bring both sides in line with the references."""

    upload: list[MediaBlob] = field(default_factory=list)
    skip: list[str] = field(default_factory=list)
    delete_remote: list[MediaBlob] = field(default_factory=list)
    delete_local: list[MediaBlob] = field(default_factory=list)
    download: list[MediaBlob] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.upload or self.delete_remote or self.delete_local or self.download)


def referenced_ids(bodies: Iterable[str]) -> set[str]:
    """Collect the media ids referenced by ``media://<id>`` tokens."""
    ids: set[str] = set()
    for body in bodies:
        if body:
            ids.update(match.lower() for match in MEDIA_TOKEN.findall(body))
    return ids


def _by_id(blobs: Iterable[MediaBlob]) -> dict[str, MediaBlob]:
    indexed: dict[str, MediaBlob] = {}
    for blob in blobs:
        indexed.setdefault(blob.id.lower(), blob)
    return indexed


def plan(
    local: Iterable[MediaBlob],
    remote: Iterable[MediaBlob],
    referenced: set[str],
) -> ReconcilePlan:
    """Decide what to transfer and what to delete. Performs no I/O."""
    local_by_id = _by_id(local)
    remote_by_id = _by_id(remote)
    result = ReconcilePlan()

    for media_id in sorted(referenced):
        local_blob = local_by_id.get(media_id)
        remote_blob = remote_by_id.get(media_id)
        if local_blob is not None:
            if remote_blob is None or remote_blob.size != local_blob.size:
                result.upload.append(local_blob)
            else:
                result.skip.append(media_id)
        elif remote_blob is not None:
            result.download.append(remote_blob)
        else:
            logger.debug("Media %s is referenced but missing on both sides", media_id)

    result.delete_remote = [blob for media_id, blob in sorted(remote_by_id.items()) if media_id not in referenced]
    result.delete_local = [blob for media_id, blob in sorted(local_by_id.items()) if media_id not in referenced]
    return result


class MediaReconciler:
    """Keeps the local media folder and the remote media area in step."""

    def __init__(self, remote: RemoteStore, media_dir: Path):
        self.remote = remote
        self.media_dir = Path(media_dir)

    referenced_ids = staticmethod(referenced_ids)
    plan = staticmethod(plan)

    async def list_local(self) -> list[MediaBlob]:
        """Scan the media folder. The blob id is the file stem."""
        if not await aiofiles.os.path.isdir(self.media_dir):
            return []
        blobs = []
        for name in sorted(await aiofiles.os.listdir(self.media_dir)):
            if name.startswith("."):
                continue
            path = self.media_dir / name
            if not await aiofiles.os.path.isfile(path):
                continue
            stat = await aiofiles.os.stat(path)
            blobs.append(MediaBlob(id=path.stem.lower(), name=name, size=stat.st_size, mtime=stat.st_mtime))
        return blobs

    async def _upload(self, blob: MediaBlob) -> None:
        async with aiofiles.open(self.media_dir / blob.name, "rb") as f:
            data = await f.read()
        await self.remote.upload_media_blob(blob.name, data)

    async def _download(self, blob: MediaBlob) -> None:
        data = await self.remote.download_media_blob(blob.remote_id or blob.name)
        await aiofiles.os.makedirs(self.media_dir, exist_ok=True)
        tmp_path = self.media_dir / f".{blob.name}.part"
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp_path, self.media_dir / blob.name)

    async def _delete_remote(self, blob: MediaBlob) -> None:
        await self.remote.delete_media_blob(blob.remote_id or blob.name)

    async def _delete_local(self, blob: MediaBlob) -> None:
        try:
            await aiofiles.os.remove(self.media_dir / blob.name)
        except FileNotFoundError:
            pass

    async def reconcile(
        self,
        local: Iterable[MediaBlob],
        remote: Iterable[MediaBlob],
        referenced: set[str],
    ) -> ReconcileResult:
        """
        Execute the reconcile plan.

        A failing file is recorded in ``errors`` and the remaining files are
        still processed.

        Returns:
            ReconcileResult listing the file names handled per operation
        """
        todo = plan(local, remote, referenced)
        result = ReconcileResult(skipped_up_to_date=list(todo.skip))

        steps = (
            (todo.upload, self._upload, result.uploaded, "upload"),
            (todo.download, self._download, result.downloaded, "download"),
            (todo.delete_remote, self._delete_remote, result.deleted_remote, "delete remote"),
            (todo.delete_local, self._delete_local, result.deleted_local, "delete local"),
        )
        for blobs, action, done, label in steps:
            for blob in blobs:
                try:
                    await action(blob)
                    done.append(blob.name)
                except (SyncError, OSError) as e:
                    logger.warning(f"Media {label} failed for {blob.name}: {e}")
                    result.errors[blob.name] = str(e)

        if result.operation_count or result.errors:
            logger.info(
                "Media reconciled: %d uploaded, %d downloaded, %d remote deleted, %d local deleted, %d errors",
                len(result.uploaded),
                len(result.downloaded),
                len(result.deleted_remote),
                len(result.deleted_local),
                len(result.errors),
            )
        return result

    async def reconcile_all(self, bodies: Iterable[str]) -> ReconcileResult:
        """List both sides, then reconcile against the references in ``bodies``."""
        local = await self.list_local()
        remote = await self.remote.list_media_blobs()
        return await self.reconcile(local, remote, referenced_ids(bodies))
