"""Remote store backed by a plain directory.

Any directory kept in sync by a file-sync service (Syncthing, Dropbox,
a mounted network share) can act as the remote.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import aiofiles
import aiofiles.os

from notesync.core.errors import RemoteChanged, RemoteUnavailable
from notesync.core.models import MediaBlob, RemoteSnapshotInfo, UploadReceipt, utc_now_iso
from notesync.sources.remote.base import MEDIA_DIR, SNAPSHOT_META_NAME, SNAPSHOT_NAME, RemoteStore

logger = logging.getLogger(__name__)


class FolderRemoteStore(RemoteStore):
    """Store the snapshot, its metadata and media blobs in a folder."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.snapshot_path = self.root / SNAPSHOT_NAME
        self.meta_path = self.root / SNAPSHOT_META_NAME
        self.media_dir = self.root / MEDIA_DIR

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp_path, path)

    async def _read_meta(self) -> dict | None:
        if not await aiofiles.os.path.exists(self.meta_path):
            return None
        async with aiofiles.open(self.meta_path, "r", encoding="utf-8") as f:
            raw = await f.read()
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable snapshot metadata {self.meta_path}: {e}")
            return None

    async def get_snapshot_metadata(self) -> RemoteSnapshotInfo | None:
        try:
            if not await aiofiles.os.path.exists(self.snapshot_path):
                return None
            meta = await self._read_meta() or {}
        except OSError as e:
            raise RemoteUnavailable(f"Cannot read {self.root}: {e}") from e

        return RemoteSnapshotInfo(
            file_id=SNAPSHOT_NAME,
            version=int(meta.get("version") or 0),
            checksum=meta.get("checksum"),
            encrypted=bool(meta.get("encrypted", False)),
            uploaded_at=meta.get("uploaded_at"),
        )

    async def upload_snapshot(
        self,
        data: bytes,
        *,
        checksum: str,
        version: int,
        encrypted: bool,
        expected_version: int | None = None,
    ) -> UploadReceipt:
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)

            if expected_version is not None:
                current = await self.get_snapshot_metadata()
                current_version = current.version if current else 0
                if current_version != expected_version:
                    raise RemoteChanged(
                        f"Remote snapshot is at version {current_version}, expected {expected_version}"
                    )

            await self._write_atomic(self.snapshot_path, data)
            meta = {
                "checksum": checksum,
                "version": version,
                "encrypted": encrypted,
                "uploaded_at": utc_now_iso(),
            }
            await self._write_atomic(self.meta_path, json.dumps(meta, indent=2).encode("utf-8"))
        except OSError as e:
            raise RemoteUnavailable(f"Cannot write snapshot to {self.root}: {e}") from e

        logger.debug(f"Wrote snapshot version {version} to {self.snapshot_path}")
        return UploadReceipt(file_id=SNAPSHOT_NAME, version=version)

    async def download_snapshot(self, file_id: str) -> bytes:
        try:
            async with aiofiles.open(self.root / file_id, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise RemoteUnavailable(f"Snapshot {file_id} not found", status_code=404) from e
        except OSError as e:
            raise RemoteUnavailable(f"Cannot read snapshot {file_id}: {e}") from e

    async def delete_snapshot(self) -> bool:
        existed = False
        try:
            for path in (self.snapshot_path, self.meta_path):
                if await aiofiles.os.path.exists(path):
                    await aiofiles.os.remove(path)
                    existed = True
        except OSError as e:
            raise RemoteUnavailable(f"Cannot delete snapshot: {e}") from e
        return existed

    async def list_media_blobs(self) -> list[MediaBlob]:
        try:
            if not await aiofiles.os.path.isdir(self.media_dir):
                return []
            blobs = []
            for name in await aiofiles.os.listdir(self.media_dir):
                if name.startswith("."):
                    continue
                stat = await aiofiles.os.stat(self.media_dir / name)
                blobs.append(
                    MediaBlob(
                        id=Path(name).stem,
                        name=name,
                        size=stat.st_size,
                        mtime=stat.st_mtime,
                        remote_id=name,
                    )
                )
            return blobs
        except OSError as e:
            raise RemoteUnavailable(f"Cannot list media in {self.media_dir}: {e}") from e

    async def upload_media_blob(self, name: str, data: bytes) -> MediaBlob:
        try:
            await aiofiles.os.makedirs(self.media_dir, exist_ok=True)
            await self._write_atomic(self.media_dir / name, data)
        except OSError as e:
            raise RemoteUnavailable(f"Cannot upload media {name}: {e}") from e
        return MediaBlob(id=Path(name).stem, name=name, size=len(data), remote_id=name)

    async def download_media_blob(self, blob_id: str) -> bytes:
        try:
            async with aiofiles.open(self.media_dir / blob_id, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise RemoteUnavailable(f"Media {blob_id} not found", status_code=404) from e
        except OSError as e:
            raise RemoteUnavailable(f"Cannot download media {blob_id}: {e}") from e

    async def delete_media_blob(self, blob_id: str) -> None:
        try:
            await aiofiles.os.remove(self.media_dir / blob_id)
        except FileNotFoundError:
            logger.debug(f"Media {blob_id} already gone")
        except OSError as e:
            raise RemoteUnavailable(f"Cannot delete media {blob_id}: {e}") from e
