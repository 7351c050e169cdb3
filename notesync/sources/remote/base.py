"""Remote store interface and authenticators."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from notesync.core.models import MediaBlob, RemoteSnapshotInfo, UploadReceipt

logger = logging.getLogger(__name__)

SNAPSHOT_NAME = "notesync_snapshot.json"
SNAPSHOT_META_NAME = "notesync_snapshot.meta.json"
MEDIA_DIR = "media"


class RemoteStore(ABC):
    """Blob store holding one snapshot plus media blobs.

    The snapshot payload is opaque bytes (plain JSON or an encryption
    envelope). A small metadata sidecar lets ``get_snapshot_metadata`` answer
    without downloading the payload.
    """

    @abstractmethod
    async def get_snapshot_metadata(self) -> RemoteSnapshotInfo | None:
        """Return snapshot metadata, or None when no snapshot exists."""

    @abstractmethod
    async def upload_snapshot(
        self,
        data: bytes,
        *,
        checksum: str,
        version: int,
        encrypted: bool,
        expected_version: int | None = None,
    ) -> UploadReceipt:
        """Store a snapshot.

        Raises:
            RemoteChanged: ``expected_version`` is set and the stored version differs
            RemoteUnavailable: The store could not be written
        """

    @abstractmethod
    async def download_snapshot(self, file_id: str) -> bytes:
        """Return the raw snapshot bytes."""

    @abstractmethod
    async def delete_snapshot(self) -> bool:
        """Delete the snapshot and its metadata. Returns True if one existed."""

    @abstractmethod
    async def list_media_blobs(self) -> list[MediaBlob]:
        """List media blobs stored remotely."""

    @abstractmethod
    async def upload_media_blob(self, name: str, data: bytes) -> MediaBlob:
        """Upload (or overwrite) a media blob."""

    @abstractmethod
    async def download_media_blob(self, blob_id: str) -> bytes:
        """Download a media blob by its remote id."""

    @abstractmethod
    async def delete_media_blob(self, blob_id: str) -> None:
        """Delete a media blob by its remote id."""

    async def close(self) -> None:
        """Release resources held by the store."""

    async def __aenter__(self) -> "RemoteStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


@runtime_checkable
class Authenticator(Protocol):
    """Reports whether the remote store can be used."""

    @property
    def is_authenticated(self) -> bool: ...

    async def authenticate(self) -> bool: ...

    def get_auth_status(self) -> dict[str, Any]: ...


class LocalAuthenticator:
    """Folder stores are usable whenever the folder is reachable."""

    def __init__(self, folder: Path):
        self.folder = Path(folder).expanduser()

    @property
    def is_authenticated(self) -> bool:
        return self.folder.is_dir()

    async def authenticate(self) -> bool:
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create sync folder {self.folder}: {e}")
            return False
        return True

    def get_auth_status(self) -> dict[str, Any]:
        return {
            "authenticated": self.is_authenticated,
            "kind": "folder",
            "folder": str(self.folder),
        }
