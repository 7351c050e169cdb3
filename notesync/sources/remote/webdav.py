"""WebDAV remote store (NextCloud, ownCloud or any RFC 4918 server)."""

from __future__ import annotations

import json
import logging
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse
from xml.etree import ElementTree as ET

import httpx

from notesync.core.errors import NotAuthenticated, RemoteChanged, RemoteUnavailable
from notesync.core.models import MediaBlob, RemoteSnapshotInfo, UploadReceipt, utc_now_iso
from notesync.sources.remote.base import MEDIA_DIR, SNAPSHOT_META_NAME, SNAPSHOT_NAME, RemoteStore

logger = logging.getLogger(__name__)

_PROPFIND_LISTING = """<?xml version="1.0" encoding="UTF-8"?>
    <d:propfind xmlns:d="DAV:">
        <d:prop>
            <d:getcontentlength/>
            <d:getlastmodified/>
            <d:resourcetype/>
        </d:prop>
    </d:propfind>
"""

_NS = {"d": "DAV:"}


class WebDAVRemoteStore(RemoteStore):
    """Keep the snapshot and media under one WebDAV collection.

    Supports:
    - Creating the collection tree on first upload
    - Version-checked snapshot uploads through a metadata sidecar
    - Listing, uploading and deleting media blobs
    """

    def __init__(
        self,
        webdav_url: str,
        username: str,
        password: str,
        remote_path: str = "NoteSync",
        ssl_verify: bool | str = True,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the WebDAV store.

        Args:
            webdav_url: DAV root (e.g., https://cloud.example.com/remote.php/dav/files/alice)
            username: WebDAV username
            password: Password or app password
            remote_path: Collection holding the snapshot, relative to the root
            ssl_verify: SSL verification (True, False, or path to CA bundle)
            client: Pre-built HTTP client (tests use a mock transport)
        """
        self.webdav_url = webdav_url.rstrip("/")
        self.remote_path = remote_path.strip("/")
        self.ssl_verify = ssl_verify

        self._client = client or httpx.AsyncClient(
            auth=(username, password),
            timeout=httpx.Timeout(120.0, connect=30.0),
            follow_redirects=True,
            verify=ssl_verify,
        )
        self._folder_cache: set[str] = set()

    async def close(self) -> None:
        """Close HTTP client connections."""
        await self._client.aclose()

    def _url(self, *parts: str) -> str:
        path = "/".join(p.strip("/") for p in (self.remote_path, *parts) if p and p.strip("/"))
        return f"{self.webdav_url}/{path}" if path else self.webdav_url

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise NotAuthenticated(f"WebDAV server rejected credentials (HTTP {response.status_code})")
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise RemoteUnavailable(
                f"Failed to {action}: HTTP {response.status_code}",
                status_code=response.status_code,
            )

    async def ensure_folder(self, *parts: str) -> None:
        """Create the collection tree if it doesn't exist (recursive)."""
        full_path = "/".join(p.strip("/") for p in (self.remote_path, *parts) if p and p.strip("/"))
        if full_path in self._folder_cache:
            return

        current_path = ""
        for part in full_path.split("/"):
            current_path = f"{current_path}/{part}" if current_path else part
            if current_path in self._folder_cache:
                continue

            url = f"{self.webdav_url}/{current_path}"
            response = await self._request("PROPFIND", url, headers={"Depth": "0"})
            if response.status_code in (200, 207):
                self._folder_cache.add(current_path)
                continue

            response = await self._request("MKCOL", url)
            if response.status_code in (201, 405):  # 405 = already exists
                self._folder_cache.add(current_path)
                logger.debug("Created folder: %s", current_path)
            else:
                self._raise_for_status(response, f"create folder {current_path}")

    async def _get_json(self, url: str) -> dict | None:
        response = await self._request("GET", url)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"read {url}")
        try:
            return json.loads(response.content)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable snapshot metadata at %s: %s", url, e)
            return None

    async def get_snapshot_metadata(self) -> RemoteSnapshotInfo | None:
        response = await self._request("HEAD", self._url(SNAPSHOT_NAME))
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "probe snapshot")

        meta = await self._get_json(self._url(SNAPSHOT_META_NAME)) or {}
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
        await self.ensure_folder()

        if expected_version is not None:
            current = await self.get_snapshot_metadata()
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise RemoteChanged(
                    f"Remote snapshot is at version {current_version}, expected {expected_version}"
                )

        response = await self._request(
            "PUT",
            self._url(SNAPSHOT_NAME),
            content=data,
            headers={"Content-Type": "application/json"},
        )
        self._raise_for_status(response, "upload snapshot")

        meta = {
            "checksum": checksum,
            "version": version,
            "encrypted": encrypted,
            "uploaded_at": utc_now_iso(),
        }
        response = await self._request(
            "PUT",
            self._url(SNAPSHOT_META_NAME),
            content=json.dumps(meta, indent=2).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        self._raise_for_status(response, "upload snapshot metadata")

        logger.debug("Uploaded snapshot version %d to %s", version, self._url(SNAPSHOT_NAME))
        return UploadReceipt(file_id=SNAPSHOT_NAME, version=version)

    async def download_snapshot(self, file_id: str) -> bytes:
        response = await self._request("GET", self._url(file_id))
        self._raise_for_status(response, f"download {file_id}")
        return response.content

    async def delete_snapshot(self) -> bool:
        existed = False
        for name in (SNAPSHOT_NAME, SNAPSHOT_META_NAME):
            response = await self._request("DELETE", self._url(name))
            if response.status_code in (200, 204):
                existed = True
            elif response.status_code != 404:
                self._raise_for_status(response, f"delete {name}")
        return existed

    async def list_media_blobs(self) -> list[MediaBlob]:
        response = await self._request(
            "PROPFIND",
            self._url(MEDIA_DIR),
            headers={"Depth": "1"},
            content=_PROPFIND_LISTING,
        )
        if response.status_code == 404:
            return []
        self._raise_for_status(response, "list media")

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise RemoteUnavailable(f"Malformed PROPFIND response: {e}") from e

        blobs = []
        for item in root.findall("d:response", _NS):
            if item.find(".//d:resourcetype/d:collection", _NS) is not None:
                continue
            href = item.findtext("d:href", default="", namespaces=_NS)
            name = PurePosixPath(unquote(urlparse(href).path)).name
            if not name or name.startswith("."):
                continue
            size_text = item.findtext(".//d:getcontentlength", default="0", namespaces=_NS)
            blobs.append(
                MediaBlob(
                    id=PurePosixPath(name).stem,
                    name=name,
                    size=int(size_text or 0),
                    remote_id=name,
                )
            )
        return blobs

    async def upload_media_blob(self, name: str, data: bytes) -> MediaBlob:
        await self.ensure_folder(MEDIA_DIR)
        response = await self._request("PUT", self._url(MEDIA_DIR, name), content=data)
        self._raise_for_status(response, f"upload media {name}")
        return MediaBlob(id=PurePosixPath(name).stem, name=name, size=len(data), remote_id=name)

    async def download_media_blob(self, blob_id: str) -> bytes:
        response = await self._request("GET", self._url(MEDIA_DIR, blob_id))
        self._raise_for_status(response, f"download media {blob_id}")
        return response.content

    async def delete_media_blob(self, blob_id: str) -> None:
        response = await self._request("DELETE", self._url(MEDIA_DIR, blob_id))
        if response.status_code not in (200, 204, 404):
            self._raise_for_status(response, f"delete media {blob_id}")
