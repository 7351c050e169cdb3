"""Remote store implementations."""

from notesync.sources.remote.base import (
    MEDIA_DIR,
    SNAPSHOT_META_NAME,
    SNAPSHOT_NAME,
    Authenticator,
    LocalAuthenticator,
    RemoteStore,
)
from notesync.sources.remote.folder import FolderRemoteStore
from notesync.sources.remote.webdav import WebDAVRemoteStore

__all__ = [
    "MEDIA_DIR",
    "SNAPSHOT_META_NAME",
    "SNAPSHOT_NAME",
    "Authenticator",
    "FolderRemoteStore",
    "LocalAuthenticator",
    "RemoteStore",
    "WebDAVRemoteStore",
]
