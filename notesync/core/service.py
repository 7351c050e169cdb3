"""Wire the store, remote, encryption and coordinator together from config."""

from __future__ import annotations

import logging

from notesync.core.config import AppConfig
from notesync.core.encryption import EncryptionState, get_encryption_state
from notesync.core.errors import NotAuthenticated
from notesync.core.lifecycle import LifecycleGuard
from notesync.core.media import MediaReconciler
from notesync.core.store import LocalStore
from notesync.core.sync import NotifyCallback, SyncCoordinator
from notesync.sources.remote.base import Authenticator, LocalAuthenticator, RemoteStore
from notesync.sources.remote.folder import FolderRemoteStore
from notesync.sources.remote.webdav import WebDAVRemoteStore
from notesync.utils.credentials import CredentialAuthenticator

logger = logging.getLogger(__name__)


def build_remote(config: AppConfig) -> tuple[RemoteStore, Authenticator]:
    """Create the configured remote store and its authenticator.

    Raises:
        NotAuthenticated: WebDAV is configured without URL, username or password
    """
    remote_config = config.remote
    if remote_config.kind == "webdav":
        authenticator = CredentialAuthenticator(
            remote_config.webdav_username,
            fallback_password=remote_config.webdav_password,
        )
        password = authenticator.password()
        if not (remote_config.webdav_url and remote_config.webdav_username and password):
            raise NotAuthenticated("WebDAV URL, username and password must be configured")
        remote = WebDAVRemoteStore(
            remote_config.webdav_url,
            remote_config.webdav_username,
            password,
            remote_path=remote_config.webdav_path,
            ssl_verify=remote_config.ssl_verify,
        )
        return remote, authenticator

    folder = config.remote_folder
    return FolderRemoteStore(folder), LocalAuthenticator(folder)


class SyncService:
    """Everything a host (API, CLI) needs to run sync."""

    def __init__(
        self,
        config: AppConfig,
        store: LocalStore,
        remote: RemoteStore,
        authenticator: Authenticator,
        *,
        encryption: EncryptionState | None = None,
        notify: NotifyCallback | None = None,
    ):
        self.config = config
        self.store = store
        self.remote = remote
        self.authenticator = authenticator
        self.encryption = encryption or get_encryption_state()
        self.media = MediaReconciler(remote, config.media_dir) if config.media.enabled else None
        self.coordinator = SyncCoordinator(
            store,
            remote,
            authenticator=authenticator,
            encryption=self.encryption,
            media=self.media,
            notify=notify,
            max_version_retries=config.sync.max_version_retries,
        )
        self.guard = LifecycleGuard(
            self.coordinator,
            auto_sync=config.sync.auto_sync,
            timeout=config.sync.shutdown_timeout_seconds,
        )

    @classmethod
    async def from_config(
        cls,
        config: AppConfig,
        *,
        notify: NotifyCallback | None = None,
        encryption: EncryptionState | None = None,
    ) -> "SyncService":
        """Build and initialize a service for ``config``."""
        config.ensure_data_dir()
        store = LocalStore(config.db_path)
        await store.initialize()
        remote, authenticator = build_remote(config)
        if isinstance(authenticator, LocalAuthenticator):
            await authenticator.authenticate()

        service = cls(config, store, remote, authenticator, encryption=encryption, notify=notify)
        await service.load_encryption_settings()
        logger.debug(f"Sync service ready ({config.remote.kind} remote)")
        return service

    async def load_encryption_settings(self) -> None:
        settings = await self.store.load_encryption_settings()
        self.encryption.load(
            enabled=settings["enabled"],
            salt=settings["salt"],
            iterations=settings["iterations"] or self.config.encryption.iterations,
        )

    async def set_passphrase(self, passphrase: str) -> dict:
        """Enable encryption for this session and persist the (non-secret) salt."""
        settings = self.encryption.set_passphrase(passphrase)
        await self.store.save_encryption_settings(
            enabled=True,
            salt=settings.salt,
            iterations=settings.iterations,
        )
        return self.encryption.status()

    async def clear_passphrase(self, *, disable: bool = False) -> dict:
        self.encryption.clear(disable=disable)
        if disable:
            await self.store.save_encryption_settings(
                enabled=False,
                salt=self.encryption.settings.salt,
                iterations=self.encryption.settings.iterations,
            )
        return self.encryption.status()

    async def close(self) -> None:
        await self.remote.close()
