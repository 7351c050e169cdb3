"""Secure credential storage using system keyring."""

import logging
from typing import Any

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

# Keyring service name for NoteSync
SERVICE_NAME = "NoteSync"


class CredentialStore:
    """Stores WebDAV passwords in the system keyring.

    The encryption passphrase is never handed to this class: it only lives
    in memory for the current session.
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        """
        Initialize credential store.

        Args:
            service_name: Name of the service in keyring (default: "NoteSync")
        """
        self.service_name = service_name

    @staticmethod
    def _key(username: str) -> str:
        return f"webdav:{username}"

    def set_webdav_password(self, username: str, password: str) -> None:
        """
        Store a WebDAV password in the system keyring.

        Args:
            username: WebDAV username
            password: Password or app password

        Raises:
            keyring.errors.PasswordSetError: If password cannot be stored
        """
        try:
            keyring.set_password(self.service_name, self._key(username), password)
            logger.info(f"Stored WebDAV password for user: {username}")
        except Exception as e:
            logger.error(f"Failed to store WebDAV password: {e}")
            raise

    def get_webdav_password(self, username: str) -> str | None:
        """
        Retrieve a WebDAV password from the system keyring.

        Returns:
            Password if found, None otherwise
        """
        try:
            password = keyring.get_password(self.service_name, self._key(username))
            if not password:
                logger.debug(f"No WebDAV password found for user: {username}")
            return password
        except Exception as e:
            logger.error(f"Failed to retrieve WebDAV password: {e}")
            return None

    def delete_webdav_password(self, username: str) -> bool:
        """
        Delete a WebDAV password from the system keyring.

        Returns:
            True if deleted, False if not found or error
        """
        try:
            keyring.delete_password(self.service_name, self._key(username))
            logger.info(f"Deleted WebDAV password for user: {username}")
            return True
        except keyring.errors.PasswordDeleteError:
            logger.warning(f"No WebDAV password found to delete for user: {username}")
            return False
        except Exception as e:
            logger.error(f"Failed to delete WebDAV password: {e}")
            return False

    def has_webdav_password(self, username: str) -> bool:
        return self.get_webdav_password(username) is not None


class CredentialAuthenticator:
    """Authenticator for WebDAV stores backed by keyring credentials."""

    def __init__(
        self,
        username: str | None,
        credential_store: CredentialStore | None = None,
        *,
        fallback_password: str | None = None,
    ):
        self.username = username
        self.credential_store = credential_store or CredentialStore()
        # Password from config or environment, used when the keyring has none
        self.fallback_password = fallback_password
        self._authenticated: bool | None = None

    @property
    def is_authenticated(self) -> bool:
        if self._authenticated is None:
            self._authenticated = bool(self.username) and bool(self.password())
        return self._authenticated

    async def authenticate(self) -> bool:
        """Re-read the keyring; interactive sign-in is handled by the CLI."""
        self._authenticated = None
        return self.is_authenticated

    def password(self) -> str | None:
        if not self.username:
            return None
        return self.credential_store.get_webdav_password(self.username) or self.fallback_password

    def get_auth_status(self) -> dict[str, Any]:
        return {
            "authenticated": self.is_authenticated,
            "kind": "webdav",
            "username": self.username,
        }
