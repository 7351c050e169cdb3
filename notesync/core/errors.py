"""Error taxonomy for the sync engine.

Every error carries a stable ``code`` so hosts (API, CLI, scheduler) can map
failures to user-facing messages without string matching.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine failures."""

    code = "SyncError"
    default_message = "Sync failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class AlreadyInProgress(SyncError):
    """Another sync, upload or download currently holds the single-flight gate."""

    code = "AlreadyInProgress"
    default_message = "A sync operation is already in progress"


class NotAuthenticated(SyncError):
    """The remote store collaborator is not authenticated."""

    code = "NotAuthenticated"
    default_message = "Remote store is not authenticated"


class EncryptionRequired(SyncError):
    """Remote payload is encrypted and no passphrase is available."""

    code = "EncryptionRequired"
    default_message = "Remote data is encrypted and requires a passphrase"


class DecryptionFailed(SyncError):
    """Wrong passphrase or corrupted ciphertext.

    The two causes are deliberately indistinguishable.
    """

    code = "DecryptionFailed"
    default_message = "Incorrect passphrase or corrupted data"


class ImportFailed(SyncError):
    """The local store rejected a snapshot; the import was rolled back."""

    code = "ImportFailed"
    default_message = "Failed to import remote snapshot"


class RemoteUnavailable(SyncError):
    """Network, quota or server failure while talking to the remote store."""

    code = "RemoteUnavailable"
    default_message = "Remote store is unavailable"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteChanged(RemoteUnavailable):
    """Another device uploaded a newer snapshot between probe and upload."""

    code = "RemoteChanged"
    default_message = "Remote snapshot changed during sync"


class FatalInput(SyncError):
    """Input that cannot be serialized or parsed."""

    code = "FatalInput"
    default_message = "Malformed snapshot data"


_USER_MESSAGES = {
    AlreadyInProgress.code: "A sync is already running. Please wait for it to finish.",
    NotAuthenticated.code: "Remote storage access denied. Please reconnect your account.",
    EncryptionRequired.code: "Cloud data is encrypted. Enter your passphrase to continue.",
    DecryptionFailed.code: "Could not decrypt cloud data. Check your passphrase.",
    ImportFailed.code: "Remote data could not be applied. Your local notes are unchanged.",
    RemoteChanged.code: "Another device is syncing. Please try again in a few seconds.",
    FatalInput.code: "Sync data is malformed and was not applied.",
}


def describe_error(error: SyncError | str | None) -> str:
    """Return a user-facing message for an error or error code."""
    if error is None:
        return "Sync failed due to an unknown error"

    code = error if isinstance(error, str) else error.code
    if code in _USER_MESSAGES:
        return _USER_MESSAGES[code]

    if code == RemoteUnavailable.code:
        status_code = getattr(error, "status_code", None)
        if status_code in (401, 403):
            return "Remote storage access denied. Please reconnect your account."
        if status_code == 404:
            return "Remote backup not found."
        if status_code == 429:
            return "Remote storage rate limit reached. Auto-sync paused temporarily."
        if status_code is not None and status_code >= 500:
            return "Remote storage temporarily unavailable."
        return "No connection to remote storage. Sync will resume when online."

    message = error if isinstance(error, str) else error.message
    return f"Sync failed: {message}"
