"""Data model shared by the store, the merge logic and the sync coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

# Snapshot payload format. Format 1 is the legacy layout without tombstones.
SNAPSHOT_FORMAT = 2
EXPORT_VERSION = "2"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str | datetime | None) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Missing or unparseable values sort before everything else.
    """
    if value is None or value == "":
        return _EPOCH
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MergeStrategy(StrEnum):
    """How a remote snapshot is applied to the local store."""

    REPLACE = "replace"
    MERGE = "merge"
    FORCE = "force"


class SyncAction(StrEnum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    MERGE = "merge"
    NONE = "none"


class SyncState(StrEnum):
    IDLE = "idle"
    DECIDING = "deciding"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    APPLYING = "applying"
    FAILED = "failed"


@dataclass
class NoteRecord:
    """A single note as stored locally and exchanged in snapshots."""

    id: str
    title: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    is_favorite: bool = False
    is_archived: bool = False
    password_protected: bool = False
    encrypted_content: str | None = None
    collaboration: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tags"] = sorted(set(self.tags))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NoteRecord":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            content=data.get("content") or "",
            tags=sorted(set(data.get("tags") or [])),
            created_at=data.get("created_at") or data.get("updated_at") or utc_now_iso(),
            updated_at=data.get("updated_at") or data.get("created_at") or utc_now_iso(),
            is_favorite=bool(data.get("is_favorite", False)),
            is_archived=bool(data.get("is_archived", False)),
            password_protected=bool(data.get("password_protected", False)),
            encrypted_content=data.get("encrypted_content"),
            collaboration=data.get("collaboration"),
        )


@dataclass
class TagRecord:
    id: str
    name: str
    color: str | None = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TagRecord":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            color=data.get("color"),
            created_at=data.get("created_at") or utc_now_iso(),
        )


@dataclass
class ConversationRecord:
    """An AI conversation attached (optionally) to a note."""

    id: str
    note_id: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    messages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationRecord":
        messages = data.get("messages")
        if messages is None and data.get("user_message") is not None:
            # Legacy single-exchange layout
            messages = [
                {
                    "id": f"{data['id']}-q",
                    "role": "user",
                    "content": data.get("user_message"),
                    "created_at": data.get("created_at"),
                },
                {
                    "id": f"{data['id']}-a",
                    "role": "assistant",
                    "content": data.get("ai_response"),
                    "created_at": data.get("created_at"),
                },
            ]
        return cls(
            id=str(data["id"]),
            note_id=data.get("note_id"),
            created_at=data.get("created_at") or utc_now_iso(),
            messages=list(messages or []),
        )


@dataclass
class SyncMetadata:
    """Per-installation sync bookkeeping, persisted in the settings table."""

    last_sync: str | None = None
    last_sync_version: str | None = None
    local_checksum: str | None = None
    remote_checksum: str | None = None
    remote_file_id: str | None = None
    remote_sync_version: int = 0

    SETTINGS_PREFIX = "sync."

    def to_settings(self) -> dict[str, str | None]:
        return {
            f"{self.SETTINGS_PREFIX}last_sync": self.last_sync,
            f"{self.SETTINGS_PREFIX}last_sync_version": self.last_sync_version,
            f"{self.SETTINGS_PREFIX}local_checksum": self.local_checksum,
            f"{self.SETTINGS_PREFIX}remote_checksum": self.remote_checksum,
            f"{self.SETTINGS_PREFIX}remote_file_id": self.remote_file_id,
            f"{self.SETTINGS_PREFIX}remote_sync_version": str(self.remote_sync_version),
        }

    @classmethod
    def from_settings(cls, settings: dict[str, str]) -> "SyncMetadata":
        prefix = cls.SETTINGS_PREFIX
        try:
            version = int(settings.get(f"{prefix}remote_sync_version") or 0)
        except ValueError:
            version = 0
        return cls(
            last_sync=settings.get(f"{prefix}last_sync"),
            last_sync_version=settings.get(f"{prefix}last_sync_version"),
            local_checksum=settings.get(f"{prefix}local_checksum"),
            remote_checksum=settings.get(f"{prefix}remote_checksum"),
            remote_file_id=settings.get(f"{prefix}remote_file_id"),
            remote_sync_version=version,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MediaBlob:
    """A media file, local or remote. ``id`` is the token used in note bodies."""

    id: str
    name: str
    size: int
    mtime: float | None = None
    remote_id: str | None = None


@dataclass(slots=True)
class ExportedSnapshot:
    payload: dict[str, Any]
    checksum: str


@dataclass
class ImportResult:
    success: bool
    added: int = 0
    updated: int = 0
    conflicted: int = 0
    deleted: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RemoteSnapshotInfo:
    """What a remote store can tell about its snapshot without downloading it."""

    file_id: str
    version: int = 0
    checksum: str | None = None
    encrypted: bool = False
    uploaded_at: str | None = None


@dataclass(slots=True)
class UploadReceipt:
    file_id: str
    version: int


@dataclass
class ReconcileResult:
    uploaded: list[str] = field(default_factory=list)
    skipped_up_to_date: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)
    deleted_local: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    # Code of a SyncError that stopped the whole run
    error: str | None = None

    @property
    def operation_count(self) -> int:
        return (
            len(self.uploaded)
            + len(self.deleted_remote)
            + len(self.deleted_local)
            + len(self.downloaded)
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["operation_count"] = self.operation_count
        return data


@dataclass
class SyncResult:
    """Structured outcome of one sync, upload or download attempt."""

    success: bool
    action: SyncAction | None = None
    error: str | None = None
    message: str | None = None
    stats: dict[str, int] = field(default_factory=dict)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    metadata: SyncMetadata | None = None
    media: ReconcileResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action.value if self.action else None,
            "error": self.error,
            "message": self.message,
            "stats": dict(self.stats),
            "conflicts": list(self.conflicts),
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "media": self.media.to_dict() if self.media else None,
        }


@dataclass(slots=True)
class ShutdownDecision:
    allowed: bool
    reason: str
