"""Pydantic models for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from notesync.core.encryption import MIN_PASSPHRASE_LENGTH
from notesync.core.models import MergeStrategy, SyncAction


class SyncRequest(BaseModel):
    """Request model for a full sync."""

    strategy: MergeStrategy = Field(
        default=MergeStrategy.MERGE,
        description="Strategy used when a downloaded snapshot is imported",
    )


class DownloadRequest(BaseModel):
    """Request model for an explicit download."""

    strategy: MergeStrategy = MergeStrategy.MERGE


class SyncResponse(BaseModel):
    """Response model for sync, upload and download."""

    success: bool
    action: SyncAction | None = None
    error: str | None = None
    message: str | None = None
    stats: dict[str, int] = Field(default_factory=dict)
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    media: dict[str, Any] | None = None


class MediaResponse(BaseModel):
    uploaded: list[str] = Field(default_factory=list)
    skipped_up_to_date: list[str] = Field(default_factory=list)
    deleted_remote: list[str] = Field(default_factory=list)
    deleted_local: list[str] = Field(default_factory=list)
    downloaded: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    operation_count: int = 0


class StatusResponse(BaseModel):
    """Response model for sync status."""

    state: str
    busy: bool
    operation: str | None = None
    metadata: dict[str, Any]
    encryption: dict[str, Any]
    remote: dict[str, Any] | None = None
    scheduler_running: bool = False
    next_auto_sync: datetime | None = None


class PassphraseRequest(BaseModel):
    passphrase: str = Field(min_length=MIN_PASSPHRASE_LENGTH)


class EncryptionStatusResponse(BaseModel):
    enabled: bool
    has_passphrase: bool
    has_salt: bool
    iterations: int


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = "healthy"
    timestamp: str
    version: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    detail: str | None = None
