"""Content checksums over exported snapshots."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from notesync.core.errors import FatalInput

# Keys that describe an export rather than its content.
VOLATILE_METADATA_KEYS = ("exportedAt", "exportedForSync")

CONTENT_SECTIONS = ("notes", "tags", "ai_conversations", "deleted")


def content_snapshot(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Build a content-only view of a snapshot.

    Sync bookkeeping and export timestamps are dropped so that the checksum
    only changes when notes, tags, conversations or tombstones change.
    """
    if not isinstance(snapshot, dict):
        raise FatalInput(f"Snapshot must be a mapping, got {type(snapshot).__name__}")

    content: dict[str, Any] = {}
    for section in CONTENT_SECTIONS:
        value = snapshot.get(section)
        if value:
            content[section] = value

    metadata = dict(snapshot.get("metadata") or {})
    for key in VOLATILE_METADATA_KEYS:
        metadata.pop(key, None)
    metadata.pop("exportVersion", None)
    if metadata:
        content["metadata"] = metadata

    return content


def canonical_json(data: Any) -> str:
    """Serialize with deterministic key ordering."""
    try:
        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise FatalInput(f"Snapshot is not serializable: {exc}") from exc


def checksum(snapshot: dict[str, Any]) -> str:
    """Return the SHA-256 hex digest of a snapshot's content."""
    payload = canonical_json(content_snapshot(snapshot))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
