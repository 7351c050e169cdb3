"""Entity-level merging of two snapshots.

Both the local store (when importing) and the sync coordinator (when both
sides changed) go through ``merge_snapshots`` so that a merge computed in
memory and a merge applied to the database always agree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from notesync.core.errors import FatalInput
from notesync.core.models import (
    EXPORT_VERSION,
    SNAPSHOT_FORMAT,
    ConversationRecord,
    MergeStrategy,
    NoteRecord,
    TagRecord,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

TOMBSTONE_ENTITIES = ("notes", "ai_conversations")


@dataclass
class MergeOutcome:
    """Result of merging a remote snapshot into a local one."""

    payload: dict[str, Any]
    added: int = 0
    updated: int = 0
    conflicted: int = 0
    deleted: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.deleted)

    def stats(self) -> dict[str, int]:
        return {
            "added": self.added,
            "updated": self.updated,
            "conflicted": self.conflicted,
            "deleted": self.deleted,
        }


def empty_snapshot() -> dict[str, Any]:
    return {
        "format": SNAPSHOT_FORMAT,
        "notes": {},
        "tags": {},
        "ai_conversations": {},
        "deleted": {entity: {} for entity in TOMBSTONE_ENTITIES},
        "metadata": {"exportVersion": EXPORT_VERSION},
    }


def _keyed(section: Any, name: str) -> dict[str, dict[str, Any]]:
    """Accept either ``{id: entity}`` or a list of entities."""
    if not section:
        return {}
    if isinstance(section, dict):
        return {str(key): dict(value, id=str(value.get("id", key))) for key, value in section.items()}
    if isinstance(section, list):
        keyed = {}
        for entity in section:
            if not isinstance(entity, dict) or "id" not in entity:
                raise FatalInput(f"Entity in '{name}' has no id")
            keyed[str(entity["id"])] = entity
        return keyed
    raise FatalInput(f"Section '{name}' must be a mapping or a list")


def normalize_snapshot(payload: dict[str, Any]) -> dict[str, Any]:
    """Bring a snapshot of any supported format into the current layout.

    Legacy (format 1) payloads have no ``format`` field and no ``deleted``
    section; entity sections may be lists.
    """
    if not isinstance(payload, dict):
        raise FatalInput(f"Snapshot must be a mapping, got {type(payload).__name__}")

    fmt = payload.get("format", 1)
    if not isinstance(fmt, int) or fmt > SNAPSHOT_FORMAT:
        raise FatalInput(f"Unsupported snapshot format: {fmt!r}")

    try:
        notes = {
            key: NoteRecord.from_dict(value).to_dict()
            for key, value in _keyed(payload.get("notes"), "notes").items()
        }
        tags = {
            key: TagRecord.from_dict(value).to_dict()
            for key, value in _keyed(payload.get("tags"), "tags").items()
        }
        conversations = {
            key: ConversationRecord.from_dict(value).to_dict()
            for key, value in _keyed(payload.get("ai_conversations"), "ai_conversations").items()
        }
    except (KeyError, TypeError, AttributeError) as exc:
        raise FatalInput(f"Malformed snapshot entity: {exc}") from exc

    deleted_in = payload.get("deleted") or {}
    if not isinstance(deleted_in, dict):
        raise FatalInput("Section 'deleted' must be a mapping")
    deleted = {
        entity: {str(key): str(value) for key, value in (deleted_in.get(entity) or {}).items()}
        for entity in TOMBSTONE_ENTITIES
    }

    normalized = {
        "format": SNAPSHOT_FORMAT,
        "notes": notes,
        "tags": tags,
        "ai_conversations": conversations,
        "deleted": deleted,
        "metadata": dict(payload.get("metadata") or {}),
    }
    normalized["metadata"]["exportVersion"] = EXPORT_VERSION
    if "_sync_meta" in payload:
        normalized["_sync_meta"] = payload["_sync_meta"]
    return normalized


def is_empty(snapshot: dict[str, Any]) -> bool:
    """True if the snapshot carries no notes, tags or conversations."""
    return not (
        snapshot.get("notes") or snapshot.get("tags") or snapshot.get("ai_conversations")
    )


def _conversation_activity(conversation: dict[str, Any]) -> datetime:
    latest = parse_timestamp(conversation.get("created_at"))
    for message in conversation.get("messages") or []:
        latest = max(latest, parse_timestamp(message.get("created_at")))
    return latest


def _merge_messages(local: list[dict[str, Any]], remote: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_id: dict[str, dict[str, Any]] = {}
    for message in list(local) + list(remote):
        message_id = str(message.get("id"))
        by_id.setdefault(message_id, message)
    return sorted(by_id.values(), key=lambda m: (parse_timestamp(m.get("created_at")), str(m.get("id"))))


def _carry_revocation(merged: dict[str, Any], remote: dict[str, Any]) -> None:
    """Keep a share revocation made elsewhere even when local content wins."""
    remote_collab = remote.get("collaboration") or {}
    local_collab = merged.get("collaboration") or {}
    if not remote_collab or remote_collab.get("is_shared", True):
        return
    if remote_collab.get("remote_file_id") is not None:
        return
    if local_collab.get("is_shared"):
        merged["collaboration"] = dict(
            local_collab,
            is_shared=False,
            remote_file_id=None,
            share_link=None,
        )


def _both_changed(local: dict[str, Any], remote: dict[str, Any], last_sync: datetime | None) -> bool:
    if local == remote:
        return False
    if last_sync is None:
        return True
    return (
        parse_timestamp(local.get("updated_at")) > last_sync
        and parse_timestamp(remote.get("updated_at")) > last_sync
    )


def _merge_notes(
    outcome: MergeOutcome,
    local: dict[str, dict[str, Any]],
    remote: dict[str, dict[str, Any]],
    strategy: MergeStrategy,
    last_sync: datetime | None,
) -> dict[str, dict[str, Any]]:
    merged = dict(local)
    for note_id, remote_note in remote.items():
        local_note = local.get(note_id)
        if local_note is None:
            merged[note_id] = remote_note
            outcome.added += 1
            continue
        if local_note == remote_note:
            continue

        if strategy is MergeStrategy.FORCE:
            remote_wins = True
        else:
            remote_wins = parse_timestamp(remote_note.get("updated_at")) > parse_timestamp(
                local_note.get("updated_at")
            )

        if _both_changed(local_note, remote_note, last_sync):
            outcome.conflicted += 1
            outcome.conflicts.append(
                {
                    "entity": "note",
                    "id": note_id,
                    "winner": "remote" if remote_wins else "local",
                    "local_updated_at": local_note.get("updated_at"),
                    "remote_updated_at": remote_note.get("updated_at"),
                }
            )

        if remote_wins:
            merged[note_id] = remote_note
            outcome.updated += 1
        else:
            winner = dict(local_note)
            _carry_revocation(winner, remote_note)
            if winner != local_note:
                outcome.updated += 1
            merged[note_id] = winner
    return merged


def _merge_tags(
    outcome: MergeOutcome,
    local: dict[str, dict[str, Any]],
    remote: dict[str, dict[str, Any]],
    strategy: MergeStrategy,
) -> dict[str, dict[str, Any]]:
    merged = dict(local)
    for tag_id, remote_tag in remote.items():
        local_tag = local.get(tag_id)
        if local_tag is not None:
            if strategy is MergeStrategy.FORCE and local_tag != remote_tag:
                merged[tag_id] = remote_tag
                outcome.updated += 1
            continue

        clash = next(
            (tag for tag in merged.values() if tag["name"] == remote_tag["name"] and tag["id"] != tag_id),
            None,
        )
        if clash is not None:
            logger.info(
                "Skipping remote tag %s: name '%s' is already used by tag %s",
                tag_id,
                remote_tag["name"],
                clash["id"],
            )
            outcome.conflicted += 1
            outcome.conflicts.append(
                {"entity": "tag", "id": tag_id, "name": remote_tag["name"], "existing_id": clash["id"]}
            )
            continue

        merged[tag_id] = remote_tag
        outcome.added += 1
    return merged


def _merge_conversations(
    outcome: MergeOutcome,
    local: dict[str, dict[str, Any]],
    remote: dict[str, dict[str, Any]],
    strategy: MergeStrategy,
    notes: dict[str, dict[str, Any]],
) -> dict[str, dict[str, Any]]:
    merged = dict(local)
    for conversation_id, remote_conv in remote.items():
        local_conv = local.get(conversation_id)
        if local_conv is None:
            note_id = remote_conv.get("note_id")
            if note_id and note_id not in notes:
                logger.debug("Skipping conversation %s for missing note %s", conversation_id, note_id)
                continue
            merged[conversation_id] = remote_conv
            outcome.added += 1
            continue

        combined = dict(remote_conv if strategy is MergeStrategy.FORCE else local_conv)
        combined["messages"] = _merge_messages(
            local_conv.get("messages") or [], remote_conv.get("messages") or []
        )
        if combined != local_conv:
            outcome.updated += 1
        merged[conversation_id] = combined
    return merged


def _merge_tombstones(
    local: dict[str, dict[str, str]], remote: dict[str, dict[str, str]]
) -> dict[str, dict[str, str]]:
    merged: dict[str, dict[str, str]] = {}
    for entity in TOMBSTONE_ENTITIES:
        combined = dict(local.get(entity) or {})
        for entity_id, deleted_at in (remote.get(entity) or {}).items():
            current = combined.get(entity_id)
            if current is None or parse_timestamp(deleted_at) > parse_timestamp(current):
                combined[entity_id] = deleted_at
        merged[entity] = combined
    return merged


def _apply_tombstones(
    outcome: MergeOutcome,
    payload: dict[str, Any],
    local_ids: dict[str, set[str]],
) -> None:
    """Remove live entities older than their tombstone; drop stale tombstones."""
    for entity in TOMBSTONE_ENTITIES:
        live = payload[entity]
        tombstones = payload["deleted"][entity]
        for entity_id, deleted_at in list(tombstones.items()):
            record = live.get(entity_id)
            if record is None:
                continue
            if entity == "notes":
                last_change = parse_timestamp(record.get("updated_at"))
            else:
                last_change = _conversation_activity(record)
            if parse_timestamp(deleted_at) >= last_change:
                del live[entity_id]
                if entity_id in local_ids[entity]:
                    outcome.deleted += 1
                else:
                    # Was counted as added from remote; it never reaches the store.
                    outcome.added = max(0, outcome.added - 1)
            else:
                # Edited after it was deleted elsewhere: the edit wins.
                del tombstones[entity_id]

    # Conversations of removed notes go with them.
    notes = payload["notes"]
    for conversation_id, conversation in list(payload["ai_conversations"].items()):
        note_id = conversation.get("note_id")
        if note_id and note_id not in notes and note_id in payload["deleted"]["notes"]:
            del payload["ai_conversations"][conversation_id]
            if conversation_id in local_ids["ai_conversations"]:
                outcome.deleted += 1
            else:
                outcome.added = max(0, outcome.added - 1)


def _replace(local: dict[str, Any], remote: dict[str, Any]) -> MergeOutcome:
    outcome = MergeOutcome(payload=remote)
    for section in ("notes", "tags", "ai_conversations"):
        local_section = local[section]
        remote_section = remote[section]
        outcome.added += len(remote_section.keys() - local_section.keys())
        outcome.deleted += len(local_section.keys() - remote_section.keys())
        outcome.updated += sum(
            1 for key in remote_section.keys() & local_section.keys() if remote_section[key] != local_section[key]
        )
    return outcome


def merge_snapshots(
    local: dict[str, Any],
    remote: dict[str, Any],
    *,
    last_sync: str | None = None,
    strategy: MergeStrategy | str = MergeStrategy.MERGE,
    preserve_local_only: bool = True,
) -> MergeOutcome:
    """Merge ``remote`` into ``local`` and return the combined snapshot.

    Args:
        local: Local snapshot payload (any supported format).
        remote: Remote snapshot payload (any supported format).
        last_sync: Timestamp of the last successful sync. Only notes edited
            on both sides after it are reported as conflicts.
        strategy: ``merge`` (later ``updated_at`` wins, ties keep local),
            ``force`` (remote wins) or ``replace`` (remote snapshot wholesale).
        preserve_local_only: When False, local entities absent from the
            remote snapshot are dropped under ``merge`` and ``force`` too.

    Returns:
        MergeOutcome with the merged payload and per-entity counters.
    """
    strategy = MergeStrategy(strategy)
    local = normalize_snapshot(local)
    remote = normalize_snapshot(remote)

    if strategy is MergeStrategy.REPLACE:
        return _replace(local, remote)

    last_sync_at = parse_timestamp(last_sync) if last_sync else None
    outcome = MergeOutcome(payload=empty_snapshot())

    local_ids = {
        "notes": set(local["notes"]),
        "ai_conversations": set(local["ai_conversations"]),
    }

    payload = outcome.payload
    payload["metadata"] = dict(local["metadata"])
    payload["notes"] = _merge_notes(outcome, local["notes"], remote["notes"], strategy, last_sync_at)
    payload["tags"] = _merge_tags(outcome, local["tags"], remote["tags"], strategy)
    payload["ai_conversations"] = _merge_conversations(
        outcome, local["ai_conversations"], remote["ai_conversations"], strategy, payload["notes"]
    )
    payload["deleted"] = _merge_tombstones(local["deleted"], remote["deleted"])
    _apply_tombstones(outcome, payload, local_ids)

    if not preserve_local_only:
        for section in ("notes", "tags", "ai_conversations"):
            for key in list(payload[section]):
                if key not in remote[section]:
                    del payload[section][key]
                    outcome.deleted += 1

    logger.debug(
        "Merged snapshots (%s): +%d ~%d !%d -%d",
        strategy.value,
        outcome.added,
        outcome.updated,
        outcome.conflicted,
        outcome.deleted,
    )
    return outcome
