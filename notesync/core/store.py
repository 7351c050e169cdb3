"""SQLite-backed local store for notes, tags, conversations and sync settings."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from notesync.core.checksum import checksum
from notesync.core.errors import FatalInput, ImportFailed
from notesync.core.merge import TOMBSTONE_ENTITIES, empty_snapshot, merge_snapshots
from notesync.core.models import (
    ConversationRecord,
    ExportedSnapshot,
    ImportResult,
    MergeStrategy,
    NoteRecord,
    SyncMetadata,
    TagRecord,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        tags TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        is_favorite INTEGER NOT NULL DEFAULT 0,
        is_archived INTEGER NOT NULL DEFAULT 0,
        password_protected INTEGER NOT NULL DEFAULT 0,
        encrypted_content TEXT,
        collaboration TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        color TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        note_id TEXT,
        created_at TEXT NOT NULL,
        messages TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_conversations_note
    ON conversations(note_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS tombstones (
        entity TEXT NOT NULL,
        id TEXT NOT NULL,
        deleted_at TEXT NOT NULL,
        PRIMARY KEY (entity, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
)

_ENCRYPTION_ENABLED = "encryption.enabled"
_ENCRYPTION_SALT = "encryption.salt"
_ENCRYPTION_ITERATIONS = "encryption.iterations"


def _note_from_row(row: aiosqlite.Row) -> NoteRecord:
    return NoteRecord(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        tags=json.loads(row["tags"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_favorite=bool(row["is_favorite"]),
        is_archived=bool(row["is_archived"]),
        password_protected=bool(row["password_protected"]),
        encrypted_content=row["encrypted_content"],
        collaboration=json.loads(row["collaboration"]) if row["collaboration"] else None,
    )


def _conversation_from_row(row: aiosqlite.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        note_id=row["note_id"],
        created_at=row["created_at"],
        messages=json.loads(row["messages"] or "[]"),
    )


async def _upsert_note(db: aiosqlite.Connection, note: NoteRecord) -> None:
    await db.execute(
        """
        INSERT INTO notes
        (id, title, content, tags, created_at, updated_at, is_favorite,
         is_archived, password_protected, encrypted_content, collaboration)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            title = excluded.title,
            content = excluded.content,
            tags = excluded.tags,
            created_at = excluded.created_at,
            updated_at = excluded.updated_at,
            is_favorite = excluded.is_favorite,
            is_archived = excluded.is_archived,
            password_protected = excluded.password_protected,
            encrypted_content = excluded.encrypted_content,
            collaboration = excluded.collaboration
        """,
        (
            note.id,
            note.title,
            note.content,
            json.dumps(sorted(set(note.tags))),
            note.created_at,
            note.updated_at,
            int(note.is_favorite),
            int(note.is_archived),
            int(note.password_protected),
            note.encrypted_content,
            json.dumps(note.collaboration) if note.collaboration is not None else None,
        ),
    )


async def _upsert_tag(db: aiosqlite.Connection, tag: TagRecord) -> None:
    await db.execute(
        """
        INSERT INTO tags (id, name, color, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            color = excluded.color,
            created_at = excluded.created_at
        """,
        (tag.id, tag.name, tag.color, tag.created_at),
    )


async def _upsert_conversation(db: aiosqlite.Connection, conversation: ConversationRecord) -> None:
    await db.execute(
        """
        INSERT INTO conversations (id, note_id, created_at, messages)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            note_id = excluded.note_id,
            created_at = excluded.created_at,
            messages = excluded.messages
        """,
        (
            conversation.id,
            conversation.note_id,
            conversation.created_at,
            json.dumps(conversation.messages),
        ),
    )


class LocalStore:
    """
    Local note database and the snapshot boundary used by sync.

    Every public method opens its own connection. Snapshot imports and sync
    metadata writes run inside a single explicit transaction.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, isolation_level=None)

    async def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._connect() as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            logger.debug(f"Local store initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Snapshot boundary
    # ------------------------------------------------------------------

    async def _read_snapshot(self, db: aiosqlite.Connection) -> dict[str, Any]:
        db.row_factory = aiosqlite.Row
        snapshot = empty_snapshot()

        async with db.execute("SELECT * FROM notes") as cursor:
            async for row in cursor:
                snapshot["notes"][row["id"]] = _note_from_row(row).to_dict()

        async with db.execute("SELECT * FROM tags") as cursor:
            async for row in cursor:
                snapshot["tags"][row["id"]] = TagRecord(
                    id=row["id"], name=row["name"], color=row["color"], created_at=row["created_at"]
                ).to_dict()

        async with db.execute("SELECT * FROM conversations") as cursor:
            async for row in cursor:
                snapshot["ai_conversations"][row["id"]] = _conversation_from_row(row).to_dict()

        async with db.execute("SELECT entity, id, deleted_at FROM tombstones") as cursor:
            async for row in cursor:
                if row["entity"] in snapshot["deleted"]:
                    snapshot["deleted"][row["entity"]][row["id"]] = row["deleted_at"]

        return snapshot

    async def export_snapshot(self) -> ExportedSnapshot:
        """
        Export the full local state.

        Returns:
            ExportedSnapshot with the payload and its content checksum
        """
        async with self._connect() as db:
            payload = await self._read_snapshot(db)

        payload["metadata"]["exportedAt"] = utc_now_iso()
        payload["metadata"]["exportedForSync"] = True
        return ExportedSnapshot(payload=payload, checksum=checksum(payload))

    async def _write_snapshot(
        self, db: aiosqlite.Connection, current: dict[str, Any], target: dict[str, Any]
    ) -> None:
        """Write only the differences between ``current`` and ``target``."""
        for section, table in (("notes", "notes"), ("tags", "tags"), ("ai_conversations", "conversations")):
            for entity_id in current[section].keys() - target[section].keys():
                await db.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))

        # Tags first: a renamed tag may free a name another tag takes over.
        changed_tags = [
            TagRecord.from_dict(tag)
            for tag_id, tag in target["tags"].items()
            if current["tags"].get(tag_id) != tag
        ]
        for tag in changed_tags:
            await db.execute("DELETE FROM tags WHERE id = ?", (tag.id,))
        for tag in changed_tags:
            await _upsert_tag(db, tag)

        for note_id, note in target["notes"].items():
            if current["notes"].get(note_id) != note:
                await _upsert_note(db, NoteRecord.from_dict(note))

        for conversation_id, conversation in target["ai_conversations"].items():
            if current["ai_conversations"].get(conversation_id) != conversation:
                await _upsert_conversation(db, ConversationRecord.from_dict(conversation))

        await db.execute("DELETE FROM tombstones")
        for entity in TOMBSTONE_ENTITIES:
            for entity_id, deleted_at in target["deleted"].get(entity, {}).items():
                await db.execute(
                    "INSERT INTO tombstones (entity, id, deleted_at) VALUES (?, ?, ?)",
                    (entity, entity_id, deleted_at),
                )

    async def import_snapshot(
        self,
        remote_payload: dict[str, Any],
        strategy: MergeStrategy | str = MergeStrategy.MERGE,
        *,
        preserve_local_only: bool = True,
    ) -> ImportResult:
        """
        Apply a remote snapshot to the local store.

        The current local state is read, merged with ``remote_payload`` and
        written back inside one transaction, so edits saved while a sync was
        in flight are part of the merge.

        Args:
            remote_payload: Decrypted remote snapshot
            strategy: replace, merge or force
            preserve_local_only: Keep local entities absent remotely
                (merge and force only; replace always drops them)

        Returns:
            ImportResult with per-entity counters

        Raises:
            FatalInput: The payload is not a valid snapshot
            ImportFailed: The database rejected the write; nothing was changed
        """
        strategy = MergeStrategy(strategy)

        async with self._connect() as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
                current = await self._read_snapshot(db)
                outcome = merge_snapshots(
                    current,
                    remote_payload,
                    strategy=strategy,
                    preserve_local_only=preserve_local_only,
                )
                await self._write_snapshot(db, current, outcome.payload)
                await db.commit()
            except FatalInput:
                await db.rollback()
                raise
            except (sqlite3.Error, KeyError, TypeError, ValueError) as e:
                await db.rollback()
                logger.error(f"Snapshot import failed, rolled back: {e}")
                raise ImportFailed(f"Failed to import snapshot: {e}") from e

        logger.info(
            "Imported snapshot (%s): %d added, %d updated, %d conflicted, %d deleted",
            strategy.value,
            outcome.added,
            outcome.updated,
            outcome.conflicted,
            outcome.deleted,
        )
        return ImportResult(
            success=True,
            added=outcome.added,
            updated=outcome.updated,
            conflicted=outcome.conflicted,
            deleted=outcome.deleted,
        )

    # ------------------------------------------------------------------
    # Notes, tags, conversations
    # ------------------------------------------------------------------

    async def save_note(self, note: NoteRecord, *, touch: bool = False) -> NoteRecord:
        """
        Create or update a note.

        Args:
            note: Note to save
            touch: Set ``updated_at`` to now before saving

        Returns:
            The saved note
        """
        if touch:
            note.updated_at = utc_now_iso()

        async with self._connect() as db:
            await db.execute("BEGIN")
            await _upsert_note(db, note)
            # Saving a note again undoes an earlier local delete.
            await db.execute("DELETE FROM tombstones WHERE entity = 'notes' AND id = ?", (note.id,))
            await db.commit()
        return note

    async def get_note(self, note_id: str) -> NoteRecord | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM notes WHERE id = ?", (note_id,)) as cursor:
                row = await cursor.fetchone()
                return _note_from_row(row) if row else None

    async def list_notes(self) -> list[NoteRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM notes ORDER BY updated_at DESC") as cursor:
                rows = await cursor.fetchall()
                return [_note_from_row(row) for row in rows]

    async def delete_note(self, note_id: str) -> bool:
        """
        Delete a note and its conversations, recording tombstones.

        Returns:
            True if the note existed
        """
        deleted_at = utc_now_iso()
        async with self._connect() as db:
            await db.execute("BEGIN")
            cursor = await db.execute("DELETE FROM notes WHERE id = ?", (note_id,))
            existed = cursor.rowcount > 0
            async with db.execute("SELECT id FROM conversations WHERE note_id = ?", (note_id,)) as conv_cursor:
                conversation_ids = [row[0] for row in await conv_cursor.fetchall()]
            await db.execute("DELETE FROM conversations WHERE note_id = ?", (note_id,))
            for entity, entity_id in [("notes", note_id)] + [
                ("ai_conversations", conversation_id) for conversation_id in conversation_ids
            ]:
                await db.execute(
                    "INSERT OR REPLACE INTO tombstones (entity, id, deleted_at) VALUES (?, ?, ?)",
                    (entity, entity_id, deleted_at),
                )
            await db.commit()

        if existed:
            logger.debug(f"Deleted note {note_id}")
        return existed

    async def save_tag(self, tag: TagRecord) -> TagRecord:
        """
        Create or update a tag.

        Raises:
            ValueError: Another tag already uses this name
        """
        async with self._connect() as db:
            try:
                await _upsert_tag(db, tag)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Tag name '{tag.name}' is already in use") from e
        return tag

    async def list_tags(self) -> list[TagRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM tags ORDER BY name") as cursor:
                rows = await cursor.fetchall()
                return [
                    TagRecord(id=row["id"], name=row["name"], color=row["color"], created_at=row["created_at"])
                    for row in rows
                ]

    async def save_conversation(self, conversation: ConversationRecord) -> ConversationRecord:
        async with self._connect() as db:
            await db.execute("BEGIN")
            await _upsert_conversation(db, conversation)
            await db.execute(
                "DELETE FROM tombstones WHERE entity = 'ai_conversations' AND id = ?",
                (conversation.id,),
            )
            await db.commit()
        return conversation

    async def list_conversations(self, note_id: str | None = None) -> list[ConversationRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            if note_id is None:
                query, params = "SELECT * FROM conversations ORDER BY created_at", ()
            else:
                query, params = "SELECT * FROM conversations WHERE note_id = ? ORDER BY created_at", (note_id,)
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [_conversation_from_row(row) for row in rows]

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._connect() as db:
            await db.execute("BEGIN")
            cursor = await db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            existed = cursor.rowcount > 0
            await db.execute(
                "INSERT OR REPLACE INTO tombstones (entity, id, deleted_at) VALUES (?, ?, ?)",
                ("ai_conversations", conversation_id, utc_now_iso()),
            )
            await db.commit()
        return existed

    async def note_bodies(self) -> list[str]:
        """Return every note body, including encrypted note content."""
        async with self._connect() as db:
            async with db.execute("SELECT content, encrypted_content FROM notes") as cursor:
                rows = await cursor.fetchall()
        bodies = []
        for content, encrypted_content in rows:
            bodies.append(content or "")
            if encrypted_content:
                bodies.append(encrypted_content)
        return bodies

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        async with self._connect() as db:
            async with db.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
                return row[0] if row and row[0] is not None else default

    async def set_setting(self, key: str, value: str | None) -> None:
        async with self._connect() as db:
            if value is None:
                await db.execute("DELETE FROM settings WHERE key = ?", (key,))
            else:
                await db.execute(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    (key, value),
                )

    async def _settings_with_prefix(self, prefix: str) -> dict[str, str]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT key, value FROM settings WHERE key LIKE ?",
                (f"{prefix}%",),
            ) as cursor:
                rows = await cursor.fetchall()
        return {key: value for key, value in rows if value is not None}

    async def load_sync_metadata(self) -> SyncMetadata:
        return SyncMetadata.from_settings(await self._settings_with_prefix(SyncMetadata.SETTINGS_PREFIX))

    async def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        """Persist all sync metadata fields in one transaction."""
        async with self._connect() as db:
            try:
                await db.execute("BEGIN")
                for key, value in metadata.to_settings().items():
                    if value is None:
                        await db.execute("DELETE FROM settings WHERE key = ?", (key,))
                    else:
                        await db.execute(
                            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                            (key, value),
                        )
                await db.commit()
            except sqlite3.Error:
                await db.rollback()
                raise
        logger.debug(f"Sync metadata saved (remote version {metadata.remote_sync_version})")

    async def reset_sync_metadata(self) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM settings WHERE key LIKE ?",
                (f"{SyncMetadata.SETTINGS_PREFIX}%",),
            )
        logger.info("Sync metadata reset")

    async def load_encryption_settings(self) -> dict[str, Any]:
        """Load persisted encryption settings. The passphrase is never stored."""
        enabled = await self.get_setting(_ENCRYPTION_ENABLED)
        iterations = await self.get_setting(_ENCRYPTION_ITERATIONS)
        return {
            "enabled": enabled == "1",
            "salt": await self.get_setting(_ENCRYPTION_SALT),
            "iterations": int(iterations) if iterations else None,
        }

    async def save_encryption_settings(
        self, *, enabled: bool, salt: str | None, iterations: int | None = None
    ) -> None:
        async with self._connect() as db:
            await db.execute("BEGIN")
            for key, value in (
                (_ENCRYPTION_ENABLED, "1" if enabled else "0"),
                (_ENCRYPTION_SALT, salt),
                (_ENCRYPTION_ITERATIONS, str(iterations) if iterations else None),
            ):
                if value is None:
                    await db.execute("DELETE FROM settings WHERE key = ?", (key,))
                else:
                    await db.execute(
                        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                        (key, value),
                    )
            await db.commit()
