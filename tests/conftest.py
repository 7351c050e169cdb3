"""Shared fixtures: local stores, folder remotes and coordinators on tmp_path."""

import asyncio
from dataclasses import dataclass
from pathlib import Path

import pytest

from notesync.core import encryption as encryption_module
from notesync.core.encryption import EncryptionState
from notesync.core.errors import RemoteChanged
from notesync.core.media import MediaReconciler
from notesync.core.models import ConversationRecord, NoteRecord, TagRecord
from notesync.core.store import LocalStore
from notesync.core.sync import SyncCoordinator
from notesync.sources.remote.base import LocalAuthenticator
from notesync.sources.remote.folder import FolderRemoteStore

T0 = "2024-03-01T08:00:00+00:00"
T1 = "2024-03-01T09:00:00+00:00"
T2 = "2024-03-01T10:00:00+00:00"
T3 = "2024-03-01T11:00:00+00:00"

# Fast key derivation for tests; real configs enforce >= 100000.
TEST_ITERATIONS = 1000


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep every config-driven path inside the test's tmp_path."""
    monkeypatch.setenv("NOTESYNC_GENERAL__DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("NOTESYNC_PASSPHRASE", raising=False)
    # Hosts share the process-wide encryption state; start every test clean.
    monkeypatch.setattr(encryption_module, "_state", None)


def make_note(note_id: str, *, updated_at: str = T1, **fields) -> dict:
    return NoteRecord(
        id=note_id,
        title=fields.pop("title", f"Note {note_id}"),
        content=fields.pop("content", ""),
        created_at=fields.pop("created_at", T0),
        updated_at=updated_at,
        **fields,
    ).to_dict()


def make_tag(tag_id: str, name: str) -> dict:
    return TagRecord(id=tag_id, name=name, created_at=T0).to_dict()


def make_conversation(conversation_id: str, note_id: str | None, *messages: dict) -> dict:
    return ConversationRecord(
        id=conversation_id,
        note_id=note_id,
        created_at=T0,
        messages=list(messages),
    ).to_dict()


def make_snapshot(notes=(), tags=(), conversations=(), deleted_notes=None, deleted_conversations=None) -> dict:
    return {
        "format": 2,
        "notes": {n["id"]: n for n in notes},
        "tags": {t["id"]: t for t in tags},
        "ai_conversations": {c["id"]: c for c in conversations},
        "deleted": {
            "notes": dict(deleted_notes or {}),
            "ai_conversations": dict(deleted_conversations or {}),
        },
        "metadata": {},
    }


@dataclass
class Device:
    """One installation: its own database, media folder and coordinator."""

    store: LocalStore
    coordinator: SyncCoordinator
    encryption: EncryptionState
    media_dir: Path
    events: list

    async def add_note(self, note_id: str, *, updated_at: str = T1, **fields) -> NoteRecord:
        return await self.store.save_note(NoteRecord.from_dict(make_note(note_id, updated_at=updated_at, **fields)))


class BlockingRemote(FolderRemoteStore):
    """Folder remote whose metadata probe waits until released."""

    def __init__(self, root: Path):
        super().__init__(root)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_snapshot_metadata(self):
        self.entered.set()
        await self.release.wait()
        return await super().get_snapshot_metadata()


class FlakyRemote(FolderRemoteStore):
    """Folder remote that reports a concurrent upload ``failures`` times."""

    def __init__(self, root: Path, failures: int = 1):
        super().__init__(root)
        self.failures = failures
        self.upload_calls = 0

    async def upload_snapshot(self, data, **kwargs):
        self.upload_calls += 1
        if self.upload_calls <= self.failures:
            raise RemoteChanged()
        return await super().upload_snapshot(data, **kwargs)


@pytest.fixture
def remote_dir(tmp_path) -> Path:
    path = tmp_path / "remote"
    path.mkdir()
    return path


@pytest.fixture
def remote(remote_dir) -> FolderRemoteStore:
    return FolderRemoteStore(remote_dir)


@pytest.fixture
async def store(tmp_path) -> LocalStore:
    local = LocalStore(tmp_path / "local" / "notes.db")
    await local.initialize()
    return local


@pytest.fixture
def make_device(tmp_path, remote_dir, remote):
    """Factory for devices sharing one remote folder."""

    async def factory(
        name: str,
        *,
        remote_store=None,
        passphrase: str | None = None,
        media: bool = False,
        max_version_retries: int = 3,
    ) -> Device:
        encryption = EncryptionState()
        encryption.load(enabled=False, salt=None, iterations=TEST_ITERATIONS)
        if passphrase:
            encryption.set_passphrase(passphrase)

        local = LocalStore(tmp_path / name / "notes.db")
        await local.initialize()

        shared = remote_store or remote
        media_dir = tmp_path / name / "media"
        events: list = []
        coordinator = SyncCoordinator(
            local,
            shared,
            authenticator=LocalAuthenticator(remote_dir),
            encryption=encryption,
            media=MediaReconciler(shared, media_dir) if media else None,
            notify=lambda event, payload: events.append((event, payload)),
            max_version_retries=max_version_retries,
            device_id=name,
        )
        return Device(local, coordinator, encryption, media_dir, events)

    return factory
