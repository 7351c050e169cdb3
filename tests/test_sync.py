"""End-to-end tests for the sync coordinator over a shared folder remote."""

import asyncio
import json

from notesync.core.checksum import checksum
from notesync.core.errors import AlreadyInProgress, DecryptionFailed, EncryptionRequired, NotAuthenticated
from notesync.core.models import MergeStrategy, SyncAction, SyncMetadata, SyncState
from notesync.core.sync import SyncCoordinator
from notesync.sources.remote.base import SNAPSHOT_NAME, LocalAuthenticator
from tests.conftest import T1, T2, T3, BlockingRemote, FlakyRemote

PASSPHRASE = "correct horse battery"


def _event_names(device):
    return [event for event, _ in device.events]


class TestDecisions:
    async def test_first_sync_uploads(self, make_device, remote):
        laptop = await make_device("laptop")
        await laptop.add_note("n1", content="hello")

        result = await laptop.coordinator.sync()

        assert result.success
        assert result.action is SyncAction.UPLOAD
        info = await remote.get_snapshot_metadata()
        assert info.version == 1
        assert not info.encrypted
        metadata = await laptop.store.load_sync_metadata()
        assert metadata.remote_sync_version == 1
        assert metadata.local_checksum == (await laptop.store.export_snapshot()).checksum
        assert metadata.last_sync is not None

    async def test_nothing_to_do_when_unchanged(self, make_device, remote):
        laptop = await make_device("laptop")
        await laptop.add_note("n1")
        await laptop.coordinator.sync()

        result = await laptop.coordinator.sync()

        assert result.action is SyncAction.NONE
        assert (await remote.get_snapshot_metadata()).version == 1

    async def test_local_edit_uploads_next_version(self, make_device, remote):
        laptop = await make_device("laptop")
        await laptop.add_note("n1")
        await laptop.coordinator.sync()
        await laptop.add_note("n1", content="edited", updated_at=T2)

        result = await laptop.coordinator.sync()

        assert result.action is SyncAction.UPLOAD
        assert (await remote.get_snapshot_metadata()).version == 2

    async def test_empty_device_downloads(self, make_device, remote, remote_dir):
        laptop = await make_device("laptop")
        await laptop.add_note("n1", content="from laptop")
        await laptop.coordinator.sync()
        phone = await make_device("phone")

        result = await phone.coordinator.sync()

        assert result.action is SyncAction.DOWNLOAD
        assert result.stats["added"] == 1
        assert (await phone.store.get_note("n1")).content == "from laptop"

        metadata = await phone.store.load_sync_metadata()
        remote_payload = json.loads((remote_dir / SNAPSHOT_NAME).read_bytes())
        assert metadata.remote_sync_version == 1
        assert metadata.local_checksum == checksum(remote_payload)
        assert metadata.remote_file_id == SNAPSHOT_NAME

        again = await phone.coordinator.sync()
        assert again.action is SyncAction.NONE

    async def test_concurrent_edits_merge(self, make_device, remote):
        laptop = await make_device("laptop")
        phone = await make_device("phone")
        await laptop.add_note("n1", content="v1")
        await laptop.coordinator.sync()
        await phone.coordinator.sync()

        await laptop.add_note("n1", content="laptop edit", updated_at=T2)
        await laptop.coordinator.sync()
        await phone.add_note("n2", content="phone note", updated_at=T3)

        result = await phone.coordinator.sync()

        assert result.action is SyncAction.MERGE
        assert (await phone.store.get_note("n1")).content == "laptop edit"
        assert (await phone.store.get_note("n2")).content == "phone note"
        assert (await remote.get_snapshot_metadata()).version == 3
        assert (await phone.store.load_sync_metadata()).remote_sync_version == 3

        follow_up = await laptop.coordinator.sync()
        assert follow_up.action is SyncAction.DOWNLOAD
        assert (await laptop.store.get_note("n2")).content == "phone note"
        assert (await laptop.store.load_sync_metadata()).remote_sync_version == 3

    async def test_merge_keeps_newer_local_edit(self, make_device):
        laptop = await make_device("laptop")
        phone = await make_device("phone")
        await laptop.add_note("n1", content="v1", updated_at=T1)
        await laptop.coordinator.sync()
        await phone.coordinator.sync()

        await laptop.add_note("n1", content="older edit", updated_at=T2)
        await laptop.coordinator.sync()
        await phone.add_note("n1", content="newer edit", updated_at=T3)

        # Both edits happened after T1, so the merge reports a conflict.
        result = await phone.coordinator.sync(last_sync=T1)

        assert result.action is SyncAction.MERGE
        assert (await phone.store.get_note("n1")).content == "newer edit"
        assert [c["id"] for c in result.conflicts] == ["n1"]

    async def test_deletion_propagates(self, make_device):
        laptop = await make_device("laptop")
        phone = await make_device("phone")
        await laptop.add_note("n1")
        await laptop.coordinator.sync()
        await phone.coordinator.sync()

        await laptop.store.delete_note("n1")
        await laptop.coordinator.sync()
        result = await phone.coordinator.sync()

        assert result.action is SyncAction.DOWNLOAD
        assert await phone.store.get_note("n1") is None

    async def test_events_emitted(self, make_device):
        laptop = await make_device("laptop")
        await laptop.add_note("n1")

        await laptop.coordinator.sync()

        names = _event_names(laptop)
        assert names[0] == "syncStarted"
        assert "syncProgress" in names
        assert names[-1] == "syncCompleted"
        assert laptop.coordinator.state is SyncState.IDLE

    async def test_version_keeps_rising_after_remote_reset(self, make_device, remote):
        laptop = await make_device("laptop")
        for edit in range(4):
            await laptop.add_note("n1", content=f"edit {edit}")
            await laptop.coordinator.sync()
        assert (await laptop.store.load_sync_metadata()).remote_sync_version == 4

        phone = await make_device("phone")
        await phone.coordinator.reset_remote()
        await laptop.add_note("n1", content="after reset")

        result = await laptop.coordinator.sync()

        assert result.action is SyncAction.UPLOAD
        assert (await remote.get_snapshot_metadata()).version == 5
        assert (await laptop.store.load_sync_metadata()).remote_sync_version == 5


class TestSingleFlight:
    async def test_second_caller_is_rejected(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        laptop = await make_device("laptop", remote_store=remote)
        await laptop.add_note("n1")

        first = asyncio.create_task(laptop.coordinator.sync())
        await remote.entered.wait()

        assert laptop.coordinator.is_busy
        second = await laptop.coordinator.sync()
        upload = await laptop.coordinator.upload()

        assert second.error == AlreadyInProgress.code
        assert upload.error == AlreadyInProgress.code

        remote.release.set()
        result = await first

        assert result.success
        assert not laptop.coordinator.is_busy
        assert (await laptop.coordinator.sync()).success

    async def test_wait_until_idle(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        laptop = await make_device("laptop", remote_store=remote)

        task = asyncio.create_task(laptop.coordinator.sync())
        await remote.entered.wait()
        waiter = asyncio.create_task(laptop.coordinator.wait_until_idle())
        await asyncio.sleep(0)
        assert not waiter.done()

        remote.release.set()
        await task
        await asyncio.wait_for(waiter, 1)

    async def test_media_reconcile_while_syncing(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        laptop = await make_device("laptop", remote_store=remote, media=True)

        first = asyncio.create_task(laptop.coordinator.sync())
        await remote.entered.wait()

        media = await laptop.coordinator.reconcile_media()

        assert media.error == AlreadyInProgress.code
        assert media.operation_count == 0
        assert set(media.errors) == {"*"}

        remote.release.set()
        assert (await first).success


class TestFailures:
    async def test_encrypted_remote_without_passphrase_writes_nothing(self, make_device, remote, remote_dir):
        laptop = await make_device("laptop", passphrase=PASSPHRASE)
        await laptop.add_note("n1", content="secret")
        await laptop.coordinator.sync()
        remote_before = await remote.get_snapshot_metadata()
        snapshot_before = (remote_dir / SNAPSHOT_NAME).read_bytes()
        phone = await make_device("phone")
        await phone.add_note("p1", content="local only")
        before = await phone.store.export_snapshot()

        result = await phone.coordinator.sync()

        assert not result.success
        assert result.error == EncryptionRequired.code
        assert await phone.store.load_sync_metadata() == SyncMetadata()
        assert (await phone.store.export_snapshot()).checksum == before.checksum
        assert "syncFailed" in _event_names(phone)
        assert (await remote.get_snapshot_metadata()).version == remote_before.version
        assert (remote_dir / SNAPSHOT_NAME).read_bytes() == snapshot_before

    async def test_wrong_passphrase(self, make_device):
        laptop = await make_device("laptop", passphrase=PASSPHRASE)
        await laptop.add_note("n1", content="secret")
        await laptop.coordinator.sync()
        phone = await make_device("phone", passphrase="not the passphrase")

        result = await phone.coordinator.sync()

        assert result.error == DecryptionFailed.code
        assert await phone.store.get_note("n1") is None
        assert await phone.store.load_sync_metadata() == SyncMetadata()

    async def test_encrypted_round_trip(self, make_device, remote, remote_dir):
        laptop = await make_device("laptop", passphrase=PASSPHRASE)
        await laptop.add_note("n1", content="secret")
        await laptop.coordinator.sync()
        phone = await make_device("phone", passphrase=PASSPHRASE)

        result = await phone.coordinator.sync()

        assert result.action is SyncAction.DOWNLOAD
        assert (await phone.store.get_note("n1")).content == "secret"
        assert (await remote.get_snapshot_metadata()).encrypted
        assert b"secret" not in (remote_dir / SNAPSHOT_NAME).read_bytes()

    async def test_enabled_without_passphrase_refuses_upload(self, make_device, remote):
        laptop = await make_device("laptop")
        laptop.encryption.load(enabled=True, salt=None)
        await laptop.add_note("n1")

        result = await laptop.coordinator.sync()

        assert result.error == EncryptionRequired.code
        assert await remote.get_snapshot_metadata() is None

    async def test_remote_changed_is_retried(self, make_device, remote_dir):
        remote = FlakyRemote(remote_dir, failures=1)
        laptop = await make_device("laptop", remote_store=remote)
        await laptop.add_note("n1")

        result = await laptop.coordinator.sync()

        assert result.success
        assert remote.upload_calls == 2
        assert (await laptop.store.load_sync_metadata()).remote_sync_version == 1

    async def test_remote_changed_gives_up_after_retries(self, make_device, remote_dir):
        remote = FlakyRemote(remote_dir, failures=10)
        laptop = await make_device("laptop", remote_store=remote, max_version_retries=2)
        await laptop.add_note("n1")

        result = await laptop.coordinator.sync()

        assert result.error == "RemoteChanged"
        assert remote.upload_calls == 3
        assert await laptop.store.load_sync_metadata() == SyncMetadata()

    async def test_not_authenticated(self, store, remote, tmp_path):
        coordinator = SyncCoordinator(store, remote, authenticator=LocalAuthenticator(tmp_path / "missing"))

        result = await coordinator.sync()

        assert result.error == NotAuthenticated.code
        assert await remote.get_snapshot_metadata() is None

    async def test_download_without_remote(self, make_device):
        phone = await make_device("phone")

        result = await phone.coordinator.download()

        assert result.error == "RemoteUnavailable"


class TestExplicitOperations:
    async def test_upload_overwrites_remote(self, make_device, remote):
        laptop = await make_device("laptop")
        phone = await make_device("phone")
        await laptop.add_note("n1")
        await laptop.coordinator.sync()
        await phone.add_note("p1")

        result = await phone.coordinator.upload()

        assert result.action is SyncAction.UPLOAD
        assert (await remote.get_snapshot_metadata()).version == 2
        await laptop.coordinator.download(MergeStrategy.REPLACE)
        assert [n.id for n in await laptop.store.list_notes()] == ["p1"]

    async def test_reset_remote(self, make_device, remote):
        laptop = await make_device("laptop")
        await laptop.add_note("n1")
        await laptop.coordinator.sync()

        result = await laptop.coordinator.reset_remote()

        assert result.success
        assert await remote.get_snapshot_metadata() is None
        assert await laptop.store.load_sync_metadata() == SyncMetadata()
        assert await laptop.store.get_note("n1") is not None

    async def test_media_reconciled_after_sync(self, make_device, remote_dir):
        laptop = await make_device("laptop", media=True)
        laptop.media_dir.mkdir(parents=True)
        (laptop.media_dir / "abc123.png").write_bytes(b"png")
        await laptop.add_note("n1", content="![](media://abc123)")

        result = await laptop.coordinator.sync()

        assert result.media is not None
        assert result.media.uploaded == ["abc123.png"]
        assert (remote_dir / "media" / "abc123.png").exists()

        standalone = await laptop.coordinator.reconcile_media()
        assert standalone.operation_count == 0

    async def test_status(self, make_device):
        laptop = await make_device("laptop")

        status = await laptop.coordinator.status()

        assert status["state"] == "idle"
        assert status["busy"] is False
        assert status["remote"]["authenticated"] is True
        assert status["encryption"]["has_passphrase"] is False
