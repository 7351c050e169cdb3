"""Tests for the shutdown guard."""

import asyncio

from notesync.core.lifecycle import LifecycleGuard
from tests.conftest import BlockingRemote


class FakeHost:
    def __init__(self):
        self.handlers = []
        self.events = []

    def on_before_shutdown(self, handler):
        self.handlers.append(handler)

    async def notify_ui(self, event, payload):
        self.events.append(event)


class TestLifecycleGuard:
    async def test_install_registers_handler(self, make_device):
        device = await make_device("laptop")
        guard = LifecycleGuard(device.coordinator)
        host = FakeHost()

        guard.install(host)

        assert host.handlers == [guard.handle_shutdown]

    async def test_idle_exits_immediately(self, make_device):
        device = await make_device("laptop")
        guard = LifecycleGuard(device.coordinator)

        decision = await guard.handle_shutdown()

        assert decision.allowed
        assert decision.reason == "idle"

    async def test_waits_for_running_sync(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        device = await make_device("laptop", remote_store=remote)
        guard = LifecycleGuard(device.coordinator, timeout=5)
        host = FakeHost()
        guard.install(host)

        sync_task = asyncio.create_task(device.coordinator.sync())
        await remote.entered.wait()
        asyncio.get_running_loop().call_later(0.05, remote.release.set)

        decision = await guard.handle_shutdown()

        assert decision.allowed
        assert decision.reason == "sync_finished"
        assert host.events == ["syncClosingShow", "syncClosingHide"]
        assert (await sync_task).success

    async def test_timeout_still_allows_exit(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        device = await make_device("laptop", remote_store=remote)
        guard = LifecycleGuard(device.coordinator, timeout=0.05)

        sync_task = asyncio.create_task(device.coordinator.sync())
        await remote.entered.wait()

        decision = await guard.handle_shutdown()

        assert decision.allowed
        assert decision.reason == "timeout"
        assert device.coordinator.is_busy

        remote.release.set()
        await sync_task

    async def test_final_sync_when_auto_sync(self, make_device, remote):
        device = await make_device("laptop")
        await device.add_note("n1")
        guard = LifecycleGuard(device.coordinator, auto_sync=True)

        decision = await guard.handle_shutdown()

        assert decision.reason == "synced"
        assert (await remote.get_snapshot_metadata()).version == 1

    async def test_final_sync_failure_allows_exit(self, make_device):
        device = await make_device("laptop")
        device.encryption.load(enabled=True, salt=None)
        await device.add_note("n1")
        guard = LifecycleGuard(device.coordinator, auto_sync=True)

        decision = await guard.handle_shutdown()

        assert decision.allowed
        assert decision.reason == "sync_failed"

    async def test_hung_final_sync_times_out(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        device = await make_device("laptop", remote_store=remote)
        guard = LifecycleGuard(device.coordinator, auto_sync=True, timeout=0.05)

        decision = await guard.handle_shutdown()

        assert decision.reason == "timeout"
        # The final sync keeps running in the background.
        assert device.coordinator.is_busy
        remote.release.set()
        await asyncio.wait_for(device.coordinator.wait_until_idle(), 1)

    async def test_repeated_requests_share_one_shutdown(self, make_device, remote_dir):
        remote = BlockingRemote(remote_dir)
        device = await make_device("laptop", remote_store=remote)
        guard = LifecycleGuard(device.coordinator, timeout=5)

        sync_task = asyncio.create_task(device.coordinator.sync())
        await remote.entered.wait()
        first = asyncio.create_task(guard.handle_shutdown())
        second = asyncio.create_task(guard.handle_shutdown())
        await asyncio.sleep(0.01)
        remote.release.set()

        decisions = await asyncio.gather(first, second)

        assert decisions[0] is decisions[1]
        assert decisions[0].reason == "sync_finished"
        await sync_task
