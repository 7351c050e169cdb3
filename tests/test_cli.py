"""Tests for the Typer CLI."""

import keyring
import pytest
from typer.testing import CliRunner

from notesync.cli.main import app

runner = CliRunner()


@pytest.fixture
def fake_keyring(monkeypatch):
    passwords = {}
    monkeypatch.setattr(keyring, "set_password", lambda service, key, value: passwords.__setitem__((service, key), value))
    monkeypatch.setattr(keyring, "get_password", lambda service, key: passwords.get((service, key)))

    def delete_password(service, key):
        if passwords.pop((service, key), None) is None:
            raise keyring.errors.PasswordDeleteError("not found")

    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return passwords


class TestInfoCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "NoteSync Version Information" in result.output

    def test_config_show(self):
        result = runner.invoke(app, ["config", "--show"])

        assert result.exit_code == 0
        assert "NoteSync Configuration" in result.output

    def test_config_init(self, tmp_path):
        result = runner.invoke(app, ["config", "--init"])

        assert result.exit_code == 0
        assert (tmp_path / "data" / "config.toml").exists()


class TestSyncCommands:
    def test_sync_then_status(self):
        synced = runner.invoke(app, ["sync"])
        assert synced.exit_code == 0, synced.output
        assert "Sync finished" in synced.output

        status = runner.invoke(app, ["status"])
        assert status.exit_code == 0
        assert "NoteSync Status" in status.output

    def test_download_without_remote_fails(self):
        result = runner.invoke(app, ["download"])

        assert result.exit_code == 1

    def test_unknown_strategy(self):
        result = runner.invoke(app, ["sync", "--strategy", "yolo"])

        assert result.exit_code == 1
        assert "Unknown strategy" in result.output

    def test_reset(self, tmp_path):
        runner.invoke(app, ["sync"])

        result = runner.invoke(app, ["reset", "--yes"])

        assert result.exit_code == 0
        assert not (tmp_path / "data" / "remote" / "notesync_snapshot.json").exists()

    def test_reset_cancelled(self):
        result = runner.invoke(app, ["reset"], input="n\n")

        assert result.exit_code == 0
        assert "Reset cancelled" in result.output

    def test_media(self):
        result = runner.invoke(app, ["media"])

        assert result.exit_code == 0


class TestRemoteCommands:
    def test_set_and_delete_password(self, fake_keyring):
        stored = runner.invoke(app, ["remote", "set-password", "-u", "alice"], input="hunter22\nhunter22\n")

        assert stored.exit_code == 0
        assert fake_keyring == {("NoteSync", "webdav:alice"): "hunter22"}

        deleted = runner.invoke(app, ["remote", "delete-password", "-u", "alice", "--yes"])
        assert deleted.exit_code == 0
        assert fake_keyring == {}

    def test_mismatched_passwords(self, fake_keyring):
        result = runner.invoke(app, ["remote", "set-password", "-u", "alice"], input="one\ntwo\n")

        assert result.exit_code == 1
        assert fake_keyring == {}

    def test_username_required(self):
        result = runner.invoke(app, ["remote", "set-password"])

        assert result.exit_code == 1
