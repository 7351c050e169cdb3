"""Tests for the encryption envelope and session encryption state."""

import base64

import pytest

from notesync.core.encryption import (
    ALGORITHM,
    ENVELOPE_VERSION,
    KDF_NAME,
    EncryptionEnvelope,
    EncryptionState,
    derive_key,
    derive_salt,
    generate_salt,
    validate_passphrase,
)
from notesync.core.errors import DecryptionFailed
from tests.conftest import TEST_ITERATIONS, make_note, make_snapshot

PASSPHRASE = "correct horse battery"


@pytest.fixture
def payload():
    return make_snapshot(notes=[make_note("n1", content="secret plans ✓")])


class TestEnvelope:
    def test_round_trip(self, payload):
        envelope = EncryptionEnvelope.encrypt(payload, PASSPHRASE, iterations=TEST_ITERATIONS)

        assert EncryptionEnvelope.decrypt(envelope, PASSPHRASE) == payload

    def test_envelope_fields(self, payload):
        envelope = EncryptionEnvelope.encrypt(payload, PASSPHRASE, iterations=TEST_ITERATIONS)

        assert envelope["v"] == ENVELOPE_VERSION
        assert envelope["alg"] == ALGORITHM
        assert envelope["kdf"] == KDF_NAME
        assert envelope["iter"] == TEST_ITERATIONS
        assert len(base64.b64decode(envelope["salt"])) == 16
        assert len(base64.b64decode(envelope["iv"])) == 12
        assert len(base64.b64decode(envelope["tag"])) == 16
        assert "secret plans" not in str(envelope)

    def test_fresh_iv_per_encryption(self, payload):
        salt = generate_salt()
        first = EncryptionEnvelope.encrypt(payload, PASSPHRASE, salt_b64=salt, iterations=TEST_ITERATIONS)
        second = EncryptionEnvelope.encrypt(payload, PASSPHRASE, salt_b64=salt, iterations=TEST_ITERATIONS)

        assert first["salt"] == second["salt"] == salt
        assert first["iv"] != second["iv"]
        assert first["ct"] != second["ct"]

    def test_wrong_passphrase(self, payload):
        envelope = EncryptionEnvelope.encrypt(payload, PASSPHRASE, iterations=TEST_ITERATIONS)

        with pytest.raises(DecryptionFailed):
            EncryptionEnvelope.decrypt(envelope, "not the passphrase")

    def test_tampered_ciphertext(self, payload):
        envelope = EncryptionEnvelope.encrypt(payload, PASSPHRASE, iterations=TEST_ITERATIONS)
        ciphertext = bytearray(base64.b64decode(envelope["ct"]))
        ciphertext[0] ^= 0x01
        envelope["ct"] = base64.b64encode(bytes(ciphertext)).decode("ascii")

        with pytest.raises(DecryptionFailed):
            EncryptionEnvelope.decrypt(envelope, PASSPHRASE)

    def test_corrupted_base64(self, payload):
        envelope = EncryptionEnvelope.encrypt(payload, PASSPHRASE, iterations=TEST_ITERATIONS)
        envelope["iv"] = "***"

        with pytest.raises(DecryptionFailed):
            EncryptionEnvelope.decrypt(envelope, PASSPHRASE)

    def test_plain_snapshot_is_not_an_envelope(self, payload):
        assert not EncryptionEnvelope.is_envelope(payload)
        assert not EncryptionEnvelope.is_envelope({"v": 2, "alg": ALGORITHM, "ct": "x", "tag": "y"})
        assert not EncryptionEnvelope.is_envelope("string")

        with pytest.raises(DecryptionFailed):
            EncryptionEnvelope.decrypt(payload, PASSPHRASE)

    async def test_async_round_trip(self, payload):
        envelope = await EncryptionEnvelope.encrypt_async(payload, PASSPHRASE, iterations=TEST_ITERATIONS)

        assert await EncryptionEnvelope.decrypt_async(envelope, PASSPHRASE) == payload


class TestKeyDerivation:
    def test_derive_key_length(self):
        assert len(derive_key(PASSPHRASE, b"0123456789abcdef", TEST_ITERATIONS)) == 32

    def test_derive_key_requires_inputs(self):
        with pytest.raises(ValueError):
            derive_key("", b"salt")

    def test_derived_salt_is_deterministic(self):
        assert derive_salt(PASSPHRASE) == derive_salt(PASSPHRASE)
        assert derive_salt(PASSPHRASE) != derive_salt("another passphrase")
        assert len(base64.b64decode(derive_salt(PASSPHRASE))) == 16

    def test_validate_passphrase(self):
        assert validate_passphrase(PASSPHRASE) == []
        assert validate_passphrase("short")
        assert validate_passphrase(None)


class TestEncryptionState:
    def test_set_passphrase_enables_and_derives_salt(self):
        state = EncryptionState()
        state.set_passphrase(PASSPHRASE)

        assert state.enabled
        assert state.passphrase == PASSPHRASE
        assert state.settings.salt == derive_salt(PASSPHRASE)

    def test_persisted_salt_is_kept(self):
        state = EncryptionState()
        state.load(enabled=True, salt="c2FsdHNhbHRzYWx0c2FsdA==", iterations=TEST_ITERATIONS)
        state.set_passphrase(PASSPHRASE)

        assert state.settings.salt == "c2FsdHNhbHRzYWx0c2FsdA=="
        assert state.settings.iterations == TEST_ITERATIONS

    def test_short_passphrase_rejected(self):
        state = EncryptionState()

        with pytest.raises(ValueError):
            state.set_passphrase("short")
        assert not state.enabled

    def test_clear(self):
        state = EncryptionState()
        state.set_passphrase(PASSPHRASE)

        state.clear()
        assert state.enabled
        assert state.passphrase is None

        state.clear(disable=True)
        assert not state.enabled

    def test_status_never_contains_passphrase(self):
        state = EncryptionState()
        state.set_passphrase(PASSPHRASE)

        status = state.status()
        assert status == {
            "enabled": True,
            "has_passphrase": True,
            "has_salt": True,
            "iterations": state.settings.iterations,
        }
        assert PASSPHRASE not in str(status)
