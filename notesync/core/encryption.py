"""End-to-end encryption for sync payloads.

Uses AES-256-GCM with PBKDF2-HMAC-SHA256 key derivation. The envelope is a
small JSON object that carries everything needed to decrypt it except the
passphrase:

    {"v": 1, "alg": "AES-256-GCM", "kdf": "PBKDF2-SHA256",
     "iter": 210000, "salt": "...", "iv": "...", "ct": "...", "tag": "..."}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

from Cryptodome.Cipher import AES
from Cryptodome.Hash import SHA256
from Cryptodome.Protocol.KDF import PBKDF2
from Cryptodome.Random import get_random_bytes

from notesync.core.errors import DecryptionFailed, FatalInput

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
ALGORITHM = "AES-256-GCM"
KDF_NAME = "PBKDF2-SHA256"
DEFAULT_ITERATIONS = 210_000
KEY_SIZE = 32
IV_SIZE = 12
SALT_SIZE = 16
MIN_PASSPHRASE_LENGTH = 8

_SALT_DERIVATION_KEY = b"NoteSync-Salt-Derivation-Key"


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive a 256-bit key from a passphrase."""
    if not passphrase or not salt:
        raise ValueError("Passphrase and salt are required")
    return PBKDF2(
        passphrase.encode("utf-8"),
        salt,
        dkLen=KEY_SIZE,
        count=iterations,
        hmac_hash_module=SHA256,
    )


def derive_salt(passphrase: str) -> str:
    """Derive a deterministic salt from the passphrase.

    Devices that only share the passphrase end up with the same salt, so a
    second device can decrypt without copying settings around.
    """
    if not passphrase:
        raise ValueError("Passphrase is required to derive salt")
    salt = PBKDF2(
        passphrase.encode("utf-8"),
        _SALT_DERIVATION_KEY,
        dkLen=SALT_SIZE,
        count=1,
        hmac_hash_module=SHA256,
    )
    return _b64encode(salt)


def generate_salt() -> str:
    """Generate a random base64 salt."""
    return _b64encode(get_random_bytes(SALT_SIZE))


def validate_passphrase(passphrase: str | None) -> list[str]:
    """Return a list of validation errors (empty when valid)."""
    errors = []
    if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        errors.append(f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters long")
    return errors


class EncryptionEnvelope:
    """Encrypt and decrypt JSON payloads into self-describing envelopes."""

    @staticmethod
    def encrypt(
        payload: Any,
        passphrase: str,
        *,
        salt_b64: str | None = None,
        iterations: int | None = None,
    ) -> dict[str, Any]:
        if payload is None or not passphrase:
            raise ValueError("Payload and passphrase are required")

        try:
            plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise FatalInput(f"Payload is not serializable: {exc}") from exc

        salt = _b64decode(salt_b64) if salt_b64 else get_random_bytes(SALT_SIZE)
        iterations = iterations or DEFAULT_ITERATIONS
        iv = get_random_bytes(IV_SIZE)

        key = derive_key(passphrase, salt, iterations)
        cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)

        return {
            "v": ENVELOPE_VERSION,
            "alg": ALGORITHM,
            "kdf": KDF_NAME,
            "iter": iterations,
            "salt": _b64encode(salt),
            "iv": _b64encode(iv),
            "ct": _b64encode(ciphertext),
            "tag": _b64encode(tag),
        }

    @staticmethod
    def decrypt(envelope: dict[str, Any], passphrase: str) -> Any:
        """Decrypt an envelope.

        Raises:
            DecryptionFailed: wrong passphrase, corrupted data or an envelope
                this engine cannot read. The causes are not distinguished.
        """
        if not EncryptionEnvelope.is_envelope(envelope) or not passphrase:
            raise DecryptionFailed()

        try:
            salt = _b64decode(envelope["salt"])
            iv = _b64decode(envelope["iv"])
            tag = _b64decode(envelope["tag"])
            ciphertext = _b64decode(envelope["ct"])
            iterations = int(envelope.get("iter") or DEFAULT_ITERATIONS)

            key = derive_key(passphrase, salt, iterations)
            cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
            return json.loads(plaintext.decode("utf-8"))
        except (ValueError, KeyError, TypeError, binascii.Error, UnicodeDecodeError) as exc:
            logger.debug("Envelope decryption failed: %s", type(exc).__name__)
            raise DecryptionFailed() from None

    @staticmethod
    def is_envelope(blob: Any) -> bool:
        """Return True if ``blob`` is one of our encryption envelopes."""
        return (
            isinstance(blob, dict)
            and blob.get("v") == ENVELOPE_VERSION
            and blob.get("alg") == ALGORITHM
            and bool(blob.get("ct"))
            and bool(blob.get("tag"))
        )

    @staticmethod
    async def encrypt_async(payload: Any, passphrase: str, **kwargs: Any) -> dict[str, Any]:
        """Encrypt in a worker thread; key derivation is CPU bound."""
        return await asyncio.to_thread(EncryptionEnvelope.encrypt, payload, passphrase, **kwargs)

    @staticmethod
    async def decrypt_async(envelope: dict[str, Any], passphrase: str) -> Any:
        return await asyncio.to_thread(EncryptionEnvelope.decrypt, envelope, passphrase)


@dataclass
class EncryptionSettings:
    """Encryption settings. ``passphrase`` lives in memory only."""

    enabled: bool = False
    passphrase: str | None = None
    salt: str | None = None
    iterations: int = DEFAULT_ITERATIONS

    @property
    def has_passphrase(self) -> bool:
        return bool(self.passphrase)


class EncryptionState:
    """Process-wide encryption state with an explicit load/clear lifecycle."""

    def __init__(self):
        self._settings = EncryptionSettings()

    @property
    def settings(self) -> EncryptionSettings:
        return self._settings

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def passphrase(self) -> str | None:
        return self._settings.passphrase

    def load(self, *, enabled: bool, salt: str | None, iterations: int | None = None) -> None:
        """Load persisted (non-secret) settings, keeping any session passphrase."""
        self._settings.enabled = enabled
        self._settings.salt = salt or self._settings.salt
        self._settings.iterations = iterations or self._settings.iterations
        logger.debug(
            "Encryption settings loaded (enabled=%s, has_salt=%s)",
            enabled,
            bool(self._settings.salt),
        )

    def set_passphrase(self, passphrase: str, *, enable: bool = True) -> EncryptionSettings:
        """Set the session passphrase, deriving a salt when none is known."""
        errors = validate_passphrase(passphrase)
        if errors:
            raise ValueError("; ".join(errors))
        self._settings.passphrase = passphrase
        if not self._settings.salt:
            self._settings.salt = derive_salt(passphrase)
        if enable:
            self._settings.enabled = True
        logger.info("Encryption passphrase set for this session")
        return self._settings

    def clear(self, *, disable: bool = False) -> None:
        """Forget the passphrase (app restart, remote disconnect)."""
        self._settings.passphrase = None
        if disable:
            self._settings.enabled = False
        logger.info("Encryption passphrase cleared")

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._settings.enabled,
            "has_passphrase": self._settings.has_passphrase,
            "has_salt": bool(self._settings.salt),
            "iterations": self._settings.iterations,
        }


_state: EncryptionState | None = None


def get_encryption_state() -> EncryptionState:
    """Get the global encryption state instance."""
    global _state
    if _state is None:
        _state = EncryptionState()
    return _state
