"""AES-256-GCM envelope encryption for secrets at rest.

Envelope format (lowercase hex, colon separated)::

    <nonce 16 bytes>:<auth tag 16 bytes>:<ciphertext>

The format is shared with rows written before the Python service existed, so
``is_encrypted`` can tell legacy plaintext values from sealed ones.

The process-wide master key comes from ``ENCRYPTION_KEY_M365`` (64 hex chars).
A missing or malformed key raises ``EncryptionKeyError`` at first use; it is a
deployment error, never retried.
"""
from __future__ import annotations

import logging
import os
import string
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from studio365.core.config import settings
from studio365.core.exceptions import DecryptionFailed, EncryptionKeyError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits
NONCE_LENGTH = 16  # 128 bits
TAG_LENGTH = 16  # 128 bits

_HEX_DIGITS = frozenset(string.hexdigits.lower())


def _is_hex(value: str) -> bool:
    return bool(value) and set(value) <= _HEX_DIGITS


class EnvelopeCipher:
    """Authenticated encryption bound to a single 256-bit key.

    Instances are cheap; build one per key domain (master key, vault key)
    and never share key material between domains.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise EncryptionKeyError("encryption_key", f"expected {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str | None, parameter: str = "ENCRYPTION_KEY_M365") -> EnvelopeCipher:
        """Build a cipher from a 64-char hex key, failing fast on bad material."""
        if not hex_key:
            raise EncryptionKeyError(parameter, "not set; generate one with `openssl rand -hex 32`")
        try:
            key = bytes.fromhex(hex_key.strip())
        except ValueError as exc:
            raise EncryptionKeyError(parameter, "not a hex string") from exc
        if len(key) != KEY_LENGTH:
            raise EncryptionKeyError(
                parameter,
                f"must be {KEY_LENGTH * 2} hex characters ({KEY_LENGTH} bytes), got {len(key)} bytes",
            )
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """Seal ``plaintext`` with a fresh random nonce and return the envelope."""
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the 16-byte tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        """Open an envelope.

        Raises:
            DecryptionFailed: malformed envelope, bad tag, or wrong key.
        """
        if not isinstance(envelope, str):
            raise DecryptionFailed("not_a_string")
        parts = envelope.split(":")
        if len(parts) != 3:
            raise DecryptionFailed("malformed_envelope")
        nonce_hex, tag_hex, ciphertext_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as exc:
            raise DecryptionFailed("malformed_envelope") from exc
        if len(nonce) != NONCE_LENGTH:
            raise DecryptionFailed("invalid_nonce_length")
        if len(tag) != TAG_LENGTH:
            raise DecryptionFailed("invalid_tag_length")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionFailed("authentication_failed") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailed("invalid_plaintext") from exc


def is_encrypted(value: str | None) -> bool:
    """Return True when ``value`` is a well-formed envelope.

    Used to tell legacy plaintext rows from sealed ones during migration.
    """
    if not value:
        return False
    parts = value.split(":")
    if len(parts) != 3:
        return False
    nonce_hex, tag_hex, ciphertext_hex = parts
    return (
        len(nonce_hex) == NONCE_LENGTH * 2
        and len(tag_hex) == TAG_LENGTH * 2
        and _is_hex(nonce_hex)
        and _is_hex(tag_hex)
        and (ciphertext_hex == "" or _is_hex(ciphertext_hex))
    )


def generate_encryption_key() -> str:
    """Return a new random 256-bit key as 64 hex characters."""
    return os.urandom(KEY_LENGTH).hex()


def validate_encryption_key(key: str | None) -> bool:
    """Check that ``key`` is 64 hex characters."""
    if not key:
        return False
    try:
        return len(bytes.fromhex(key)) == KEY_LENGTH
    except ValueError:
        return False


@lru_cache
def get_m365_cipher() -> EnvelopeCipher:
    """Process-wide cipher for Microsoft 365 secrets, built on first use."""
    cipher = EnvelopeCipher.from_hex(settings.ENCRYPTION_KEY_M365)
    logger.info("M365 master encryption key loaded")
    return cipher
