"""
Passphrase Vault.

Session-scoped encryption for password-protected secrets (e.g. fiscal drawer
credentials). The key is derived from a user passphrase, never from the
process master key, and lives only in memory.

Security:
- PBKDF2-HMAC-SHA256, 100,000 iterations by default
- 32-byte random salt per vault, stored next to the ciphertexts
- Same envelope format as the master-key cipher (AES-256-GCM)
- Derived key is discarded after an idle window (15 minutes by default);
  the passphrase must be entered again to unlock
"""

import hashlib
import logging
import os
import time
from typing import Callable

from studio365.core.config import settings
from studio365.core.encryption import KEY_LENGTH, EnvelopeCipher
from studio365.core.exceptions import DecryptionFailed, VaultLocked

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
MIN_ITERATIONS = 100_000


def generate_salt() -> str:
    """Return a fresh random salt as hex."""
    return os.urandom(SALT_LENGTH).hex()


def derive_key(passphrase: str, salt: str, iterations: int | None = None) -> bytes:
    """
    Derive a 32-byte key from a passphrase and hex salt.

    Args:
        passphrase: User-supplied passphrase
        salt: Hex-encoded salt (see ``generate_salt``)
        iterations: PBKDF2 rounds; values below 100,000 are rejected

    Returns:
        Raw 32-byte key

    Raises:
        ValueError: If the passphrase is empty, the salt is not hex, or
            iterations are too low
    """
    if not passphrase:
        raise ValueError("Passphrase must not be empty")
    rounds = iterations or settings.VAULT_PBKDF2_ITERATIONS
    if rounds < MIN_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_ITERATIONS}")
    return hashlib.pbkdf2_hmac(
        "sha256",
        passphrase.encode("utf-8"),
        bytes.fromhex(salt),
        rounds,
        dklen=KEY_LENGTH,
    )


def verify_key(key: bytes, test_envelope: str) -> bool:
    """Return True if ``key`` opens ``test_envelope``."""
    try:
        EnvelopeCipher(key).decrypt(test_envelope)
        return True
    except DecryptionFailed:
        return False


class PassphraseVault:
    """
    In-memory holder of a passphrase-derived key with idle auto-lock.

    Every successful encrypt/decrypt counts as activity. Once the idle window
    elapses the key is dropped and all operations raise ``VaultLocked``.
    """

    def __init__(
        self,
        salt: str,
        idle_timeout_seconds: float | None = None,
        iterations: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.salt = salt
        self.idle_timeout_seconds = (
            idle_timeout_seconds if idle_timeout_seconds is not None else settings.VAULT_AUTO_LOCK_SECONDS
        )
        self.iterations = iterations
        self._clock = clock
        self._cipher: EnvelopeCipher | None = None
        self._last_activity: float | None = None

    def unlock(self, passphrase: str, check_envelope: str | None = None) -> None:
        """
        Derive the key and unlock the vault.

        Args:
            passphrase: User passphrase
            check_envelope: Optional envelope known to be sealed with the right
                key; a wrong passphrase raises ``DecryptionFailed`` and the
                vault stays locked
        """
        key = derive_key(passphrase, self.salt, self.iterations)
        if check_envelope is not None and not verify_key(key, check_envelope):
            logger.warning("Vault unlock rejected: passphrase does not open check envelope")
            raise DecryptionFailed("wrong_passphrase")
        self._cipher = EnvelopeCipher(key)
        self._last_activity = self._clock()

    def lock(self) -> None:
        if self._cipher is not None:
            logger.info("Vault locked")
        self._cipher = None
        self._last_activity = None

    def should_auto_lock(self) -> bool:
        if self._last_activity is None:
            return True
        return self._clock() - self._last_activity > self.idle_timeout_seconds

    @property
    def is_unlocked(self) -> bool:
        if self._cipher is not None and self.should_auto_lock():
            logger.info("Vault idle for more than %ss; discarding derived key", self.idle_timeout_seconds)
            self.lock()
        return self._cipher is not None

    def touch(self) -> None:
        """Record activity without performing an operation."""
        if self.is_unlocked:
            self._last_activity = self._clock()

    def _require_cipher(self) -> EnvelopeCipher:
        if not self.is_unlocked:
            raise VaultLocked()
        self._last_activity = self._clock()
        return self._cipher  # type: ignore[return-value]

    def encrypt(self, plaintext: str) -> str:
        return self._require_cipher().encrypt(plaintext)

    def decrypt(self, envelope: str) -> str:
        return self._require_cipher().decrypt(envelope)
