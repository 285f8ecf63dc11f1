"""OAuth transaction state.

The in-flight authorization attempt travels in one short-lived, signed,
httpOnly cookie (HS256 JWT). The PKCE verifier inside it is additionally
sealed with the master cipher. Single use is enforced by recording each
consumed state in a key-value ledger until the cookie would have expired.
"""
from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable

import jwt

from studio365.core.encryption import EnvelopeCipher
from studio365.core.exceptions import DecryptionFailed, InvalidState
from studio365.core.kv_store import BaseKeyValueStore

from .schemas import OAuthTransaction

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
AUDIENCE = "m365-oauth-state"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """32 random bytes, base64url."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """43-char base64url verifier (RFC 7636)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge_s256(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


class TransactionStateCodec:
    """Issues and verifies the signed transaction cookie."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        cipher: EnvelopeCipher | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._cipher = cipher
        self._clock = clock

    def issue(self, transaction: OAuthTransaction) -> str:
        issued_at = int(transaction.issued_at.timestamp())
        verifier = transaction.code_verifier
        if verifier and self._cipher is not None:
            verifier = self._cipher.encrypt(verifier)
        payload = {
            "aud": AUDIENCE,
            "state": transaction.state,
            "sid": transaction.studio_id,
            "uid": transaction.user_id,
            "cv": verifier,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def load(self, token: str | None, state: str | None) -> OAuthTransaction:
        """
        Verify the cookie and bind it to the ``state`` echoed on the callback.

        Raises:
            InvalidState: cookie missing, tampered, expired, or not matching ``state``
        """
        if not token:
            raise InvalidState("missing_transaction")
        if not state:
            raise InvalidState("missing_state")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=AUDIENCE,
                options={"verify_exp": False, "require": ["exp", "iat", "state"]},
            )
        except jwt.InvalidTokenError as e:
            logger.warning("OAuth state cookie rejected: %s", e.__class__.__name__)
            raise InvalidState("tampered") from e
        if self._clock() >= float(payload["exp"]):
            raise InvalidState("expired")
        if not hmac.compare_digest(str(payload["state"]), state):
            raise InvalidState("state_mismatch")
        verifier = payload.get("cv")
        if verifier and self._cipher is not None:
            try:
                verifier = self._cipher.decrypt(verifier)
            except DecryptionFailed as e:
                raise InvalidState("tampered") from e
        return OAuthTransaction(
            state=payload["state"],
            studio_id=str(payload["sid"]),
            user_id=str(payload["uid"]),
            code_verifier=verifier,
            issued_at=dt.datetime.fromtimestamp(int(payload["iat"]), tz=dt.timezone.utc),
        )


class ConsumedStateLedger:
    """Remembers consumed states so a cookie cannot be replayed."""

    KEY_PREFIX = "m365:oauth_state:"

    def __init__(self, store: BaseKeyValueStore, ttl_seconds: int = 600):
        self._store = store
        self.ttl_seconds = ttl_seconds

    def _key(self, state: str) -> str:
        return self.KEY_PREFIX + hashlib.sha256(state.encode("utf-8")).hexdigest()

    def consume(self, state: str) -> bool:
        """Mark ``state`` used. Returns False when it was already consumed."""
        return self._store.add(self._key(state), "1", self.ttl_seconds)

    def is_consumed(self, state: str) -> bool:
        return self._store.get(self._key(state)) is not None
