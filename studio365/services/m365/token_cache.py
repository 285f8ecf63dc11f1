"""Process-local cache of decrypted access tokens.

Entries are keyed by ``(studio_id, user_id)``; app-only tokens use the
reserved ``APP_ONLY_USER_ID``. An entry stops being served ``safety_margin``
seconds before the token really expires so a Graph call never starts with a
token that dies mid-flight. For tokens shorter-lived than twice the margin,
the margin is clamped to half the lifetime.

Each worker process holds its own cache. After a configuration change every
process may issue one redundant token request; that is accepted.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from studio365 import metrics

from .schemas import APP_ONLY_USER_ID

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 300


@dataclass(frozen=True)
class CachedAccessToken:
    access_token: str
    expires_at: float
    stale_at: float


class TokenCache:
    def __init__(
        self,
        safety_margin_seconds: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], CachedAccessToken] = {}

    def get(self, studio_id: str, user_id: str = APP_ONLY_USER_ID) -> str | None:
        key = (studio_id, user_id)
        entry = self._entries.get(key)
        if entry is None:
            metrics.cache_miss()
            return None
        if self._clock() >= entry.stale_at:
            self._entries.pop(key, None)
            metrics.cache_miss()
            return None
        metrics.cache_hit()
        return entry.access_token

    def set(
        self,
        studio_id: str,
        access_token: str,
        ttl_seconds: float,
        user_id: str = APP_ONLY_USER_ID,
    ) -> None:
        if ttl_seconds <= 0:
            self._entries.pop((studio_id, user_id), None)
            return
        now = self._clock()
        margin = min(self.safety_margin_seconds, ttl_seconds / 2)
        self._entries[(studio_id, user_id)] = CachedAccessToken(
            access_token=access_token,
            expires_at=now + ttl_seconds,
            stale_at=now + ttl_seconds - margin,
        )

    def invalidate(self, studio_id: str, user_id: str | None = None) -> int:
        """Drop one user's entry, or every entry of the studio when ``user_id`` is None."""
        if user_id is not None:
            removed = 1 if self._entries.pop((studio_id, user_id), None) else 0
        else:
            keys = [key for key in self._entries if key[0] == studio_id]
            for key in keys:
                self._entries.pop(key, None)
            removed = len(keys)
        if removed:
            logger.debug("Token cache invalidated studio_id=%s entries=%d", studio_id, removed)
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        live = sum(1 for entry in self._entries.values() if now < entry.stale_at)
        return {
            "size": len(self._entries),
            "live": live,
            "studios": sorted({studio_id for studio_id, _ in self._entries}),
            "safety_margin_seconds": self.safety_margin_seconds,
        }
