"""Token refresh manager.

``get_valid_access_token`` is the single entry point for every Graph-calling
path: cache, then stored token, then refresh (delegated) or re-acquisition
(app-only). A failed refresh leaves the stored row untouched; the user is
asked to reconnect and the row stays as a diagnostic trail until disconnect.

Concurrent refreshes of the same (studio, user) are harmless because the
store upsert is last-write-wins. The per-key lock only avoids the duplicate
token endpoint call inside one process.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
import weakref
from typing import Callable, MutableMapping

from studio365.core.exceptions import DecryptionFailed, NotConnected, ReauthorizationRequired

from .flows import OAuthFlowOrchestrator, utcnow
from .schemas import APP_ONLY_USER_ID, UserTokenRecord
from .store import CredentialStore
from .token_cache import TokenCache

logger = logging.getLogger(__name__)


class TokenRefreshManager:
    def __init__(
        self,
        store: CredentialStore,
        flows: OAuthFlowOrchestrator,
        token_cache: TokenCache,
        *,
        safety_margin_seconds: float = 300,
        locks: MutableMapping[tuple[str, str], asyncio.Lock] | None = None,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self.store = store
        self.flows = flows
        self.token_cache = token_cache
        self.safety_margin = dt.timedelta(seconds=safety_margin_seconds)
        self._locks = locks if locks is not None else weakref.WeakValueDictionary()
        self._now = now

    def _lock_for(self, studio_id: str, user_id: str) -> asyncio.Lock:
        # Weakly held: a lock lives only while some coroutine holds or awaits it
        key = (studio_id, user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _decrypt(self, record: UserTokenRecord, refresh: bool = False) -> str | None:
        try:
            if refresh:
                return self.store.decrypt_refresh_token(record)
            return self.store.decrypt_access_token(record)
        except DecryptionFailed as e:
            logger.error(
                "Stored M365 token cannot be decrypted (master key rotated?) | studio_id=%s user_id=%s reason=%s",
                record.studio_id,
                record.user_id,
                e.reason,
            )
            raise NotConnected(record.studio_id, record.user_id, reason="decryption_failed") from e

    async def _load_connected(self, studio_id: str, user_id: str) -> UserTokenRecord | None:
        """Return the usable record; None only for a missing app-only record."""
        await self.store.require_enabled_config(studio_id)
        record = await self.store.get_token(studio_id, user_id)
        if record is None:
            if user_id == APP_ONLY_USER_ID:
                return None
            raise NotConnected(studio_id, user_id)
        if not record.is_connected:
            raise NotConnected(studio_id, user_id, reason="revoked")
        return record

    async def _renew(self, record: UserTokenRecord) -> str:
        refresh_token = self._decrypt(record, refresh=True)
        if not refresh_token:
            if record.is_app_only:
                return await self.flows.acquire_app_only_token(record.studio_id)
            logger.info(
                "M365 access token expired without refresh token | studio_id=%s user_id=%s",
                record.studio_id,
                record.user_id,
            )
            raise ReauthorizationRequired(record.studio_id, record.user_id)
        config = await self.store.require_enabled_config(record.studio_id)
        grant = await self.flows.refresh_delegated(config, record.user_id, refresh_token)
        logger.info(
            "M365 token refreshed | studio_id=%s user_id=%s rotated=%s",
            record.studio_id,
            record.user_id,
            grant.refresh_token != refresh_token,
        )
        return grant.access_token

    async def get_valid_access_token(self, studio_id: str, user_id: str = APP_ONLY_USER_ID) -> str:
        """
        Return a usable access token, refreshing if needed.

        Raises:
            ConfigMissing / ConfigDisabled: studio gate
            NotConnected: no row, revoked row, or undecryptable row
            ReauthorizationRequired: delegated token expired with no refresh token
            RefreshFailed: refresh grant rejected; the stored row is kept
        """
        cached = self.token_cache.get(studio_id, user_id)
        if cached:
            return cached
        async with self._lock_for(studio_id, user_id):
            # Another coroutine may have refreshed while we waited
            cached = self.token_cache.get(studio_id, user_id)
            if cached:
                return cached
            record = await self._load_connected(studio_id, user_id)
            if record is None:
                return await self.flows.acquire_app_only_token(studio_id)
            remaining = record.expires_at - self._now()
            if remaining > self.safety_margin:
                access_token = self._decrypt(record)
                self.token_cache.set(studio_id, access_token, remaining.total_seconds(), user_id=user_id)  # type: ignore[arg-type]
                return access_token  # type: ignore[return-value]
            return await self._renew(record)

    async def force_refresh(self, studio_id: str, user_id: str = APP_ONLY_USER_ID) -> str:
        """Bypass cache and expiry checks and obtain a new access token."""
        self.token_cache.invalidate(studio_id, user_id)
        async with self._lock_for(studio_id, user_id):
            record = await self._load_connected(studio_id, user_id)
            if record is None:
                return await self.flows.acquire_app_only_token(studio_id)
            return await self._renew(record)
