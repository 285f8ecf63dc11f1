"""Microsoft 365 integration service.

Responsibilities:
- Connect / callback / status / disconnect for the calling user
- Studio configuration (admin), with cache invalidation on every save
- Diagnostics: app-only connection test, Teams listing, secret decryptability

Routes talk to this facade only; flows, refresh and Graph stay internal.
"""
from __future__ import annotations

import logging
from typing import Any

from studio365.core.audit import log_audit_event, log_failure
from studio365.core.encryption import is_encrypted
from studio365.core.exceptions import ConfigMissing, DecryptionFailed, Studio365Exception

from .flows import AuthorizationRequest, AuthorizationResult, OAuthFlowOrchestrator
from .graph import GraphClient, GraphPage
from .refresh import TokenRefreshManager
from .schemas import APP_ONLY_USER_ID, TenantM365Config, UserTokenRecord
from .store import CredentialStore
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

TEAMS_FILTER = "resourceProvisioningOptions/Any(x:x eq 'Team')"


class M365Integration:
    def __init__(
        self,
        store: CredentialStore,
        flows: OAuthFlowOrchestrator,
        tokens: TokenRefreshManager,
        graph: GraphClient,
        token_cache: TokenCache,
    ):
        self.store = store
        self.flows = flows
        self.tokens = tokens
        self.graph = graph
        self.token_cache = token_cache

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def start_connect(self, studio_id: str, user_id: str) -> AuthorizationRequest:
        try:
            request = await self.flows.start_authorization(studio_id, user_id)
        except Studio365Exception as e:
            log_failure("m365.connect.start", user_id=user_id, studio_id=studio_id, error=e.code)
            raise
        log_audit_event("m365.connect.start", user_id=user_id, studio_id=studio_id, pkce=request.pkce)
        return request

    async def complete_connect(
        self,
        *,
        code: str | None,
        state: str | None,
        transaction_token: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> AuthorizationResult:
        try:
            result = await self.flows.complete_authorization(
                code=code,
                state=state,
                transaction_token=transaction_token,
                error=error,
                error_description=error_description,
            )
        except Studio365Exception as e:
            log_failure("m365.connect.callback", error=e.code)
            raise
        log_audit_event("m365.connect.callback", user_id=result.user_id, studio_id=result.studio_id)
        return result

    async def status(self, studio_id: str, user_id: str) -> dict[str, Any]:
        record: UserTokenRecord | None = await self.store.get_token(studio_id, user_id)
        if record is None or not record.is_connected:
            return {"connected": False, "connected_at": None, "scopes": None}
        return {"connected": True, "connected_at": record.connected_at, "scopes": record.scopes}

    async def disconnect(self, studio_id: str, user_id: str, purge: bool = False) -> bool:
        """Revoke (or delete, with ``purge``) the user's tokens. Always succeeds."""
        if purge:
            changed = await self.store.delete_token(studio_id, user_id)
        else:
            changed = await self.store.revoke_token(studio_id, user_id)
        self.token_cache.invalidate(studio_id, user_id)
        log_audit_event(
            "m365.disconnect", user_id=user_id, studio_id=studio_id, purge=purge, changed=changed
        )
        return changed

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_config(self, studio_id: str) -> TenantM365Config:
        config = await self.store.get_config(studio_id)
        if config is None:
            raise ConfigMissing(studio_id)
        return config

    async def save_config(self, studio_id: str, actor_id: str, **fields: Any) -> TenantM365Config:
        config = await self.store.save_config(studio_id, **fields)
        # Tokens issued under the previous secret or tenant must not outlive it
        dropped = self.token_cache.invalidate(studio_id)
        log_audit_event(
            "m365.config.save",
            user_id=actor_id,
            studio_id=studio_id,
            enabled=config.enabled,
            secret_rotated=bool(fields.get("client_secret")),
            cache_entries_dropped=dropped,
        )
        return config

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def test_connection(self, studio_id: str) -> dict[str, Any]:
        """Acquire a fresh app-only token and read the organisation name."""
        config = await self.store.require_enabled_config(studio_id)
        self.token_cache.invalidate(studio_id, APP_ONLY_USER_ID)
        await self.flows.acquire_app_only_token(studio_id)
        response = await self.graph.request(studio_id, "GET", "/organization")
        organizations = (response.data or {}).get("value") or []
        name = organizations[0].get("displayName") if organizations else None
        logger.info("M365 connection test OK | studio_id=%s organization=%s", studio_id, name)
        return {"ok": True, "organization": name, "tenant_id": config.tenant_id}

    async def test_delegated(self, studio_id: str, user_id: str) -> dict[str, Any]:
        """Call Graph /me with the user's own delegated token."""
        response = await self.graph.request(
            studio_id,
            "GET",
            "/me",
            user_id=user_id,
            params={"$select": "displayName,mail,userPrincipalName"},
        )
        me = response.data or {}
        logger.info("M365 delegated test OK | studio_id=%s user_id=%s", studio_id, user_id)
        return {
            "ok": True,
            "display_name": me.get("displayName"),
            "mail": me.get("mail") or me.get("userPrincipalName"),
        }

    async def list_teams(self, studio_id: str, next_link: str | None = None) -> GraphPage:
        if next_link:
            return await self.graph.get_page(studio_id, next_link)
        return await self.graph.get_page(
            studio_id,
            "/groups",
            params={"$filter": TEAMS_FILTER, "$select": "id,displayName,description"},
        )

    async def diagnose_decrypt(self, studio_id: str) -> dict[str, Any]:
        """Report whether the stored client secret opens under the current master key."""
        config = await self.get_config(studio_id)
        if not config.client_secret_ciphertext:
            return {"has_client_secret": False, "is_encrypted": False, "decrypts": False, "reason": "no_secret"}
        sealed = is_encrypted(config.client_secret_ciphertext)
        try:
            self.store.decrypt_client_secret(config)
        except DecryptionFailed as e:
            logger.error("M365 client secret diagnosis failed | studio_id=%s reason=%s", studio_id, e.reason)
            return {"has_client_secret": True, "is_encrypted": sealed, "decrypts": False, "reason": e.reason}
        return {"has_client_secret": True, "is_encrypted": sealed, "decrypts": True, "reason": None}
