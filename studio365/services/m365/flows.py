"""OAuth flow orchestration for Microsoft 365.

Three ways to obtain a token set, all ending in an encrypted upsert:

- Delegated, authorization code + PKCE (S256). The verifier travels sealed in
  the transaction cookie. When the studio also stores a client secret it is
  sent with the exchange, as Azure "Web" registrations require.
- Delegated, authorization code with the confidential client secret only.
- App-only, client credentials with ``<resource>/.default``. No refresh token;
  the token is re-acquired from scratch when it expires.

Token exchanges are never retried here. The user restarts the flow instead.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, replace
from typing import Callable

from studio365.core.exceptions import (
    ConfigMissing,
    DecryptionFailed,
    InvalidState,
    NotConnected,
    ProviderDenied,
)

from .identity import MicrosoftIdentityClient
from .schemas import (
    APP_ONLY_USER_ID,
    FLOW_APP_ONLY,
    FLOW_DELEGATED,
    OAuthTransaction,
    TenantM365Config,
    TokenGrant,
    TokenResponse,
)
from .state import (
    ConsumedStateLedger,
    TransactionStateCodec,
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
)
from .store import CredentialStore
from .token_cache import TokenCache

logger = logging.getLogger(__name__)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class AuthorizationRequest:
    authorize_url: str
    state: str
    transaction_token: str
    pkce: bool


@dataclass(frozen=True)
class AuthorizationResult:
    studio_id: str
    user_id: str
    scope: str | None
    expires_at: dt.datetime


class OAuthFlowOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        identity: MicrosoftIdentityClient,
        state_codec: TransactionStateCodec,
        ledger: ConsumedStateLedger,
        token_cache: TokenCache,
        *,
        redirect_uri: str,
        delegated_scopes: list[str],
        graph_resource: str = "https://graph.microsoft.com",
        use_pkce: bool = True,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self.store = store
        self.identity = identity
        self.state_codec = state_codec
        self.ledger = ledger
        self.token_cache = token_cache
        self.redirect_uri = redirect_uri
        self.delegated_scopes = list(delegated_scopes)
        self.graph_resource = graph_resource
        self.use_pkce = use_pkce
        self._now = now

    def client_secret_for(self, config: TenantM365Config, user_id: str) -> str | None:
        """Decrypt the studio's client secret; an undecryptable secret means not connected."""
        try:
            return self.store.decrypt_client_secret(config)
        except DecryptionFailed as e:
            logger.error(
                "M365 client secret cannot be decrypted (master key rotated?) | studio_id=%s reason=%s",
                config.studio_id,
                e.reason,
            )
            raise NotConnected(config.studio_id, user_id, reason="decryption_failed") from e

    def _cache_grant(self, studio_id: str, user_id: str, grant: TokenGrant) -> None:
        ttl = (grant.expires_at - self._now()).total_seconds()
        self.token_cache.set(studio_id, grant.access_token, ttl, user_id=user_id)

    # ------------------------------------------------------------------
    # Delegated: authorization code
    # ------------------------------------------------------------------

    async def start_authorization(
        self,
        studio_id: str,
        user_id: str,
        use_pkce: bool | None = None,
    ) -> AuthorizationRequest:
        """
        Begin the interactive flow for the calling user.

        The tenant gate is checked before anything else, so a disabled studio
        never gets an authorize URL.

        Raises:
            ConfigMissing: no config, or PKCE disabled without a client secret
            ConfigDisabled: integration disabled for the studio
        """
        config = await self.store.require_enabled_config(studio_id)
        pkce = self.use_pkce if use_pkce is None else use_pkce
        if not pkce and not config.has_client_secret:
            if use_pkce is False:
                raise ConfigMissing(studio_id, missing="client_secret")
            # Public client: PKCE is the only way to redeem the code
            pkce = True

        state = generate_state()
        verifier = generate_code_verifier() if pkce else None
        transaction = OAuthTransaction(
            state=state,
            studio_id=studio_id,
            user_id=user_id,
            code_verifier=verifier,
            issued_at=self._now(),
        )
        url = self.identity.authorize_url(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            redirect_uri=self.redirect_uri,
            scopes=self.delegated_scopes,
            state=state,
            code_challenge=code_challenge_s256(verifier) if verifier else None,
        )
        logger.info("M365 authorization started | studio_id=%s user_id=%s pkce=%s", studio_id, user_id, pkce)
        return AuthorizationRequest(
            authorize_url=url,
            state=state,
            transaction_token=self.state_codec.issue(transaction),
            pkce=pkce,
        )

    async def complete_authorization(
        self,
        *,
        code: str | None,
        state: str | None,
        transaction_token: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> AuthorizationResult:
        """
        Finish the interactive flow from the callback query.

        The transaction is consumed before anything else happens, success or not.

        Raises:
            InvalidState: unknown, expired, tampered, or replayed state
            ProviderDenied: the provider returned ``error``
            TokenExchangeFailed: the token endpoint rejected the code
        """
        transaction = self.state_codec.load(transaction_token, state)
        if not self.ledger.consume(transaction.state):
            logger.warning(
                "M365 callback replayed | studio_id=%s user_id=%s", transaction.studio_id, transaction.user_id
            )
            raise InvalidState("already_consumed")

        if error:
            logger.warning(
                "M365 authorization denied by provider | studio_id=%s error=%s description=%s",
                transaction.studio_id,
                error,
                error_description,
            )
            raise ProviderDenied(error, error_description)
        if not code:
            raise InvalidState("missing_code")

        studio_id, user_id = transaction.studio_id, transaction.user_id
        config = await self.store.require_enabled_config(studio_id)
        client_secret = None
        if transaction.code_verifier is None or config.has_client_secret:
            client_secret = self.client_secret_for(config, user_id)
        if transaction.code_verifier is None and not client_secret:
            raise ConfigMissing(studio_id, missing="client_secret")

        response = await self.identity.exchange_code(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            code=code,
            redirect_uri=self.redirect_uri,
            scopes=self.delegated_scopes,
            code_verifier=transaction.code_verifier,
            client_secret=client_secret,
        )
        grant = TokenGrant.from_response(response, self._now(), flow=FLOW_DELEGATED)
        await self.store.upsert_token(studio_id, user_id, grant, reconnect=True)
        self._cache_grant(studio_id, user_id, grant)
        logger.info(
            "M365 account connected | studio_id=%s user_id=%s refresh_token=%s",
            studio_id,
            user_id,
            bool(grant.refresh_token),
        )
        return AuthorizationResult(
            studio_id=studio_id,
            user_id=user_id,
            scope=grant.scope,
            expires_at=grant.expires_at,
        )

    # ------------------------------------------------------------------
    # Refresh (used by the refresh manager)
    # ------------------------------------------------------------------

    async def refresh_delegated(
        self,
        config: TenantM365Config,
        user_id: str,
        refresh_token: str,
    ) -> TokenGrant:
        client_secret = self.client_secret_for(config, user_id) if config.has_client_secret else None
        response: TokenResponse = await self.identity.refresh(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            refresh_token=refresh_token,
            scopes=self.delegated_scopes,
            client_secret=client_secret,
        )
        grant = TokenGrant.from_response(
            response,
            self._now(),
            flow=FLOW_DELEGATED,
            previous_refresh_token=refresh_token,
        )
        await self.store.upsert_token(config.studio_id, user_id, grant)
        self._cache_grant(config.studio_id, user_id, grant)
        return grant

    # ------------------------------------------------------------------
    # App-only: client credentials
    # ------------------------------------------------------------------

    async def acquire_app_only_token(self, studio_id: str) -> str:
        """Request a fresh app-only token, store it under the reserved user and cache it."""
        config = await self.store.require_enabled_config(studio_id)
        client_secret = self.client_secret_for(config, APP_ONLY_USER_ID)
        if not client_secret:
            raise ConfigMissing(studio_id, missing="client_secret")
        response = await self.identity.client_credentials(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=client_secret,
            resource=self.graph_resource,
        )
        # Client-credentials never yields a refresh token
        grant = replace(TokenGrant.from_response(response, self._now(), flow=FLOW_APP_ONLY), refresh_token=None)
        await self.store.upsert_token(studio_id, APP_ONLY_USER_ID, grant)
        self._cache_grant(studio_id, APP_ONLY_USER_ID, grant)
        logger.info("M365 app-only token acquired | studio_id=%s", studio_id)
        return grant.access_token
