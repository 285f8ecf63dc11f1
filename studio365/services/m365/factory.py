"""Factory functions for the Microsoft 365 integration."""
import asyncio
import logging
import weakref

import httpx
from sqlalchemy.orm import Session

from studio365.core.config import settings
from studio365.core.encryption import get_m365_cipher
from studio365.core.kv_store import get_kv_store

from .flows import OAuthFlowOrchestrator
from .graph import GraphClient
from .identity import MicrosoftIdentityClient
from .refresh import TokenRefreshManager
from .service import M365Integration
from .state import ConsumedStateLedger, TransactionStateCodec
from .store import CredentialStore
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

# One cache and one lock table per process
_TOKEN_CACHE = TokenCache(safety_margin_seconds=settings.M365_TOKEN_SAFETY_MARGIN_SECONDS)
_REFRESH_LOCKS: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()


def get_token_cache() -> TokenCache:
    return _TOKEN_CACHE


def create_m365_service(
    db: Session,
    *,
    http_client: httpx.AsyncClient | None = None,
    token_cache: TokenCache | None = None,
) -> M365Integration:
    """
    Wire the integration for one request.

    Args:
        db: Database session
        http_client: Shared client for identity and Graph calls (tests inject a mock transport)
        token_cache: Isolated cache; defaults to the process-wide one

    Returns:
        Configured M365Integration instance
    """
    cipher = get_m365_cipher()
    cache = token_cache if token_cache is not None else _TOKEN_CACHE
    store = CredentialStore(db, cipher)
    identity = MicrosoftIdentityClient(
        authority_host=settings.M365_AUTHORITY_HOST,
        timeout=settings.M365_HTTP_TIMEOUT_SECONDS,
        http_client=http_client,
    )
    flows = OAuthFlowOrchestrator(
        store,
        identity,
        TransactionStateCodec(settings.OAUTH_STATE_SECRET, settings.OAUTH_STATE_TTL_SECONDS, cipher=cipher),
        ConsumedStateLedger(get_kv_store(), settings.OAUTH_STATE_TTL_SECONDS),
        cache,
        redirect_uri=settings.m365_redirect_uri,
        delegated_scopes=settings.M365_DELEGATED_SCOPES,
        graph_resource=settings.M365_GRAPH_RESOURCE,
        use_pkce=settings.M365_USE_PKCE,
    )
    tokens = TokenRefreshManager(
        store,
        flows,
        cache,
        safety_margin_seconds=settings.M365_TOKEN_SAFETY_MARGIN_SECONDS,
        locks=_REFRESH_LOCKS,
    )
    graph = GraphClient(
        tokens,
        base_url=settings.M365_GRAPH_BASE_URL,
        timeout=settings.M365_HTTP_TIMEOUT_SECONDS,
        http_client=http_client,
    )
    return M365Integration(store, flows, tokens, graph, cache)
