"""Microsoft 365 integration.

Token lifecycle for delegated and app-only Microsoft identity platform
credentials, with secrets sealed at rest.

Layers (leaves first):
- store: encrypted config and token rows
- token_cache: process-local access token cache
- identity / state / flows: OAuth grants and the interactive flow
- refresh: "give me a valid access token"
- graph: Graph calls with one forced-refresh retry
"""
from .factory import create_m365_service, get_token_cache
from .flows import AuthorizationRequest, AuthorizationResult, OAuthFlowOrchestrator
from .graph import GraphClient, GraphPage, GraphResponse
from .identity import MicrosoftIdentityClient
from .refresh import TokenRefreshManager
from .schemas import APP_ONLY_USER_ID, TenantM365Config, TokenGrant, UserTokenRecord
from .service import M365Integration
from .store import CredentialStore
from .token_cache import TokenCache

__all__ = [
    # Records
    "APP_ONLY_USER_ID",
    "TenantM365Config",
    "TokenGrant",
    "UserTokenRecord",
    # Components
    "CredentialStore",
    "TokenCache",
    "MicrosoftIdentityClient",
    "OAuthFlowOrchestrator",
    "AuthorizationRequest",
    "AuthorizationResult",
    "TokenRefreshManager",
    "GraphClient",
    "GraphPage",
    "GraphResponse",
    # Service
    "M365Integration",
    # Factory
    "create_m365_service",
    "get_token_cache",
]
