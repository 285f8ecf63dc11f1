"""HTTP client for the Microsoft identity platform (v2.0 endpoints).

Builds authorize URLs and performs token endpoint requests for the
authorization-code, refresh-token and client-credentials grants. Every
response is validated against ``TokenResponse``; anything else becomes
``TokenExchangeFailed`` (or ``RefreshFailed`` for the refresh grant).

No retries: an authorization code is single-use at the provider, and the
refresh path is retried by the caller at most once.
"""
import hashlib
import logging
import time
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from studio365 import metrics
from studio365.core.exceptions import RefreshFailed, TokenExchangeFailed

from .schemas import ProviderErrorResponse, TokenResponse

logger = logging.getLogger(__name__)


def fingerprint(value: str) -> str:
    """Short, stable, non-reversible tag for correlating secrets in logs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


class MicrosoftIdentityClient:
    """
    Token endpoint client for one authority host.

    An ``httpx.AsyncClient`` may be injected (shared pool, or a mock
    transport in tests); otherwise a short-lived client is opened per request.
    """

    def __init__(
        self,
        authority_host: str = "https://login.microsoftonline.com",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.authority_host = authority_host.rstrip("/")
        self.timeout = timeout
        self._http = http_client

    def authorize_endpoint(self, tenant_id: str) -> str:
        return f"{self.authority_host}/{tenant_id}/oauth2/v2.0/authorize"

    def token_endpoint(self, tenant_id: str) -> str:
        return f"{self.authority_host}/{tenant_id}/oauth2/v2.0/token"

    def authorize_url(
        self,
        tenant_id: str,
        client_id: str,
        redirect_uri: str,
        scopes: list[str],
        state: str,
        code_challenge: str | None = None,
    ) -> str:
        """
        Build the authorize redirect URL.

        Args:
            tenant_id: Directory (tenant) id of the studio's app registration
            client_id: Application id
            redirect_uri: Must match the registered redirect URI exactly
            scopes: Delegated scopes to request
            state: CSRF binding echoed back on the callback
            code_challenge: S256 PKCE challenge; omitted for confidential clients

        Returns:
            Full authorize URL with query parameters
        """
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.authorize_endpoint(tenant_id)}?{urlencode(params)}"

    async def _post(self, url: str, form: dict[str, str]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, data=form, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, data=form)

    async def request_token(self, tenant_id: str, form: dict[str, str]) -> TokenResponse:
        grant_type = form.get("grant_type", "unknown")
        error_cls = RefreshFailed if grant_type == "refresh_token" else TokenExchangeFailed
        started = time.perf_counter()
        try:
            response = await self._post(self.token_endpoint(tenant_id), form)
        except httpx.TimeoutException as e:
            metrics.token_request(grant_type, "timeout")
            logger.error("Token request timed out | tenant_id=%s grant_type=%s", tenant_id, grant_type)
            raise error_cls("timeout", "Token endpoint did not answer in time") from e
        except httpx.RequestError as e:
            metrics.token_request(grant_type, "network_error")
            logger.error(
                "Token request failed | tenant_id=%s grant_type=%s error=%s", tenant_id, grant_type, e.__class__.__name__
            )
            raise error_cls("request_failed", "Failed to connect to identity provider") from e
        elapsed = time.perf_counter() - started

        if response.status_code >= 400:
            try:
                err = ProviderErrorResponse.model_validate(response.json())
            except (ValueError, ValidationError):
                err = ProviderErrorResponse(error=f"http_{response.status_code}")
            metrics.token_request(grant_type, "rejected", elapsed)
            logger.error(
                "Token request rejected | tenant_id=%s grant_type=%s status=%s error=%s description=%s",
                tenant_id,
                grant_type,
                response.status_code,
                err.error,
                err.error_description,
            )
            raise error_cls(err.error, err.error_description, response.status_code)

        try:
            token = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            metrics.token_request(grant_type, "invalid_response", elapsed)
            logger.error("Token response malformed | tenant_id=%s grant_type=%s", tenant_id, grant_type)
            raise error_cls("invalid_response", "Token endpoint returned an unexpected payload") from e

        metrics.token_request(grant_type, "success", elapsed)
        logger.info(
            "Token request SUCCESS | tenant_id=%s grant_type=%s expires_in=%s refresh_token=%s",
            tenant_id,
            grant_type,
            token.expires_in,
            bool(token.refresh_token),
        )
        return token

    async def exchange_code(
        self,
        tenant_id: str,
        client_id: str,
        code: str,
        redirect_uri: str,
        scopes: list[str],
        code_verifier: str | None = None,
        client_secret: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code (PKCE verifier or confidential secret)."""
        form = {
            "client_id": client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        if client_secret:
            form["client_secret"] = client_secret
        logger.info(
            "Token exchange attempt | tenant_id=%s client_id=%s code_fp=%s pkce=%s",
            tenant_id,
            client_id,
            fingerprint(code),
            bool(code_verifier),
        )
        return await self.request_token(tenant_id, form)

    async def refresh(
        self,
        tenant_id: str,
        client_id: str,
        refresh_token: str,
        scopes: list[str],
        client_secret: str | None = None,
    ) -> TokenResponse:
        form = {
            "client_id": client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(scopes),
        }
        if client_secret:
            form["client_secret"] = client_secret
        return await self.request_token(tenant_id, form)

    async def client_credentials(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        resource: str = "https://graph.microsoft.com",
    ) -> TokenResponse:
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
            "scope": f"{resource.rstrip('/')}/.default",
        }
        return await self.request_token(tenant_id, form)
