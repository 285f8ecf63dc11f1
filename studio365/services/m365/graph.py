"""Microsoft Graph call wrapper.

Attaches a bearer token from the refresh manager and retries exactly once
after a forced refresh when Graph answers 401/403. A second authorization
failure is terminal for the call; the stored token is left alone since it
may still be valid for other scopes.

Pagination is never automatic: responses expose ``next_link`` and callers
opt in to walking pages with an explicit ``max_pages`` bound.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from studio365 import metrics
from studio365.core.exceptions import GraphAuthorizationFailed, GraphRequestFailed

from .refresh import TokenRefreshManager
from .schemas import APP_ONLY_USER_ID, GraphCollection, GraphErrorEnvelope

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


@dataclass(frozen=True)
class GraphResponse:
    status_code: int
    data: dict[str, Any] | None
    next_link: str | None = None


@dataclass(frozen=True)
class GraphPage:
    items: list[dict[str, Any]]
    next_link: str | None


def _graph_code(response: httpx.Response) -> str | None:
    try:
        return GraphErrorEnvelope.model_validate(response.json()).error.code
    except (ValueError, ValidationError):
        return None


class GraphClient:
    def __init__(
        self,
        tokens: TokenRefreshManager,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.tokens = tokens
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http_client

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("https://"):
            # Continuation links are absolute; never send the bearer elsewhere
            if not path_or_url.startswith(self.base_url + "/"):
                raise GraphRequestFailed("foreign_url")
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None,
        json: Any | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            if self._http is not None:
                return await self._http.request(
                    method, url, headers=headers, params=params, json=json, timeout=self.timeout
                )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, params=params, json=json)
        except httpx.TimeoutException as e:
            metrics.graph_request("timeout")
            logger.error("Graph request timed out | method=%s url=%s", method, url.split("?")[0])
            raise GraphRequestFailed("timeout") from e
        except httpx.RequestError as e:
            metrics.graph_request("network_error")
            logger.error("Graph request failed | method=%s error=%s", method, e.__class__.__name__)
            raise GraphRequestFailed("request_failed") from e

    async def request(
        self,
        studio_id: str,
        method: str,
        path: str,
        *,
        user_id: str = APP_ONLY_USER_ID,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> GraphResponse:
        """
        Call Graph on behalf of ``user_id`` (app-only by default).

        Raises:
            GraphAuthorizationFailed: 401/403 again after one forced refresh
            GraphRequestFailed: other non-2xx, timeout, or non-JSON body
            NotConnected / ReauthorizationRequired / RefreshFailed: from token acquisition
        """
        url = self._url(path)
        token = await self.tokens.get_valid_access_token(studio_id, user_id)
        response = await self._send(method, url, token, params, json)

        if response.status_code in AUTH_FAILURE_STATUSES:
            logger.info(
                "Graph rejected token, forcing refresh | studio_id=%s user_id=%s status=%s code=%s",
                studio_id,
                user_id,
                response.status_code,
                _graph_code(response),
            )
            metrics.forced_refresh_retry()
            token = await self.tokens.force_refresh(studio_id, user_id)
            response = await self._send(method, url, token, params, json)
            if response.status_code in AUTH_FAILURE_STATUSES:
                code = _graph_code(response)
                metrics.graph_request("unauthorized")
                logger.warning(
                    "Graph authorization failed after refresh | studio_id=%s user_id=%s status=%s code=%s",
                    studio_id,
                    user_id,
                    response.status_code,
                    code,
                )
                raise GraphAuthorizationFailed(response.status_code, code)

        if response.status_code >= 400:
            code = _graph_code(response)
            metrics.graph_request("error")
            logger.error(
                "Graph request failed | studio_id=%s status=%s code=%s", studio_id, response.status_code, code
            )
            raise GraphRequestFailed("http_error", response.status_code, code)

        metrics.graph_request("success")
        if response.status_code == 204 or not response.content:
            return GraphResponse(status_code=response.status_code, data=None)
        try:
            data = response.json()
        except ValueError as e:
            raise GraphRequestFailed("invalid_json", response.status_code) from e
        if not isinstance(data, dict):
            raise GraphRequestFailed("invalid_json", response.status_code)
        next_link = data.get("@odata.nextLink")
        return GraphResponse(
            status_code=response.status_code,
            data=data,
            next_link=next_link if isinstance(next_link, str) else None,
        )

    async def get_page(
        self,
        studio_id: str,
        path_or_next_link: str,
        *,
        user_id: str = APP_ONLY_USER_ID,
        params: dict[str, Any] | None = None,
    ) -> GraphPage:
        """Fetch one page of a collection. Pass ``next_link`` back in to continue."""
        response = await self.request(studio_id, "GET", path_or_next_link, user_id=user_id, params=params)
        try:
            collection = GraphCollection.model_validate(response.data or {})
        except ValidationError as e:
            raise GraphRequestFailed("invalid_collection", response.status_code) from e
        return GraphPage(items=collection.value, next_link=collection.next_link)

    async def iter_pages(
        self,
        studio_id: str,
        path: str,
        *,
        max_pages: int,
        user_id: str = APP_ONLY_USER_ID,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[GraphPage]:
        """Follow continuation links for at most ``max_pages`` pages."""
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        page = await self.get_page(studio_id, path, user_id=user_id, params=params)
        yield page
        fetched = 1
        while page.next_link and fetched < max_pages:
            # nextLink already carries the query string
            page = await self.get_page(studio_id, page.next_link, user_id=user_id)
            yield page
            fetched += 1
