"""Boundary types for the Microsoft 365 integration.

External payloads (identity platform token responses, Graph bodies) are
validated with pydantic at the edge; anything that does not fit becomes a
typed error instead of an untyped dict travelling through the service.

Internal records are plain dataclasses. Stored records hold ciphertext only;
``TokenGrant`` is the one plaintext carrier and is never persisted as-is.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

APP_ONLY_USER_ID = "__app__"

FLOW_DELEGATED = "delegated"
FLOW_APP_ONLY = "app_only"


# ---------------------------------------------------------------------------
# External payloads
# ---------------------------------------------------------------------------

class TokenResponse(BaseModel):
    """Successful token endpoint response."""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int = Field(default=3600, ge=0)
    refresh_token: str | None = None
    scope: str | None = None


class ProviderErrorResponse(BaseModel):
    """OAuth error body (RFC 6749 section 5.2)."""
    model_config = ConfigDict(extra="ignore")

    error: str = "unknown_error"
    error_description: str | None = None
    error_codes: list[int] | None = None
    correlation_id: str | None = None


class GraphErrorDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str | None = None
    message: str | None = None


class GraphErrorEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: GraphErrorDetail


class GraphCollection(BaseModel):
    """Paged Graph collection (``value`` plus optional continuation link)."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    value: list[dict[str, Any]]
    next_link: str | None = Field(default=None, alias="@odata.nextLink")


# ---------------------------------------------------------------------------
# Internal records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantM365Config:
    studio_id: str
    tenant_id: str
    client_id: str
    client_secret_ciphertext: str | None
    enabled: bool
    organizer_email: str | None = None
    teams_team_id: str | None = None
    teams_channel_id: str | None = None
    updated_at: dt.datetime | None = None

    @property
    def has_client_secret(self) -> bool:
        return bool(self.client_secret_ciphertext)


@dataclass(frozen=True)
class UserTokenRecord:
    studio_id: str
    user_id: str
    access_token_ciphertext: str
    refresh_token_ciphertext: str | None
    token_type: str
    flow: str
    scope: str | None
    expires_at: dt.datetime
    obtained_at: dt.datetime
    connected_at: dt.datetime
    revoked_at: dt.datetime | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.access_token_ciphertext) and self.revoked_at is None

    @property
    def is_app_only(self) -> bool:
        return self.flow == FLOW_APP_ONLY

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []


@dataclass(frozen=True)
class TokenGrant:
    """Plaintext token set, as received from the identity platform."""
    access_token: str
    expires_at: dt.datetime
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    flow: str = FLOW_DELEGATED

    @classmethod
    def from_response(
        cls,
        response: TokenResponse,
        now: dt.datetime,
        flow: str = FLOW_DELEGATED,
        previous_refresh_token: str | None = None,
    ) -> TokenGrant:
        return cls(
            access_token=response.access_token,
            expires_at=now + dt.timedelta(seconds=response.expires_in),
            # Refresh tokens are not always rotated; keep the previous one
            refresh_token=response.refresh_token or previous_refresh_token,
            scope=response.scope,
            token_type=response.token_type,
            flow=flow,
        )

    def __repr__(self) -> str:
        return f"TokenGrant(flow={self.flow}, expires_at={self.expires_at.isoformat()}, scope={self.scope!r})"


@dataclass(frozen=True)
class OAuthTransaction:
    """In-flight authorization attempt carried in the signed state cookie."""
    state: str
    studio_id: str
    user_id: str
    code_verifier: str | None
    issued_at: dt.datetime
