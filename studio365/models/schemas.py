"""Request/response schemas for the Microsoft 365 routes."""
from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class SaveConfigRequest(BaseModel):
    """Admin configuration save. ``client_secret`` omitted keeps the stored one."""
    tenant_id: str = Field(..., min_length=1, max_length=128)
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str | None = Field(default=None, min_length=1)
    enabled: bool = True
    organizer_email: EmailStr | None = None
    teams_team_id: str | None = None
    teams_channel_id: str | None = None


class ConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    client_id: str
    enabled: bool
    has_client_secret: bool
    organizer_email: str | None = None
    teams_team_id: str | None = None
    teams_channel_id: str | None = None
    updated_at: dt.datetime | None = None


class ConnectResponse(BaseModel):
    authorize_url: str


class StatusResponse(BaseModel):
    connected: bool
    connected_at: dt.datetime | None = None
    scopes: list[str] | None = None


class DisconnectResponse(BaseModel):
    disconnected: bool = True
    purged: bool = False


class TestConnectionResponse(BaseModel):
    ok: bool
    organization: str | None = None
    tenant_id: str | None = None


class TeamOut(BaseModel):
    id: str
    display_name: str | None = None
    description: str | None = None


class TeamsOut(BaseModel):
    teams: list[TeamOut]
    next_link: str | None = None


class DecryptDiagnosisOut(BaseModel):
    has_client_secret: bool
    is_encrypted: bool
    decrypts: bool
    reason: str | None = None


class DelegatedTestResponse(BaseModel):
    ok: bool
    display_name: str | None = None
    mail: str | None = None
