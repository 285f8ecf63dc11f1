"""
Microsoft 365 credential storage models.

Security:
- Client secrets and tokens are stored only as AES-256-GCM envelopes
  (see studio365.core.encryption)
- One token set per (studio, user); app-only tokens use the reserved user id
- Revoked rows are kept for audit and never count as connected
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from studio365.db.base_class import Base


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class M365Config(Base):
    """Per-studio Microsoft 365 application registration."""

    __tablename__ = "m365_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    studio_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String(128))
    client_id: Mapped[str] = mapped_column(String(128))
    client_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    organizer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    teams_team_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    teams_channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<M365Config(studio_id={self.studio_id}, tenant_id={self.tenant_id}, enabled={self.enabled})>"


class M365UserToken(Base):
    """Encrypted OAuth token set for one user of one studio."""

    __tablename__ = "m365_user_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    studio_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    access_token_encrypted: Mapped[str] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_type: Mapped[str] = mapped_column(String(32), default="Bearer")
    flow: Mapped[str] = mapped_column(String(16), default="delegated")  # delegated | app_only
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True))
    obtained_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    connected_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    revoked_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("studio_id", "user_id", name="uq_m365_user_tokens_studio_user"),
        Index("ix_m365_user_tokens_revoked", "revoked_at"),
    )

    def __repr__(self) -> str:
        """String representation (no sensitive data)."""
        revoked = " (REVOKED)" if self.revoked_at else ""
        return f"<M365UserToken(studio_id={self.studio_id}, user_id={self.user_id}, flow={self.flow}{revoked})>"
