"""Credential store for Microsoft 365 configuration and tokens.

Secret columns hold envelopes only. Reads return records with ciphertext;
callers decrypt deliberately through ``decrypt_*`` so plaintext never rides
along on an object that might be logged.
"""
from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studio365.core.encryption import EnvelopeCipher, is_encrypted
from studio365.core.exceptions import ConfigDisabled, ConfigMissing, NotConnected
from studio365.models.m365_models import M365Config, M365UserToken

from .schemas import FLOW_APP_ONLY, TenantM365Config, TokenGrant, UserTokenRecord

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    """SQLite drops tzinfo; stored timestamps are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _to_config(row: M365Config) -> TenantM365Config:
    return TenantM365Config(
        studio_id=row.studio_id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        client_secret_ciphertext=row.client_secret_encrypted,
        enabled=bool(row.enabled),
        organizer_email=row.organizer_email,
        teams_team_id=row.teams_team_id,
        teams_channel_id=row.teams_channel_id,
        updated_at=as_utc(row.updated_at),
    )


def _to_record(row: M365UserToken) -> UserTokenRecord:
    return UserTokenRecord(
        studio_id=row.studio_id,
        user_id=row.user_id,
        access_token_ciphertext=row.access_token_encrypted,
        refresh_token_ciphertext=row.refresh_token_encrypted,
        token_type=row.token_type,
        flow=row.flow,
        scope=row.scope,
        expires_at=as_utc(row.expires_at),  # type: ignore[arg-type]
        obtained_at=as_utc(row.obtained_at),  # type: ignore[arg-type]
        connected_at=as_utc(row.connected_at),  # type: ignore[arg-type]
        revoked_at=as_utc(row.revoked_at),
    )


class CredentialStore:
    """Reads and writes encrypted M365 rows for one database session."""

    def __init__(self, db: Session, cipher: EnvelopeCipher):
        self.db = db
        self.cipher = cipher

    # ------------------------------------------------------------------
    # Tenant configuration
    # ------------------------------------------------------------------

    def _config_row(self, studio_id: str) -> M365Config | None:
        return self.db.scalar(select(M365Config).where(M365Config.studio_id == studio_id))

    async def get_config(self, studio_id: str) -> TenantM365Config | None:
        row = self._config_row(studio_id)
        return _to_config(row) if row else None

    async def require_enabled_config(self, studio_id: str) -> TenantM365Config:
        """Return the config or raise; the gate every flow step passes first."""
        config = await self.get_config(studio_id)
        if config is None:
            raise ConfigMissing(studio_id)
        if not config.enabled:
            raise ConfigDisabled(studio_id)
        return config

    async def save_config(
        self,
        studio_id: str,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str | None = None,
        enabled: bool = True,
        organizer_email: str | None = None,
        teams_team_id: str | None = None,
        teams_channel_id: str | None = None,
    ) -> TenantM365Config:
        """Create or update the studio config. A missing secret keeps the stored one."""
        row = self._config_row(studio_id)
        if row is None:
            row = M365Config(studio_id=studio_id)
            self.db.add(row)
        row.tenant_id = tenant_id
        row.client_id = client_id
        row.enabled = enabled
        row.organizer_email = organizer_email
        row.teams_team_id = teams_team_id
        row.teams_channel_id = teams_channel_id
        if client_secret:
            row.client_secret_encrypted = self.cipher.encrypt(client_secret)
        row.updated_at = _utcnow()
        self.db.commit()
        self.db.refresh(row)
        logger.info(
            "Saved M365 config studio_id=%s tenant_id=%s enabled=%s secret_rotated=%s",
            studio_id,
            tenant_id,
            enabled,
            bool(client_secret),
        )
        return _to_config(row)

    def decrypt_client_secret(self, config: TenantM365Config) -> str | None:
        if not config.client_secret_ciphertext:
            return None
        return self.cipher.decrypt(config.client_secret_ciphertext)

    async def encrypt_legacy_secrets(self) -> int:
        """Seal client secrets still stored as plaintext. Returns rows changed."""
        rows = self.db.scalars(select(M365Config).where(M365Config.client_secret_encrypted.is_not(None))).all()
        changed = 0
        for row in rows:
            if is_encrypted(row.client_secret_encrypted):
                continue
            row.client_secret_encrypted = self.cipher.encrypt(row.client_secret_encrypted)  # type: ignore[arg-type]
            row.updated_at = _utcnow()
            changed += 1
            logger.info("Encrypted legacy client secret studio_id=%s", row.studio_id)
        if changed:
            self.db.commit()
        return changed

    # ------------------------------------------------------------------
    # User tokens
    # ------------------------------------------------------------------

    def _token_row(self, studio_id: str, user_id: str) -> M365UserToken | None:
        return self.db.scalar(
            select(M365UserToken).where(
                M365UserToken.studio_id == studio_id,
                M365UserToken.user_id == user_id,
            )
        )

    async def get_token(self, studio_id: str, user_id: str) -> UserTokenRecord | None:
        """Return the stored record, expired or revoked included."""
        row = self._token_row(studio_id, user_id)
        return _to_record(row) if row else None

    def _grant_values(self, grant: TokenGrant, now: dt.datetime) -> dict:
        return {
            "access_token_encrypted": self.cipher.encrypt(grant.access_token),
            "refresh_token_encrypted": self.cipher.encrypt(grant.refresh_token) if grant.refresh_token else None,
            "token_type": grant.token_type,
            "flow": grant.flow,
            "scope": grant.scope,
            "expires_at": grant.expires_at,
            "obtained_at": now,
            "updated_at": now,
        }

    def _insert_token(self, studio_id: str, user_id: str, grant: TokenGrant, now: dt.datetime) -> bool:
        """Insert a fresh row. Returns False when a concurrent request inserted it first."""
        row = M365UserToken(
            studio_id=studio_id,
            user_id=user_id,
            created_at=now,
            connected_at=now,
            revoked_at=None,
            **self._grant_values(grant, now),
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def _reconnect(self, studio_id: str, user_id: str, grant: TokenGrant, now: dt.datetime) -> None:
        row = self._token_row(studio_id, user_id)
        if row is None:
            if self._insert_token(studio_id, user_id, grant, now):
                return
            # A concurrent request inserted the row first; update it instead
            row = self._token_row(studio_id, user_id)
            if row is None:
                raise NotConnected(studio_id, user_id)
        for key, value in self._grant_values(grant, now).items():
            setattr(row, key, value)
        row.connected_at = now
        row.revoked_at = None
        self.db.commit()

    def _update_active(self, studio_id: str, user_id: str, grant: TokenGrant, now: dt.datetime) -> bool:
        """Write the grant only over a row that is still connected."""
        values = self._grant_values(grant, now)
        result = self.db.execute(
            update(M365UserToken)
            .where(
                M365UserToken.studio_id == studio_id,
                M365UserToken.user_id == user_id,
                M365UserToken.revoked_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    async def upsert_token(
        self,
        studio_id: str,
        user_id: str,
        grant: TokenGrant,
        reconnect: bool = False,
    ) -> UserTokenRecord:
        """Insert or update the (studio, user) token row; last write wins.

        ``reconnect`` marks a fresh interactive connection: it resets
        ``connected_at`` and lifts a previous revocation. Any other write
        (refresh, app-only acquisition) only lands on a connected row, so a
        disconnect that happens while a refresh is in flight stays in effect.

        Raises:
            NotConnected: the row was revoked or deleted meanwhile (non-reconnect writes)
        """
        now = _utcnow()
        if reconnect:
            self._reconnect(studio_id, user_id, grant, now)
        elif not self._update_active(studio_id, user_id, grant, now):
            # Rows may have changed under another session
            self.db.expire_all()
            row = self._token_row(studio_id, user_id)
            if row is not None:
                logger.warning(
                    "Dropping M365 token for disconnected account | studio_id=%s user_id=%s", studio_id, user_id
                )
                raise NotConnected(studio_id, user_id, reason="revoked")
            if grant.flow != FLOW_APP_ONLY:
                # Purged while the refresh was in flight
                raise NotConnected(studio_id, user_id)
            if not self._insert_token(studio_id, user_id, grant, now) and not self._update_active(
                studio_id, user_id, grant, now
            ):
                raise NotConnected(studio_id, user_id, reason="revoked")
        self.db.expire_all()
        row = self._token_row(studio_id, user_id)
        if row is None:
            raise NotConnected(studio_id, user_id)
        return _to_record(row)

    async def revoke_token(self, studio_id: str, user_id: str) -> bool:
        """Mark the row revoked. Returns False when nothing was active (still a success)."""
        row = self._token_row(studio_id, user_id)
        if row is None or row.revoked_at is not None:
            return False
        now = _utcnow()
        row.revoked_at = now
        row.updated_at = now
        self.db.commit()
        return True

    async def delete_token(self, studio_id: str, user_id: str) -> bool:
        row = self._token_row(studio_id, user_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.commit()
        return True

    def decrypt_access_token(self, record: UserTokenRecord) -> str:
        return self.cipher.decrypt(record.access_token_ciphertext)

    def decrypt_refresh_token(self, record: UserTokenRecord) -> str | None:
        if not record.refresh_token_ciphertext:
            return None
        return self.cipher.decrypt(record.refresh_token_ciphertext)
