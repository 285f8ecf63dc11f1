"""Tests for the encrypted credential store."""
import datetime as dt

import pytest
from sqlalchemy import func, select

from studio365.core.encryption import is_encrypted
from studio365.core.exceptions import ConfigDisabled, ConfigMissing, DecryptionFailed, NotConnected
from studio365.models.m365_models import M365Config, M365UserToken
from studio365.services.m365 import APP_ONLY_USER_ID, CredentialStore, TokenGrant
from studio365.services.m365.schemas import FLOW_APP_ONLY, FLOW_DELEGATED

STUDIO = "studio-1"
USER = "user-1"


@pytest.fixture
def store(db_session, cipher):
    return CredentialStore(db_session, cipher)


def _grant(access="acc", refresh="ref", hours=1, flow=FLOW_DELEGATED):
    return TokenGrant(
        access_token=access,
        refresh_token=refresh,
        expires_at=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=hours),
        scope="openid User.Read",
        flow=flow,
    )


@pytest.mark.asyncio
async def test_save_config_encrypts_secret(store, db_session):
    config = await store.save_config(STUDIO, tenant_id="tid", client_id="cid", client_secret="plain-secret")
    row = db_session.scalar(select(M365Config).where(M365Config.studio_id == STUDIO))

    assert row.client_secret_encrypted != "plain-secret"
    assert is_encrypted(row.client_secret_encrypted)
    assert config.has_client_secret
    assert store.decrypt_client_secret(config) == "plain-secret"


@pytest.mark.asyncio
async def test_save_config_without_secret_keeps_existing(store):
    first = await store.save_config(STUDIO, tenant_id="tid", client_id="cid", client_secret="s1")
    second = await store.save_config(STUDIO, tenant_id="tid2", client_id="cid", enabled=False)

    assert second.client_secret_ciphertext == first.client_secret_ciphertext
    assert second.tenant_id == "tid2"
    assert second.enabled is False


@pytest.mark.asyncio
async def test_require_enabled_config_gate(store):
    with pytest.raises(ConfigMissing):
        await store.require_enabled_config(STUDIO)

    await store.save_config(STUDIO, tenant_id="tid", client_id="cid", enabled=False)
    with pytest.raises(ConfigDisabled):
        await store.require_enabled_config(STUDIO)


@pytest.mark.asyncio
async def test_upsert_is_idempotent(store, db_session):
    grant = _grant()
    await store.upsert_token(STUDIO, USER, grant, reconnect=True)
    await store.upsert_token(STUDIO, USER, grant)

    count = db_session.scalar(select(func.count()).select_from(M365UserToken))
    assert count == 1
    record = await store.get_token(STUDIO, USER)
    assert store.decrypt_access_token(record) == "acc"
    assert store.decrypt_refresh_token(record) == "ref"
    assert record.is_connected
    assert record.expires_at.tzinfo is not None


@pytest.mark.asyncio
async def test_records_hold_ciphertext_only(store):
    record = await store.upsert_token(STUDIO, USER, _grant(access="visible?"), reconnect=True)
    assert "visible?" not in repr(record)
    assert record.access_token_ciphertext != "visible?"
    assert is_encrypted(record.access_token_ciphertext)


@pytest.mark.asyncio
async def test_app_only_grant_stores_no_refresh_token(store):
    record = await store.upsert_token(STUDIO, APP_ONLY_USER_ID, _grant(refresh=None, flow=FLOW_APP_ONLY))
    assert record.refresh_token_ciphertext is None
    assert store.decrypt_refresh_token(record) is None


@pytest.mark.asyncio
async def test_revoke_keeps_row_and_is_idempotent(store):
    await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    assert await store.revoke_token(STUDIO, USER) is True
    assert await store.revoke_token(STUDIO, USER) is False

    record = await store.get_token(STUDIO, USER)
    assert record is not None
    assert record.revoked_at is not None
    assert record.is_connected is False


@pytest.mark.asyncio
async def test_upsert_after_revoke_reconnects(store):
    await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    await store.revoke_token(STUDIO, USER)
    record = await store.upsert_token(STUDIO, USER, _grant(access="new"), reconnect=True)
    assert record.revoked_at is None
    assert record.is_connected


@pytest.mark.asyncio
async def test_refresh_write_does_not_lift_revocation(store):
    first = await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    await store.revoke_token(STUDIO, USER)

    with pytest.raises(NotConnected) as exc_info:
        await store.upsert_token(STUDIO, USER, _grant(access="late"))

    assert exc_info.value.details["reason"] == "revoked"
    record = await store.get_token(STUDIO, USER)
    assert record.is_connected is False
    assert record.connected_at == first.connected_at
    assert store.decrypt_access_token(record) == "acc"


@pytest.mark.asyncio
async def test_refresh_write_does_not_recreate_purged_row(store):
    await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    await store.delete_token(STUDIO, USER)

    with pytest.raises(NotConnected):
        await store.upsert_token(STUDIO, USER, _grant(access="late"))
    assert await store.get_token(STUDIO, USER) is None


@pytest.mark.asyncio
async def test_refresh_write_keeps_connected_at(store):
    first = await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    second = await store.upsert_token(STUDIO, USER, _grant(access="rotated"))
    assert second.connected_at == first.connected_at
    assert store.decrypt_access_token(second) == "rotated"


@pytest.mark.asyncio
async def test_delete_token(store):
    await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    assert await store.delete_token(STUDIO, USER) is True
    assert await store.delete_token(STUDIO, USER) is False
    assert await store.get_token(STUDIO, USER) is None


@pytest.mark.asyncio
async def test_undecryptable_token_raises_decryption_failed(store, db_session):
    await store.upsert_token(STUDIO, USER, _grant(), reconnect=True)
    row = db_session.scalar(select(M365UserToken))
    row.access_token_encrypted = "00" * 16 + ":" + "00" * 16 + ":abcd"
    db_session.commit()

    record = await store.get_token(STUDIO, USER)
    with pytest.raises(DecryptionFailed):
        store.decrypt_access_token(record)


@pytest.mark.asyncio
async def test_encrypt_legacy_secrets(store, seed_config):
    seed_config("legacy", raw_secret="plaintext-secret")
    seed_config("sealed")

    assert await store.encrypt_legacy_secrets() == 1
    assert await store.encrypt_legacy_secrets() == 0

    legacy = await store.get_config("legacy")
    assert is_encrypted(legacy.client_secret_ciphertext)
    assert store.decrypt_client_secret(legacy) == "plaintext-secret"
