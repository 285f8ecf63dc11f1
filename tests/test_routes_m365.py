"""End-to-end tests for the /m365 routes against a fake Microsoft."""
from urllib.parse import parse_qs, urlparse

from studio365.api.dependencies import get_m365_service_factory
from studio365.api.main import app
from studio365.core.exceptions import EncryptionKeyError
from studio365.models.m365_models import M365Config, M365UserToken

STATE_COOKIE = "m365_state"


def _connect(client, headers):
    resp = client.post("/m365/connect", headers=headers)
    assert resp.status_code == 200, resp.text
    authorize_url = resp.json()["authorize_url"]
    state = parse_qs(urlparse(authorize_url).query)["state"][0]
    return authorize_url, state, resp.cookies.get(STATE_COOKIE)


def _callback(client, cookie, **params):
    headers = {"Cookie": f"{STATE_COOKIE}={cookie}"} if cookie else {}
    return client.get("/m365/callback", params=params, headers=headers, follow_redirects=False)


def _redirect_params(resp) -> dict[str, str]:
    assert resp.status_code == 302
    return {k: v[0] for k, v in parse_qs(urlparse(resp.headers["location"]).query).items()}


def test_requires_session_token(client):
    assert client.get("/m365/status").status_code == 401
    assert client.post("/m365/connect").status_code == 401
    resp = client.get("/m365/status", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_fresh_connect_round_trip(client, seed_config, auth_headers, fake_ms, db_session):
    seed_config()
    headers = auth_headers()

    authorize_url, state, cookie = _connect(client, headers)
    assert authorize_url.startswith("https://login.microsoftonline.com/")
    query = parse_qs(urlparse(authorize_url).query)
    assert query["code_challenge_method"] == ["S256"]
    assert cookie

    resp = _callback(client, cookie, code="auth-code", state=state)
    assert _redirect_params(resp) == {"m365": "connected"}
    # state cookie is cleared whatever the outcome
    assert STATE_COOKIE in resp.headers.get("set-cookie", "")

    exchange = fake_ms.token_requests[0]
    assert exchange["grant_type"] == "authorization_code"
    assert exchange["code"] == "auth-code"
    assert exchange["code_verifier"]

    status = client.get("/m365/status", headers=headers).json()
    assert status["connected"] is True
    assert "Calendars.ReadWrite" in status["scopes"]

    row = db_session.query(M365UserToken).one()
    assert row.access_token_encrypted != "access-1"
    assert row.refresh_token_encrypted != "refresh-1"


def test_callback_state_mismatch_creates_nothing(client, seed_config, auth_headers, fake_ms, db_session):
    seed_config()
    _, _, cookie = _connect(client, auth_headers())

    resp = _callback(client, cookie, code="auth-code", state="forged-state")

    assert _redirect_params(resp) == {"m365": "error", "reason": "invalid_state"}
    assert fake_ms.token_requests == []
    assert db_session.query(M365UserToken).count() == 0


def test_callback_without_cookie(client, seed_config, auth_headers, fake_ms, db_session):
    seed_config()
    _, state, _ = _connect(client, auth_headers())
    # The browser lost the state cookie
    client.cookies.clear()

    resp = _callback(client, None, code="auth-code", state=state)

    assert _redirect_params(resp) == {"m365": "error", "reason": "invalid_state"}
    assert fake_ms.token_requests == []
    assert db_session.query(M365UserToken).count() == 0


def test_callback_replay_is_rejected(client, seed_config, auth_headers, fake_ms):
    seed_config()
    _, state, cookie = _connect(client, auth_headers())

    assert _redirect_params(_callback(client, cookie, code="auth-code", state=state))["m365"] == "connected"
    replay = _redirect_params(_callback(client, cookie, code="auth-code", state=state))

    assert replay == {"m365": "error", "reason": "invalid_state"}
    assert len(fake_ms.token_requests) == 1


def test_callback_provider_denial(client, seed_config, auth_headers, fake_ms):
    seed_config()
    _, state, cookie = _connect(client, auth_headers())

    resp = _callback(client, cookie, state=state, error="access_denied", error_description="User declined")

    assert _redirect_params(resp) == {"m365": "error", "reason": "provider_denied"}
    assert fake_ms.token_requests == []


def test_connect_blocked_when_disabled(client, seed_config, auth_headers):
    seed_config(enabled=False)

    resp = client.post("/m365/connect", headers=auth_headers())

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "CONFIG_DISABLED"
    assert STATE_COOKIE not in resp.cookies


def test_connect_without_config(client, auth_headers):
    resp = client.post("/m365/connect", headers=auth_headers())
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "CONFIG_MISSING"


def test_disconnect_is_idempotent(client, seed_config, seed_token, auth_headers, db_session):
    seed_config()
    seed_token()
    headers = auth_headers()

    first = client.post("/m365/disconnect", headers=headers)
    second = client.post("/m365/disconnect", headers=headers)

    assert first.status_code == second.status_code == 200
    assert first.json() == {"disconnected": True, "purged": False}
    assert client.get("/m365/status", headers=headers).json()["connected"] is False
    db_session.expire_all()
    assert db_session.query(M365UserToken).one().revoked_at is not None


def test_disconnect_purge_deletes_row(client, seed_config, seed_token, auth_headers, db_session):
    seed_config()
    seed_token()

    resp = client.post("/m365/disconnect", params={"purge": "true"}, headers=auth_headers())

    assert resp.json() == {"disconnected": True, "purged": True}
    assert db_session.query(M365UserToken).count() == 0


def test_disconnect_without_connection(client, auth_headers):
    resp = client.post("/m365/disconnect", headers=auth_headers())
    assert resp.status_code == 200


def test_config_save_is_admin_only(client, auth_headers):
    payload = {"tenant_id": "tenant-x", "client_id": "client-x", "client_secret": "s3cret"}

    resp = client.put("/m365/config", json=payload, headers=auth_headers(role="member"))

    assert resp.status_code == 403
    assert resp.json()["detail"]["error"] == "role_restricted"


def test_config_save_and_read(client, auth_headers, db_session):
    payload = {
        "tenant_id": " tenant-x ",
        "client_id": "client-x",
        "client_secret": "s3cret",
        "organizer_email": "agenda@studiorossi.it",
    }

    saved = client.put("/m365/config", json=payload, headers=auth_headers(role="admin"))
    assert saved.status_code == 200, saved.text
    body = saved.json()
    assert body["tenant_id"] == "tenant-x"
    assert body["has_client_secret"] is True
    assert "client_secret" not in body

    row = db_session.query(M365Config).one()
    assert row.client_secret_encrypted != "s3cret"

    # Members may read, never the secret
    read = client.get("/m365/config", headers=auth_headers())
    assert read.status_code == 200
    assert read.json()["client_id"] == "client-x"

    # Omitting the secret keeps the stored one
    client.put("/m365/config", json={"tenant_id": "tenant-x", "client_id": "client-y"}, headers=auth_headers(role="admin"))
    assert client.get("/m365/config", headers=auth_headers()).json()["has_client_secret"] is True


def test_config_rejects_bad_email(client, auth_headers):
    payload = {"tenant_id": "t", "client_id": "c", "organizer_email": "not-an-email"}
    resp = client.put("/m365/config", json=payload, headers=auth_headers(role="admin"))
    assert resp.status_code == 422


def test_test_connection(client, seed_config, auth_headers, fake_ms):
    seed_config()
    fake_ms.queue_graph(200, {"value": [{"id": "org", "displayName": "Studio Rossi"}]})

    resp = client.post("/m365/test-connection", headers=auth_headers(role="admin"))

    assert resp.status_code == 200, resp.text
    assert resp.json()["organization"] == "Studio Rossi"
    assert fake_ms.grant_types() == ["client_credentials"]
    assert fake_ms.token_requests[0]["scope"] == "https://graph.microsoft.com/.default"
    assert fake_ms.graph_requests[0].url.path.endswith("/organization")


def test_test_connection_rejected_credentials(client, seed_config, auth_headers, fake_ms):
    seed_config()
    fake_ms.queue_token(401, {"error": "invalid_client", "error_description": "bad secret"})

    resp = client.post("/m365/test-connection", headers=auth_headers(role="admin"))

    assert resp.status_code == 502
    body = resp.json()["error"]
    assert body["code"] == "TOKEN_EXCHANGE_FAILED"
    assert "bad secret" not in str(body)


def test_list_teams(client, seed_config, auth_headers, fake_ms):
    seed_config()
    next_link = "https://graph.microsoft.com/v1.0/groups?$skiptoken=xyz"
    fake_ms.queue_graph(
        200,
        {"value": [{"id": "team-1", "displayName": "Segreteria"}], "@odata.nextLink": next_link},
    )

    resp = client.get("/m365/teams", headers=auth_headers())

    assert resp.status_code == 200
    body = resp.json()
    assert body["teams"] == [{"id": "team-1", "display_name": "Segreteria", "description": None}]
    assert body["next_link"] == next_link
    assert "resourceProvisioningOptions" in str(fake_ms.graph_requests[0].url)


def test_diagnose_decrypt(client, seed_config, auth_headers):
    seed_config(raw_secret="plaintext-legacy")

    resp = client.get("/m365/diagnose-decrypt", headers=auth_headers(role="admin"))

    assert resp.status_code == 200
    assert resp.json() == {
        "has_client_secret": True,
        "is_encrypted": False,
        "decrypts": False,
        "reason": "malformed_envelope",
    }


def test_health_endpoints(client):
    assert client.get("/live").json() == {"status": "alive"}
    assert client.get("/healthz").json() == {"status": "ok"}


def test_callback_redirects_when_service_cannot_be_built(client):
    def _broken_factory():
        def _build():
            raise EncryptionKeyError("ENCRYPTION_KEY_M365", "missing")

        return _build

    app.dependency_overrides[get_m365_service_factory] = _broken_factory

    resp = _callback(client, "some-transaction", code="auth-code", state="s")

    assert _redirect_params(resp) == {"m365": "error", "reason": "encryption_key_error"}
    assert STATE_COOKIE in resp.headers.get("set-cookie", "")


def test_delegated_test_uses_callers_token(client, seed_config, seed_token, auth_headers, fake_ms):
    seed_config()
    seed_token(access_token="user-access")
    fake_ms.queue_graph(200, {"displayName": "Mario Rossi", "mail": "mario@studiorossi.it"})

    resp = client.get("/m365/test-delegated", headers=auth_headers())

    assert resp.status_code == 200, resp.text
    assert resp.json() == {"ok": True, "display_name": "Mario Rossi", "mail": "mario@studiorossi.it"}
    sent = fake_ms.graph_requests[0]
    assert sent.url.path.endswith("/me")
    assert sent.headers["Authorization"] == "Bearer user-access"
    assert fake_ms.token_requests == []


def test_delegated_test_refreshes_expired_token(client, seed_config, seed_token, auth_headers, fake_ms):
    seed_config()
    seed_token(expires_in=-60)
    fake_ms.queue_graph(200, {"displayName": "Mario Rossi", "userPrincipalName": "mario@studiorossi.it"})

    resp = client.get("/m365/test-delegated", headers=auth_headers())

    assert resp.json()["mail"] == "mario@studiorossi.it"
    assert fake_ms.grant_types() == ["refresh_token"]
    assert fake_ms.graph_requests[0].headers["Authorization"] == "Bearer access-1"


def test_delegated_test_without_connection(client, seed_config, auth_headers, fake_ms):
    seed_config()

    resp = client.get("/m365/test-delegated", headers=auth_headers())

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "NOT_CONNECTED"
    assert fake_ms.graph_requests == []


def test_config_save_invalidates_cached_tokens(client, seed_config, seed_token, auth_headers, api_token_cache, fake_ms):
    seed_config()
    seed_token()
    api_token_cache.set("studio-1", "cached-user", 3600, user_id="user-1")
    api_token_cache.set("studio-1", "cached-app", 3600)

    resp = client.put(
        "/m365/config",
        json={"tenant_id": "tenant-x", "client_id": "client-x", "enabled": False},
        headers=auth_headers(role="admin"),
    )

    assert resp.status_code == 200
    assert api_token_cache.get("studio-1", "user-1") is None
    assert api_token_cache.get("studio-1") is None

    blocked = client.get("/m365/test-delegated", headers=auth_headers())
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "CONFIG_DISABLED"
    assert fake_ms.graph_requests == []
