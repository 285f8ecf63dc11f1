from __future__ import annotations

import datetime as dt
import json
import os
import tempfile
from typing import Callable
from urllib.parse import parse_qsl

# Settings are read at import time; pin the test environment first.
os.environ["APP_ENV"] = "test"
os.environ["ENCRYPTION_KEY_M365"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ["REDIS_URL"] = ""
os.environ["OAUTH_STATE_SECRET"] = "test-oauth-state-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.setdefault("AUDIT_LOG_FILE", os.path.join(tempfile.gettempdir(), "studio365-test-audit.log"))

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from studio365.api.dependencies import DbDep, get_m365_service_factory  # noqa: E402
from studio365.api.main import app  # noqa: E402
from studio365.core.encryption import get_m365_cipher  # noqa: E402
from studio365.core.kv_store import InMemoryStore, close_kv_store  # noqa: E402
from studio365.core.security import create_access_token  # noqa: E402
from studio365.db.base_class import Base  # noqa: E402
from studio365.db.session import SessionLocal, engine  # noqa: E402
from studio365.models.m365_models import M365Config, M365UserToken  # noqa: E402
from studio365.services.m365 import (  # noqa: E402
    CredentialStore,
    GraphClient,
    M365Integration,
    MicrosoftIdentityClient,
    OAuthFlowOrchestrator,
    TokenCache,
    TokenRefreshManager,
    create_m365_service,
)
from studio365.services.m365.state import ConsumedStateLedger, TransactionStateCodec  # noqa: E402

STUDIO_ID = "studio-1"
USER_ID = "user-1"
TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "app-client-id"
CLIENT_SECRET = "super-secret-value"
REDIRECT_URI = "http://testserver/m365/callback"
SCOPES = ["openid", "offline_access", "User.Read", "Calendars.ReadWrite"]


class FakeClock:
    """Controllable wall clock shared by every time-dependent component."""

    def __init__(self, start: dt.datetime | None = None):
        self.current = start or dt.datetime.now(dt.timezone.utc).replace(microsecond=0)

    def now(self) -> dt.datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += dt.timedelta(seconds=seconds)


class FakeMicrosoft:
    """Identity platform + Graph double behind an ``httpx.MockTransport``.

    Token requests and Graph requests are recorded. Queued responses (or
    transport errors) are served first; otherwise the token endpoint issues
    numbered tokens and Graph answers an empty collection. ``on_token_request``
    runs before each token response, while the caller is still waiting on it.
    """

    def __init__(self):
        self.token_requests: list[dict[str, str]] = []
        self.graph_requests: list[httpx.Request] = []
        self._token_queue: list[httpx.Response | Exception] = []
        self._graph_queue: list[httpx.Response | Exception] = []
        self._issued = 0
        self.on_token_request: Callable[[dict[str, str]], None] | None = None

    def queue_token(self, status_code: int = 200, body: dict | None = None) -> None:
        self._token_queue.append(httpx.Response(status_code, json=body or {}))

    def queue_graph(self, status_code: int = 200, body: dict | None = None) -> None:
        self._graph_queue.append(httpx.Response(status_code, json=body if body is not None else {"value": []}))

    def fail_token(self, exc: Exception) -> None:
        self._token_queue.append(exc)

    def fail_graph(self, exc: Exception) -> None:
        self._graph_queue.append(exc)

    @staticmethod
    def _serve(queued: httpx.Response | Exception) -> httpx.Response:
        if isinstance(queued, Exception):
            raise queued
        return queued

    def grant_types(self) -> list[str]:
        return [form.get("grant_type", "") for form in self.token_requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            form = dict(parse_qsl(request.content.decode("utf-8")))
            self.token_requests.append(form)
            if self.on_token_request is not None:
                self.on_token_request(form)
            if self._token_queue:
                return self._serve(self._token_queue.pop(0))
            self._issued += 1
            body = {
                "access_token": f"access-{self._issued}",
                "token_type": "Bearer",
                "expires_in": 3600,
                "scope": " ".join(SCOPES),
            }
            if form.get("grant_type") != "client_credentials":
                body["refresh_token"] = f"refresh-{self._issued}"
            return httpx.Response(200, json=body)
        if request.url.host == "graph.microsoft.com":
            self.graph_requests.append(request)
            if self._graph_queue:
                return self._serve(self._graph_queue.pop(0))
            return httpx.Response(200, json={"value": []})
        return httpx.Response(404, content=json.dumps({"error": "unexpected host"}).encode())


@pytest.fixture(autouse=True)
def _reset_database_state():
    """Ensure each test sees a fresh database schema."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def _reset_kv_store():
    close_kv_store()
    yield
    close_kv_store()


@pytest.fixture
def db_session():
    """Provide a database session for tests."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture
def cipher():
    return get_m365_cipher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ms():
    return FakeMicrosoft()


@pytest.fixture
def http_client(fake_ms):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_ms.handler))


@pytest.fixture
def token_cache(clock):
    return TokenCache(safety_margin_seconds=300, clock=clock.time)


@pytest.fixture
def m365(db_session, cipher, clock, http_client, token_cache) -> M365Integration:
    """Fully wired integration with fake clock, fake Microsoft, isolated cache."""
    store = CredentialStore(db_session, cipher)
    identity = MicrosoftIdentityClient(http_client=http_client)
    flows = OAuthFlowOrchestrator(
        store,
        identity,
        TransactionStateCodec("unit-test-secret", 600, cipher=cipher, clock=clock.time),
        ConsumedStateLedger(InMemoryStore(), 600),
        token_cache,
        redirect_uri=REDIRECT_URI,
        delegated_scopes=SCOPES,
        use_pkce=True,
        now=clock.now,
    )
    tokens = TokenRefreshManager(store, flows, token_cache, safety_margin_seconds=300, now=clock.now)
    graph = GraphClient(tokens, http_client=http_client)
    return M365Integration(store, flows, tokens, graph, token_cache)


@pytest.fixture
def seed_config(db_session, cipher):
    def _seed(
        studio_id: str = STUDIO_ID,
        *,
        secret: str | None = CLIENT_SECRET,
        enabled: bool = True,
        tenant_id: str = TENANT_ID,
        client_id: str = CLIENT_ID,
        raw_secret: str | None = None,
    ) -> M365Config:
        row = M365Config(
            studio_id=studio_id,
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret_encrypted=raw_secret if raw_secret is not None else (cipher.encrypt(secret) if secret else None),
            enabled=enabled,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _seed


@pytest.fixture
def seed_token(db_session, cipher, clock):
    def _seed(
        studio_id: str = STUDIO_ID,
        user_id: str = USER_ID,
        *,
        access_token: str = "stored-access",
        refresh_token: str | None = "stored-refresh",
        expires_in: float = 3600,
        flow: str = "delegated",
        revoked: bool = False,
    ) -> M365UserToken:
        now = clock.now()
        row = M365UserToken(
            studio_id=studio_id,
            user_id=user_id,
            access_token_encrypted=cipher.encrypt(access_token),
            refresh_token_encrypted=cipher.encrypt(refresh_token) if refresh_token else None,
            token_type="Bearer",
            flow=flow,
            scope=" ".join(SCOPES),
            expires_at=now + dt.timedelta(seconds=expires_in),
            obtained_at=now,
            connected_at=now,
            revoked_at=now if revoked else None,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _seed


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = USER_ID, studio_id: str = STUDIO_ID, role: str = "member") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, studio_id, role=role)}"}

    return _headers


@pytest.fixture
def api_token_cache():
    """Isolated cache behind the API routes."""
    return TokenCache(safety_margin_seconds=300)


@pytest.fixture
def client(http_client, api_token_cache):
    """FastAPI TestClient with the M365 service wired to the fake Microsoft endpoints."""

    def _factory(db: DbDep):
        return lambda: create_m365_service(db, http_client=http_client, token_cache=api_token_cache)

    app.dependency_overrides[get_m365_service_factory] = _factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_m365_service_factory, None)
