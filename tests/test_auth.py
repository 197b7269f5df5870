"""Tests for session-cookie authentication.

Covers:
- Signed cookie round trip through ``/auth/me``
- Tampered and missing cookies
- Development login and logout
- 401 on protected routes
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from itsdangerous import URLSafeTimedSerializer

from musicleague.auth.deps import SESSION_COOKIE_NAME, SessionPrincipal, sign_session
from musicleague.config import Settings
from musicleague.db.engine import create_engine, create_tables
from musicleague.main import create_app


def _test_settings(**overrides: str) -> Settings:
    defaults: dict[str, str] = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "musicleague_env": "development",
        "session_secret_key": "test-secret-key-for-testing",
        "musicleague_auto_advance": "false",
    }
    defaults.update(overrides)
    return Settings(**defaults)


async def _client_for(settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(settings)

    # Lifespan does not run under ASGITransport; wire the engine by hand.
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await engine.dispose()


@pytest.fixture
async def dev_client() -> AsyncGenerator[AsyncClient, None]:
    async for client in _client_for(_test_settings()):
        yield client


@pytest.fixture
async def prod_client() -> AsyncGenerator[AsyncClient, None]:
    async for client in _client_for(_test_settings(musicleague_env="production")):
        yield client


# ---------------------------------------------------------------------------
# Cookie verification
# ---------------------------------------------------------------------------


async def test_signed_cookie_identifies_user(dev_client: AsyncClient) -> None:
    settings = _test_settings()
    token = sign_session(settings, SessionPrincipal(user_id="alice", display_name="Alice"))
    dev_client.cookies.set(SESSION_COOKIE_NAME, token)

    resp = await dev_client.get("/auth/me")

    assert resp.status_code == 200
    assert resp.json() == {"data": {"user_id": "alice", "display_name": "Alice"}}


async def test_missing_cookie_is_anonymous(dev_client: AsyncClient) -> None:
    resp = await dev_client.get("/auth/me")
    assert resp.json() == {"data": None}


async def test_cookie_signed_with_other_key_ignored(dev_client: AsyncClient) -> None:
    forged = URLSafeTimedSerializer("not-the-key", salt="musicleague-session").dumps(
        {"user_id": "mallory"}
    )
    dev_client.cookies.set(SESSION_COOKIE_NAME, forged)

    resp = await dev_client.get("/auth/me")
    assert resp.json() == {"data": None}


async def test_malformed_payload_ignored(dev_client: AsyncClient) -> None:
    serializer = URLSafeTimedSerializer(
        "test-secret-key-for-testing", salt="musicleague-session"
    )
    dev_client.cookies.set(SESSION_COOKIE_NAME, serializer.dumps({"name": "no user id"}))

    resp = await dev_client.get("/auth/me")
    assert resp.json() == {"data": None}


async def test_protected_route_requires_session(dev_client: AsyncClient) -> None:
    resp = await dev_client.get("/api/leagues/mine")
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Development login and logout
# ---------------------------------------------------------------------------


async def test_dev_login_sets_cookie(dev_client: AsyncClient) -> None:
    resp = await dev_client.post("/auth/dev-login", json={"user_id": "bob"})

    assert resp.status_code == 200
    assert resp.json()["data"]["user_id"] == "bob"
    assert SESSION_COOKIE_NAME in resp.cookies

    me = await dev_client.get("/auth/me")
    assert me.json()["data"]["user_id"] == "bob"

    leagues = await dev_client.get("/api/leagues/mine")
    assert leagues.status_code == 200
    assert leagues.json() == {"data": []}


async def test_dev_login_hidden_outside_development(prod_client: AsyncClient) -> None:
    resp = await prod_client.post("/auth/dev-login", json={"user_id": "bob"})
    assert resp.status_code == 404
    assert SESSION_COOKIE_NAME not in resp.cookies


async def test_logout_clears_cookie(dev_client: AsyncClient) -> None:
    await dev_client.post("/auth/dev-login", json={"user_id": "bob"})

    resp = await dev_client.post("/auth/logout")
    assert resp.status_code == 200
    assert resp.json() == {"data": {"logged_out": True}}

    me = await dev_client.get("/auth/me")
    assert me.json() == {"data": None}
