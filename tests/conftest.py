"""
tests/conftest.py -- Shared test fixtures for formlogin.

This module provides:
  - FakeClock: a settable clock injected into the engine and token store
  - _make_test_stores(): creates isolated in-memory DBs for users + tokens
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - web_client: a fresh browser (TestClient, follow_redirects=False) per test
  - user_store / token_store: bare stores for repository unit tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The environment must be set before any core/auth/api import: get_settings()
is cached on first call and api/main.py reads it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import build_auth_engine
from asgi import app
from auth.engine import AuthenticationEngine
from auth.models import Principal
from auth.passwords import hash_password
from auth.remember_me import PersistentTokenStore
from auth.store import UserStore
from core.config import get_settings

TEST_SECRET = "test-secret-key-" + "x" * 32
PASSWORD = "correct horse battery"


class FakeClock:
    """Settable UTC clock. Call it to read the time, advance() to move it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores(clock: FakeClock) -> tuple[UserStore, PersistentTokenStore]:
    """Create one isolated named shared-memory database holding both tables.

    A fresh database name per call keeps tests from seeing each other's
    accounts and tokens.
    """
    db_url = _memory_url("test_formlogin")
    user_store = UserStore(db_url=db_url)
    token_store = PersistentTokenStore(secret_key=TEST_SECRET, db_url=db_url, clock=clock)
    return user_store, token_store


def _patch_lifespan(user_store: UserStore, token_store: PersistentTokenStore, engine: AuthenticationEngine):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.token_store = token_store
        app.state.auth_engine = engine
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def add_user(user_store: UserStore, username: str = "alice", password: str = PASSWORD, **kwargs) -> Principal:
    user_store.create_user(Principal(username=username, password_hash=hash_password(password), **kwargs))
    return user_store.get_by_username(username)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class WebHarness:
    client: TestClient
    user_store: UserStore
    token_store: PersistentTokenStore
    engine: AuthenticationEngine
    clock: FakeClock

    def browser(self) -> TestClient:
        """A second browser with its own cookie jar, sharing the running app."""
        return TestClient(app, follow_redirects=False)

    def login(self, username: str = "alice", password: str = PASSWORD, remember: bool = False, client=None):
        data = {"username": username, "password": password}
        if remember:
            data[get_settings().remember_me_parameter] = "true"
        return (client or self.client).post("/login", data=data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url("test_users"))
    yield store
    store.close()


@pytest.fixture
def token_store(clock: FakeClock) -> Generator[PersistentTokenStore, None, None]:
    store = PersistentTokenStore(secret_key=TEST_SECRET, db_url=_memory_url("test_tokens"), clock=clock)
    yield store
    store.close()


@pytest.fixture
def web_client(clock: FakeClock) -> Generator[WebHarness, None, None]:
    """Yield a WebHarness around a TestClient with one registered account ("alice").

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations* (e.g. 302 to /login), which are invisible once
    the client follows the redirect and returns the final 200 response.
    """
    user_store, token_store = _make_test_stores(clock)
    add_user(user_store)
    engine = build_auth_engine(get_settings(), user_store, token_store, clock=clock)

    app.router.lifespan_context = _patch_lifespan(user_store, token_store, engine)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield WebHarness(client, user_store, token_store, engine, clock)

    token_store.close()
    user_store.close()
