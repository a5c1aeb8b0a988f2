"""
tests/conftest.py -- Shared test fixtures for the secrets app.

This module provides:
  - make_test_store(): isolated named shared-memory SQLite credential store
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - store: plain in-memory UserStore for unit tests
  - web_client: TestClient (follow_redirects=False) over a fresh store per test
  - fake_oauth_client(): AsyncMock-backed stand-in for an authlib client

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because route handlers run in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread.

Environment must be set before any auth/core import: get_settings() is
cached on first use and several modules read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from asgi import app
from auth.sessions import SessionManager
from auth.store import UserStore

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    A fresh uuid per call keeps tests from seeing each other's rows.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state and mocks the OAuth registry so no
    request ever reaches a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.sessions = SessionManager(user_store, expire_seconds=3600)
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def fake_oauth_client(profile: dict | None = None) -> MagicMock:
    """Build a stand-in for an authlib Starlette OAuth client.

    authorize_redirect returns a 302 to a fake provider URL; the callback
    path gets a token and then the given profile from client.get().
    """
    client = MagicMock()
    client.authorize_redirect = AsyncMock(
        return_value=RedirectResponse("https://accounts.example.test/authorize", status_code=302)
    )
    client.authorize_access_token = AsyncMock(return_value={"access_token": "fake-token", "token_type": "Bearer"})
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = profile if profile is not None else {}
    client.get = AsyncMock(return_value=resp)
    return client


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    """Single-thread in-memory store for unit tests."""
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def shared_store() -> Generator[UserStore, None, None]:
    """Store visible from worker threads (run_in_threadpool, ThreadPoolExecutor)."""
    s = make_test_store()
    yield s
    s.close()


@pytest.fixture
def make_oauth_client():
    return fake_oauth_client


@pytest.fixture
def web_client() -> Generator[tuple[TestClient, UserStore], None, None]:
    """Yield (client, store) for web route integration tests.

    follow_redirects=False is essential: tests assert on redirect locations,
    which are invisible once the client follows them.
    """
    user_store = make_test_store()
    app.router.lifespan_context = _patch_lifespan(user_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, user_store

    user_store.close()
