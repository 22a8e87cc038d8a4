"""
tests/conftest.py -- Shared test fixtures for SiteWatch.

This module provides:
  - session_store / site_store: real stores on throwaway SQLite files
  - make_tokens: factory for TokenSet values relative to a fixed clock
  - provider: a stub identity provider that records every call
  - api_client: TestClient over the real app with a patched lifespan

Design: file-backed SQLite under tmp_path rather than in-memory databases.
Each test gets its own file, so tests stay isolated, and several connections
(TestClient's thread pool, the concurrency tests' worker threads) see the
same schema, including the partial unique index on site_reports.

The DEBUG env var must be set before any app import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.identity import IdentityResolver
from auth.models import Identity, TokenSet
from auth.store import SessionStore
from core.config import get_settings
from sites.admission import ReportAdmissionGuard
from sites.store import SiteStore

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Identity provider stub
# ---------------------------------------------------------------------------


class StubProvider:
    """Callable stand-in for auth.provider.fetch_identity.

    Returns `identity` (or raises `error`) and records the access token of
    every call so tests can count upstream round-trips.
    """

    def __init__(self, identity: Identity | None = None, error: Exception | None = None) -> None:
        self.identity = identity or Identity(id=42, username="alice", trust_level=2)
        self.error = error
        self.calls: list[str] = []

    def __call__(self, access_token: str) -> Identity:
        self.calls.append(access_token)
        if self.error is not None:
            raise self.error
        return self.identity


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def session_store(tmp_path) -> Generator[SessionStore, None, None]:
    store = SessionStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield store
    store.close()


@pytest.fixture
def site_store(tmp_path) -> Generator[SiteStore, None, None]:
    store = SiteStore(db_url=f"sqlite:///{tmp_path / 'sites.db'}")
    yield store
    store.close()


@pytest.fixture
def make_tokens():
    """Return a factory for TokenSet values anchored at NOW."""

    def _make(
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        access_ttl: int = 3600,
        session_ttl: int = 30 * 24 * 3600,
        now: datetime = NOW,
    ) -> TokenSet:
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="bearer",
            access_expires_at=now + timedelta(seconds=access_ttl),
            session_expires_at=now + timedelta(seconds=session_ttl),
        )

    return _make


@pytest.fixture
def now() -> datetime:
    """The fixed clock value make_tokens anchors to."""
    return NOW


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(state: SimpleNamespace):
    """Return a lifespan that wires the test stores into app.state.

    Write-back runs inline (no executor) so tests can assert on the cache
    right after a request. The OAuth registry is a MagicMock so no test can
    reach the real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.session_store = state.session_store
        app.state.site_store = state.site_store
        app.state.identity_resolver = state.resolver
        app.state.report_guard = ReportAdmissionGuard(state.site_store)
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(session_store, site_store, provider) -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, state) where state exposes the stores, provider and a login helper.

    state.login(client) creates a session and sets the session cookie on
    the client; it returns the Session.
    """
    state = SimpleNamespace(
        session_store=session_store,
        site_store=site_store,
        provider=provider,
        resolver=IdentityResolver(session_store, fetcher=provider),
    )

    def login(client: TestClient, access_token: str = "access-1"):
        now = datetime.now(timezone.utc)
        session = session_store.create(
            TokenSet(
                access_token=access_token,
                refresh_token="refresh-1",
                token_type="bearer",
                access_expires_at=now + timedelta(hours=1),
                session_expires_at=now + timedelta(days=30),
            )
        )
        client.cookies.set(get_settings().session_cookie_name, session.id)
        return session

    state.login = login

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(state)
    # Rate limits are covered by slowapi itself; keep them out of functional tests.
    limiter.enabled = False
    try:
        with TestClient(app, raise_server_exceptions=True) as client:
            yield client, state
    finally:
        limiter.enabled = True
        app.router.lifespan_context = original_lifespan
