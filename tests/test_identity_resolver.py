"""Tests for auth/identity.py -- IdentityResolver and the cache validity rule.

The resolver runs against a real SessionStore (SQLite file) with a stub
identity provider and a fixed clock, so every test can count upstream calls
exactly.

Covers:
- cache validity: age boundary, require_id, missing snapshot
- cold cache: exactly one upstream call, snapshot written back
- stale cache: refetch even though all fields are present
- upstream failure: UpstreamIdentityError, cached snapshot unchanged
- write-back failure or delay never reaches the caller
- missing / expired sessions resolve to None
- expired access tokens are refreshed before the upstream call
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auth.identity import (
    ACTOR_POLICY,
    DASHBOARD_POLICY,
    IdentityResolver,
    ResolveOptions,
    cached_identity_if_fresh,
)
from auth.models import CachedIdentity, Identity
from core.errors import PersistenceError, UpstreamIdentityError

HOUR = ResolveOptions(max_age_seconds=3600)


@pytest.fixture
def resolver(session_store, provider, now):
    return IdentityResolver(session_store, fetcher=provider, clock=lambda: now)


def _seed(session_store, session_id, now, age_seconds, user_id=42):
    session_store.update_cached_identity(
        session_id,
        Identity(id=user_id, username="cached-alice", trust_level=1),
        now - timedelta(seconds=age_seconds),
    )


# ---------------------------------------------------------------------------
# Pure validity rule
# ---------------------------------------------------------------------------


class TestCachedIdentityIfFresh:
    @pytest.mark.parametrize(
        "age, require_id, user_id, usable",
        [
            (0, False, 42, True),
            (3600, False, 42, True),  # boundary is inclusive
            (3601, False, 42, False),
            (7200, False, 42, False),
            (10, True, 42, True),
            (10, True, None, False),
            (10, False, None, True),
            (3601, True, 42, False),
        ],
    )
    def test_validity(self, now, age, require_id, user_id, usable):
        cached = CachedIdentity(
            user_id=user_id, username="alice", trust_level=2, fetched_at=now - timedelta(seconds=age)
        )
        options = ResolveOptions(max_age_seconds=3600, require_id=require_id)
        result = cached_identity_if_fresh(cached, options, now)
        assert (result is not None) is usable

    def test_absent_snapshot_is_never_usable(self, now):
        assert cached_identity_if_fresh(None, HOUR, now) is None

    def test_cached_identity_keeps_missing_id_as_none(self, now):
        cached = CachedIdentity(user_id=None, username="alice", trust_level=2, fetched_at=now)
        result = cached_identity_if_fresh(cached, HOUR, now)
        assert result.id is None
        assert result.username == "alice"

    def test_policies_differ_only_in_require_id(self):
        assert DASHBOARD_POLICY.max_age_seconds == ACTOR_POLICY.max_age_seconds
        assert DASHBOARD_POLICY.require_id is False
        assert ACTOR_POLICY.require_id is True


# ---------------------------------------------------------------------------
# resolve()
# ---------------------------------------------------------------------------


class TestResolve:
    def test_unknown_session_is_unauthenticated(self, resolver, provider):
        assert resolver.resolve("no-such-session", HOUR) is None
        assert provider.calls == []

    def test_empty_session_id_is_unauthenticated(self, resolver, provider):
        assert resolver.resolve("", HOUR) is None
        assert provider.calls == []

    def test_expired_session_is_unauthenticated(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens(session_ttl=60))
        later = IdentityResolver(session_store, fetcher=provider, clock=lambda: now + timedelta(seconds=61))
        assert later.resolve(session.id, HOUR) is None
        assert provider.calls == []

    def test_cold_cache_makes_one_upstream_call(self, resolver, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        identity = resolver.resolve(session.id, HOUR)
        assert identity == provider.identity
        assert provider.calls == ["access-1"]

        cached = session_store.get(session.id).cached_identity
        assert cached.user_id == 42
        assert cached.username == "alice"
        assert cached.fetched_at == now

    def test_warm_cache_skips_upstream(self, resolver, session_store, make_tokens, provider):
        session = session_store.create(make_tokens())
        resolver.resolve(session.id, HOUR)
        second = resolver.resolve(session.id, HOUR)
        assert second.username == "alice"
        assert len(provider.calls) == 1

    def test_fresh_snapshot_returned_without_call(self, resolver, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        _seed(session_store, session.id, now, age_seconds=1800)
        identity = resolver.resolve(session.id, HOUR)
        assert identity.username == "cached-alice"
        assert provider.calls == []

    def test_stale_snapshot_triggers_refetch(self, resolver, session_store, make_tokens, provider, now):
        """fetched_at 7200s old with a 3600s window -> upstream call despite complete fields."""
        session = session_store.create(make_tokens())
        _seed(session_store, session.id, now, age_seconds=7200)
        identity = resolver.resolve(session.id, HOUR)
        assert identity.username == "alice"
        assert provider.calls == ["access-1"]
        assert session_store.get(session.id).cached_identity.fetched_at == now

    def test_require_id_refetches_snapshot_without_id(self, resolver, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        _seed(session_store, session.id, now, age_seconds=10, user_id=None)

        assert resolver.resolve(session.id, DASHBOARD_POLICY).id is None
        assert provider.calls == []

        identity = resolver.resolve(session.id, ACTOR_POLICY)
        assert identity.id == 42
        assert provider.calls == ["access-1"]
        assert session_store.get(session.id).cached_identity.user_id == 42

    def test_upstream_failure_propagates_and_leaves_cache(self, resolver, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        _seed(session_store, session.id, now, age_seconds=7200)
        before = session_store.get(session.id).cached_identity
        provider.error = UpstreamIdentityError("Identity fetch failed: 500", status_code=500)

        with pytest.raises(UpstreamIdentityError) as exc_info:
            resolver.resolve(session.id, HOUR)

        assert exc_info.value.status_code == 500
        assert session_store.get(session.id).cached_identity == before


class TestWriteBack:
    def test_write_back_failure_is_invisible(self, session_store, make_tokens, provider, now, monkeypatch):
        session = session_store.create(make_tokens())
        monkeypatch.setattr(session_store, "update_cached_identity", MagicMock(return_value=False))
        resolver = IdentityResolver(session_store, fetcher=provider, clock=lambda: now)
        assert resolver.resolve(session.id, HOUR) == provider.identity

    def test_unexpected_write_back_error_is_invisible(self, session_store, make_tokens, provider, now, monkeypatch):
        session = session_store.create(make_tokens())
        monkeypatch.setattr(session_store, "update_cached_identity", MagicMock(side_effect=RuntimeError("boom")))
        resolver = IdentityResolver(session_store, fetcher=provider, clock=lambda: now)
        assert resolver.resolve(session.id, HOUR) == provider.identity

    def test_executor_write_back_does_not_block_response(self, session_store, make_tokens, provider, now, monkeypatch):
        """A slow cache write must not delay resolve(); the write lands afterwards."""
        session = session_store.create(make_tokens())
        release = threading.Event()
        real_update = session_store.update_cached_identity

        def slow_update(*args, **kwargs):
            release.wait(timeout=5)
            return real_update(*args, **kwargs)

        monkeypatch.setattr(session_store, "update_cached_identity", slow_update)
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            resolver = IdentityResolver(session_store, fetcher=provider, executor=executor, clock=lambda: now)
            identity = resolver.resolve(session.id, HOUR)
            assert identity == provider.identity
            assert session_store.get(session.id).cached_identity is None
            release.set()
        finally:
            executor.shutdown(wait=True)
        assert session_store.get(session.id).cached_identity.username == "alice"

    def test_shut_down_executor_skips_write(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown(wait=True)
        resolver = IdentityResolver(session_store, fetcher=provider, executor=executor, clock=lambda: now)
        assert resolver.resolve(session.id, HOUR) == provider.identity
        assert session_store.get(session.id).cached_identity is None


class TestTokenRefresh:
    def test_expired_access_token_is_refreshed_first(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens(access_ttl=-60))
        refresher = MagicMock()
        refresher.refresh.return_value = make_tokens(access_token="access-2", refresh_token="refresh-2")
        resolver = IdentityResolver(session_store, fetcher=provider, refresher=refresher, clock=lambda: now)

        resolver.resolve(session.id, HOUR)

        refresher.refresh.assert_called_once()
        assert provider.calls == ["access-2"]
        assert session_store.get(session.id).refresh_token == "refresh-2"

    def test_valid_access_token_is_not_refreshed(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens())
        refresher = MagicMock()
        resolver = IdentityResolver(session_store, fetcher=provider, refresher=refresher, clock=lambda: now)
        resolver.resolve(session.id, HOUR)
        refresher.refresh.assert_not_called()

    def test_fresh_cache_skips_refresh(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens(access_ttl=-60))
        _seed(session_store, session.id, now, age_seconds=10)
        refresher = MagicMock()
        resolver = IdentityResolver(session_store, fetcher=provider, refresher=refresher, clock=lambda: now)
        assert resolver.resolve(session.id, HOUR).username == "cached-alice"
        refresher.refresh.assert_not_called()

    def test_refresh_rejection_propagates(self, session_store, make_tokens, provider, now):
        session = session_store.create(make_tokens(access_ttl=-60))
        refresher = MagicMock()
        refresher.refresh.side_effect = UpstreamIdentityError("Token refresh failed: 400", status_code=400)
        resolver = IdentityResolver(session_store, fetcher=provider, refresher=refresher, clock=lambda: now)
        with pytest.raises(UpstreamIdentityError):
            resolver.resolve(session.id, HOUR)
        assert provider.calls == []

    def test_token_persist_failure_propagates(self, session_store, make_tokens, provider, now, monkeypatch):
        session = session_store.create(make_tokens(access_ttl=-60))
        refresher = MagicMock()
        refresher.refresh.return_value = make_tokens(access_token="access-2")
        monkeypatch.setattr(
            session_store, "update_tokens", MagicMock(side_effect=PersistenceError("Failed to update auth session"))
        )
        resolver = IdentityResolver(session_store, fetcher=provider, refresher=refresher, clock=lambda: now)
        with pytest.raises(PersistenceError):
            resolver.resolve(session.id, HOUR)
        assert provider.calls == []
