"""Unit tests for auth/store.py -- SessionStore against a real SQLite file.

Covers:
- create() returns a session with no cached identity and a random id
- get() returns None for unknown ids
- update_tokens() replaces credentials and keeps the cached identity
- update_tokens() on a missing session raises PersistenceError
- update_cached_identity() round-trips, and swallows database failures
- delete() is idempotent
- purge_expired() removes only expired sessions
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from auth.models import Identity
from core.errors import PersistenceError


def _fail_connect(*args, **kwargs):
    raise OperationalError("UPDATE auth_sessions", {}, Exception("disk I/O error"))


class TestCreateAndGet:
    def test_create_has_no_cached_identity(self, session_store, make_tokens, now):
        session = session_store.create(make_tokens())
        assert session.id
        assert session.cached_identity is None
        assert session.access_token == "access-1"
        assert session.session_expires_at == now + timedelta(days=30)

    def test_session_ids_are_unique(self, session_store, make_tokens):
        ids = {session_store.create(make_tokens()).id for _ in range(5)}
        assert len(ids) == 5

    def test_get_round_trip(self, session_store, make_tokens):
        created = session_store.create(make_tokens())
        loaded = session_store.get(created.id)
        assert loaded is not None
        assert loaded.id == created.id
        assert loaded.refresh_token == "refresh-1"
        assert loaded.access_expires_at == created.access_expires_at

    def test_get_unknown_returns_none(self, session_store):
        assert session_store.get("no-such-session") is None

    def test_create_failure_raises_persistence_error(self, session_store, make_tokens, monkeypatch):
        monkeypatch.setattr(session_store.engine, "connect", _fail_connect)
        with pytest.raises(PersistenceError):
            session_store.create(make_tokens())


class TestUpdateTokens:
    def test_replaces_credentials(self, session_store, make_tokens, now):
        session = session_store.create(make_tokens())
        updated = session_store.update_tokens(
            session.id, make_tokens(access_token="access-2", refresh_token="refresh-2", access_ttl=7200)
        )
        assert updated.access_token == "access-2"
        assert updated.refresh_token == "refresh-2"
        assert updated.access_expires_at == now + timedelta(seconds=7200)

    def test_keeps_cached_identity(self, session_store, make_tokens, now):
        session = session_store.create(make_tokens())
        session_store.update_cached_identity(session.id, Identity(id=7, username="bob", trust_level=1), now)
        updated = session_store.update_tokens(session.id, make_tokens(access_token="access-2"))
        assert updated.cached_identity is not None
        assert updated.cached_identity.username == "bob"

    def test_missing_session_raises(self, session_store, make_tokens):
        with pytest.raises(PersistenceError):
            session_store.update_tokens("no-such-session", make_tokens())


class TestUpdateCachedIdentity:
    def test_round_trip(self, session_store, make_tokens, now):
        session = session_store.create(make_tokens())
        ok = session_store.update_cached_identity(session.id, Identity(id=42, username="alice", trust_level=3), now)
        assert ok is True
        cached = session_store.get(session.id).cached_identity
        assert cached.user_id == 42
        assert cached.username == "alice"
        assert cached.trust_level == 3
        assert cached.fetched_at == now

    def test_identity_without_id_keeps_id_absent(self, session_store, make_tokens, now):
        """user_id stays None rather than becoming 0 -- 'unknown' is not 'zero'."""
        session = session_store.create(make_tokens())
        session_store.update_cached_identity(session.id, Identity(id=None, username="alice", trust_level=0), now)
        cached = session_store.get(session.id).cached_identity
        assert cached is not None
        assert cached.user_id is None
        assert cached.trust_level == 0

    def test_unknown_session_returns_false(self, session_store, now):
        ok = session_store.update_cached_identity("no-such-session", Identity(id=1, username="x", trust_level=0), now)
        assert ok is False

    def test_database_failure_is_swallowed(self, session_store, make_tokens, now, monkeypatch):
        session = session_store.create(make_tokens())
        monkeypatch.setattr(session_store.engine, "connect", _fail_connect)
        ok = session_store.update_cached_identity(session.id, Identity(id=1, username="x", trust_level=0), now)
        assert ok is False


class TestDeleteAndPurge:
    def test_delete_removes_session(self, session_store, make_tokens):
        session = session_store.create(make_tokens())
        session_store.delete(session.id)
        assert session_store.get(session.id) is None

    def test_delete_is_idempotent(self, session_store, make_tokens):
        session = session_store.create(make_tokens())
        session_store.delete(session.id)
        session_store.delete(session.id)
        session_store.delete("never-existed")

    def test_purge_expired_only_removes_expired(self, session_store, make_tokens, now):
        live = session_store.create(make_tokens(session_ttl=3600))
        dead = session_store.create(make_tokens(session_ttl=60))
        removed = session_store.purge_expired(now + timedelta(seconds=120))
        assert removed == 1
        assert session_store.get(live.id) is not None
        assert session_store.get(dead.id) is None


class TestTokensStayInStore:
    """A failed token write must not carry the tokens out in the error."""

    @staticmethod
    def _drop_table(session_store):
        with session_store.engine.begin() as conn:
            conn.execute(text("DROP TABLE auth_sessions"))

    @staticmethod
    def _assert_no_tokens(exc_info):
        rendered = [exc_info.value.message, exc_info.value.detail or "", str(exc_info.value.__cause__)]
        for text_ in rendered:
            assert "SECRET-ACCESS" not in text_
            assert "SECRET-REFRESH" not in text_

    def test_failed_create_hides_tokens(self, session_store, make_tokens):
        self._drop_table(session_store)
        with pytest.raises(PersistenceError) as exc_info:
            session_store.create(make_tokens(access_token="SECRET-ACCESS", refresh_token="SECRET-REFRESH"))
        assert "auth_sessions" in exc_info.value.detail
        self._assert_no_tokens(exc_info)

    def test_failed_update_hides_tokens(self, session_store, make_tokens):
        session = session_store.create(make_tokens())
        self._drop_table(session_store)
        with pytest.raises(PersistenceError) as exc_info:
            session_store.update_tokens(
                session.id, make_tokens(access_token="SECRET-ACCESS", refresh_token="SECRET-REFRESH")
            )
        self._assert_no_tokens(exc_info)
