"""
auth/store.py -- SQLAlchemy Core persistence layer for login sessions.

Pattern: Repository + Data Mapper (same as sites/store.py).
SessionStore is the repository; _row_to_session is the mapper.
Route and dependency code never touches SQL directly.

The session row doubles as the identity cache: user_id, user_username,
user_trust_level and user_fetched_at hold the last identity the resolver
fetched for this session. There is no in-process cache on top of it -- the
database is the only source of truth shared between workers.

Failure policy per operation:
  create / update_tokens / get / delete  -- raise PersistenceError. A caller
      must not continue without a session or with stale tokens.
  update_cached_identity                 -- best-effort. Failures are logged
      and reported as False, never raised. A lost write only costs a future
      cache miss.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Tokens are never logged. Token writes report only the driver message
  (core.db.error_detail) in PersistenceError.detail, and every engine is built with
  hide_parameters=True so SQLAlchemy never renders bound values.

Layer rule: no imports from api/ or sites/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import CachedIdentity, Identity, Session, TokenSet
from core.config import get_settings
from core.db import error_detail, from_iso, make_engine, to_iso, utcnow
from core.errors import PersistenceError

logger = logging.getLogger("sitewatch.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "auth_sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=False),
    Column("token_type", String(30), nullable=False),
    Column("access_expires_at", String(32), nullable=False),
    Column("session_expires_at", String(32), nullable=False, index=True),
    # Cached identity snapshot -- all NULL until the first successful fetch
    Column("user_id", Integer),
    Column("user_username", String(255)),
    Column("user_trust_level", Integer),
    Column("user_fetched_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def _new_session_id() -> str:
    # 256 bits of entropy; the id is the bearer credential for the cookie.
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session records.

    Usage:
        store = SessionStore()
        session = store.create(tokens)
        session = store.get(session.id)
        store.update_cached_identity(session.id, identity, fetched_at)
        store.delete(session.id)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().auth_db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Required-success operations
    # ------------------------------------------------------------------

    def create(self, tokens: TokenSet) -> Session:
        """Insert a new session with no cached identity and return it.

        Raises PersistenceError if the insert fails. There is no fallback:
        the OAuth callback cannot log the user in without a stored session.
        """
        now = to_iso(utcnow())
        session_id = _new_session_id()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _sessions.insert().values(
                        id=session_id,
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token,
                        token_type=tokens.token_type,
                        access_expires_at=to_iso(tokens.access_expires_at),
                        session_expires_at=to_iso(tokens.session_expires_at),
                        created_at=now,
                        updated_at=now,
                    )
                )
                row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to create auth session", detail=error_detail(exc)) from exc
        if row is None:
            raise PersistenceError("Failed to create auth session")
        logger.info("Session created (session_id=%s)", _short(session_id))
        return _row_to_session(row)

    def get(self, session_id: str) -> Session | None:
        """Look up a session by primary key. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load auth session", detail=error_detail(exc)) from exc
        return _row_to_session(row) if row is not None else None

    def update_tokens(self, session_id: str, tokens: TokenSet) -> Session:
        """Replace the credential fields of a session and return the updated record.

        Used after a token refresh. Raises PersistenceError if the write fails
        or the session no longer exists -- continuing with the old tokens
        after the provider has rotated them would leave the session broken.
        The cached identity is left untouched.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sessions.update()
                    .where(_sessions.c.id == session_id)
                    .values(
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token,
                        token_type=tokens.token_type,
                        access_expires_at=to_iso(tokens.access_expires_at),
                        session_expires_at=to_iso(tokens.session_expires_at),
                        updated_at=to_iso(utcnow()),
                    )
                )
                row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update auth session", detail=error_detail(exc)) from exc
        if result.rowcount == 0 or row is None:
            raise PersistenceError("Failed to update auth session", detail="session not found")
        return _row_to_session(row)

    def delete(self, session_id: str) -> None:
        """Delete a session. Deleting a missing session is not an error."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to delete auth session", detail=error_detail(exc)) from exc

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every session whose session_expires_at has passed.

        Returns the number of rows removed. Timestamps are stored as UTC ISO
        strings, so the string comparison is a chronological comparison.
        """
        cutoff = to_iso(now or utcnow())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_sessions.delete().where(_sessions.c.session_expires_at <= cutoff))
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to purge expired sessions", detail=error_detail(exc)) from exc
        return result.rowcount

    # ------------------------------------------------------------------
    # Best-effort operations
    # ------------------------------------------------------------------

    def update_cached_identity(self, session_id: str, identity: Identity, fetched_at: datetime) -> bool:
        """Write an identity snapshot onto the session row.

        Best-effort: returns True if a row was written, False otherwise.
        Database errors are logged and swallowed here so they can never reach
        the caller of the identity resolver.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sessions.update()
                    .where(_sessions.c.id == session_id)
                    .values(
                        user_id=identity.id,
                        user_username=identity.username,
                        user_trust_level=identity.trust_level,
                        user_fetched_at=to_iso(fetched_at),
                        updated_at=to_iso(utcnow()),
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            logger.warning("Identity cache write failed (session_id=%s): %s", _short(session_id), exc)
            return False
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_cached_identity(row) -> CachedIdentity | None:
    # All-or-nothing: a partial snapshot (e.g. fetched_at unparseable) is
    # reported as no snapshot so the resolver refetches.
    fetched_at = from_iso(row.user_fetched_at)
    if row.user_username is None or row.user_trust_level is None or fetched_at is None:
        return None
    return CachedIdentity(
        user_id=row.user_id,
        username=row.user_username,
        trust_level=row.user_trust_level,
        fetched_at=fetched_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_type=row.token_type,
        access_expires_at=from_iso(row.access_expires_at),
        session_expires_at=from_iso(row.session_expires_at),
        cached_identity=_row_to_cached_identity(row),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _short(session_id: str) -> str:
    """Log-safe prefix of a session id. The full id is a credential."""
    return session_id[:8] + "..."
