"""
auth/identity.py -- Resolve a session id to a live user identity.

The session row is a read-through / write-back cache in front of the identity
provider:

  1. Load the session. Missing or expired -> None (unauthenticated).
  2. If the cached snapshot satisfies the caller's ResolveOptions, return it.
     No network call.
  3. Otherwise fetch from the provider with the session's access token
     (refreshing the access token first when it has expired). Any provider
     failure raises UpstreamIdentityError; the cached snapshot is NOT used as a
     fallback because the token may have been revoked.
  4. Write the fresh identity back to the session row, best-effort and
     fire-and-forget, and return the fresh identity regardless of the outcome.

Two freshness policies exist because call sites differ in what they trust:

  DASHBOARD_POLICY -- read-only views. An hour-old snapshot is fine and the
      numeric id is not needed.
  ACTOR_POLICY     -- state-changing actions that record or compare the user
      id (report submission, maintainer actions). The numeric id must be
      present in the snapshot or it is refetched.

Layer rule: no imports from api/ or sites/.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from auth.models import CachedIdentity, Identity, Session
from auth.provider import TokenRefresher, fetch_identity
from auth.store import SessionStore
from core.config import get_settings
from core.db import utcnow

logger = logging.getLogger("sitewatch.auth.identity")


@dataclass(frozen=True)
class ResolveOptions:
    """Freshness requirements for one resolve() call.

    max_age_seconds: oldest acceptable cached snapshot, in seconds.
    require_id:      reject snapshots that lack the numeric user id.
    """

    max_age_seconds: int
    require_id: bool = False


_DEFAULT_MAX_AGE = get_settings().user_cache_seconds

DASHBOARD_POLICY = ResolveOptions(max_age_seconds=_DEFAULT_MAX_AGE, require_id=False)
ACTOR_POLICY = ResolveOptions(max_age_seconds=_DEFAULT_MAX_AGE, require_id=True)


def cached_identity_if_fresh(
    cached: CachedIdentity | None, options: ResolveOptions, now: datetime
) -> Identity | None:
    """Return the cached identity if it satisfies options at time now, else None.

    Usable iff a snapshot exists, the id is present when require_id is set,
    and now - fetched_at <= max_age_seconds. The age boundary is inclusive.
    """
    if cached is None:
        return None
    if options.require_id and cached.user_id is None:
        return None
    age = (now - cached.fetched_at).total_seconds()
    if age > options.max_age_seconds:
        return None
    return Identity.from_cache(cached)


class IdentityResolver:
    """Session id -> Identity, using the session row as the cache.

    Args:
        store:     SessionStore that owns the session rows.
        fetcher:   callable(access_token) -> Identity. Defaults to the real
                   provider client; tests pass a stub.
        refresher: optional TokenRefresher. Without one, an expired access
                   token is still sent to the provider, which decides.
        executor:  optional Executor for the cache write-back. With one, the
                   write is submitted and not awaited. Without one, it runs
                   inline; failures are swallowed either way.
        clock:     callable returning the current aware datetime.
    """

    def __init__(
        self,
        store: SessionStore,
        fetcher: Callable[[str], Identity] = fetch_identity,
        refresher: TokenRefresher | None = None,
        executor: Executor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.refresher = refresher
        self.executor = executor
        self.clock = clock

    def resolve(self, session_id: str, options: ResolveOptions = DASHBOARD_POLICY) -> Identity | None:
        """Return the identity behind session_id, or None if unauthenticated.

        Raises:
            UpstreamIdentityError: the provider rejected the token, timed out,
                or refused the refresh.
            PersistenceError: the session could not be read, or refreshed
                tokens could not be saved.
        """
        if not session_id:
            return None
        session = self.store.get(session_id)
        if session is None:
            return None
        now = self.clock()
        if session.is_expired(now):
            logger.info("Session expired; treating as unauthenticated")
            return None

        cached = cached_identity_if_fresh(session.cached_identity, options, now)
        if cached is not None:
            return cached

        session = self._ensure_access_token(session, now)
        identity = self.fetcher(session.access_token)
        self._write_back(session.id, identity, self.clock())
        return identity

    def _ensure_access_token(self, session: Session, now: datetime) -> Session:
        """Refresh the access token when it has expired and a refresher is configured.

        The new tokens are persisted before use. update_tokens raises
        PersistenceError on failure, which propagates.
        """
        if self.refresher is None or not session.access_token_expired(now):
            return session
        tokens = self.refresher.refresh(session)
        logger.info("Access token refreshed")
        return self.store.update_tokens(session.id, tokens)

    def _write_back(self, session_id: str, identity: Identity, fetched_at: datetime) -> None:
        if self.executor is None:
            self._store_snapshot(session_id, identity, fetched_at)
            return
        try:
            self.executor.submit(self._store_snapshot, session_id, identity, fetched_at)
        except RuntimeError as exc:
            # Executor already shut down (application stopping).
            logger.warning("Identity cache write skipped: %s", exc)

    def _store_snapshot(self, session_id: str, identity: Identity, fetched_at: datetime) -> None:
        # The store swallows database errors itself. Anything else raised
        # here must still not reach the request that triggered the write.
        try:
            self.store.update_cached_identity(session_id, identity, fetched_at)
        except Exception:
            logger.exception("Unexpected error writing identity cache")
