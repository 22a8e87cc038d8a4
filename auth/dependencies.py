"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session id arrives in the sw_session cookie. Both dependencies hand it to
the IdentityResolver on app.state and differ only in the freshness policy:

  get_current_identity() -- DASHBOARD_POLICY: cached snapshot up to the
      configured age, numeric id optional. For read-only views.
  require_actor()        -- ACTOR_POLICY: same age limit, but the numeric id
      must be present or the identity is refetched. For any endpoint that
      records or compares the user id.

No cookie, unknown session, or expired session -> HTTP 401.
UpstreamIdentityError propagates to the exception handler in api/main.py,
which also answers 401: a session the provider rejects is unusable.

Layer rule: no imports from api/ or sites/. This module may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.identity import ACTOR_POLICY, DASHBOARD_POLICY, IdentityResolver, ResolveOptions
from auth.models import Identity
from core.config import get_settings


def get_session_id(request: Request) -> str | None:
    """Return the session id from the request cookie, or None."""
    return request.cookies.get(get_settings().session_cookie_name) or None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def resolve_identity(request: Request, options: ResolveOptions) -> Identity:
    session_id = get_session_id(request)
    if session_id is None:
        raise _unauthorized()
    resolver: IdentityResolver = request.app.state.identity_resolver
    identity = resolver.resolve(session_id, options)
    if identity is None:
        raise _unauthorized()
    return identity


def get_current_identity(request: Request) -> Identity:
    """Require a logged-in user; tolerate a cached identity without numeric id.

    Use as a FastAPI dependency:
        @router.get("/auth/me")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    return resolve_identity(request, DASHBOARD_POLICY)


def require_actor(request: Request) -> Identity:
    """Require a logged-in user whose numeric id is confirmed."""
    identity = resolve_identity(request, ACTOR_POLICY)
    if identity.id is None:
        # ACTOR_POLICY refetches id-less snapshots; the provider always
        # supplies an id, so this only triggers on a broken resolver.
        raise _unauthorized()
    return identity
