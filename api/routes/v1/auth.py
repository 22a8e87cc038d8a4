"""
api/routes/v1/auth.py -- Login, logout, and current-user endpoints.

Routes:
  GET  /api/v1/auth/login     -- redirect to LINUX DO Connect (authlib)
  GET  /api/v1/auth/callback  -- code exchange, create session, set cookie
  POST /api/v1/auth/logout    -- delete session (idempotent), clear cookie
  GET  /api/v1/auth/me        -- current identity (dashboard freshness policy)

The callback resolves the identity once with ACTOR_POLICY right after the
session is created. That both proves the new access token works and fills the
session's identity cache with the numeric id, so the first report submission
does not need another provider round-trip.
"""

from __future__ import annotations

import asyncio
import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import MeResponse
from auth.dependencies import get_current_identity, get_session_id
from auth.identity import ACTOR_POLICY, IdentityResolver
from auth.models import Identity
from auth.oauth import PROVIDER_NAME, clear_session_cookie, session_tokens_from_authlib, set_session_cookie
from auth.store import SessionStore
from core.db import utcnow
from core.errors import UpstreamIdentityError

logger = logging.getLogger("sitewatch.api.auth")

# Auth policy:
# - GET  /api/v1/auth/login:     public -- starts the login flow
# - GET  /api/v1/auth/callback:  public -- provider redirects here
# - POST /api/v1/auth/logout:    public -- deleting an unknown session is a no-op
# - GET  /api/v1/auth/me:        requires session (get_current_identity)
router = APIRouter()


def _oauth_client(request: Request):
    client = request.app.state.oauth.create_client(PROVIDER_NAME)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "oauth_disabled", "message": "OAuth login is not configured."},
        )
    return client


@router.get("/auth/login")
async def login(request: Request):
    """Redirect the browser to the provider's authorization page."""
    client = _oauth_client(request)
    redirect_uri = str(request.url_for("oauth_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback", name="oauth_callback")
async def oauth_callback(request: Request) -> RedirectResponse:
    """Exchange the authorization code, store the session, and set the session cookie.

    Flow:
      1. authlib exchanges the code for tokens (CSRF state checked by authlib).
      2. SessionStore.create() persists the tokens. PersistenceError propagates
         to the 500 handler -- there is no login without a stored session.
      3. Resolve the identity once. If the provider rejects the fresh token,
         the session is deleted and the user is sent back with an error.

    Store and provider calls block, so they run in worker threads; the event
    loop keeps serving other requests while the provider answers.
    """
    client = _oauth_client(request)
    session_store: SessionStore = request.app.state.session_store
    resolver: IdentityResolver = request.app.state.identity_resolver

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed")
        return RedirectResponse("/?error=oauth_failed", status_code=302)

    now = utcnow()
    session = await asyncio.to_thread(session_store.create, session_tokens_from_authlib(token, now))

    try:
        identity = await asyncio.to_thread(resolver.resolve, session.id, ACTOR_POLICY)
    except UpstreamIdentityError:
        await asyncio.to_thread(session_store.delete, session.id)
        return RedirectResponse("/?error=oauth_failed", status_code=302)
    if identity is not None:
        logger.info("User %s logged in", identity.username)

    resp = RedirectResponse("/", status_code=302)
    set_session_cookie(resp, session, now)
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Delete the server-side session and clear the cookie."""
    session_id = get_session_id(request)
    if session_id is not None:
        session_store: SessionStore = request.app.state.session_store
        session_store.delete(session_id)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the current user's identity."""
    return MeResponse(id=identity.id, username=identity.username, trust_level=identity.trust_level)
