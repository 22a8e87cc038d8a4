"""
auth/oauth.py -- Authlib OAuth provider registration and session cookie helpers.

SiteWatch signs users in through LINUX DO Connect (OAuth 2.0 authorization
code flow). Authlib performs the redirect and the code-for-token exchange;
SiteWatch only takes the resulting token dict and turns it into a stored
Session (auth/store.py). The provider is registered only when both client id
and secret are configured.

OAuth state (CSRF protection) is handled by authlib via Starlette
SessionMiddleware. The Starlette session only lives for the duration of the
redirect round-trip; the long-lived login is the sw_session cookie, whose
value is an opaque auth_sessions primary key.

Layer rule: no imports from api/ or sites/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from authlib.integrations.starlette_client import OAuth

from auth.models import Session, TokenSet
from auth.provider import tokens_from_response
from core.config import get_settings

logger = logging.getLogger("sitewatch.auth.oauth")

PROVIDER_NAME = "linuxdo"

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.oauth_enabled:
    oauth.register(
        name=PROVIDER_NAME,
        client_id=_cfg.ld_oauth_client_id,
        client_secret=_cfg.ld_oauth_client_secret,
        access_token_url=_cfg.ld_oauth_token_url,  # noqa: S106 -- URL, not a password
        authorize_url=_cfg.ld_oauth_authorize_url,
        client_kwargs={"token_endpoint_auth_method": "client_secret_basic"},
    )
    logger.info("LINUX DO OAuth provider registered")


def session_tokens_from_authlib(token: dict, now: datetime) -> TokenSet:
    """Convert an authlib token dict into the TokenSet stored on a new session.

    The session lifetime starts at login and is independent of the access
    token lifetime; token refreshes never extend it.
    """
    session_expires_at = now + timedelta(seconds=get_settings().session_max_age_seconds)
    return tokens_from_response(token, now, session_expires_at)


# ---------------------------------------------------------------------------
# Session cookie
# ---------------------------------------------------------------------------


def set_session_cookie(response, session: Session, now: datetime) -> None:
    """Write the session id as an httpOnly cookie that expires with the session.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POSTs (CSRF mitigation for the
        report and restore endpoints).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    """
    cfg = get_settings()
    max_age = max(int((session.session_expires_at - now).total_seconds()), 0)
    response.set_cookie(
        cfg.session_cookie_name,
        value=session.id,
        httponly=True,
        samesite="lax",
        secure=cfg.secure_cookies,
        max_age=max_age,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(get_settings().session_cookie_name)
