"""
auth/provider.py -- HTTP client for the upstream identity provider.

Two calls are made against LINUX DO Connect (endpoints from core.config):
  GET  <user endpoint>   Authorization: Bearer <access token>  -> identity JSON
  POST <token endpoint>  grant_type=refresh_token              -> new tokens

Both use a bounded timeout. Every failure mode (non-2xx, timeout, connection
error, unparseable body) becomes UpstreamIdentityError so callers have exactly
one thing to catch. Unlike core data fetchers there is no soft fallback here:
a failed identity fetch means the session cannot be trusted.

Layer rule: no imports from api/ or sites/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

import requests

from auth.models import Identity, Session, TokenSet
from core.config import get_settings
from core.db import utcnow
from core.errors import UpstreamIdentityError

logger = logging.getLogger("sitewatch.auth.provider")

# Module-level session shared across calls for connection pooling.
# The provider endpoints are fixed; a low redirect cap limits SSRF via
# redirect chains.
_http = requests.Session()
_http.max_redirects = 3

# Providers that omit expires_in get this access-token lifetime.
_DEFAULT_ACCESS_TTL = 3600


def _error_text(resp: requests.Response) -> str:
    # Cap the body so a misbehaving upstream cannot flood the logs.
    return resp.text[:200]


def fetch_identity(access_token: str, endpoint: str | None = None, timeout: float | None = None) -> Identity:
    """Fetch the current user from the identity provider.

    Raises:
        UpstreamIdentityError: non-2xx status, timeout, network failure, or a
            body that is not a valid identity document.
    """
    cfg = get_settings()
    url = endpoint or cfg.ld_oauth_user_endpoint
    try:
        resp = _http.get(
            url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=timeout if timeout is not None else cfg.identity_timeout_seconds,
        )
    except requests.Timeout as exc:
        logger.warning("Identity fetch timed out")
        raise UpstreamIdentityError("Identity provider timed out", detail=str(exc)) from exc
    except requests.RequestException as exc:
        logger.warning("Identity fetch failed: %s", exc.__class__.__name__)
        raise UpstreamIdentityError("Identity provider unreachable", detail=str(exc)) from exc

    if not resp.ok:
        logger.warning("Identity fetch rejected (status=%d)", resp.status_code)
        raise UpstreamIdentityError(
            f"Identity fetch failed: {resp.status_code}",
            status_code=resp.status_code,
            detail=_error_text(resp),
        )

    try:
        return Identity.from_provider(resp.json())
    except ValueError as exc:
        # requests' JSONDecodeError is a ValueError subclass too.
        raise UpstreamIdentityError("Identity provider returned an invalid body", detail=str(exc)) from exc


def tokens_from_response(payload: dict, now: datetime, session_expires_at: datetime) -> TokenSet:
    """Build a TokenSet from an OAuth token endpoint response.

    refresh_token falls back to "" when the provider does not issue one; the
    refresher treats an empty refresh token as "cannot refresh".
    """
    expires_in = payload.get("expires_in") or _DEFAULT_ACCESS_TTL
    return TokenSet(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or "",
        token_type=payload.get("token_type") or "bearer",
        access_expires_at=now + timedelta(seconds=int(expires_in)),
        session_expires_at=session_expires_at,
    )


class TokenRefresher:
    """Exchange a session's refresh token for a new access token.

    The session lifetime is not extended by a refresh: session_expires_at is
    carried over unchanged. A provider that does not rotate refresh tokens
    keeps the old one.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> TokenRefresher | None:
        """Return a refresher for the configured provider, or None if OAuth is disabled."""
        cfg = get_settings()
        if not cfg.oauth_enabled:
            return None
        return cls(
            token_url=cfg.ld_oauth_token_url,
            client_id=cfg.ld_oauth_client_id,
            client_secret=cfg.ld_oauth_client_secret,
            timeout=cfg.identity_timeout_seconds,
        )

    def refresh(self, session: Session) -> TokenSet:
        """Return fresh tokens for session.

        Raises UpstreamIdentityError if there is no refresh token or the
        provider rejects the exchange.
        """
        if not session.refresh_token:
            raise UpstreamIdentityError("Session has no refresh token")
        try:
            resp = _http.post(
                self.token_url,
                data={"grant_type": "refresh_token", "refresh_token": session.refresh_token},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Token refresh failed: %s", exc.__class__.__name__)
            raise UpstreamIdentityError("Token endpoint unreachable", detail=str(exc)) from exc

        if not resp.ok:
            logger.warning("Token refresh rejected (status=%d)", resp.status_code)
            raise UpstreamIdentityError(
                f"Token refresh failed: {resp.status_code}",
                status_code=resp.status_code,
                detail=_error_text(resp),
            )
        try:
            payload = resp.json()
            tokens = tokens_from_response(payload, utcnow(), session.session_expires_at)
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamIdentityError("Token endpoint returned an invalid body", detail=str(exc)) from exc
        if not tokens.refresh_token:
            tokens = replace(tokens, refresh_token=session.refresh_token)
        return tokens
