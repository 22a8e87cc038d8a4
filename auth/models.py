"""
auth/models.py -- Domain dataclasses for sessions and identities.

Pattern: Data class (pure data container, near-zero logic). The store and the
resolver do the work; these types only own shape.

Optional fields are modeled with None, never with sentinel values:
  - Session.cached_identity is None until the first successful identity fetch.
  - CachedIdentity.user_id is None when only the username/trust level are
    known. "Numeric id confirmed" and "identity known" are separate facts.

Layer rule: no imports from api/ or sites/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class TokenSet:
    """Opaque OAuth credentials plus their absolute expiry timestamps."""

    access_token: str
    refresh_token: str
    token_type: str
    access_expires_at: datetime
    session_expires_at: datetime


@dataclass(frozen=True)
class CachedIdentity:
    """Snapshot of the last resolved identity and when it was fetched.

    username, trust_level and fetched_at are always present together. The
    store's mapper returns None instead of a partial CachedIdentity.
    """

    username: str
    trust_level: int
    fetched_at: datetime
    user_id: int | None = None


@dataclass(frozen=True)
class Identity:
    """A user as reported by the identity provider.

    extra holds provider-specific fields (name, avatar_template, ...) that
    SiteWatch passes through but does not interpret. Identities rebuilt from
    the session cache have an empty extra dict and may have id=None.
    """

    id: int | None
    username: str
    trust_level: int
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, payload: dict[str, Any]) -> Identity:
        """Build an Identity from the provider's JSON body.

        Raises ValueError if a required field is missing or mistyped.
        """
        try:
            user_id = payload["id"]
            username = payload["username"]
            trust_level = payload["trust_level"]
        except KeyError as exc:
            raise ValueError(f"identity payload missing field {exc.args[0]!r}") from exc
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise ValueError("identity payload field 'id' must be an integer")
        if not isinstance(username, str) or not username:
            raise ValueError("identity payload field 'username' must be a non-empty string")
        if isinstance(trust_level, bool) or not isinstance(trust_level, int):
            raise ValueError("identity payload field 'trust_level' must be an integer")
        extra = {k: v for k, v in payload.items() if k not in ("id", "username", "trust_level")}
        return cls(id=user_id, username=username, trust_level=trust_level, extra=extra)

    @classmethod
    def from_cache(cls, cached: CachedIdentity) -> Identity:
        return cls(id=cached.user_id, username=cached.username, trust_level=cached.trust_level)


@dataclass
class Session:
    """A persisted login session.

    The token fields never leave the auth/ package: API responses are built
    from Identity, not from Session.
    """

    id: str
    access_token: str
    refresh_token: str
    token_type: str
    access_expires_at: datetime
    session_expires_at: datetime
    cached_identity: CachedIdentity | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.session_expires_at <= now

    def access_token_expired(self, now: datetime) -> bool:
        return self.access_expires_at <= now
