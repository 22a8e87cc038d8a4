"""
core/errors.py -- Error taxonomy shared by the stores, resolver, and API layer.

Every error carries a machine-readable code and a human-readable message so
the API layer can pick a status code without inspecting message text.

  PersistenceError       -- the database failed on a write that correctness
                            depends on (session create, token update, report
                            insert for any reason other than duplication).
  UpstreamIdentityError  -- the identity provider answered non-2xx, timed out,
                            or was unreachable. The session is unusable.
  DuplicateError         -- a pending report already exists for the same
                            (site, category). A normal rejection, not a fault.
  UniqueViolation        -- the database rejected a write on a unique
                            constraint. Stores raise it so callers can map the
                            race-loser path without string matching.

Layer rule: core/ is the kernel. No imports from api/, auth/, or sites/.
"""

from __future__ import annotations

PENDING_EXISTS = "pending-exists"


class SiteWatchError(Exception):
    """Base class for all SiteWatch domain errors."""

    code = "sitewatch_error"

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class PersistenceError(SiteWatchError):
    code = "persistence_error"


class UniqueViolation(PersistenceError):
    """A unique constraint (or unique index) rejected the write.

    constraint names the index when the driver reports it, None otherwise.
    """

    code = "unique_violation"

    def __init__(self, message: str, constraint: str | None = None, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.constraint = constraint


class UpstreamIdentityError(SiteWatchError):
    code = "upstream_identity_error"

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class DuplicateError(SiteWatchError):
    """A pending report for this (site, category) already exists."""

    code = "report_pending_exists"

    def __init__(self, site_id: str, category: str, kind: str = PENDING_EXISTS) -> None:
        super().__init__("A report of this type is already being processed; new reports are not accepted yet.")
        self.site_id = site_id
        self.category = category
        self.kind = kind
