"""
api/routes/v1/sites.py -- Community moderation endpoints for listed sites.

Routes:
  POST  /api/v1/sites/{site_id}/report           -- flag a site (runaway / fake_charity)
  PATCH /api/v1/sites/{site_id}/restore-runaway  -- maintainer clears the runaway flag

Both endpoints mutate state on behalf of a user id, so both use
require_actor (ACTOR_POLICY): a cached identity without the numeric id is
refetched before the handler runs.

Status mapping (handlers in api/main.py):
  DuplicateError        -> 409 report_pending_exists
  UpstreamIdentityError -> 401
  PersistenceError      -> 500
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import ReportCreate, ReportResponse, RestoreResponse
from auth.dependencies import require_actor
from auth.models import Identity
from core.config import get_settings
from sites.admission import ReportAdmissionGuard
from sites.maintainers import is_maintainer
from sites.store import SiteStore

logger = logging.getLogger("sitewatch.api.sites")

_cfg = get_settings()

# Auth policy:
# - POST  /api/v1/sites/{id}/report:          requires session with confirmed id (require_actor)
# - PATCH /api/v1/sites/{id}/restore-runaway: requires session with confirmed id + maintainer match
router = APIRouter()


def _site_not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "site_not_found", "message": "Site not found."},
    )


@limiter.limit(_cfg.report_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/sites/{site_id}/report", response_model=ReportResponse, status_code=201)
def submit_report(
    request: Request,
    site_id: str,
    body: ReportCreate,
    identity: Identity = Depends(require_actor),
) -> ReportResponse:
    """File a report against a site.

    At most one pending report per (site, report type) is accepted; later
    submissions get 409 until the pending one is resolved or dismissed.
    """
    site_store: SiteStore = request.app.state.site_store
    guard: ReportAdmissionGuard = request.app.state.report_guard

    if not site_store.site_exists(site_id):
        raise _site_not_found()

    try:
        report = guard.submit(
            site_id=site_id,
            category=body.report_type,
            reporter_id=identity.id,
            reporter_username=identity.username,
            reason=body.reason,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_report", "message": str(exc)},
        ) from exc

    return ReportResponse(
        id=report.id,
        site_id=report.site_id,
        report_type=report.category,
        status=report.status,
        created_at=report.created_at,
    )


@router.patch("/sites/{site_id}/restore-runaway", response_model=RestoreResponse)
def restore_runaway(
    request: Request,
    site_id: str,
    identity: Identity = Depends(require_actor),
) -> RestoreResponse:
    """Clear the runaway flag on a site. Only a registered maintainer may do this."""
    site_store: SiteStore = request.app.state.site_store

    site = site_store.get_site(site_id)
    if site is None:
        raise _site_not_found()

    if not is_maintainer(identity.username, site_store.list_maintainers(site_id)):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Only a site maintainer can restore this site."},
        )

    if not site_store.restore_runaway(
        site_id,
        actor_id=identity.id,
        actor_username=identity.username,
        message="Maintainer restored the site from runaway status",
    ):
        raise _site_not_found()

    logger.info("Site %s restored from runaway by %s", site_id, identity.username)
    return RestoreResponse(id=site_id)
