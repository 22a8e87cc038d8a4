"""
API request and response models for SiteWatch REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
sites/models.py, which own the internal domain representation. Route handlers
map between the two.

Session tokens never appear in any response model.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from sites.models import ReportCategory, ReportStatus

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ReportCreate(BaseModel):
    """Request body for POST /api/v1/sites/{site_id}/report.

    The JSON field is camelCase (reportType) to match the existing frontend.
    Whitespace is stripped before the non-empty check. The upper bound comes
    from REPORT_REASON_MAX_LENGTH and is enforced by the admission guard
    (400 invalid_report), so it is not repeated here.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    report_type: ReportCategory = Field(alias="reportType")
    reason: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ReportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    id: int
    site_id: str
    report_type: ReportCategory
    status: ReportStatus
    created_at: Optional[datetime] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me.

    id is None when the identity came from a cached snapshot that predates
    numeric-id capture.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    username: str
    trust_level: int


class RestoreResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    id: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
