"""
sites/models.py -- Domain dataclasses for the site directory and its reports.

Pattern: Data class (pure data container, zero logic). Mirrors auth/models.py
-- dataclasses own domain shape; stores and the admission guard do the work.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ReportCategory(str, Enum):
    """Fixed set of report types a user can file against a site.

    Adding a member needs no change to the admission algorithm.
    """

    runaway = "runaway"
    fake_charity = "fake_charity"


class ReportStatus(str, Enum):
    pending = "pending"
    # Terminal states, set only by the moderation workflow.
    resolved = "resolved"
    dismissed = "dismissed"


@dataclass
class Site:
    id: str
    name: str
    url: str
    is_active: bool = True
    is_runaway: bool = False
    is_fake_charity: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    updated_by: int | None = None


@dataclass
class Maintainer:
    """A registered maintainer of a site.

    username may hold either a bare LINUX DO username or a full profile URL
    (https://linux.do/u/<name>/summary); profile_url is optional.
    """

    site_id: str
    username: str
    profile_url: str | None = None
    id: int | None = None


@dataclass
class Report:
    """A user-submitted flag against a site.

    Invariant (enforced by sites/admission.py and the partial unique index in
    sites/store.py): at most one Report per (site_id, category) has
    status == pending.
    """

    site_id: str
    reporter_id: int
    reporter_username: str
    category: ReportCategory
    reason: str
    status: ReportStatus = ReportStatus.pending
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class SiteLog:
    site_id: str
    action: str
    actor_id: int | None
    actor_username: str
    message: str
    id: int | None = None
    created_at: datetime | None = None
