"""
sites/admission.py -- Report Admission Guard.

Keeps at most one pending report per (site, category), under concurrent
submissions, with two layers:

  1. Pre-check: look for an existing pending report. If one exists, reject
     with DuplicateError right away. This is the common path and yields a
     precise, friendly rejection.
  2. Constraint: the insert is protected by the partial unique index
     uq_site_reports_pending. Two submissions that both pass the pre-check
     race to insert; the loser gets UniqueViolation from the store, which is
     mapped to the same DuplicateError. Callers cannot tell which layer
     rejected them.

Any other insert failure stays a PersistenceError. No retries.

The guard does not check that the site exists -- the route does that before
calling submit(). A resubmission by the original reporter is rejected like
anyone else's.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging

from core.errors import DuplicateError, UniqueViolation
from sites.models import Report, ReportCategory
from sites.store import SiteStore

logger = logging.getLogger("sitewatch.sites.admission")

DEFAULT_REASON_MAX_LENGTH = 500


def normalize_reason(reason: str, max_length: int = DEFAULT_REASON_MAX_LENGTH) -> str:
    """Strip surrounding whitespace and enforce 1..max_length characters.

    Raises ValueError on an empty or over-long reason.
    """
    cleaned = reason.strip() if isinstance(reason, str) else ""
    if not cleaned or len(cleaned) > max_length:
        raise ValueError(f"Report reason must be non-empty and at most {max_length} characters.")
    return cleaned


def parse_category(value: str | ReportCategory) -> ReportCategory:
    """Return the ReportCategory for value. Raises ValueError if it is not one."""
    try:
        return ReportCategory(value)
    except ValueError:
        raise ValueError(f"Invalid report type: {value!r}") from None


class ReportAdmissionGuard:
    def __init__(self, store: SiteStore, reason_max_length: int = DEFAULT_REASON_MAX_LENGTH) -> None:
        self.store = store
        self.reason_max_length = reason_max_length

    def submit(
        self,
        site_id: str,
        category: str | ReportCategory,
        reporter_id: int,
        reporter_username: str,
        reason: str,
    ) -> Report:
        """Create a pending report, or raise DuplicateError if one already exists.

        Raises:
            ValueError: reason or category fails validation.
            DuplicateError: a pending report for (site_id, category) exists,
                found by the pre-check or by the unique index.
            PersistenceError: the lookup or insert failed for another reason.
        """
        report_type = parse_category(category)
        cleaned = normalize_reason(reason, self.reason_max_length)

        if self.store.find_pending_report(site_id, report_type) is not None:
            logger.info("Report rejected by pre-check (site=%s type=%s)", site_id, report_type.value)
            raise DuplicateError(site_id, report_type.value)

        try:
            report = self.store.insert_report(
                Report(
                    site_id=site_id,
                    reporter_id=reporter_id,
                    reporter_username=reporter_username,
                    category=report_type,
                    reason=cleaned,
                )
            )
        except UniqueViolation as exc:
            logger.info(
                "Report rejected by unique index (site=%s type=%s constraint=%s)",
                site_id,
                report_type.value,
                exc.constraint,
            )
            raise DuplicateError(site_id, report_type.value) from exc

        logger.info("Report %s created (site=%s type=%s reporter=%s)", report.id, site_id, report_type.value, reporter_id)
        return report
