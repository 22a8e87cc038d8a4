"""
sites/store.py -- SQLAlchemy Core persistence layer for sites, maintainers,
reports, and the site audit log.

Uses SQLAlchemy Core (not ORM) so the dataclasses in sites/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Pattern: Repository + Data Mapper. SiteStore is the repository; the _row_to_*
functions are the mappers. Route handlers never touch SQL directly.

The report table carries a partial unique index:

    uq_site_reports_pending ON site_reports (site_id, report_type)
        WHERE status = 'pending'

It is the final arbiter of "at most one pending report per (site, category)".
insert_report() translates a violation of it into core.errors.UniqueViolation
by inspecting the driver's error code (core.db.is_unique_violation), so the
admission guard never has to parse error messages. Both SQLite (3.8+) and
PostgreSQL support partial indexes; the WHERE clause is declared for each.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = SiteStore()                                # SITES_DB_URL from settings
    store = SiteStore("postgresql+psycopg://u:pw@host/db")
    store.create_site(Site(id="s1", name="Example", url="https://example.com"))
    pending = store.find_pending_report("s1", ReportCategory.runaway)
    store.close()
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.config import get_settings
from core.db import constraint_name, error_detail, from_iso, is_unique_violation, make_engine, to_iso, utcnow
from core.errors import PersistenceError, UniqueViolation
from sites.models import Maintainer, Report, ReportCategory, ReportStatus, Site, SiteLog

logger = logging.getLogger("sitewatch.sites.store")

PENDING_REPORT_INDEX = "uq_site_reports_pending"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_sites = Table(
    "sites",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("url", String(2048), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("is_runaway", Integer, nullable=False, server_default="0"),
    Column("is_fake_charity", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("updated_by", Integer),
)

_maintainers = Table(
    "site_maintainers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("site_id", String(64), nullable=False, index=True),
    Column("username", String(255), nullable=False),
    Column("profile_url", String(2048)),
)

_reports = Table(
    "site_reports",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("site_id", String(64), nullable=False),
    Column("reporter_id", Integer, nullable=False),
    Column("reporter_username", String(255), nullable=False),
    Column("report_type", String(30), nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default=ReportStatus.pending.value),
    Column("created_at", String(32), nullable=False),
)

Index(
    PENDING_REPORT_INDEX,
    _reports.c.site_id,
    _reports.c.report_type,
    unique=True,
    sqlite_where=_reports.c.status == ReportStatus.pending.value,
    postgresql_where=_reports.c.status == ReportStatus.pending.value,
)

_logs = Table(
    "site_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("site_id", String(64), nullable=False, index=True),
    Column("action", String(50), nullable=False),
    Column("actor_id", Integer),
    Column("actor_username", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SiteStore:
    """Repository for Site, Maintainer, Report and SiteLog entities."""

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().sites_db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, site: Site) -> str:
        """Insert a site and return its id. A random id is assigned if site.id is empty."""
        site_id = site.id or uuid.uuid4().hex
        now = to_iso(utcnow())
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _sites.insert().values(
                        id=site_id,
                        name=site.name,
                        url=site.url,
                        is_active=1 if site.is_active else 0,
                        is_runaway=1 if site.is_runaway else 0,
                        is_fake_charity=1 if site.is_fake_charity else 0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to create site", detail=error_detail(exc)) from exc
        return site_id

    def get_site(self, site_id: str) -> Site | None:
        """Look up a site by id. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_sites.select().where(_sites.c.id == site_id)).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load site", detail=error_detail(exc)) from exc
        return _row_to_site(row) if row is not None else None

    def site_exists(self, site_id: str) -> bool:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(_sites.c.id).where(_sites.c.id == site_id)).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load site", detail=error_detail(exc)) from exc
        return row is not None

    def restore_runaway(self, site_id: str, actor_id: int | None, actor_username: str, message: str) -> bool:
        """Clear the runaway flag, reactivate the site, and append a RESTORE_RUNAWAY log entry.

        Both writes share one transaction. Returns False if the site does not exist.
        """
        now = to_iso(utcnow())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sites.update()
                    .where(_sites.c.id == site_id)
                    .values(is_runaway=0, is_active=1, updated_at=now, updated_by=actor_id)
                )
                if result.rowcount == 0:
                    conn.rollback()
                    return False
                conn.execute(
                    _logs.insert().values(
                        site_id=site_id,
                        action="RESTORE_RUNAWAY",
                        actor_id=actor_id,
                        actor_username=actor_username,
                        message=message,
                        created_at=now,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to restore site", detail=error_detail(exc)) from exc
        return True

    # ------------------------------------------------------------------
    # Maintainers
    # ------------------------------------------------------------------

    def add_maintainer(self, maintainer: Maintainer) -> int:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _maintainers.insert().values(
                        site_id=maintainer.site_id,
                        username=maintainer.username,
                        profile_url=maintainer.profile_url,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to add site maintainer", detail=error_detail(exc)) from exc
        return result.inserted_primary_key[0]

    def list_maintainers(self, site_id: str) -> list[Maintainer]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _maintainers.select().where(_maintainers.c.site_id == site_id).order_by(_maintainers.c.id)
                ).fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load site maintainers", detail=error_detail(exc)) from exc
        return [_row_to_maintainer(r) for r in rows]

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def find_pending_report(self, site_id: str, category: ReportCategory) -> Report | None:
        """Return the pending report for (site_id, category), or None."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    _reports.select()
                    .where(
                        (_reports.c.site_id == site_id)
                        & (_reports.c.report_type == category.value)
                        & (_reports.c.status == ReportStatus.pending.value)
                    )
                    .limit(1)
                ).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to look up pending reports", detail=error_detail(exc)) from exc
        return _row_to_report(row) if row is not None else None

    def insert_report(self, report: Report) -> Report:
        """Insert a report and return it with id and created_at filled in.

        Raises:
            UniqueViolation: the partial unique index rejected the row -- a
                pending report for (site_id, category) already exists.
            PersistenceError: any other database failure.
        """
        created_at = utcnow()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _reports.insert().values(
                        site_id=report.site_id,
                        reporter_id=report.reporter_id,
                        reporter_username=report.reporter_username,
                        report_type=report.category.value,
                        reason=report.reason,
                        status=report.status.value,
                        created_at=to_iso(created_at),
                    )
                )
                conn.commit()
                report_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise UniqueViolation(
                    "Pending report already exists",
                    constraint=constraint_name(exc) or PENDING_REPORT_INDEX,
                    detail=str(exc.orig),
                ) from exc
            raise PersistenceError("Failed to insert report", detail=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to insert report", detail=error_detail(exc)) from exc
        return Report(
            id=report_id,
            site_id=report.site_id,
            reporter_id=report.reporter_id,
            reporter_username=report.reporter_username,
            category=report.category,
            reason=report.reason,
            status=report.status,
            created_at=created_at,
        )

    def list_reports(
        self,
        site_id: str,
        category: ReportCategory | None = None,
        status: ReportStatus | None = None,
    ) -> list[Report]:
        """Return reports for a site, oldest first, optionally filtered."""
        query = _reports.select().where(_reports.c.site_id == site_id)
        if category is not None:
            query = query.where(_reports.c.report_type == category.value)
        if status is not None:
            query = query.where(_reports.c.status == status.value)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query.order_by(_reports.c.id)).fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load reports", detail=error_detail(exc)) from exc
        return [_row_to_report(r) for r in rows]

    def set_report_status(self, report_id: int, status: ReportStatus) -> bool:
        """Move a report to another status. Returns False if report_id was not found.

        Moving a report out of pending frees its (site, category) slot.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _reports.update().where(_reports.c.id == report_id).values(status=status.value)
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update report status", detail=error_detail(exc)) from exc
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def list_logs(self, site_id: str) -> list[SiteLog]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _logs.select().where(_logs.c.site_id == site_id).order_by(_logs.c.id)
                ).fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load site log", detail=error_detail(exc)) from exc
        return [_row_to_log(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_site(row) -> Site:
    return Site(
        id=row.id,
        name=row.name,
        url=row.url,
        is_active=bool(row.is_active),
        is_runaway=bool(row.is_runaway),
        is_fake_charity=bool(row.is_fake_charity),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        updated_by=row.updated_by,
    )


def _row_to_maintainer(row) -> Maintainer:
    return Maintainer(
        id=row.id,
        site_id=row.site_id,
        username=row.username,
        profile_url=row.profile_url,
    )


def _row_to_report(row) -> Report:
    return Report(
        id=row.id,
        site_id=row.site_id,
        reporter_id=row.reporter_id,
        reporter_username=row.reporter_username,
        category=ReportCategory(row.report_type),
        reason=row.reason,
        status=ReportStatus(row.status),
        created_at=from_iso(row.created_at),
    )


def _row_to_log(row) -> SiteLog:
    return SiteLog(
        id=row.id,
        site_id=row.site_id,
        action=row.action,
        actor_id=row.actor_id,
        actor_username=row.actor_username,
        message=row.message,
        created_at=from_iso(row.created_at),
    )
