"""Sync job ledger: the audit trail of sync attempts and the freshness oracle."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from deenhub.models.sync import (
    RUN_FAILED,
    RUN_PARTIAL,
    RUN_RUNNING,
    RUN_SUCCESS,
    RUN_TERMINAL_STATUSES,
    SyncRun,
)

logger = logging.getLogger(__name__)

# Keep stored per-record errors bounded
MAX_STORED_ERRORS = 100


def derive_run_status(records_processed: int, records_failed: int) -> str:
    """Final status from record counts.

    success when nothing failed, failed when everything failed, partial otherwise.
    """
    if records_failed == 0:
        return RUN_SUCCESS
    if records_failed >= records_processed:
        return RUN_FAILED
    return RUN_PARTIAL


class SyncLedgerService:
    """Service for recording sync runs and answering freshness questions."""

    def __init__(self, db: Session):
        self.db = db

    def start_run(self, job_name: str, resource: str, notes: str | None = None) -> SyncRun:
        """Create a running ledger entry.

        Args:
            job_name: Sync job name (prayer-times, gold-prices, ...)
            resource: Domain key the run covers
            notes: Optional free-form notes

        Returns:
            The created SyncRun
        """
        run = SyncRun(
            job_name=job_name,
            resource=resource,
            status=RUN_RUNNING,
            started_at=datetime.utcnow(),
            records_processed=0,
            records_failed=0,
            notes=notes,
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        logger.info(f"Started {job_name} sync for {resource} (run_id={run.id})")
        return run

    def finish_run(
        self,
        run_id: int,
        records_processed: int,
        records_failed: int,
        errors: list[str] | None = None,
        error: str | None = None,
        status: str | None = None,
        notes: str | None = None,
    ) -> SyncRun:
        """Move a running entry to its terminal status.

        Raises:
            ValueError: unknown run, or run already finished
        """
        run = self.db.query(SyncRun).filter(SyncRun.id == run_id).first()
        if not run:
            raise ValueError(f"Sync run with id {run_id} not found")
        if run.finished_at is not None or run.status in RUN_TERMINAL_STATUSES:
            raise ValueError(f"Sync run {run_id} already finished with status {run.status}")

        run.status = status or derive_run_status(records_processed, records_failed)
        run.finished_at = datetime.utcnow()
        run.duration_ms = int((run.finished_at - run.started_at).total_seconds() * 1000)
        run.records_processed = records_processed
        run.records_failed = records_failed
        run.error = error
        if errors:
            run.errors_json = json.dumps(errors[:MAX_STORED_ERRORS])
        if notes:
            run.notes = f"{run.notes}; {notes}" if run.notes else notes

        self.db.commit()
        self.db.refresh(run)

        log = logger.info if run.status == RUN_SUCCESS else logger.warning
        log(
            f"Finished {run.job_name} sync for {run.resource}: {run.status} "
            f"({records_processed} processed, {records_failed} failed, {run.duration_ms}ms)"
        )
        return run

    def last_successful_run(self, job_name: str, resource: str) -> SyncRun | None:
        """Most recent success/partial run for (job_name, resource)."""
        return (
            self.db.query(SyncRun)
            .filter(
                SyncRun.job_name == job_name,
                SyncRun.resource == resource,
                SyncRun.status.in_([RUN_SUCCESS, RUN_PARTIAL]),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .first()
        )

    def is_fresh(
        self,
        job_name: str,
        resource: str,
        freshness_hours: float,
        now: datetime | None = None,
    ) -> SyncRun | None:
        """Return the run that makes this resource fresh, or None if it needs a sync."""
        run = self.last_successful_run(job_name, resource)
        if run is None:
            return None
        now = now or datetime.utcnow()
        if now - run.started_at < timedelta(hours=freshness_hours):
            return run
        return None

    def get_run(self, run_id: int) -> SyncRun | None:
        return self.db.query(SyncRun).filter(SyncRun.id == run_id).first()

    def list_runs(
        self,
        job_name: str | None = None,
        resource: str | None = None,
        status: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Paginated ledger history, newest first."""
        query = self.db.query(SyncRun)
        if job_name:
            query = query.filter(SyncRun.job_name == job_name)
        if resource:
            query = query.filter(SyncRun.resource == resource)
        if status:
            query = query.filter(SyncRun.status == status)
        if since:
            query = query.filter(SyncRun.started_at >= since)
        if until:
            query = query.filter(SyncRun.started_at <= until)

        total = query.count()
        runs = (
            query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {
            "items": [run.to_dict() for run in runs],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    def get_summary(self, hours: int = 24) -> dict[str, Any]:
        """Run counts by job name and status over the last ``hours``."""
        since = datetime.utcnow() - timedelta(hours=hours)
        rows = (
            self.db.query(SyncRun.job_name, SyncRun.status, func.count(SyncRun.id))
            .filter(SyncRun.started_at >= since)
            .group_by(SyncRun.job_name, SyncRun.status)
            .all()
        )
        summary: dict[str, dict[str, int]] = {}
        for job_name, status, count in rows:
            summary.setdefault(job_name, {})[status] = count
        return {"period_hours": hours, "jobs": summary}
