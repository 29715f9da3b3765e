"""Durable job queue backed by the ``queue_jobs`` table.

Jobs move ``queued -> active -> completed|failed``; operators may pause or
cancel queued and active jobs. Every state change that can race with another
process (claim, completion, operator transitions, stale recovery) is a
single conditional UPDATE whose row count tells the caller whether it won,
so no external locking is needed.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from deenhub.core.database import get_db_context
from deenhub.core.exceptions import InvalidJobTransition, JobCancelled, JobPaused
from deenhub.models.sync import (
    JOB_ACTIVE,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PAUSED,
    JOB_QUEUED,
    QueueJob,
)

logger = logging.getLogger(__name__)

# action -> statuses it may be applied from
ALLOWED_TRANSITIONS = {
    "pause": (JOB_QUEUED, JOB_ACTIVE),
    "resume": (JOB_PAUSED,),
    "cancel": (JOB_QUEUED, JOB_ACTIVE, JOB_PAUSED),
}
TRANSITION_TARGETS = {
    "pause": JOB_PAUSED,
    "resume": JOB_QUEUED,
    "cancel": JOB_CANCELLED,
}
JOB_STATUSES = (JOB_QUEUED, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED, JOB_PAUSED, JOB_CANCELLED)

# Candidates inspected per claim attempt
CLAIM_BATCH = 5


def build_dedupe_key(job_type: str, payload: dict[str, Any]) -> str:
    canonical = json.dumps({"type": job_type, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class JobQueue:
    """Queue operations over one database session."""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        job_name: str | None = None,
        trigger: str = "manual",
        dedupe: bool = True,
        max_attempts: int = 3,
    ) -> tuple[QueueJob, bool]:
        """Queue a job.

        Returns:
            (job, created). With ``dedupe``, an identical queued or active job
            is returned instead of creating a new one.
        """
        payload = payload or {}
        dedupe_key = build_dedupe_key(job_type, payload) if dedupe else None

        if dedupe_key:
            existing = (
                self.db.query(QueueJob)
                .filter(
                    QueueJob.dedupe_key == dedupe_key,
                    QueueJob.status.in_([JOB_QUEUED, JOB_ACTIVE]),
                )
                .order_by(QueueJob.created_at)
                .first()
            )
            if existing:
                logger.info(f"Job {job_type} already {existing.status} as {existing.id}; not re-queued")
                return existing, False

        job = QueueJob(
            id=str(uuid.uuid4()),
            job_type=job_type,
            job_name=job_name or job_type,
            payload_json=json.dumps(payload, default=str),
            status=JOB_QUEUED,
            trigger=trigger,
            dedupe_key=dedupe_key,
            progress_percentage=0.0,
            attempts=0,
            max_attempts=max_attempts,
            created_at=datetime.utcnow(),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info(f"Queued {job.job_name} ({job_type}) as job {job.id} [{trigger}]")
        return job, True

    def get(self, job_id: str) -> QueueJob | None:
        return self.db.query(QueueJob).filter(QueueJob.id == job_id).first()

    def list_jobs(
        self,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        query = self.db.query(QueueJob)
        if status:
            query = query.filter(QueueJob.status == status)
        if job_type:
            query = query.filter(QueueJob.job_type == job_type)
        total = query.count()
        jobs = query.order_by(QueueJob.created_at.desc()).offset(offset).limit(limit).all()
        return {"items": [job.to_dict() for job in jobs], "total": total, "limit": limit, "offset": offset}

    def stats(self) -> dict[str, int]:
        counts = dict.fromkeys(JOB_STATUSES, 0)
        for status, count in (
            self.db.query(QueueJob.status, func.count(QueueJob.id)).group_by(QueueJob.status).all()
        ):
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    # -------------------------------------------------------------------------
    # Operator transitions
    # -------------------------------------------------------------------------

    def _transition(self, job_id: str, action: str, **extra: Any) -> QueueJob | None:
        job = self.get(job_id)
        if job is None:
            return None

        allowed = ALLOWED_TRANSITIONS[action]
        values: dict[str, Any] = {"status": TRANSITION_TARGETS[action], **extra}
        result = self.db.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id, QueueJob.status.in_(allowed))
            .values(**values)
        )
        self.db.commit()
        self.db.refresh(job)
        if result.rowcount != 1:
            raise InvalidJobTransition(job_id, job.status, action)

        logger.info(f"Job {job_id} {action}d -> {job.status}")
        return job

    def pause(self, job_id: str) -> QueueJob | None:
        return self._transition(job_id, "pause")

    def resume(self, job_id: str) -> QueueJob | None:
        return self._transition(
            job_id, "resume", progress_percentage=0.0, worker_id=None, heartbeat_at=None
        )

    def cancel(self, job_id: str) -> QueueJob | None:
        return self._transition(job_id, "cancel", completed_at=datetime.utcnow())

    def delete(self, job_id: str) -> bool | None:
        """Delete a job that is not running. None if unknown."""
        job = self.get(job_id)
        if job is None:
            return None
        if job.status == JOB_ACTIVE:
            raise InvalidJobTransition(job_id, job.status, "delete")
        self.db.delete(job)
        self.db.commit()
        logger.info(f"Deleted job {job_id}")
        return True

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def claim_next(self, worker_id: str, job_types: list[str] | None = None) -> QueueJob | None:
        """Atomically move the oldest queued job to active for ``worker_id``."""
        query = self.db.query(QueueJob.id).filter(QueueJob.status == JOB_QUEUED)
        if job_types:
            query = query.filter(QueueJob.job_type.in_(job_types))
        candidates = [job_id for (job_id,) in query.order_by(QueueJob.created_at).limit(CLAIM_BATCH)]

        for job_id in candidates:
            now = datetime.utcnow()
            result = self.db.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.status == JOB_QUEUED)
                .values(
                    status=JOB_ACTIVE,
                    worker_id=worker_id,
                    started_at=now,
                    heartbeat_at=now,
                    attempts=QueueJob.attempts + 1,
                    error_message=None,
                )
            )
            self.db.commit()
            if result.rowcount == 1:
                job = self.get(job_id)
                logger.info(f"Worker {worker_id} claimed job {job_id} ({job.job_type})")
                return job
        return None

    def heartbeat(self, job_id: str, progress: float | None = None) -> str | None:
        """Touch an active job; returns its current status."""
        values: dict[str, Any] = {"heartbeat_at": datetime.utcnow()}
        if progress is not None:
            values["progress_percentage"] = max(0.0, min(100.0, progress))
        self.db.execute(
            update(QueueJob).where(QueueJob.id == job_id, QueueJob.status == JOB_ACTIVE).values(**values)
        )
        self.db.commit()
        return self.db.query(QueueJob.status).filter(QueueJob.id == job_id).scalar()

    def _finish(self, job_id: str, status: str, **values: Any) -> bool:
        result = self.db.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id, QueueJob.status == JOB_ACTIVE)
            .values(status=status, completed_at=datetime.utcnow(), **values)
        )
        self.db.commit()
        return result.rowcount == 1

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> bool:
        """Mark an active job completed. False if an operator changed it first."""
        return self._finish(
            job_id, JOB_COMPLETED, progress_percentage=100.0,
            result_json=json.dumps(result, default=str) if result is not None else None,
        )

    def fail(self, job_id: str, error: str, result: dict[str, Any] | None = None) -> bool:
        return self._finish(
            job_id, JOB_FAILED, error_message=error[:2000],
            result_json=json.dumps(result, default=str) if result is not None else None,
        )

    def release(self, job_id: str) -> None:
        """Detach the worker from a job an operator paused or cancelled."""
        self.db.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id, QueueJob.status.in_([JOB_PAUSED, JOB_CANCELLED]))
            .values(worker_id=None, heartbeat_at=None)
        )
        self.db.commit()

    def requeue_stale(self, stale_after_seconds: int, now: datetime | None = None) -> dict[str, int]:
        """Recover active jobs whose worker stopped heartbeating.

        Jobs under ``max_attempts`` go back to queued, the rest fail.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        stale = (
            self.db.query(QueueJob)
            .filter(QueueJob.status == JOB_ACTIVE, QueueJob.heartbeat_at < cutoff)
            .all()
        )

        requeued = failed = 0
        for job in stale:
            exhausted = (job.attempts or 0) >= (job.max_attempts or 1)
            values: dict[str, Any] = {"worker_id": None, "heartbeat_at": None}
            if exhausted:
                values.update(
                    status=JOB_FAILED,
                    completed_at=now,
                    error_message=f"Worker lost after {job.attempts} attempts",
                )
            else:
                values.update(status=JOB_QUEUED, progress_percentage=0.0)

            result = self.db.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == job.id,
                    QueueJob.status == JOB_ACTIVE,
                    QueueJob.heartbeat_at == job.heartbeat_at,
                )
                .values(**values)
            )
            if result.rowcount == 1:
                if exhausted:
                    failed += 1
                else:
                    requeued += 1
        self.db.commit()

        if requeued or failed:
            logger.warning(f"Stale job recovery: {requeued} re-queued, {failed} failed")
        return {"requeued": requeued, "failed": failed}


class QueueJobContext:
    """Progress and cooperative cancellation for a job run by a worker."""

    def __init__(self, job_id: str):
        self.job_id = job_id

    def _heartbeat(self, progress: float | None = None) -> str | None:
        with get_db_context() as db:
            return JobQueue(db).heartbeat(self.job_id, progress)

    async def checkpoint(self) -> None:
        status = await run_in_threadpool(self._heartbeat)
        if status == JOB_CANCELLED:
            raise JobCancelled(f"Job {self.job_id} cancelled")
        if status == JOB_PAUSED:
            raise JobPaused(f"Job {self.job_id} paused")

    async def report_progress(self, done: int, total: int) -> None:
        progress = (done / total * 100) if total else 100.0
        await run_in_threadpool(self._heartbeat, progress)
