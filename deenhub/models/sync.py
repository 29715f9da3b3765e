"""Sync ledger and durable job queue models."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base

# SyncRun.status values
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_TERMINAL_STATUSES = (RUN_SUCCESS, RUN_PARTIAL, RUN_FAILED)

# QueueJob.status values
JOB_QUEUED = "queued"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_PAUSED = "paused"
JOB_CANCELLED = "cancelled"


class SyncRun(Base):
    """Append-only ledger entry for one sync attempt.

    Only the running -> success/partial/failed transition ever updates a row.
    """

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sync_runs_job_resource", "job_name", "resource", "started_at"),
        Index("idx_sync_runs_status", "status"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = Column(String(100), nullable=False)  # prayer-times, gold-prices, ...
    resource: Mapped[str] = Column(String(255), nullable=False)  # location hash, "methods", ...
    status: Mapped[str] = Column(String(20), nullable=False, default=RUN_RUNNING)
    started_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = Column(DateTime)
    duration_ms: Mapped[int | None] = Column(Integer)
    records_processed: Mapped[int] = Column(Integer, default=0)
    records_failed: Mapped[int] = Column(Integer, default=0)
    error: Mapped[str | None] = Column(Text)
    errors_json: Mapped[str | None] = Column(Text)  # per-record error messages
    notes: Mapped[str | None] = Column(Text)

    def __repr__(self) -> str:
        return f"<SyncRun {self.job_name}/{self.resource}: {self.status}>"

    @property
    def errors(self) -> list[str]:
        """Per-record error messages recorded for this run."""
        return json.loads(self.errors_json) if self.errors_json else []

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "resource": self.resource,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "error": self.error,
            "errors": self.errors,
            "notes": self.notes,
        }


class QueueJob(Base):
    """Durable background job.

    State lives in the database so any worker process can claim, resume
    or recover it.
    """

    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("idx_queue_jobs_status_created", "status", "created_at"),
        Index("idx_queue_jobs_heartbeat", "heartbeat_at"),
    )

    id: Mapped[str] = Column(String(36), primary_key=True)
    job_type: Mapped[str] = Column(String(50), nullable=False)  # quran, prayer, hadith, audio, finance, translation
    job_name: Mapped[str] = Column(String(255), nullable=False)
    payload_json: Mapped[str] = Column(Text, nullable=False, default="{}")
    status: Mapped[str] = Column(String(20), nullable=False, default=JOB_QUEUED)
    trigger: Mapped[str] = Column(String(20), nullable=False, default="manual")  # manual, cron
    dedupe_key: Mapped[str | None] = Column(String(64), index=True)
    progress_percentage: Mapped[float] = Column(Float, default=0.0)
    attempts: Mapped[int] = Column(Integer, default=0)
    max_attempts: Mapped[int] = Column(Integer, default=3)
    worker_id: Mapped[str | None] = Column(String(100))
    heartbeat_at: Mapped[datetime | None] = Column(DateTime)
    created_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at: Mapped[datetime | None] = Column(DateTime)
    completed_at: Mapped[datetime | None] = Column(DateTime)
    error_message: Mapped[str | None] = Column(Text)
    result_json: Mapped[str | None] = Column(Text)

    def __repr__(self) -> str:
        return f"<QueueJob {self.job_type}:{self.id} {self.status}>"

    @property
    def payload(self) -> dict[str, Any]:
        return json.loads(self.payload_json) if self.payload_json else {}

    @property
    def result(self) -> dict[str, Any] | None:
        return json.loads(self.result_json) if self.result_json else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "job_name": self.job_name,
            "payload": self.payload,
            "status": self.status,
            "trigger": self.trigger,
            "progress_percentage": round(self.progress_percentage or 0.0, 2),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "result": self.result,
        }
