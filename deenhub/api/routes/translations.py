"""Hadith translation pipeline API routes."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from deenhub.api.services.translation_service import TranslationJobHandler, TranslationService
from deenhub.core.auth import require_admin
from deenhub.core.database import get_db
from deenhub.core.worker import enqueue_job, get_job_status
from deenhub.models.hadith import (
    TRANSLATION_COMPLETED,
    TRANSLATION_FAILED,
    TRANSLATION_PENDING,
    TRANSLATION_PROCESSING,
)
from deenhub.schemas.jobs import JobAccepted, TranslationTriggerRequest

router = APIRouter(
    prefix="/api/v1/translations",
    tags=["translations"],
    dependencies=[Depends(require_admin)],
)

TRANSLATION_STATUSES = (
    TRANSLATION_PENDING,
    TRANSLATION_PROCESSING,
    TRANSLATION_COMPLETED,
    TRANSLATION_FAILED,
)


def _enqueue(payload: dict) -> JobAccepted:
    job_id = enqueue_job(
        TranslationJobHandler.job_type,
        payload,
        job_name=f"{TranslationJobHandler.job_label} ({payload['action']})",
    )
    job = get_job_status(job_id)
    return JobAccepted(
        job_id=job_id,
        status=job["status"],
        job_type=job["job_type"],
        job_name=job["job_name"],
    )


@router.post("/trigger", status_code=status.HTTP_202_ACCEPTED, response_model=JobAccepted)
async def trigger_translations(body: TranslationTriggerRequest | None = None):
    """Enqueue a translation run (bulk registers missing jobs first)."""
    body = body or TranslationTriggerRequest()
    return _enqueue(body.model_dump(exclude_none=True))


@router.post("/retry", status_code=status.HTTP_202_ACCEPTED, response_model=JobAccepted)
async def retry_translations(limit: int = Query(default=100, ge=1, le=5000)):
    """Enqueue a retry sweep over failed jobs below the retry cap."""
    return _enqueue({"action": "retry", "limit": limit})


@router.get("/stats")
async def get_translation_stats(db: Session = Depends(get_db)):
    return TranslationService(db).get_stats()


@router.get("/jobs")
async def list_translation_jobs(
    job_status: str | None = Query(default=None, alias="status"),
    hadith_id: int | None = Query(default=None, ge=1),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    if job_status and job_status not in TRANSLATION_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {list(TRANSLATION_STATUSES)}",
        )
    return TranslationService(db).list_jobs(
        status=job_status,
        hadith_id=hadith_id,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
