"""Job queue API routes."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from deenhub.core.auth import require_admin
from deenhub.core.database import get_db
from deenhub.core.exceptions import InvalidJobTransition
from deenhub.core.queue import JOB_STATUSES, JobQueue

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_admin)],
)


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")


def _conflict(error: InvalidJobTransition) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))


@router.get("")
async def list_jobs(
    job_status: str | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None, max_length=50),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    if job_status and job_status not in JOB_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {list(JOB_STATUSES)}",
        )
    return JobQueue(db).list_jobs(status=job_status, job_type=job_type, limit=limit, offset=offset)


@router.get("/stats")
async def get_job_stats(db: Session = Depends(get_db)):
    """Job counts per status."""
    return JobQueue(db).stats()


@router.get("/{job_id}")
async def get_job(job_id: str, db: Session = Depends(get_db)):
    job = JobQueue(db).get(job_id)
    if job is None:
        raise _not_found(job_id)
    return job.to_dict()


@router.post("/{job_id}/pause")
async def pause_job(job_id: str, db: Session = Depends(get_db)):
    """Pause a queued or running job; a running job stops at its next checkpoint."""
    try:
        job = JobQueue(db).pause(job_id)
    except InvalidJobTransition as e:
        raise _conflict(e) from None
    if job is None:
        raise _not_found(job_id)
    return job.to_dict()


@router.post("/{job_id}/resume")
async def resume_job(job_id: str, db: Session = Depends(get_db)):
    """Requeue a paused job."""
    try:
        job = JobQueue(db).resume(job_id)
    except InvalidJobTransition as e:
        raise _conflict(e) from None
    if job is None:
        raise _not_found(job_id)
    return job.to_dict()


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, db: Session = Depends(get_db)):
    try:
        job = JobQueue(db).cancel(job_id)
    except InvalidJobTransition as e:
        raise _conflict(e) from None
    if job is None:
        raise _not_found(job_id)
    return job.to_dict()


@router.delete("/{job_id}")
async def delete_job(job_id: str, db: Session = Depends(get_db)):
    try:
        deleted = JobQueue(db).delete(job_id)
    except InvalidJobTransition as e:
        raise _conflict(e) from None
    if deleted is None:
        raise _not_found(job_id)
    return {"deleted": True, "job_id": job_id}
