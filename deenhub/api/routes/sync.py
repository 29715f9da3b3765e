"""Sync trigger and ledger API routes."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session

from deenhub.api.services.ledger_service import SyncLedgerService
from deenhub.core.auth import require_admin
from deenhub.core.cache import cached
from deenhub.core.database import get_db
from deenhub.core.scheduler import list_schedules, trigger_manual_sync
from deenhub.core.sync import SyncOptions, get_sync_target
from deenhub.core.worker import get_job_status
from deenhub.models.sync import RUN_PENDING, RUN_RUNNING, RUN_TERMINAL_STATUSES
from deenhub.schemas.jobs import JobAccepted, SyncDomain, SyncTriggerRequest

RUN_STATUSES = (RUN_PENDING, RUN_RUNNING, *RUN_TERMINAL_STATUSES)

router = APIRouter(
    prefix="/api/v1/sync",
    tags=["sync"],
    dependencies=[Depends(require_admin)],
)


@router.post(
    "/{domain}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobAccepted,
)
async def trigger_sync(
    domain: SyncDomain,
    body: SyncTriggerRequest | None = None,
):
    """Enqueue a sync for one resource key, or every default resource of the domain."""
    body = body or SyncTriggerRequest()
    target = get_sync_target(domain.value)
    options = body.options.model_dump(mode="json", exclude_defaults=True)
    if body.key:
        try:
            target.validate_key(body.key, SyncOptions.from_dict(options))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None

    job_id = trigger_manual_sync(domain.value, body.key, options or None)
    job = get_job_status(job_id)
    return JobAccepted(
        job_id=job_id,
        status=job["status"],
        job_type=job["job_type"],
        job_name=job["job_name"],
    )


@router.get("/runs")
async def list_sync_runs(
    job_name: str | None = Query(default=None, max_length=100),
    resource: str | None = Query(default=None, max_length=255),
    run_status: str | None = Query(default=None, alias="status"),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """Sync ledger history, newest first."""
    if run_status and run_status not in RUN_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {list(RUN_STATUSES)}",
        )
    return SyncLedgerService(db).list_runs(
        job_name=job_name,
        resource=resource,
        status=run_status,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


@cached("sync_summary")
async def _summary(db: Session, hours: int) -> dict[str, Any]:
    return SyncLedgerService(db).get_summary(hours=hours)


@router.get("/summary")
async def get_sync_summary(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    db: Session = Depends(get_db),
):
    """Run counts per job and status; cleared whenever a sync finishes."""
    return await _summary(db=db, hours=hours)


@router.get("/schedules")
async def get_schedules():
    """Cron schedules and their next fire time."""
    return {"schedules": list_schedules()}


@router.get("/runs/{run_id}")
async def get_sync_run(
    run_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
):
    run = SyncLedgerService(db).get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return run.to_dict()
