"""Job handlers and the worker that executes queued jobs.

Admin triggers and cron schedules both go through ``enqueue_job``; workers
(in the API process via the scheduler, or standalone with
``python -m deenhub.core.worker``) claim jobs and run the matching handler.
"""

import asyncio
import logging
import os
import socket
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool

from deenhub.api.services.translation_service import (
    TranslationJobHandler,
    requeue_stale_translations,
)
from deenhub.core.config import get_settings
from deenhub.core.database import get_db_context, init_db
from deenhub.core.exceptions import JobInterrupted
from deenhub.core.queue import JobQueue, QueueJobContext
from deenhub.core.sync import SYNC_TARGETS
from deenhub.models.sync import RUN_FAILED

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    job_type: str
    job_label: str

    async def run(self, payload: dict[str, Any], context: Any) -> dict[str, Any]:
        ...


JOB_HANDLERS: dict[str, JobHandler] = {
    **SYNC_TARGETS,
    TranslationJobHandler.job_type: TranslationJobHandler(),
}


def get_handler(job_type: str) -> JobHandler:
    try:
        return JOB_HANDLERS[job_type]
    except KeyError:
        raise ValueError(f"Unknown job type '{job_type}'") from None


def enqueue_job(
    job_type: str,
    payload: dict[str, Any] | None = None,
    job_name: str | None = None,
    trigger: str = "manual",
    dedupe: bool = True,
) -> str:
    """Queue a job for any worker; returns the job id."""
    handler = get_handler(job_type)
    with get_db_context() as db:
        job, _ = JobQueue(db).enqueue(
            job_type,
            payload,
            job_name=job_name or handler.job_label,
            trigger=trigger,
            dedupe=dedupe,
            max_attempts=get_settings().job_max_attempts,
        )
        return job.id


def get_job_status(job_id: str) -> dict[str, Any] | None:
    with get_db_context() as db:
        job = JobQueue(db).get(job_id)
        return job.to_dict() if job else None


def _failure_summary(result: dict[str, Any]) -> str | None:
    """Error message when every sync in a job result failed."""
    results = result.get("results") if isinstance(result, dict) else None
    if not results or any(item.get("status") != RUN_FAILED for item in results):
        return None
    first = results[0]
    return f"All {len(results)} syncs failed; first: {first.get('resource')}: {first.get('message')}"


class JobWorker:
    """Claims and runs one job at a time."""

    def __init__(self, worker_id: str | None = None, job_types: list[str] | None = None):
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.job_types = job_types

    async def run_once(self) -> str | None:
        """Run the next queued job, if any. Never raises; returns the job id."""
        try:
            claimed = await run_in_threadpool(self._claim)
        except Exception as e:
            logger.error(f"Worker {self.worker_id} could not claim a job: {e}", exc_info=True)
            return None
        if claimed is None:
            return None
        job_id, job_type, payload = claimed

        try:
            result = await get_handler(job_type).run(payload, QueueJobContext(job_id))
        except JobInterrupted as e:
            logger.info(f"Job {job_id} stopped by operator ({e.status})")
            await self._settle(lambda queue: queue.release(job_id))
            return job_id
        except Exception as e:
            logger.error(f"Job {job_id} ({job_type}) failed: {e}", exc_info=True)
            await self._settle(lambda queue: queue.fail(job_id, str(e) or e.__class__.__name__))
            return job_id

        failure = _failure_summary(result)
        if failure:
            logger.warning(f"Job {job_id} ({job_type}): {failure}")
            await self._settle(lambda queue: queue.fail(job_id, failure, result))
        else:
            await self._settle(lambda queue: queue.complete(job_id, result))
            logger.info(f"Job {job_id} ({job_type}) completed")
        return job_id

    def _claim(self) -> tuple[str, str, dict[str, Any]] | None:
        with get_db_context() as db:
            job = JobQueue(db).claim_next(self.worker_id, self.job_types)
            if job is None:
                return None
            return job.id, job.job_type, job.payload

    def _apply(self, action) -> None:
        with get_db_context() as db:
            action(JobQueue(db))

    async def _settle(self, action) -> None:
        try:
            await run_in_threadpool(self._apply, action)
        except Exception as e:
            # Stale-job recovery picks the job up again
            logger.error(f"Worker {self.worker_id} could not record job outcome: {e}", exc_info=True)

    async def run_forever(self, poll_interval: float) -> None:
        while True:
            job_id = await self.run_once()
            if job_id is None:
                await asyncio.sleep(poll_interval)


def recover_stale_jobs() -> dict[str, int]:
    """Requeue queue jobs and translation jobs whose worker went away."""
    stale_after = get_settings().job_stale_after_seconds
    with get_db_context() as db:
        counts = JobQueue(db).requeue_stale(stale_after)
        counts["translations"] = requeue_stale_translations(db, stale_after)
        return counts


async def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_db()
    recover_stale_jobs()

    base_id = f"{socket.gethostname()}:{os.getpid()}"
    workers = [JobWorker(f"{base_id}:{n}") for n in range(settings.worker_concurrency)]
    logger.info(f"Starting {len(workers)} workers")
    await asyncio.gather(
        *(worker.run_forever(settings.worker_poll_interval_seconds) for worker in workers)
    )


if __name__ == "__main__":
    asyncio.run(main())
