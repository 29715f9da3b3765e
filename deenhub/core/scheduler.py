"""Background scheduler.

Sync schedules are plain ``ScheduleDefinition`` data built from settings;
each fires by enqueueing a job, the same path an admin trigger takes. The
scheduler also hosts the in-process worker poll and maintenance jobs.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from deenhub.api.services.api_monitoring_service import ApiMonitoringService
from deenhub.api.services.ip_blocking_service import IpBlockingService
from deenhub.core.config import Settings, get_settings
from deenhub.core.database import get_db_context
from deenhub.core.worker import JobWorker, enqueue_job, get_handler, recover_stale_jobs

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None
worker: JobWorker | None = None


@dataclass(frozen=True)
class ScheduleDefinition:
    """A cron schedule that enqueues one job type."""

    id: str
    name: str
    cron: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_schedule_definitions(config: Settings | None = None) -> list[ScheduleDefinition]:
    config = config or settings
    return [
        ScheduleDefinition(
            "prayer-methods", "Prayer Calculation Methods", config.cron_prayer_methods,
            "prayer", {"key": "methods"},
        ),
        ScheduleDefinition(
            "prayer-times", "Prayer Times Pre-warm", config.cron_prayer_times,
            "prayer", {"options": {"days": config.prayer_prewarm_days}},
        ),
        ScheduleDefinition("hadith", "Hadith Data Sync", config.cron_hadith, "hadith"),
        ScheduleDefinition("quran", "Quran Data Sync", config.cron_quran, "quran"),
        ScheduleDefinition("audio", "Audio Data Sync", config.cron_audio, "audio"),
        ScheduleDefinition("gold-prices", "Gold Price Update", config.cron_gold_prices, "finance"),
        ScheduleDefinition(
            "translation-retry", "Translation Retry Sweep", config.cron_translation_retry,
            "translation", {"action": "retry"},
        ),
    ]


def build_trigger(definition: ScheduleDefinition) -> CronTrigger:
    return CronTrigger.from_crontab(definition.cron, timezone="UTC")


def fire_definition(definition: ScheduleDefinition) -> str:
    """Enqueue the job a schedule stands for; returns the job id."""
    job_id = enqueue_job(
        definition.job_type,
        dict(definition.payload),
        job_name=definition.name,
        trigger="cron",
    )
    logger.info(f"Schedule {definition.id} fired -> job {job_id}")
    return job_id


async def run_schedule(definition: ScheduleDefinition) -> None:
    try:
        fire_definition(definition)
    except Exception as e:
        logger.error(f"Schedule {definition.id} failed to enqueue: {e}", exc_info=True)


async def poll_worker() -> None:
    if worker is not None:
        await worker.run_once()


async def recover_stale() -> None:
    try:
        recover_stale_jobs()
    except Exception as e:
        logger.error(f"Stale job recovery failed: {e}", exc_info=True)


async def sweep_expired_blocks() -> None:
    try:
        with get_db_context() as db:
            IpBlockingService(db).sweep_expired()
    except Exception as e:
        logger.error(f"Blocklist sweep failed: {e}", exc_info=True)


async def prune_request_logs() -> None:
    try:
        with get_db_context() as db:
            ApiMonitoringService(db).prune_request_logs(settings.request_log_retention_days)
    except Exception as e:
        logger.error(f"Request log prune failed: {e}", exc_info=True)


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the background scheduler."""
    global scheduler, worker

    scheduler = AsyncIOScheduler(timezone="UTC")

    if settings.sync_enabled:
        for definition in build_schedule_definitions():
            scheduler.add_job(
                run_schedule,
                trigger=build_trigger(definition),
                args=[definition],
                id=f"schedule:{definition.id}",
                name=definition.name,
                replace_existing=True,
                coalesce=True,
            )
    else:
        logger.info("SYNC_ENABLED=false; cron schedules not registered")

    if settings.worker_enabled:
        worker = JobWorker()
        scheduler.add_job(
            poll_worker,
            trigger=IntervalTrigger(seconds=settings.worker_poll_interval_seconds),
            id="worker_poll",
            name="Job Worker Poll",
            max_instances=settings.worker_concurrency,
            replace_existing=True,
        )
        scheduler.add_job(
            recover_stale,
            trigger=IntervalTrigger(seconds=max(60, settings.job_stale_after_seconds // 2)),
            id="recover_stale_jobs",
            name="Recover Stale Jobs",
            replace_existing=True,
        )

    scheduler.add_job(
        sweep_expired_blocks,
        trigger=IntervalTrigger(minutes=settings.blocklist_sweep_interval_minutes),
        id="sweep_expired_blocks",
        name="Sweep Expired IP Blocks",
        replace_existing=True,
    )
    scheduler.add_job(
        prune_request_logs,
        trigger=IntervalTrigger(hours=24),
        id="prune_request_logs",
        name="Prune Request Logs",
        replace_existing=True,
    )

    logger.info(f"Scheduler initialized with {len(scheduler.get_jobs())} jobs")
    return scheduler


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the scheduler instance."""
    return scheduler


def list_schedules() -> list[dict[str, Any]]:
    """Schedule definitions with their next run time when registered."""
    items = []
    for definition in build_schedule_definitions():
        entry = definition.to_dict()
        job = scheduler.get_job(f"schedule:{definition.id}") if scheduler else None
        next_run = getattr(job, "next_run_time", None) if job else None
        entry["next_run_time"] = next_run.isoformat() if next_run else None
        entry["enabled"] = job is not None
        items.append(entry)
    return items


def trigger_manual_sync(
    job_type: str,
    key: str | None = None,
    options: dict[str, Any] | None = None,
) -> str:
    """Enqueue an admin-triggered sync; returns the job id."""
    handler = get_handler(job_type)
    payload: dict[str, Any] = {}
    if key:
        payload["key"] = key
    if options:
        payload["options"] = options
    label = f"{handler.job_label} ({key})" if key else handler.job_label
    return enqueue_job(job_type, payload, job_name=label, trigger="manual")
