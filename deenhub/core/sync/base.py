"""Shared run loop for every domain sync.

A domain sync fetches upstream records, maps each into its local shape and
upserts it by natural key, writing one ledger entry per call. Subclasses
supply ``fetch_units`` and ``process_unit``; this module owns the skip rule,
dry runs, per-record error accounting, throttling, cooperative
cancellation and the final ledger status.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from collections.abc import AsyncIterator
from typing import Any, Protocol

from sqlalchemy.orm import Session

from deenhub.api.services.ledger_service import SyncLedgerService, derive_run_status
from deenhub.api.services.upstream_client import UpstreamClient
from deenhub.core.cache import invalidate_on_sync_completion
from deenhub.core.config import get_settings
from deenhub.core.database import get_db_context
from deenhub.core.exceptions import JobInterrupted
from deenhub.models.sync import RUN_FAILED, RUN_SUCCESS

logger = logging.getLogger(__name__)

# State key a service may set so progress has a denominator while streaming
EXPECTED_UNITS = "expected_units"


class JobContext(Protocol):
    """Hooks a queue worker passes into a running sync."""

    async def checkpoint(self) -> None:
        """Raise JobCancelled/JobPaused if an operator stopped the job."""

    async def report_progress(self, done: int, total: int) -> None:
        """Publish progress for the job."""


class NullJobContext:
    """Context for syncs called directly, outside the queue."""

    async def checkpoint(self) -> None:
        return None

    async def report_progress(self, done: int, total: int) -> None:
        return None


class ScopedJobContext:
    """Maps one resource's progress into its slice of a multi-resource job."""

    def __init__(self, parent: JobContext, index: int, count: int):
        self.parent = parent
        self.index = index
        self.count = count

    async def checkpoint(self) -> None:
        await self.parent.checkpoint()

    async def report_progress(self, done: int, total: int) -> None:
        if total:
            await self.parent.report_progress(self.index * total + done, self.count * total)


@dataclass
class SyncOptions:
    """Caller options for one sync call."""

    force: bool = False
    dry_run: bool = False
    start_date: date | None = None
    days: int | None = None
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncOptions":
        data = dict(data or {})
        start_date = data.pop("start_date", None)
        if isinstance(start_date, str):
            start_date = date.fromisoformat(start_date)
        return cls(
            force=bool(data.pop("force", False)),
            dry_run=bool(data.pop("dry_run", False)),
            start_date=start_date,
            days=data.pop("days", None),
            params=data.pop("params", None) or data,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "force": self.force,
            "dry_run": self.dry_run,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "days": self.days,
            "params": self.params,
        }


@dataclass
class SyncResult:
    """Outcome of one sync call."""

    job_name: str
    resource: str
    status: str
    records_processed: int = 0
    records_failed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    dry_run: bool = False
    run_id: int | None = None
    duration_ms: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "resource": self.resource,
            "status": self.status,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "errors": self.errors,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
            "message": self.message,
        }


class SyncService(ABC):
    """One syncable resource family (e.g. prayer times, reciters)."""

    job_name: str = ""
    # Sleep between units; set where each unit is its own upstream call
    throttle_units: bool = False

    def __init__(self, client: UpstreamClient | None = None):
        self.client = client or self.default_client()
        self.settings = get_settings()

    def default_client(self) -> UpstreamClient:
        return UpstreamClient()

    def resource_key(self, key: str, options: SyncOptions) -> str:
        """Ledger resource for a call; the key itself unless overridden."""
        return key

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        """Per-run setup executed before fetching; failures fail the run."""
        return {}

    @abstractmethod
    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        """Fetch the units of work (upstream records, or days to fetch). No writes."""

    async def iter_units(
        self, key: str, options: SyncOptions, state: dict[str, Any]
    ) -> AsyncIterator[Any]:
        """Units in processing order.

        The default fetches everything up front. Paginated services override
        this to yield records as each page arrives, so a page that fails after
        retries ends the run without discarding the pages already written.
        """
        units = await self.fetch_units(key, options)
        state[EXPECTED_UNITS] = len(units)
        for unit in units:
            yield unit

    @abstractmethod
    async def process_unit(
        self, db: Session, unit: Any, state: dict[str, Any], options: SyncOptions
    ) -> None:
        """Map and upsert one unit. Raising fails only this unit."""

    async def finalize(
        self, db: Session, key: str, state: dict[str, Any], processed: int, failed: int
    ) -> None:
        """Post-loop bookkeeping; failures are logged, never fail the run."""
        return None

    def describe_unit(self, unit: Any) -> str:
        return str(unit)[:80]

    @property
    def inter_call_delay(self) -> float:
        return self.settings.get_inter_call_delay_ms(self.job_name) / 1000

    async def sync_resource(
        self,
        key: str,
        options: SyncOptions | None = None,
        context: JobContext | None = None,
    ) -> SyncResult:
        """Sync one resource: skip if fresh, else fetch, map, upsert and record."""
        options = options or SyncOptions()
        context = context or NullJobContext()
        try:
            resource = self.resource_key(key, options)
        except ValueError as e:
            return self._reject(key, str(e))

        with get_db_context() as db:
            ledger = SyncLedgerService(db)

            if not options.force and not options.dry_run:
                fresh_run = ledger.is_fresh(
                    self.job_name, resource, self.settings.get_freshness_hours(self.job_name)
                )
                if fresh_run is not None:
                    logger.info(
                        f"Skipping {self.job_name} sync for {resource}: "
                        f"synced at {fresh_run.started_at} (run_id={fresh_run.id})"
                    )
                    return SyncResult(
                        job_name=self.job_name,
                        resource=resource,
                        status=RUN_SUCCESS,
                        skipped=True,
                        run_id=fresh_run.id,
                        message="Resource is fresh; sync skipped",
                    )

            if options.dry_run:
                units = await self.fetch_units(key, options)
                logger.info(f"Dry run {self.job_name} for {resource}: {len(units)} units")
                return SyncResult(
                    job_name=self.job_name,
                    resource=resource,
                    status=RUN_SUCCESS,
                    records_processed=len(units),
                    dry_run=True,
                    message="Dry run; nothing written",
                )

            run = ledger.start_run(self.job_name, resource)
            run_id = run.id

            try:
                state = await self.prepare(db, key, options)
                db.commit()
            except JobInterrupted:
                ledger.finish_run(run_id, 0, 0, error="Interrupted before processing",
                                  status=RUN_FAILED)
                raise
            except Exception as e:
                return self._abort(db, ledger, run_id, resource, e)

            processed = 0
            failed = 0
            errors: list[str] = []
            units = aiter(self.iter_units(key, options, state))

            try:
                while True:
                    await context.checkpoint()
                    try:
                        unit = await anext(units)
                    except StopAsyncIteration:
                        break
                    except JobInterrupted:
                        raise
                    except Exception as e:
                        if processed == 0:
                            return self._abort(db, ledger, run_id, resource, e)
                        # Upstream stopped mid-stream; keep what was written
                        db.rollback()
                        processed += 1
                        failed += 1
                        message = f"fetch stopped after {processed - 1} units: {e}"
                        errors.append(message)
                        logger.warning(f"{self.job_name} sync for {resource}: {message}")
                        break

                    if processed and self.throttle_units and self.inter_call_delay:
                        await asyncio.sleep(self.inter_call_delay)

                    processed += 1
                    try:
                        await self.process_unit(db, unit, state, options)
                        db.commit()
                    except JobInterrupted:
                        db.rollback()
                        processed -= 1
                        raise
                    except Exception as e:
                        db.rollback()
                        failed += 1
                        message = f"{self.describe_unit(unit)}: {e}"
                        errors.append(message)
                        logger.warning(f"{self.job_name} record failed ({message})")

                    expected = state.get(EXPECTED_UNITS) or processed
                    await context.report_progress(processed, max(expected, processed))
            except JobInterrupted as e:
                total = state.get(EXPECTED_UNITS)
                done = f"{processed}/{total}" if total else str(processed)
                ledger.finish_run(
                    run_id, processed, failed, errors=errors,
                    error=f"Job {e.status} after {done} units",
                    status=RUN_FAILED,
                )
                raise
            finally:
                await units.aclose()

            try:
                await self.finalize(db, key, state, processed, failed)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.warning(f"{self.job_name} finalize for {resource} failed: {e}")

            finished = ledger.finish_run(run_id, processed, failed, errors=errors)
            status = finished.status
            duration_ms = finished.duration_ms

        if processed > failed:
            await invalidate_on_sync_completion(self.job_name)

        return SyncResult(
            job_name=self.job_name,
            resource=resource,
            status=status or derive_run_status(processed, failed),
            records_processed=processed,
            records_failed=failed,
            errors=errors,
            run_id=run_id,
            duration_ms=duration_ms,
        )

    def _abort(
        self, db: Session, ledger: SyncLedgerService, run_id: int, resource: str, error: Exception
    ) -> SyncResult:
        """Fail a started run that wrote nothing."""
        db.rollback()
        logger.error(f"{self.job_name} sync for {resource} failed: {error}", exc_info=True)
        finished = ledger.finish_run(run_id, 0, 0, error=str(error), status=RUN_FAILED)
        return SyncResult(
            job_name=self.job_name,
            resource=resource,
            status=RUN_FAILED,
            run_id=run_id,
            duration_ms=finished.duration_ms,
            message=str(error),
        )

    def _reject(self, key: str, reason: str) -> SyncResult:
        return reject_key(self.job_name, key, reason)


def reject_key(job_name: str, key: str, reason: str) -> SyncResult:
    """Record a failed run for a key that cannot be synced at all."""
    logger.warning(f"Rejected {job_name} sync for {key!r}: {reason}")
    with get_db_context() as db:
        ledger = SyncLedgerService(db)
        run = ledger.start_run(job_name, key[:255])
        finished = ledger.finish_run(run.id, 0, 0, error=reason, status=RUN_FAILED)
        return SyncResult(
            job_name=job_name,
            resource=key,
            status=RUN_FAILED,
            run_id=finished.id,
            duration_ms=finished.duration_ms,
            message=reason,
        )


class SyncTarget(ABC):
    """A syncable domain (quran, prayer, audio, finance, hadith).

    Routes a resource key to the service that owns it; every variant exposes
    the same ``sync_resource`` contract.
    """

    job_type: str = ""
    job_label: str = ""

    @abstractmethod
    def service_for(self, key: str) -> SyncService:
        """Service responsible for ``key``."""

    def default_resources(self) -> list[str]:
        """Resource keys refreshed by the scheduled run."""
        return []

    async def sync_resource(
        self,
        key: str,
        options: SyncOptions | None = None,
        context: JobContext | None = None,
    ) -> SyncResult:
        try:
            service = self.service_for(key)
        except ValueError as e:
            return reject_key(self.job_type, key, str(e))
        return await service.sync_resource(key, options, context)

    def validate_key(self, key: str, options: SyncOptions) -> None:
        """Raise ValueError for a key, or key and options, that can never sync."""
        self.service_for(key).resource_key(key, options)

    async def run(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        """Queue entry point: sync one key, or every default resource."""
        options = SyncOptions.from_dict(payload.get("options"))
        key = payload.get("key")
        keys = [key] if key else self.default_resources()

        results = []
        for index, resource_key in enumerate(keys):
            await context.checkpoint()
            scoped = ScopedJobContext(context, index, len(keys)) if len(keys) > 1 else context
            try:
                result = await self.sync_resource(resource_key, options, scoped)
            except JobInterrupted:
                raise
            except Exception as e:
                # Remaining resources still run
                logger.error(f"{self.job_type} sync for {resource_key} crashed: {e}", exc_info=True)
                result = SyncResult(
                    job_name=self.job_type,
                    resource=resource_key,
                    status=RUN_FAILED,
                    message=str(e),
                )
            results.append(result.to_dict())
            if len(keys) > 1:
                await context.report_progress(index + 1, len(keys))
        return {"results": results}
