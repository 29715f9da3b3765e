"""Hadith translation pipeline.

Translation jobs move ``pending -> processing -> completed|failed``. They
are registered by the hadith sync and processed separately, in batches, so a
translation provider outage never fails a corpus sync. Each failed attempt
bumps ``retry_count``; jobs at ``translation_max_retries`` stay failed for
manual inspection.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from deenhub.api.services.upstream_client import UpstreamClient
from deenhub.core.config import get_settings
from deenhub.core.database import get_db_context, upsert
from deenhub.core.exceptions import MappingError
from deenhub.core.retry import TRANSLATION_API_POLICY
from deenhub.models.hadith import (
    TRANSLATION_COMPLETED,
    TRANSLATION_FAILED,
    TRANSLATION_PENDING,
    TRANSLATION_PROCESSING,
    Hadith,
    HadithCollection,
    TranslationJob,
)

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
BN_PLACEHOLDER_PREFIX = "[মেশিন অনুবাদ]"
BN_PLACEHOLDER_SUFFIX = "(এই হাদিসের বাংলা অনুবাদ প্রক্রিয়াধীন)"
CLAIMABLE_STATUSES = (TRANSLATION_PENDING, TRANSLATION_FAILED)


@dataclass
class TranslationOutput:
    text: str
    is_machine: bool = True


class Translator(Protocol):
    name: str

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationOutput:
        ...


class PlaceholderTranslator:
    """Marks the text as pending human translation and truncates it."""

    name = "placeholder"

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationOutput:
        clean = _TAG_RE.sub("", text).strip()
        if target_lang == "bn" and source_lang in ("en", "ar"):
            word_limit = 20 if source_lang == "en" else 15
            excerpt = " ".join(clean.split(" ")[:word_limit])
            return TranslationOutput(f"{BN_PLACEHOLDER_PREFIX} {excerpt}... {BN_PLACEHOLDER_SUFFIX}")
        return TranslationOutput(f"[Translation: {clean[:100]}...]")


class MyMemoryTranslator:
    """MyMemory public translation API."""

    name = "mymemory"

    def __init__(self, client: UpstreamClient | None = None, url: str | None = None):
        self.client = client or UpstreamClient(policy=TRANSLATION_API_POLICY)
        self.url = url or get_settings().translation_api_url

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationOutput:
        body = await self.client.fetch(
            self.url,
            params={"q": _TAG_RE.sub("", text).strip(), "langpair": f"{source_lang}|{target_lang}"},
        )
        translated = ((body or {}).get("responseData") or {}).get("translatedText")
        if not translated:
            raise MappingError("Translation response has no responseData.translatedText")
        return TranslationOutput(translated)


def get_translator() -> Translator:
    provider = get_settings().translation_provider
    if provider == "mymemory":
        return MyMemoryTranslator()
    return PlaceholderTranslator()


def register_pending(
    db: Session,
    hadith_ids: list[int],
    source_lang: str = "en",
    target_lang: str = "bn",
) -> int:
    """Create pending jobs for hadith without one; existing jobs are left alone.

    Does not commit. Returns the number of jobs created.
    """
    if not hadith_ids:
        return 0
    existing = {
        hadith_id
        for (hadith_id,) in db.query(TranslationJob.hadith_id).filter(
            TranslationJob.hadith_id.in_(hadith_ids),
            TranslationJob.target_lang == target_lang,
        )
    }
    created = 0
    now = datetime.utcnow()
    for hadith_id in hadith_ids:
        if hadith_id in existing:
            continue
        upsert(
            db,
            TranslationJob,
            {
                "hadith_id": hadith_id,
                "source_lang": source_lang,
                "target_lang": target_lang,
                "status": TRANSLATION_PENDING,
                "retry_count": 0,
                "is_machine_translated": True,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["hadith_id", "target_lang"],
            set_={},
        )
        created += 1
    return created


def requeue_stale_translations(
    db: Session, older_than_seconds: int, now: datetime | None = None
) -> int:
    """Return ``processing`` jobs untouched for ``older_than_seconds`` to ``pending``.

    A worker that dies mid-batch leaves its claimed jobs in ``processing``;
    nothing else would ever select them again. Does not commit.
    """
    now = now or datetime.utcnow()
    requeued = (
        db.query(TranslationJob)
        .filter(
            TranslationJob.status == TRANSLATION_PROCESSING,
            TranslationJob.updated_at < now - timedelta(seconds=older_than_seconds),
        )
        .update(
            {"status": TRANSLATION_PENDING, "updated_at": now},
            synchronize_session=False,
        )
    )
    if requeued:
        logger.warning(f"Requeued {requeued} stalled translation jobs")
    return requeued


class TranslationService:
    """Processes translation jobs against the configured provider."""

    def __init__(self, db: Session, translator: Translator | None = None):
        self.db = db
        self.translator = translator or get_translator()
        self.settings = get_settings()

    @property
    def max_retries(self) -> int:
        return self.settings.translation_max_retries

    def _source_text(self, job: TranslationJob) -> str | None:
        hadith = self.db.query(Hadith).filter(Hadith.id == job.hadith_id).first()
        if hadith is None:
            return None
        return hadith.text_ar if job.source_lang == "ar" else hadith.text_en

    async def _translate(self, job: TranslationJob, text: str | None) -> TranslationOutput:
        if not text:
            raise MappingError(f"Hadith {job.hadith_id} has no {job.source_lang} text")
        return await self.translator.translate(text, job.source_lang, job.target_lang)

    def _apply(self, job: TranslationJob, outcome: TranslationOutput | BaseException) -> bool:
        now = datetime.utcnow()
        if isinstance(outcome, BaseException):
            job.status = TRANSLATION_FAILED
            job.error = str(outcome)[:1000] or outcome.__class__.__name__
            job.retry_count = (job.retry_count or 0) + 1
            job.updated_at = now
            self.db.commit()
            logger.warning(
                f"Translation job {job.id} for hadith {job.hadith_id} failed "
                f"(attempt {job.retry_count}/{self.max_retries}): {job.error}"
            )
            return False

        hadith = self.db.query(Hadith).filter(Hadith.id == job.hadith_id).first()
        if job.target_lang == "bn" and hadith is not None:
            hadith.text_bn = outcome.text
        job.status = TRANSLATION_COMPLETED
        job.translated_text = outcome.text
        job.is_machine_translated = outcome.is_machine
        job.error = None
        job.completed_at = now
        job.updated_at = now
        self.db.commit()
        return True

    async def process_job(self, job: TranslationJob) -> bool:
        """Translate one job; True on success. Failures are recorded, not raised."""
        results = await self._process_batch([job])
        return bool(results) and results[0]

    def _claim(self, jobs: list[TranslationJob]) -> list[TranslationJob]:
        """Move jobs to ``processing``; a job another run already took is dropped."""
        now = datetime.utcnow()
        claimed = []
        for job in jobs:
            won = (
                self.db.query(TranslationJob)
                .filter(
                    TranslationJob.id == job.id,
                    TranslationJob.status.in_(CLAIMABLE_STATUSES),
                )
                .update(
                    {"status": TRANSLATION_PROCESSING, "updated_at": now},
                    synchronize_session=False,
                )
            )
            if won:
                claimed.append(job)
        self.db.commit()
        if len(claimed) < len(jobs):
            logger.info(f"Skipped {len(jobs) - len(claimed)} translation jobs claimed elsewhere")
        return claimed

    async def _process_batch(self, jobs: list[TranslationJob]) -> list[bool]:
        """Translate the claimed part of a batch concurrently, then record outcomes one by one."""
        jobs = self._claim(jobs)
        if not jobs:
            return []

        texts = [self._source_text(job) for job in jobs]
        outcomes = await asyncio.gather(
            *(self._translate(job, text) for job, text in zip(jobs, texts)),
            return_exceptions=True,
        )
        return [self._apply(job, outcome) for job, outcome in zip(jobs, outcomes)]

    async def _process_in_batches(
        self,
        jobs: list[TranslationJob],
        batch_size: int | None = None,
        context: Any = None,
    ) -> dict[str, int]:
        batch_size = batch_size or self.settings.translation_batch_size
        delay = self.settings.translation_batch_delay_ms / 1000
        processed = succeeded = failed = 0

        for start in range(0, len(jobs), batch_size):
            if context is not None:
                await context.checkpoint()
            if start and delay:
                await asyncio.sleep(delay)
            results = await self._process_batch(jobs[start:start + batch_size])
            processed += len(results)
            succeeded += sum(results)
            failed += len(results) - sum(results)
            if context is not None:
                await context.report_progress(min(start + batch_size, len(jobs)), len(jobs))

        return {"processed": processed, "succeeded": succeeded, "failed": failed}

    def _filter_collection(self, query, collection: str | None):
        if not collection:
            return query
        return (
            query.join(Hadith, Hadith.id == TranslationJob.hadith_id)
            .join(HadithCollection, HadithCollection.id == Hadith.collection_id)
            .filter(HadithCollection.name == collection)
        )

    async def process_pending(
        self,
        limit: int | None = None,
        collection: str | None = None,
        batch_size: int | None = None,
        context: Any = None,
    ) -> dict[str, int]:
        """Process up to ``limit`` pending jobs, oldest first."""
        query = self.db.query(TranslationJob).filter(TranslationJob.status == TRANSLATION_PENDING)
        jobs = (
            self._filter_collection(query, collection)
            .order_by(TranslationJob.id)
            .limit(limit or self.settings.translation_bulk_limit)
            .all()
        )
        return await self._process_in_batches(jobs, batch_size, context)

    async def trigger_bulk(
        self,
        limit: int | None = None,
        collection: str | None = None,
        batch_size: int | None = None,
        context: Any = None,
    ) -> dict[str, Any]:
        """Register jobs for hadith missing Bangla text, then process pending jobs."""
        limit = limit or self.settings.translation_bulk_limit
        query = self.db.query(Hadith.id).filter(Hadith.text_bn.is_(None), Hadith.text_en.isnot(None))
        if collection:
            query = query.join(HadithCollection, HadithCollection.id == Hadith.collection_id).filter(
                HadithCollection.name == collection
            )
        hadith_ids = [hadith_id for (hadith_id,) in query.order_by(Hadith.id).limit(limit)]
        registered = register_pending(self.db, hadith_ids)
        self.db.commit()

        logger.info(f"Bulk translation: {registered} new jobs, processing up to {limit}")
        result = await self.process_pending(limit, collection, batch_size, context)
        message = (
            f"Bulk translation completed: {result['succeeded']} succeeded, "
            f"{result['failed']} failed"
        )
        logger.info(message)
        return {**result, "registered": registered, "message": message}

    async def retry_failed(self, limit: int = 100, context: Any = None) -> dict[str, int]:
        """Retry failed jobs still under the retry cap."""
        jobs = (
            self.db.query(TranslationJob)
            .filter(
                TranslationJob.status == TRANSLATION_FAILED,
                TranslationJob.retry_count < self.max_retries,
            )
            .order_by(TranslationJob.updated_at)
            .limit(limit)
            .all()
        )
        if not jobs:
            return {"processed": 0, "succeeded": 0, "failed": 0}
        logger.info(f"Retrying {len(jobs)} failed translation jobs")
        return await self._process_in_batches(jobs, context=context)

    def get_stats(self) -> dict[str, int]:
        rows = (
            self.db.query(TranslationJob.status, func.count(TranslationJob.id))
            .group_by(TranslationJob.status)
            .all()
        )
        stats = {
            "total": 0,
            TRANSLATION_PENDING: 0,
            TRANSLATION_PROCESSING: 0,
            TRANSLATION_COMPLETED: 0,
            TRANSLATION_FAILED: 0,
        }
        for status, count in rows:
            stats[status] = count
            stats["total"] += count
        stats["exhausted"] = (
            self.db.query(func.count(TranslationJob.id))
            .filter(
                TranslationJob.status == TRANSLATION_FAILED,
                TranslationJob.retry_count >= self.max_retries,
            )
            .scalar()
        )
        return stats

    def list_jobs(
        self,
        status: str | None = None,
        hadith_id: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        query = self.db.query(TranslationJob)
        if status:
            query = query.filter(TranslationJob.status == status)
        if hadith_id:
            query = query.filter(TranslationJob.hadith_id == hadith_id)
        if since:
            query = query.filter(TranslationJob.created_at >= since)
        if until:
            query = query.filter(TranslationJob.created_at <= until)
        total = query.count()
        jobs = (
            query.order_by(TranslationJob.created_at.desc(), TranslationJob.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {"items": [job.to_dict() for job in jobs], "total": total, "limit": limit, "offset": offset}


class TranslationJobHandler:
    """Queue handler for ``translation`` jobs.

    Payload ``action``: ``bulk`` (default), ``pending`` or ``retry``.
    """

    job_type = "translation"
    job_label = "Translation Processing"

    async def run(self, payload: dict[str, Any], context: Any) -> dict[str, Any]:
        action = payload.get("action", "bulk")
        with get_db_context() as db:
            service = TranslationService(db)
            if action == "retry":
                return await service.retry_failed(payload.get("limit") or 100, context=context)
            if action == "pending":
                return await service.process_pending(
                    payload.get("limit"), payload.get("collection"), payload.get("batch_size"), context
                )
            if action == "bulk":
                return await service.trigger_bulk(
                    payload.get("limit"), payload.get("collection"), payload.get("batch_size"), context
                )
        raise ValueError(f"Unknown translation action '{action}'")
