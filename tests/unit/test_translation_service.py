"""Tests for the hadith translation pipeline."""

from datetime import datetime, timedelta

import httpx
import pytest

from deenhub.api.services.translation_service import (
    MyMemoryTranslator,
    PlaceholderTranslator,
    TranslationJobHandler,
    TranslationOutput,
    TranslationService,
    register_pending,
    requeue_stale_translations,
)
from deenhub.core.database import SessionLocal
from deenhub.core.exceptions import MappingError
from deenhub.models.hadith import Hadith, HadithCollection, TranslationJob

TEXT_EN = "Actions are judged by intentions"


class FailingTranslator:
    name = "failing"

    def __init__(self):
        self.calls = 0

    async def translate(self, text, source_lang, target_lang):
        self.calls += 1
        raise MappingError("provider returned nothing")


class EchoTranslator:
    name = "echo"

    async def translate(self, text, source_lang, target_lang):
        return TranslationOutput(f"bn:{text}")


def _seed_hadith(db, count=2, collection="bukhari"):
    row = HadithCollection(name=collection, title_en=collection)
    db.add(row)
    db.flush()
    hadiths = [
        Hadith(collection_id=row.id, hadith_number=str(n), text_en=f"{TEXT_EN} {n}")
        for n in range(1, count + 1)
    ]
    db.add_all(hadiths)
    db.commit()
    return [h.id for h in hadiths]


class TestPlaceholderTranslator:
    """Tests for the placeholder provider."""

    @pytest.mark.asyncio
    async def test_bangla_placeholder(self):
        output = await PlaceholderTranslator().translate(f"<b>{TEXT_EN}</b>", "en", "bn")
        assert output.text == (
            f"[মেশিন অনুবাদ] {TEXT_EN}... (এই হাদিসের বাংলা অনুবাদ প্রক্রিয়াধীন)"
        )
        assert output.is_machine is True

    @pytest.mark.asyncio
    async def test_english_excerpt_limited_to_twenty_words(self):
        text = " ".join(f"w{n}" for n in range(30))
        output = await PlaceholderTranslator().translate(text, "en", "bn")
        assert "w19..." in output.text
        assert "w20" not in output.text

    @pytest.mark.asyncio
    async def test_other_languages(self):
        output = await PlaceholderTranslator().translate(TEXT_EN, "en", "ur")
        assert output.text == f"[Translation: {TEXT_EN}...]"


class TestMyMemoryTranslator:
    """Tests for the MyMemory provider."""

    @pytest.mark.asyncio
    async def test_translates(self, upstream):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"responseData": {"translatedText": "অনুবাদ"}})

        translator = MyMemoryTranslator(upstream(handler), url="https://translate.test/get")
        output = await translator.translate(TEXT_EN, "en", "bn")

        assert output.text == "অনুবাদ"
        assert seen[0].url.params["langpair"] == "en|bn"

    @pytest.mark.asyncio
    async def test_missing_text_raises(self, upstream):
        translator = MyMemoryTranslator(
            upstream(lambda request: httpx.Response(200, json={"responseData": {}})),
            url="https://translate.test/get",
        )
        with pytest.raises(MappingError):
            await translator.translate(TEXT_EN, "en", "bn")


class TestRegisterPending:
    """Tests for job registration."""

    def test_is_idempotent(self, db_session):
        ids = _seed_hadith(db_session)
        assert register_pending(db_session, ids) == 2
        db_session.commit()
        assert register_pending(db_session, ids) == 0
        db_session.commit()
        assert db_session.query(TranslationJob).count() == 2

    def test_leaves_existing_job_untouched(self, db_session):
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        job = db_session.query(TranslationJob).one()
        job.status = "failed"
        job.retry_count = 2
        db_session.commit()

        register_pending(db_session, ids)
        db_session.commit()
        db_session.refresh(job)
        assert job.status == "failed"
        assert job.retry_count == 2


class TestRequeueStale:
    """Tests for recovering jobs left in processing."""

    def test_only_old_processing_jobs_return_to_pending(self, db_session):
        ids = _seed_hadith(db_session, count=3)
        register_pending(db_session, ids)
        db_session.commit()
        now = datetime(2024, 3, 1, 12, 0)
        jobs = db_session.query(TranslationJob).order_by(TranslationJob.id).all()
        jobs[0].status, jobs[0].updated_at = "processing", now - timedelta(minutes=30)
        jobs[1].status, jobs[1].updated_at = "processing", now - timedelta(minutes=2)
        jobs[2].updated_at = now - timedelta(hours=3)
        db_session.commit()

        assert requeue_stale_translations(db_session, 600, now=now) == 1
        db_session.commit()

        db_session.expire_all()
        statuses = [job.status for job in db_session.query(TranslationJob).order_by(TranslationJob.id)]
        assert statuses == ["pending", "processing", "pending"]


class TestTranslationService:
    """Tests for TranslationService."""

    @pytest.mark.asyncio
    async def test_success_writes_bangla_text(self, db_session):
        ids = _seed_hadith(db_session)
        register_pending(db_session, ids)
        db_session.commit()

        result = await TranslationService(db_session, EchoTranslator()).process_pending()

        assert result == {"processed": 2, "succeeded": 2, "failed": 0}
        hadith = db_session.get(Hadith, ids[0])
        assert hadith.text_bn == f"bn:{TEXT_EN} 1"
        job = db_session.query(TranslationJob).filter(TranslationJob.hadith_id == ids[0]).one()
        assert job.status == "completed"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_process_single_job(self, db_session):
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        db_session.commit()
        job = db_session.query(TranslationJob).one()

        assert await TranslationService(db_session, EchoTranslator()).process_job(job) is True
        assert job.status == "completed"
        assert db_session.get(Hadith, ids[0]).text_bn == f"bn:{TEXT_EN} 1"

    @pytest.mark.asyncio
    async def test_failure_bumps_retry_count(self, db_session):
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        db_session.commit()

        result = await TranslationService(db_session, FailingTranslator()).process_pending()

        assert result["failed"] == 1
        job = db_session.query(TranslationJob).one()
        assert job.status == "failed"
        assert job.retry_count == 1
        assert job.error == "provider returned nothing"
        assert db_session.get(Hadith, ids[0]).text_bn is None

    @pytest.mark.asyncio
    async def test_retry_stops_at_cap(self, db_session):
        """After three failed attempts the job is left for manual inspection."""
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        db_session.commit()
        translator = FailingTranslator()
        service = TranslationService(db_session, translator)

        await service.process_pending()
        await service.retry_failed()
        await service.retry_failed()
        assert db_session.query(TranslationJob).one().retry_count == 3

        result = await service.retry_failed()

        assert result == {"processed": 0, "succeeded": 0, "failed": 0}
        assert translator.calls == 3
        stats = service.get_stats()
        assert stats["failed"] == 1
        assert stats["exhausted"] == 1

    @pytest.mark.asyncio
    async def test_retry_recovers(self, db_session):
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        db_session.commit()
        await TranslationService(db_session, FailingTranslator()).process_pending()

        result = await TranslationService(db_session, EchoTranslator()).retry_failed()

        assert result["succeeded"] == 1
        assert db_session.query(TranslationJob).one().status == "completed"

    @pytest.mark.asyncio
    async def test_missing_source_text_fails_job(self, db_session):
        collection = HadithCollection(name="muslim")
        db_session.add(collection)
        db_session.flush()
        hadith = Hadith(collection_id=collection.id, hadith_number="1", text_ar="نص")
        db_session.add(hadith)
        db_session.commit()
        register_pending(db_session, [hadith.id])
        db_session.commit()

        result = await TranslationService(db_session, EchoTranslator()).process_pending()

        assert result["failed"] == 1
        assert "no en text" in db_session.query(TranslationJob).one().error

    @pytest.mark.asyncio
    async def test_trigger_bulk_registers_and_processes(self, db_session):
        _seed_hadith(db_session, count=3)

        result = await TranslationService(db_session, EchoTranslator()).trigger_bulk(limit=2)

        assert result["registered"] == 2
        assert result["succeeded"] == 2
        assert "2 succeeded" in result["message"]
        assert db_session.query(Hadith).filter(Hadith.text_bn.is_(None)).count() == 1

    @pytest.mark.asyncio
    async def test_bulk_filters_by_collection(self, db_session):
        _seed_hadith(db_session, count=2, collection="bukhari")
        _seed_hadith(db_session, count=1, collection="muslim")

        result = await TranslationService(db_session, EchoTranslator()).trigger_bulk(
            collection="muslim"
        )

        assert result["registered"] == 1
        assert result["processed"] == 1

    @pytest.mark.asyncio
    async def test_jobs_taken_by_another_run_are_skipped(self, db_session):
        ids = _seed_hadith(db_session, count=2)
        register_pending(db_session, ids)
        db_session.commit()
        selected = db_session.query(TranslationJob).order_by(TranslationJob.id).all()

        with SessionLocal() as other:
            await TranslationService(other, EchoTranslator()).process_pending(limit=1)

        translator = FailingTranslator()
        result = await TranslationService(db_session, translator)._process_in_batches(selected)

        assert result == {"processed": 1, "succeeded": 0, "failed": 1}
        assert translator.calls == 1
        statuses = [job.status for job in db_session.query(TranslationJob).order_by(TranslationJob.id)]
        assert statuses == ["completed", "failed"]

    @pytest.mark.asyncio
    async def test_processing_job_is_not_claimed_twice(self, db_session):
        ids = _seed_hadith(db_session, count=1)
        register_pending(db_session, ids)
        db_session.commit()
        job = db_session.query(TranslationJob).one()
        job.status = "processing"
        db_session.commit()

        translator = FailingTranslator()
        assert await TranslationService(db_session, translator).process_job(job) is False
        assert translator.calls == 0
        assert job.status == "processing"

    def test_list_jobs(self, db_session):
        ids = _seed_hadith(db_session, count=3)
        register_pending(db_session, ids)
        db_session.commit()

        service = TranslationService(db_session, EchoTranslator())
        page = service.list_jobs(limit=2)
        assert page["total"] == 3
        assert len(page["items"]) == 2
        assert service.list_jobs(hadith_id=ids[0])["total"] == 1
        assert service.list_jobs(status="completed")["total"] == 0


class TestTranslationJobHandler:
    """Tests for the queue handler."""

    @pytest.mark.asyncio
    async def test_bulk_action_uses_placeholder(self, db_session):
        ids = _seed_hadith(db_session, count=1)

        result = await TranslationJobHandler().run({"action": "bulk"}, context=None)

        assert result["succeeded"] == 1
        db_session.expire_all()
        assert db_session.get(Hadith, ids[0]).text_bn.startswith("[মেশিন অনুবাদ]")

    @pytest.mark.asyncio
    async def test_unknown_action(self, db_session):
        with pytest.raises(ValueError, match="Unknown translation action"):
            await TranslationJobHandler().run({"action": "everything"}, context=None)
