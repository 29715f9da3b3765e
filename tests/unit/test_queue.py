"""Tests for the durable job queue."""

from datetime import datetime, timedelta

import pytest

from deenhub.core.exceptions import InvalidJobTransition, JobCancelled, JobPaused
from deenhub.core.queue import JobQueue, QueueJobContext, build_dedupe_key
from deenhub.models.sync import QueueJob


class TestEnqueue:
    """Tests for enqueue and dedupe."""

    def test_creates_queued_job(self, db_session):
        job, created = JobQueue(db_session).enqueue("prayer", {"key": "methods"}, job_name="Prayer")

        assert created is True
        assert job.status == "queued"
        assert job.payload == {"key": "methods"}
        assert job.job_name == "Prayer"

    def test_identical_queued_job_is_reused(self, db_session):
        queue = JobQueue(db_session)
        first, _ = queue.enqueue("prayer", {"key": "methods"})
        second, created = queue.enqueue("prayer", {"key": "methods"})

        assert created is False
        assert second.id == first.id

    def test_different_payload_is_new_job(self, db_session):
        queue = JobQueue(db_session)
        first, _ = queue.enqueue("prayer", {"key": "methods"})
        second, created = queue.enqueue("prayer", {"key": "23.8,90.4"})
        assert created is True
        assert second.id != first.id

    def test_finished_job_does_not_block_requeue(self, db_session):
        queue = JobQueue(db_session)
        first, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.complete(first.id, {"results": []})

        second, created = queue.enqueue("quran", {})
        assert created is True
        assert second.id != first.id

    def test_dedupe_disabled(self, db_session):
        queue = JobQueue(db_session)
        queue.enqueue("quran", {}, dedupe=False)
        _, created = queue.enqueue("quran", {}, dedupe=False)
        assert created is True

    def test_dedupe_key_ignores_key_order(self):
        assert build_dedupe_key("x", {"a": 1, "b": 2}) == build_dedupe_key("x", {"b": 2, "a": 1})


class TestClaim:
    """Tests for claiming and finishing jobs."""

    def test_claims_oldest_first(self, db_session):
        queue = JobQueue(db_session)
        first, _ = queue.enqueue("quran", {"n": 1})
        queue.enqueue("quran", {"n": 2})

        job = queue.claim_next("w1")

        assert job.id == first.id
        assert job.status == "active"
        assert job.worker_id == "w1"
        assert job.attempts == 1

    def test_filters_by_job_type(self, db_session):
        queue = JobQueue(db_session)
        queue.enqueue("quran", {})
        audio, _ = queue.enqueue("audio", {})
        assert queue.claim_next("w1", job_types=["audio"]).id == audio.id

    def test_nothing_to_claim(self, db_session):
        assert JobQueue(db_session).claim_next("w1") is None

    def test_job_claimed_once(self, db_session):
        queue = JobQueue(db_session)
        queue.enqueue("quran", {})
        assert queue.claim_next("w1") is not None
        assert queue.claim_next("w2") is None

    def test_complete_records_result(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")

        assert queue.complete(job.id, {"results": [1]}) is True
        db_session.refresh(job)
        assert job.status == "completed"
        assert job.progress_percentage == 100.0
        assert job.result == {"results": [1]}

    def test_complete_after_cancel_is_ignored(self, db_session):
        """An operator's cancel wins over a late completion."""
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.cancel(job.id)

        assert queue.complete(job.id, {}) is False
        assert queue.get(job.id).status == "cancelled"

    def test_fail_records_error(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.fail(job.id, "boom")
        db_session.refresh(job)
        assert job.status == "failed"
        assert job.error_message == "boom"

    def test_heartbeat_clamps_progress(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")

        assert queue.heartbeat(job.id, 150.0) == "active"
        db_session.refresh(job)
        assert job.progress_percentage == 100.0


class TestTransitions:
    """Tests for operator transitions."""

    def test_pause_resume_cycle(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})

        assert queue.pause(job.id).status == "paused"
        resumed = queue.resume(job.id)
        assert resumed.status == "queued"
        assert resumed.progress_percentage == 0.0

    def test_cancel_sets_completed_at(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        cancelled = queue.cancel(job.id)
        assert cancelled.status == "cancelled"
        assert cancelled.completed_at is not None

    @pytest.mark.parametrize("action", ["pause", "resume", "cancel"])
    def test_terminal_jobs_reject_transitions(self, db_session, action):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.complete(job.id)

        with pytest.raises(InvalidJobTransition) as exc_info:
            getattr(queue, action)(job.id)
        assert exc_info.value.current == "completed"

    def test_resume_requires_paused(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        with pytest.raises(InvalidJobTransition):
            queue.resume(job.id)

    def test_unknown_job(self, db_session):
        queue = JobQueue(db_session)
        assert queue.pause("missing") is None
        assert queue.delete("missing") is None

    def test_delete_active_job_rejected(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        with pytest.raises(InvalidJobTransition):
            queue.delete(job.id)

    def test_delete_queued_job(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        job_id = job.id
        assert queue.delete(job_id) is True
        assert queue.get(job_id) is None

    def test_release_detaches_worker(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.pause(job.id)
        queue.release(job.id)
        db_session.refresh(job)
        assert job.worker_id is None
        assert job.status == "paused"


class TestRequeueStale:
    """Tests for stale job recovery."""

    def test_requeues_then_fails_exhausted(self, db_session):
        queue = JobQueue(db_session)
        retryable, _ = queue.enqueue("quran", {"n": 1}, max_attempts=3)
        exhausted, _ = queue.enqueue("quran", {"n": 2}, max_attempts=1)
        queue.claim_next("w1")
        queue.claim_next("w2")

        later = datetime.utcnow() + timedelta(seconds=601)
        result = queue.requeue_stale(600, now=later)

        assert result == {"requeued": 1, "failed": 1}
        db_session.refresh(retryable)
        db_session.refresh(exhausted)
        assert retryable.status == "queued"
        assert retryable.worker_id is None
        assert exhausted.status == "failed"
        assert "Worker lost" in exhausted.error_message

    def test_fresh_heartbeat_left_alone(self, db_session):
        queue = JobQueue(db_session)
        queue.enqueue("quran", {})
        queue.claim_next("w1")
        assert queue.requeue_stale(600) == {"requeued": 0, "failed": 0}


class TestStats:
    def test_counts_by_status(self, db_session):
        queue = JobQueue(db_session)
        queue.enqueue("quran", {"n": 1})
        job, _ = queue.enqueue("quran", {"n": 2})
        queue.cancel(job.id)

        stats = queue.stats()
        assert stats["queued"] == 1
        assert stats["cancelled"] == 1
        assert stats["total"] == 2


class TestQueueJobContext:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_checkpoint_passes_while_active(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        await QueueJobContext(job.id).checkpoint()

    @pytest.mark.asyncio
    async def test_checkpoint_raises_on_cancel(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.cancel(job.id)
        with pytest.raises(JobCancelled):
            await QueueJobContext(job.id).checkpoint()

    @pytest.mark.asyncio
    async def test_checkpoint_raises_on_pause(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        queue.pause(job.id)
        with pytest.raises(JobPaused):
            await QueueJobContext(job.id).checkpoint()

    @pytest.mark.asyncio
    async def test_report_progress(self, db_session):
        queue = JobQueue(db_session)
        job, _ = queue.enqueue("quran", {})
        queue.claim_next("w1")
        await QueueJobContext(job.id).report_progress(1, 4)
        db_session.expire_all()
        assert db_session.get(QueueJob, job.id).progress_percentage == 25.0
