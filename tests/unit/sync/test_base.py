"""Tests for the shared sync run loop."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from deenhub.core.database import upsert
from deenhub.core.exceptions import JobCancelled, MappingError
from deenhub.core.sync.base import (
    NullJobContext,
    ScopedJobContext,
    SyncOptions,
    SyncService,
    SyncTarget,
)
from deenhub.models.prayer import PrayerCalculationMethod
from deenhub.models.sync import SyncRun


class FakeMethodSync(SyncService):
    """Upserts one calculation method per unit name."""

    job_name = "prayer-methods"

    def __init__(self, units, fail_on=(), fetch_error=None):
        super().__init__(client=MagicMock())
        self.units = units
        self.fail_on = set(fail_on)
        self.fetch_error = fetch_error
        self.fetch_calls = 0

    async def fetch_units(self, key, options):
        self.fetch_calls += 1
        if self.fetch_error:
            raise self.fetch_error
        return list(self.units)

    async def process_unit(self, db, unit, state, options):
        if unit in self.fail_on:
            raise MappingError(f"bad record {unit}")
        upsert(
            db,
            PrayerCalculationMethod,
            {"method_code": unit, "method_name": unit.title()},
            index_elements=["method_code"],
        )


class StreamingMethodSync(FakeMethodSync):
    """Yields units one by one, then fails the way a broken page would."""

    def __init__(self, units, stream_error):
        super().__init__(units)
        self.stream_error = stream_error

    async def iter_units(self, key, options, state):
        for unit in self.units:
            yield unit
        raise self.stream_error


class CancelAfter(NullJobContext):
    """Checkpoint that cancels once ``limit`` units have passed."""

    def __init__(self, limit):
        self.limit = limit
        self.calls = 0
        self.progress = []

    async def checkpoint(self):
        self.calls += 1
        if self.calls > self.limit:
            raise JobCancelled("cancelled by operator")

    async def report_progress(self, done, total):
        self.progress.append((done, total))


class TestSyncOptions:
    """Tests for option parsing."""

    def test_from_dict_parses_dates_and_params(self):
        options = SyncOptions.from_dict(
            {"force": True, "start_date": "2024-03-01", "days": 7, "params": {"method": "MWL"}}
        )
        assert options.force is True
        assert options.start_date.isoformat() == "2024-03-01"
        assert options.days == 7
        assert options.params == {"method": "MWL"}

    def test_unknown_keys_become_params(self):
        options = SyncOptions.from_dict({"school": "SHAFI"})
        assert options.params == {"school": "SHAFI"}

    def test_empty(self):
        options = SyncOptions.from_dict(None)
        assert not options.force and not options.dry_run


class TestSyncResource:
    """Tests for SyncService.sync_resource."""

    @pytest.mark.asyncio
    async def test_full_success(self, db_session):
        result = await FakeMethodSync(["mwl", "isna"]).sync_resource("methods")

        assert result.status == "success"
        assert result.records_processed == 2
        assert result.records_failed == 0
        assert db_session.query(PrayerCalculationMethod).count() == 2
        run = db_session.get(SyncRun, result.run_id)
        assert run.status == "success"
        assert run.resource == "methods"

    @pytest.mark.asyncio
    async def test_second_call_is_skipped_while_fresh(self, db_session):
        """A fresh resource is not re-fetched and no new run is written."""
        service = FakeMethodSync(["mwl"])
        first = await service.sync_resource("methods")
        second = await service.sync_resource("methods")

        assert second.skipped is True
        assert second.status == "success"
        assert second.run_id == first.run_id
        assert service.fetch_calls == 1
        assert db_session.query(SyncRun).count() == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_freshness(self, db_session):
        service = FakeMethodSync(["mwl"])
        await service.sync_resource("methods")
        forced = await service.sync_resource("methods", SyncOptions(force=True))

        assert forced.skipped is False
        assert service.fetch_calls == 2
        assert db_session.query(SyncRun).count() == 2

    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row_per_natural_key(self, db_session):
        service = FakeMethodSync(["mwl", "mwl", "isna"])
        await service.sync_resource("methods")
        await service.sync_resource("methods", SyncOptions(force=True))

        codes = [row.method_code for row in db_session.query(PrayerCalculationMethod).all()]
        assert sorted(codes) == ["isna", "mwl"]

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session):
        result = await FakeMethodSync(["mwl", "isna", "egypt"]).sync_resource(
            "methods", SyncOptions(dry_run=True)
        )

        assert result.dry_run is True
        assert result.records_processed == 3
        assert result.run_id is None
        assert db_session.query(SyncRun).count() == 0
        assert db_session.query(PrayerCalculationMethod).count() == 0

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_good_records(self, db_session):
        """One bad record fails only itself."""
        result = await FakeMethodSync(["mwl", "broken", "isna"], fail_on=["broken"]).sync_resource(
            "methods"
        )

        assert result.status == "partial"
        assert result.records_processed == 3
        assert result.records_failed == 1
        assert result.errors == ["broken: bad record broken"]
        assert db_session.query(PrayerCalculationMethod).count() == 2
        run = db_session.get(SyncRun, result.run_id)
        assert run.errors == ["broken: bad record broken"]

    @pytest.mark.asyncio
    async def test_every_record_failing_is_failed(self, db_session):
        result = await FakeMethodSync(["a", "b"], fail_on=["a", "b"]).sync_resource("methods")
        assert result.status == "failed"
        assert result.records_failed == 2

    @pytest.mark.asyncio
    async def test_failed_run_is_not_fresh(self, db_session):
        service = FakeMethodSync(["a"], fail_on=["a"])
        await service.sync_resource("methods")
        await service.sync_resource("methods")
        assert service.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_fails_the_run_without_raising(self, db_session):
        service = FakeMethodSync([], fetch_error=MappingError("no data object"))
        result = await service.sync_resource("methods")

        assert result.status == "failed"
        assert result.message == "no data object"
        run = db_session.get(SyncRun, result.run_id)
        assert run.status == "failed"
        assert run.error == "no data object"

    @pytest.mark.asyncio
    async def test_cancellation_marks_run_failed_and_reraises(self, db_session):
        context = CancelAfter(limit=2)
        service = FakeMethodSync(["a", "b", "c", "d"])

        with pytest.raises(JobCancelled):
            await service.sync_resource("methods", context=context)

        run = db_session.query(SyncRun).one()
        assert run.status == "failed"
        assert run.error == "Job cancelled after 2/4 units"
        assert run.records_processed == 2
        assert db_session.query(PrayerCalculationMethod).count() == 2
        assert context.progress == [(1, 4), (2, 4)]

    @pytest.mark.asyncio
    async def test_invalid_key_records_failed_run(self, db_session):
        service = FakeMethodSync(["mwl"])

        def reject(key, options):
            raise ValueError(f"Invalid key '{key}'")

        service.resource_key = reject
        result = await service.sync_resource("nowhere")

        assert result.status == "failed"
        assert result.message == "Invalid key 'nowhere'"
        assert service.fetch_calls == 0
        run = db_session.get(SyncRun, result.run_id)
        assert run.status == "failed"
        assert run.resource == "nowhere"
        assert run.error == "Invalid key 'nowhere'"

    @pytest.mark.asyncio
    async def test_stream_failure_mid_run_keeps_written_units(self, db_session):
        service = StreamingMethodSync(["mwl", "isna"], MappingError("page 2 unreadable"))
        result = await service.sync_resource("methods")

        assert result.status == "partial"
        assert result.records_processed == 3
        assert result.records_failed == 1
        assert result.errors == ["fetch stopped after 2 units: page 2 unreadable"]
        assert db_session.query(PrayerCalculationMethod).count() == 2

    @pytest.mark.asyncio
    async def test_stream_failure_before_any_unit_fails_run(self, db_session):
        service = StreamingMethodSync([], MappingError("page 1 unreadable"))
        result = await service.sync_resource("methods")

        assert result.status == "failed"
        assert db_session.get(SyncRun, result.run_id).error == "page 1 unreadable"

    @pytest.mark.asyncio
    async def test_cache_invalidated_when_records_written(self, db_session):
        with patch(
            "deenhub.core.sync.base.invalidate_on_sync_completion", new=AsyncMock()
        ) as invalidate:
            await FakeMethodSync(["a"]).sync_resource("methods")
            await FakeMethodSync(["b"], fail_on=["b"]).sync_resource(
                "methods", SyncOptions(force=True)
            )

        invalidate.assert_awaited_once_with("prayer-methods")


class TestSyncTarget:
    """Tests for SyncTarget.run."""

    @pytest.mark.asyncio
    async def test_runs_every_default_resource(self, db_session):
        class FakeTarget(SyncTarget):
            job_type = "prayer"

            def service_for(self, key):
                service = FakeMethodSync([f"{key}-1", f"{key}-2"])
                service.resource_key = lambda k, options: k
                return service

            def default_resources(self):
                return ["x", "y"]

        context = CancelAfter(limit=100)
        output = await FakeTarget().run({"options": {"force": True}}, context)

        assert [r["resource"] for r in output["results"]] == ["x", "y"]
        assert all(r["status"] == "success" for r in output["results"])
        assert context.progress[-1] == (2, 2)

    @pytest.mark.asyncio
    async def test_scoped_context_maps_progress(self):
        parent = CancelAfter(limit=100)
        scoped = ScopedJobContext(parent, index=1, count=2)
        await scoped.report_progress(5, 10)
        assert parent.progress == [(15, 20)]

    @pytest.mark.asyncio
    async def test_one_broken_resource_does_not_stop_the_rest(self, db_session):
        class FlakyTarget(SyncTarget):
            job_type = "prayer"

            def service_for(self, key):
                if key == "unknown":
                    raise ValueError("Unknown resource 'unknown'")
                service = FakeMethodSync([key])
                if key == "crash":
                    service.sync_resource = AsyncMock(side_effect=RuntimeError("boom"))
                return service

            def default_resources(self):
                return ["a", "unknown", "crash", "b"]

        output = await FlakyTarget().run({}, CancelAfter(limit=100))

        statuses = {r["resource"]: r["status"] for r in output["results"]}
        assert statuses == {"a": "success", "unknown": "failed", "crash": "failed", "b": "success"}
        rejected = db_session.query(SyncRun).filter(SyncRun.resource == "unknown").one()
        assert rejected.error == "Unknown resource 'unknown'"

    def test_validate_key_raises_for_bad_key(self):
        class StrictTarget(SyncTarget):
            job_type = "prayer"

            def service_for(self, key):
                if key != "methods":
                    raise ValueError(f"Unknown resource '{key}'")
                return FakeMethodSync([])

        StrictTarget().validate_key("methods", SyncOptions())
        with pytest.raises(ValueError, match="Unknown resource"):
            StrictTarget().validate_key("other", SyncOptions())
