"""Tests for prayer method and prayer time sync."""

from datetime import date

import httpx
import pytest

from deenhub.core.exceptions import MappingError
from deenhub.core.sync.base import SyncOptions
from deenhub.core.sync.prayer import (
    CalculationMethodSync,
    PrayerCalendarSync,
    PrayerSyncTarget,
    PrayerTimesSync,
    build_method_code,
    location_key,
    map_calculation_method,
    map_prayer_timings,
    parse_calendar_key,
    parse_coordinates,
    qibla_direction,
    resolve_date_range,
)
from deenhub.models.prayer import PrayerCalculationMethod, PrayerLocation, PrayerTime
from deenhub.models.sync import SyncRun

DHAKA = "23.8103,90.4125"


class TestHelpers:
    """Tests for pure prayer helpers."""

    def test_parse_coordinates(self):
        assert parse_coordinates(DHAKA) == (23.8103, 90.4125)

    @pytest.mark.parametrize("key", ["dhaka", "1,2,3", "95,10", "10,190"])
    def test_parse_coordinates_rejects_bad_keys(self, key):
        with pytest.raises(ValueError):
            parse_coordinates(key)

    def test_location_key_rounds_to_three_decimals(self):
        assert location_key(23.81031, 90.41231) == location_key(23.8103, 90.4123)
        assert location_key(23.8103, 90.4123) != location_key(23.82, 90.4123)

    def test_qibla_direction_from_dhaka(self):
        assert 277 < qibla_direction(23.8103, 90.4125) < 279

    def test_build_method_code(self):
        assert build_method_code("Muslim World League") == "MWL"
        assert build_method_code("Some New Authority") == "SOME_NEW_AUTHORITY"

    def test_resolve_date_range(self):
        days = resolve_date_range(SyncOptions(start_date=date(2024, 2, 28), days=3))
        assert days == [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]

    def test_resolve_date_range_limits(self):
        with pytest.raises(ValueError):
            resolve_date_range(SyncOptions(days=366))
        with pytest.raises(ValueError):
            resolve_date_range(SyncOptions(days=0))


class TestMappers:
    """Tests for Aladhan record mapping."""

    def test_map_calculation_method(self, aladhan_methods):
        values = map_calculation_method(aladhan_methods["data"]["MAKKAH"])
        assert values["method_code"] == "UMM_AL_QURA"
        assert values["fajr_angle"] == 18.5
        assert values["isha_angle"] == 18.0  # "90 min" interval keeps the default angle

    def test_map_calculation_method_rejects_missing_id(self):
        with pytest.raises(MappingError):
            map_calculation_method({"name": "x"})

    def test_map_prayer_timings_strips_timezone_suffix(self, timings_payload):
        values = map_prayer_timings(timings_payload(), "abc", date(2024, 3, 1), "KARACHI", "HANAFI")
        assert values["fajr"] == "04:12"
        assert values["midnight"] == "00:01"
        assert values["timezone"] == "Asia/Dhaka"

    def test_map_prayer_timings_rejects_bad_time(self, timings_payload):
        with pytest.raises(MappingError):
            map_prayer_timings(timings_payload(fajr="25:99"), "abc", date(2024, 3, 1), "MWL", "SHAFI")

    def test_map_prayer_timings_requires_timings(self):
        with pytest.raises(MappingError):
            map_prayer_timings({"data": {}}, "abc", date(2024, 3, 1), "MWL", "SHAFI")


class TestCalculationMethodSync:
    """Tests for CalculationMethodSync."""

    @pytest.mark.asyncio
    async def test_syncs_named_methods(self, db_session, upstream, router_factory, aladhan_methods):
        router = router_factory({"/methods": aladhan_methods})
        result = await CalculationMethodSync(upstream(router)).sync_resource("methods")

        assert result.status == "success"
        assert result.records_processed == 3
        codes = {row.method_code for row in db_session.query(PrayerCalculationMethod).all()}
        assert codes == {"MWL", "UMM_AL_QURA", "KARACHI"}

    @pytest.mark.asyncio
    async def test_missing_data_fails_run(self, db_session, upstream, router_factory):
        router = router_factory({"/methods": {"code": 200}})
        result = await CalculationMethodSync(upstream(router)).sync_resource("methods")
        assert result.status == "failed"


class TestPrayerTimesSync:
    """Tests for PrayerTimesSync."""

    @pytest.mark.asyncio
    async def test_syncs_each_day(self, db_session, upstream, router_factory, timings_payload):
        router = router_factory({"/timings/": timings_payload()})
        options = SyncOptions(start_date=date(2024, 3, 1), days=3)

        result = await PrayerTimesSync(upstream(router)).sync_resource(DHAKA, options)

        assert result.status == "success"
        assert result.records_processed == 3
        paths = [r.url.path for r in router.calls_to("/timings/")]
        assert paths == ["/timings/01-03-2024", "/timings/02-03-2024", "/timings/03-03-2024"]
        assert router.requests[0].url.params["method"] == "1"  # KARACHI
        assert router.requests[0].url.params["school"] == "1"  # HANAFI

        rows = db_session.query(PrayerTime).order_by(PrayerTime.prayer_date).all()
        assert [row.prayer_date for row in rows] == [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3)]
        assert all(row.method == "KARACHI" and row.school == "HANAFI" for row in rows)

        location = db_session.query(PrayerLocation).one()
        assert location.loc_key == location_key(23.8103, 90.4125)
        assert location.qibla_direction is not None

    @pytest.mark.asyncio
    async def test_bad_day_fails_only_that_day(self, db_session, upstream, router_factory, timings_payload):
        def timings(request):
            if request.url.path.endswith("02-03-2024"):
                return httpx.Response(200, json={"code": 200, "data": {"timings": {}}})
            return httpx.Response(200, json=timings_payload())

        router = router_factory({"/timings/": timings})
        result = await PrayerTimesSync(upstream(router)).sync_resource(
            DHAKA, SyncOptions(start_date=date(2024, 3, 1), days=3)
        )

        assert result.status == "partial"
        assert result.records_failed == 1
        assert result.errors[0].startswith("day 2024-03-02")
        assert db_session.query(PrayerTime).count() == 2

    @pytest.mark.asyncio
    async def test_resync_updates_rows_in_place(self, db_session, upstream, router_factory, timings_payload):
        options = SyncOptions(start_date=date(2024, 3, 1), days=1)
        router = router_factory({"/timings/": timings_payload(fajr="04:12")})
        await PrayerTimesSync(upstream(router)).sync_resource(DHAKA, options)

        router = router_factory({"/timings/": timings_payload(fajr="04:10")})
        options.force = True
        await PrayerTimesSync(upstream(router)).sync_resource(DHAKA, options)

        row = db_session.query(PrayerTime).one()
        assert row.fajr == "04:10"

    def test_resource_key_includes_method_school_and_range(self):
        service = PrayerTimesSync(client=object())
        default = service.resource_key(DHAKA, SyncOptions())
        shafi = service.resource_key(DHAKA, SyncOptions(params={"school": "shafi"}))
        ranged = service.resource_key(DHAKA, SyncOptions(start_date=date(2024, 3, 1), days=7))

        assert default.endswith(":KARACHI:HANAFI")
        assert shafi.endswith(":KARACHI:SHAFI")
        assert ranged.endswith(":2024-03-01+7")

    def test_unknown_school_rejected(self):
        with pytest.raises(ValueError):
            PrayerTimesSync(client=object()).resource_key(DHAKA, SyncOptions(params={"school": "x"}))

    @pytest.mark.asyncio
    async def test_invalid_location_records_failed_run(self, db_session, upstream, router_factory):
        router = router_factory({})
        result = await PrayerTimesSync(upstream(router)).sync_resource("dhaka")

        assert result.status == "failed"
        assert router.requests == []
        run = db_session.query(SyncRun).one()
        assert run.job_name == "prayer-times"
        assert run.status == "failed"
        assert "dhaka" in run.error

    @pytest.mark.asyncio
    async def test_unknown_school_records_failed_run(self, db_session, upstream, router_factory):
        router = router_factory({})
        result = await PrayerTimesSync(upstream(router)).sync_resource(
            DHAKA, SyncOptions(params={"school": "maliki"})
        )

        assert result.status == "failed"
        assert "school" in result.message.lower()
        assert db_session.query(SyncRun).one().status == "failed"


class TestPrayerCalendarSync:
    """Tests for month-at-a-time calendar sync."""

    def _month(self, timings_payload, days=("01-03-2024", "02-03-2024")):
        data = []
        for day in days:
            entry = timings_payload()["data"]
            entry["date"] = {"gregorian": {"date": day}, "hijri": {"date": "20-08-1445"}}
            data.append(entry)
        return {"code": 200, "data": data}

    def test_parse_calendar_key(self):
        assert parse_calendar_key(f"calendar:{DHAKA}:2024-03") == ("calendar", 23.8103, 90.4125, 2024, 3)
        assert parse_calendar_key(f"hijri-calendar:{DHAKA}:1445-9")[0] == "hijri-calendar"

    @pytest.mark.parametrize(
        "key",
        [f"calendar:{DHAKA}", f"calendar:{DHAKA}:2024-13", "lunar:1,2:2024-01", "calendar:dhaka:2024-03"],
    )
    def test_parse_calendar_key_rejects(self, key):
        with pytest.raises(ValueError):
            parse_calendar_key(key)

    @pytest.mark.asyncio
    async def test_syncs_gregorian_month(self, db_session, upstream, router_factory, timings_payload):
        router = router_factory({"/calendar/2024/3": self._month(timings_payload)})

        result = await PrayerCalendarSync(upstream(router)).sync_resource(f"calendar:{DHAKA}:2024-03")

        assert result.status == "success"
        assert result.records_processed == 2
        assert len(router.requests) == 1
        assert router.requests[0].url.params["school"] == "1"
        rows = db_session.query(PrayerTime).order_by(PrayerTime.prayer_date).all()
        assert [row.prayer_date for row in rows] == [date(2024, 3, 1), date(2024, 3, 2)]
        assert rows[0].fajr == "04:12"
        assert db_session.query(PrayerLocation).count() == 1

    @pytest.mark.asyncio
    async def test_hijri_month_uses_hijri_endpoint(self, db_session, upstream, router_factory, timings_payload):
        router = router_factory({"/hijriCalendar/1445/9": self._month(timings_payload, ["11-03-2024"])})

        result = await PrayerCalendarSync(upstream(router)).sync_resource(
            f"hijri-calendar:{DHAKA}:1445-09"
        )

        assert result.status == "success"
        assert db_session.query(PrayerTime).one().prayer_date == date(2024, 3, 11)

    @pytest.mark.asyncio
    async def test_day_without_date_fails_only_that_day(
        self, db_session, upstream, router_factory, timings_payload
    ):
        month = self._month(timings_payload)
        del month["data"][1]["date"]
        router = router_factory({"/calendar/2024/3": month})

        result = await PrayerCalendarSync(upstream(router)).sync_resource(f"calendar:{DHAKA}:2024-03")

        assert result.status == "partial"
        assert result.errors[0].startswith("day unknown")
        assert db_session.query(PrayerTime).count() == 1

    @pytest.mark.asyncio
    async def test_missing_data_list_fails_run(self, db_session, upstream, router_factory):
        router = router_factory({"/calendar/2024/3": {"code": 400, "data": "Invalid date"}})
        result = await PrayerCalendarSync(upstream(router)).sync_resource(f"calendar:{DHAKA}:2024-03")

        assert result.status == "failed"
        assert "no data list" in result.message

    def test_resource_key_is_per_month(self):
        service = PrayerCalendarSync(client=object())
        key = service.resource_key(f"calendar:{DHAKA}:2024-3", SyncOptions())
        assert key == f"calendar:{location_key(23.8103, 90.4125)}:KARACHI:HANAFI:2024-03"


class TestPrayerSyncTarget:
    """Tests for routing prayer keys."""

    def test_routes_methods_and_coordinates(self):
        target = PrayerSyncTarget()
        assert isinstance(target.service_for("methods"), CalculationMethodSync)
        assert isinstance(target.service_for(DHAKA), PrayerTimesSync)
        assert isinstance(target.service_for(f"calendar:{DHAKA}:2024-03"), PrayerCalendarSync)
        assert isinstance(target.service_for(f"hijri-calendar:{DHAKA}:1445-09"), PrayerCalendarSync)

    def test_rejects_unknown_key(self):
        with pytest.raises(ValueError):
            PrayerSyncTarget().service_for("mecca")

    @pytest.mark.asyncio
    async def test_unknown_key_is_recorded_not_raised(self, db_session):
        result = await PrayerSyncTarget().sync_resource("mecca")
        assert result.status == "failed"
        assert db_session.query(SyncRun).one().resource == "mecca"

    def test_default_resources_are_tracked_locations(self):
        assert PrayerSyncTarget().default_resources() == ["23.8103,90.4125"]
