"""Prayer calculation methods and daily prayer times from Aladhan."""

import hashlib
import json
import logging
import math
import re
from collections.abc import AsyncIterator
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from deenhub.api.services.upstream_client import UpstreamClient, aladhan_client
from deenhub.core.database import get_db_context, upsert
from deenhub.core.exceptions import MappingError
from deenhub.core.sync.base import EXPECTED_UNITS, SyncOptions, SyncService, SyncTarget
from deenhub.models.prayer import PrayerCalculationMethod, PrayerLocation, PrayerTime

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 365

# Aladhan numeric method ids
ALADHAN_METHOD_IDS = {
    "JAFARI": 0,
    "KARACHI": 1,
    "ISNA": 2,
    "MWL": 3,
    "MAKKAH": 4,
    "UMM_AL_QURA": 4,
    "EGYPT": 5,
    "TEHRAN": 7,
    "GULF": 8,
    "KUWAIT": 9,
    "QATAR": 10,
    "SINGAPORE": 11,
    "FRANCE": 12,
    "TURKEY": 13,
    "RUSSIA": 14,
    "MOON_SIGHTING": 15,
    "MOON": 15,
    "DUBAI": 16,
}
CUSTOM_METHOD_ID = 99

# Month of daily timings in one call, by Gregorian or Hijri month
CALENDAR_ENDPOINTS = {"calendar": "/calendar", "hijri-calendar": "/hijriCalendar"}

SCHOOL_IDS = {"SHAFI": 0, "HANAFI": 1}

KNOWN_METHOD_CODES = {
    "Muslim World League": "MWL",
    "Islamic Society of North America": "ISNA",
    "Islamic Society of North America (ISNA)": "ISNA",
    "Egyptian General Authority of Survey": "EGYPT",
    "Umm Al-Qura University, Makkah": "UMM_AL_QURA",
    "University of Islamic Sciences, Karachi": "KARACHI",
    "University Of Islamic Sciences, Karachi": "KARACHI",
    "Institute of Geophysics, University of Tehran": "TEHRAN",
    "Institute of Geophysics, Tehran University": "TEHRAN",
    "Shia Ithna-Ashari, Leva Institute, Qum": "JAFARI",
    "Shia Ithna-Ashari, Leva Research Institute, Qum": "JAFARI",
    "Gulf Region": "GULF",
    "Kuwait": "KUWAIT",
    "Qatar": "QATAR",
    "Majlis Ugama Islam Singapura, Singapore": "SINGAPORE",
    "Union Organization islamic de France": "FRANCE",
    "Diyanet İşleri Başkanlığı, Turkey": "TURKEY",
    "Spiritual Administration of Muslims of Russia": "RUSSIA",
    "Moonsighting Committee Worldwide": "MOON_SIGHTING",
    "Dubai (UAE)": "DUBAI",
}

KAABA_LATITUDE = 21.4225
KAABA_LONGITUDE = 39.8262

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})")


# =============================================================================
# Pure helpers and mappers
# =============================================================================


def parse_coordinates(key: str) -> tuple[float, float]:
    """Parse a "lat,lng" resource key."""
    try:
        lat_str, lng_str = key.split(",")
        lat, lng = float(lat_str), float(lng_str)
    except ValueError as e:
        raise ValueError(f"Invalid coordinates '{key}', expected 'lat,lng'") from e
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValueError(f"Coordinates out of range: {key}")
    return lat, lng


def location_key(latitude: float, longitude: float) -> str:
    """Stable key for coordinates rounded to ~100m."""
    return hashlib.sha1(f"{latitude:.3f},{longitude:.3f}".encode()).hexdigest()[:16]


def qibla_direction(latitude: float, longitude: float) -> float:
    """Great-circle bearing from the location to the Kaaba, in degrees."""
    phi1 = math.radians(latitude)
    phi2 = math.radians(KAABA_LATITUDE)
    delta = math.radians(KAABA_LONGITUDE - longitude)
    y = math.sin(delta)
    x = math.cos(phi1) * math.tan(phi2) - math.sin(phi1) * math.cos(delta)
    return round((math.degrees(math.atan2(y, x)) + 360) % 360, 2)


def build_method_code(name: str) -> str:
    if name in KNOWN_METHOD_CODES:
        return KNOWN_METHOD_CODES[name]
    code = re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_").upper()
    return code[:50] or "CUSTOM"


def map_calculation_method(raw: Any) -> dict[str, Any]:
    """Map one Aladhan /methods entry to a PrayerCalculationMethod row."""
    if not isinstance(raw, dict) or raw.get("id") is None:
        raise MappingError(f"Malformed calculation method: {raw!r}"[:200])

    name = raw.get("name") or f"Method_{raw['id']}"
    params = raw.get("params") or {}
    midnight = params.get("Midnight") or "Standard"
    try:
        fajr = float(params.get("Fajr", 18))
        # Isha can be "90 min" for Umm al-Qura; keep the default angle then
        isha_raw = params.get("Isha", 18)
        isha = float(isha_raw) if not isinstance(isha_raw, str) else 18.0
        maghrib_raw = params.get("Maghrib", 0)
        maghrib = float(maghrib_raw) if not isinstance(maghrib_raw, str) else 0.0
    except (TypeError, ValueError) as e:
        raise MappingError(f"Bad angles for method {name}: {e}") from e

    return {
        "method_code": build_method_code(name),
        "method_name": name,
        "fajr_angle": fajr,
        "isha_angle": isha,
        "maghrib_angle": maghrib,
        "midnight_mode": midnight,
        "source": "aladhan",
        "raw_response": json.dumps(raw),
        "last_synced": datetime.utcnow(),
    }


def _clean_time(value: Any, field: str) -> str:
    """Aladhan returns "04:12 (+06)"; keep "04:12"."""
    if not isinstance(value, str):
        raise MappingError(f"Missing {field} time")
    match = _TIME_RE.match(value)
    if not match:
        raise MappingError(f"Unparseable {field} time: {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise MappingError(f"Out of range {field} time: {value!r}")
    return f"{hours:02d}:{minutes:02d}"


def map_prayer_timings(
    raw: Any,
    loc_key: str,
    day: date,
    method: str,
    school: str,
) -> dict[str, Any]:
    """Map an Aladhan /timings response to a PrayerTime row."""
    data = raw.get("data") if isinstance(raw, dict) else None
    if not isinstance(data, dict):
        raise MappingError("Timings response has no data.timings")
    return map_day_timings(data, loc_key, day, method, school)


def map_day_timings(
    data: dict[str, Any],
    loc_key: str,
    day: date,
    method: str,
    school: str,
) -> dict[str, Any]:
    """Map one day's ``{timings, date, meta}`` object, as found in both
    /timings and the calendar endpoints."""
    if not isinstance(data.get("timings"), dict):
        raise MappingError("Timings response has no data.timings")

    timings = data["timings"]
    meta = data.get("meta") or {}
    optional = {}
    for field in ("Sunrise", "Imsak", "Midnight"):
        optional[field.lower()] = _clean_time(timings[field], field) if timings.get(field) else None

    return {
        "loc_key": loc_key,
        "prayer_date": day,
        "method": method,
        "school": school,
        "fajr": _clean_time(timings.get("Fajr"), "Fajr"),
        "dhuhr": _clean_time(timings.get("Dhuhr"), "Dhuhr"),
        "asr": _clean_time(timings.get("Asr"), "Asr"),
        "maghrib": _clean_time(timings.get("Maghrib"), "Maghrib"),
        "isha": _clean_time(timings.get("Isha"), "Isha"),
        **optional,
        "timezone": meta.get("timezone"),
        "source": "aladhan",
        "raw_response": json.dumps(data),
        "last_synced": datetime.utcnow(),
    }


def resolve_date_range(options: SyncOptions) -> list[date]:
    """Days to sync, in chronological order. Defaults to today only."""
    days = options.days if options.days is not None else 1
    if not 1 <= int(days) <= MAX_RANGE_DAYS:
        raise ValueError(f"days must be between 1 and {MAX_RANGE_DAYS}, got {days}")
    start = options.start_date or datetime.utcnow().date()
    return [start + timedelta(days=offset) for offset in range(int(days))]


def calendar_day(entry: Any) -> date:
    """Gregorian date of a calendar entry ("DD-MM-YYYY")."""
    gregorian = ((entry.get("date") or {}).get("gregorian") or {}) if isinstance(entry, dict) else {}
    raw = gregorian.get("date")
    try:
        return datetime.strptime(raw, "%d-%m-%Y").date()
    except (TypeError, ValueError) as e:
        raise MappingError(f"Calendar entry has no gregorian date: {raw!r}") from e


def parse_calendar_key(key: str) -> tuple[str, float, float, int, int]:
    """Parse "calendar:lat,lng:YYYY-MM" or "hijri-calendar:lat,lng:YYYY-MM"."""
    try:
        kind, coordinates, period = key.split(":")
        year_str, month_str = period.split("-")
        year, month = int(year_str), int(month_str)
    except ValueError as e:
        raise ValueError(f"Invalid calendar key '{key}', expected '<calendar>:lat,lng:YYYY-MM'") from e
    if kind not in CALENDAR_ENDPOINTS:
        raise ValueError(f"Unknown calendar '{kind}'")
    if not 1 <= month <= 12 or year < 1:
        raise ValueError(f"Invalid calendar month '{period}'")
    lat, lng = parse_coordinates(coordinates)
    return kind, lat, lng, year, month


# =============================================================================
# Sync services
# =============================================================================


class CalculationMethodSync(SyncService):
    """Aladhan calculation methods, keyed by method code."""

    job_name = "prayer-methods"

    def default_client(self) -> UpstreamClient:
        return aladhan_client()

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        body = await self.client.fetch("/methods")
        methods = body.get("data") if isinstance(body, dict) else None
        if not isinstance(methods, dict):
            raise MappingError("Methods response has no data object")

        units = []
        for code, raw in methods.items():
            # Aladhan lists placeholders (e.g. CUSTOM) without a name
            if not isinstance(raw, dict) or not raw.get("name"):
                logger.debug(f"Dropping malformed calculation method entry {code}")
                continue
            units.append(raw)
        return units

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        values = map_calculation_method(unit)
        upsert(db, PrayerCalculationMethod, values, index_elements=["method_code"])

    def describe_unit(self, unit: Any) -> str:
        return f"method {unit.get('name') if isinstance(unit, dict) else unit}"


class PrayerTimesSync(SyncService):
    """Day-by-day timings for one location, method and school."""

    job_name = "prayer-times"
    throttle_units = True

    def default_client(self) -> UpstreamClient:
        return aladhan_client()

    def _method_and_school(self, options: SyncOptions) -> tuple[str, str]:
        method = str(options.params.get("method") or self.settings.prayer_default_method).upper()
        school = str(options.params.get("school") or self.settings.prayer_default_school).upper()
        if school not in SCHOOL_IDS:
            raise ValueError(f"Unknown school '{school}'")
        return method, school

    def resource_key(self, key: str, options: SyncOptions) -> str:
        lat, lng = parse_coordinates(key)
        method, school = self._method_and_school(options)
        resource = f"{location_key(lat, lng)}:{method}:{school}"
        if options.start_date or options.days:
            start = options.start_date.isoformat() if options.start_date else "today"
            resource += f":{start}+{options.days or 1}"
        return resource

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        lat, lng = parse_coordinates(key)
        method, school = self._method_and_school(options)
        loc_key = location_key(lat, lng)

        upsert(
            db,
            PrayerLocation,
            {
                "loc_key": loc_key,
                "latitude": round(lat, 3),
                "longitude": round(lng, 3),
                "timezone": options.params.get("timezonestring"),
                "qibla_direction": qibla_direction(lat, lng),
                "last_synced": datetime.utcnow(),
            },
            index_elements=["loc_key"],
            update_fields=["last_synced"],
        )

        return {
            "loc_key": loc_key,
            "method": method,
            "school": school,
            "params": self._request_params(db, lat, lng, method, school, options),
        }

    def _request_params(
        self, db: Session, lat: float, lng: float, method: str, school: str, options: SyncOptions
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "latitude": lat,
            "longitude": lng,
            "method": ALADHAN_METHOD_IDS.get(method, CUSTOM_METHOD_ID),
            "school": SCHOOL_IDS[school],
        }
        if params["method"] == CUSTOM_METHOD_ID:
            params["methodSettings"] = self._custom_method_settings(db, method)
        for extra in ("latitudeAdjustmentMethod", "tune", "timezonestring"):
            if options.params.get(extra) is not None:
                params[extra] = options.params[extra]
        return params

    def _custom_method_settings(self, db: Session, method: str) -> str:
        row = (
            db.query(PrayerCalculationMethod)
            .filter(PrayerCalculationMethod.method_code == method)
            .first()
        )
        fajr = row.fajr_angle if row else 18.0
        isha = row.isha_angle if row else 18.0
        return f"{fajr},null,{isha}"

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        parse_coordinates(key)
        return resolve_date_range(options)

    async def process_unit(self, db: Session, unit: date, state: dict, options: SyncOptions) -> None:
        body = await self.client.fetch(
            f"/timings/{unit.strftime('%d-%m-%Y')}", params=state["params"]
        )
        values = map_prayer_timings(body, state["loc_key"], unit, state["method"], state["school"])
        upsert(
            db,
            PrayerTime,
            values,
            index_elements=["loc_key", "prayer_date", "method", "school"],
        )

    def describe_unit(self, unit: Any) -> str:
        return f"day {unit.isoformat() if isinstance(unit, date) else unit}"


class PrayerCalendarSync(PrayerTimesSync):
    """A whole Gregorian or Hijri month of timings from a single calendar call."""

    job_name = "prayer-calendar"
    throttle_units = False

    def resource_key(self, key: str, options: SyncOptions) -> str:
        kind, lat, lng, year, month = parse_calendar_key(key)
        method, school = self._method_and_school(options)
        return f"{kind}:{location_key(lat, lng)}:{method}:{school}:{year}-{month:02d}"

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        _, lat, lng, _, _ = parse_calendar_key(key)
        return await super().prepare(db, f"{lat},{lng}", options)

    async def _fetch_month(self, key: str, params: dict[str, Any]) -> list[Any]:
        kind, _, _, year, month = parse_calendar_key(key)
        body = await self.client.fetch(f"{CALENDAR_ENDPOINTS[kind]}/{year}/{month}", params=params)
        days = body.get("data") if isinstance(body, dict) else None
        if not isinstance(days, list):
            raise MappingError(f"{kind} {year}-{month} response has no data list")
        return days

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        _, lat, lng, _, _ = parse_calendar_key(key)
        method, school = self._method_and_school(options)
        with get_db_context() as db:
            params = self._request_params(db, lat, lng, method, school, options)
        return await self._fetch_month(key, params)

    async def iter_units(
        self, key: str, options: SyncOptions, state: dict[str, Any]
    ) -> AsyncIterator[Any]:
        days = await self._fetch_month(key, state["params"])
        state[EXPECTED_UNITS] = len(days)
        for entry in days:
            yield entry

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        values = map_day_timings(
            unit, state["loc_key"], calendar_day(unit), state["method"], state["school"]
        )
        upsert(
            db,
            PrayerTime,
            values,
            index_elements=["loc_key", "prayer_date", "method", "school"],
        )

    def describe_unit(self, unit: Any) -> str:
        gregorian = ((unit.get("date") or {}).get("gregorian") or {}) if isinstance(unit, dict) else {}
        return f"day {gregorian.get('date', 'unknown')}"


class PrayerSyncTarget(SyncTarget):
    """Keys: "methods", "lat,lng", and "calendar:lat,lng:YYYY-MM" or
    "hijri-calendar:lat,lng:YYYY-MM" for a month at a time."""

    job_type = "prayer"
    job_label = "Prayer Times Sync"

    def service_for(self, key: str) -> SyncService:
        if key == "methods":
            return CalculationMethodSync()
        if key.split(":", 1)[0] in CALENDAR_ENDPOINTS:
            parse_calendar_key(key)
            return PrayerCalendarSync()
        parse_coordinates(key)
        return PrayerTimesSync()

    def default_resources(self) -> list[str]:
        return list(get_tracked_locations())


def get_tracked_locations() -> list[str]:
    from deenhub.core.config import get_settings

    return get_settings().prayer_locations
