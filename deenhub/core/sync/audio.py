"""Reciters and per-verse recitation audio from Quran.com."""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from deenhub.api.services.upstream_client import UpstreamClient, quran_client
from deenhub.core.config import get_settings
from deenhub.core.database import get_db_context, upsert
from deenhub.core.exceptions import MappingError
from deenhub.core.sync.base import JobContext, SyncOptions, SyncService, SyncTarget
from deenhub.models.quran import QuranAudioFile, QuranReciter, QuranVerse

logger = logging.getLogger(__name__)

TOTAL_CHAPTERS = 114


def build_audio_url(cdn_base: str, path: str) -> str:
    """Absolute CDN URL for a Quran.com relative audio path."""
    if path.startswith(("http://", "https://")):
        return path
    if path.startswith("//"):
        return f"https:{path}"
    return f"{cdn_base.rstrip('/')}/{path.lstrip('/')}"


def map_reciter(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict) or raw.get("id") is None:
        raise MappingError(f"Malformed recitation entry: {raw!r}"[:200])
    name = raw.get("reciter_name") or raw.get("name")
    if not name:
        raise MappingError(f"Recitation {raw['id']} has no reciter name")
    translated = raw.get("translated_name") or {}
    return {
        "source_id": int(raw["id"]),
        "name": name,
        "english_name": translated.get("name") or name,
        "style": raw.get("style"),
        "language_name": translated.get("language_name") or "arabic",
        "source_api": "quran.com",
        "raw_response": json.dumps(raw),
        "last_synced": datetime.utcnow(),
    }


def parse_audio_key(key: str) -> tuple[int, int]:
    """Parse a "{reciterSourceId}:{chapter}" resource key."""
    try:
        reciter, chapter = (int(part) for part in key.split(":"))
    except ValueError as e:
        raise ValueError(f"Invalid audio key '{key}', expected 'reciter:chapter'") from e
    if not 1 <= chapter <= TOTAL_CHAPTERS:
        raise ValueError(f"Chapter out of range: {chapter}")
    return reciter, chapter


class ReciterSync(SyncService):
    job_name = "audio-reciters"

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        body = await self.client.fetch("/resources/recitations")
        if not isinstance(body, dict) or not isinstance(body.get("recitations"), list):
            raise MappingError("Recitations response has no recitations list")
        return body["recitations"]

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        upsert(db, QuranReciter, map_reciter(unit), index_elements=["source_id"])

    def describe_unit(self, unit: Any) -> str:
        return f"reciter {unit.get('id') if isinstance(unit, dict) else unit}"


class AudioFileSync(SyncService):
    """Audio files for one reciter and chapter.

    Quran.com identifies reciters by source id; the local reciter row must
    exist (sync ``reciters`` first) or the whole run fails. Verses are
    resolved per record, so a missing verse fails only that file.
    """

    job_name = "audio-files"

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        reciter_source_id, chapter = parse_audio_key(key)
        reciter = (
            db.query(QuranReciter).filter(QuranReciter.source_id == reciter_source_id).first()
        )
        if reciter is None:
            raise LookupError(f"Reciter with source id {reciter_source_id} not found locally")

        verses = (
            db.query(QuranVerse.verse_key, QuranVerse.id)
            .filter(QuranVerse.chapter_number == chapter)
            .all()
        )
        return {
            "reciter_id": reciter.id,
            "verse_ids": {verse_key: verse_id for verse_key, verse_id in verses},
        }

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        reciter_source_id, chapter = parse_audio_key(key)
        body = await self.client.fetch(
            f"/recitations/{reciter_source_id}/by_chapter/{chapter}",
            params={"per_page": 300},
        )
        if not isinstance(body, dict) or not isinstance(body.get("audio_files"), list):
            raise MappingError("Recitation response has no audio_files list")
        return body["audio_files"]

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        if not isinstance(unit, dict) or not unit.get("verse_key") or not unit.get("url"):
            raise MappingError(f"Malformed audio file entry: {unit!r}"[:200])

        verse_id = state["verse_ids"].get(unit["verse_key"])
        if verse_id is None:
            raise LookupError(f"No local verse for {unit['verse_key']}")

        now = datetime.utcnow()
        upsert(
            db,
            QuranAudioFile,
            {
                "verse_id": verse_id,
                "reciter_id": state["reciter_id"],
                "url": build_audio_url(self.settings.quran_audio_cdn_url, unit["url"]),
                "format": "mp3",
                "quality": "128kbps",
                "duration_seconds": unit.get("duration"),
                "last_verified": now,
                "source": "quran.com",
                "raw_response": json.dumps(unit),
                "last_synced": now,
            },
            index_elements=["verse_id", "reciter_id"],
        )

    def describe_unit(self, unit: Any) -> str:
        return f"audio {unit.get('verse_key') if isinstance(unit, dict) else unit}"


class AudioSyncTarget(SyncTarget):
    """Reciters ("reciters") and chapter audio ("{reciterSourceId}:{chapter}").

    The scheduled run covers every reciter and chapter. Chapter keys come from
    the stored reciters, so an empty table is filled before they are listed.
    """

    job_type = "audio"
    job_label = "Audio Data Sync"

    def service_for(self, key: str) -> SyncService:
        if key == "reciters":
            return ReciterSync()
        parse_audio_key(key)
        return AudioFileSync()

    def tracked_reciters(self) -> list[int]:
        wanted = get_settings().audio_reciter_ids
        with get_db_context() as db:
            query = db.query(QuranReciter.source_id)
            if wanted:
                query = query.filter(QuranReciter.source_id.in_(wanted))
            return [source_id for (source_id,) in query.order_by(QuranReciter.source_id)]

    def default_resources(self) -> list[str]:
        return ["reciters"] + [
            f"{reciter}:{chapter}"
            for reciter in self.tracked_reciters()
            for chapter in range(1, TOTAL_CHAPTERS + 1)
        ]

    async def run(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        if not payload.get("key") and not self.tracked_reciters():
            options = SyncOptions.from_dict(payload.get("options"))
            result = await self.sync_resource("reciters", options, context)
            logger.info(f"Reciters synced before chapter audio: {result.status}")
        return await super().run(payload, context)
