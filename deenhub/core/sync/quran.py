"""Quran chapters, verses, translation resources and verse translations from Quran.com."""

import json
import logging
import re
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from deenhub.api.services.upstream_client import UpstreamClient, quran_client
from deenhub.core.database import get_db_context, upsert
from deenhub.core.exceptions import MappingError, UpstreamError
from deenhub.core.sync.audio import TOTAL_CHAPTERS
from deenhub.core.sync.base import SyncOptions, SyncService, SyncTarget
from deenhub.models.quran import QuranChapter, QuranVerse, TranslationResource, VerseTranslation

logger = logging.getLogger(__name__)

VERSES_PER_PAGE = 50
VERSE_FIELDS = "text_uthmani,verse_key,verse_number,juz_number,page_number"

LANGUAGE_CODES = {
    "en": "en",
    "english": "en",
    "bn": "bn",
    "bangla": "bn",
    "bengali": "bn",
}

_FOOTNOTE_RE = re.compile(r"<sup[^>]*>.*?</sup>", re.IGNORECASE | re.DOTALL)


def parse_chapter(key: str, prefix: str) -> int:
    """Chapter number from a "{prefix}:{chapter}" key."""
    try:
        chapter = int(key.split(":", 1)[1])
    except (IndexError, ValueError) as e:
        raise ValueError(f"Invalid key '{key}', expected '{prefix}:<chapter>'") from e
    if not 1 <= chapter <= TOTAL_CHAPTERS:
        raise ValueError(f"Chapter out of range: {chapter}")
    return chapter


def language_code(raw: dict[str, Any]) -> str | None:
    name = (raw.get("language") or raw.get("language_name") or "").strip().lower()
    return LANGUAGE_CODES.get(name)


def map_translation_resource(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict) or raw.get("id") is None or not raw.get("name"):
        raise MappingError(f"Malformed translation resource: {raw!r}"[:200])
    return {
        "source_id": int(raw["id"]),
        "name": raw["name"],
        "author_name": raw.get("author_name"),
        "language_name": raw.get("language_name"),
        "language_code": language_code(raw),
        "slug": raw.get("slug"),
        "source": "quran.com",
        "last_synced": datetime.utcnow(),
    }


def map_chapter(raw: Any, name_bangla: str | None = None) -> dict[str, Any]:
    if not isinstance(raw, dict) or raw.get("id") is None or not raw.get("name_simple"):
        raise MappingError(f"Malformed chapter: {raw!r}"[:200])
    number = int(raw["id"])
    if not 1 <= number <= TOTAL_CHAPTERS or raw.get("verses_count") is None:
        raise MappingError(f"Chapter {number} is out of range or has no verse count")
    return {
        "chapter_number": number,
        "name_arabic": raw.get("name_arabic"),
        "name_simple": raw["name_simple"],
        "name_english": (raw.get("translated_name") or {}).get("name"),
        "name_bangla": name_bangla,
        "revelation_place": raw.get("revelation_place"),
        "revelation_order": raw.get("revelation_order"),
        "verses_count": int(raw["verses_count"]),
        "bismillah_pre": bool(raw.get("bismillah_pre", True)),
        "source": "quran.com",
        "raw_response": json.dumps(raw),
        "last_synced": datetime.utcnow(),
    }


def map_verse(raw: Any) -> dict[str, Any]:
    """Map a Quran.com verse to a QuranVerse row, omitting absent fields."""
    if not isinstance(raw, dict) or not raw.get("verse_key"):
        raise MappingError(f"Malformed verse: {raw!r}"[:200])
    try:
        chapter, number = (int(part) for part in raw["verse_key"].split(":"))
    except ValueError as e:
        raise MappingError(f"Bad verse key {raw['verse_key']!r}") from e

    values = {
        "verse_key": raw["verse_key"],
        "chapter_number": raw.get("chapter_id") or chapter,
        "verse_number": raw.get("verse_number") or number,
        "text_uthmani": raw.get("text_uthmani"),
        "juz_number": raw.get("juz_number"),
        "page_number": raw.get("page_number"),
        "source": "quran.com",
        "raw_response": json.dumps(raw),
        "last_synced": datetime.utcnow(),
    }
    # Never overwrite stored text with nulls from a sparse response
    return {name: value for name, value in values.items() if value is not None}


def clean_translation_text(text: str) -> str:
    return _FOOTNOTE_RE.sub("", text).strip()


class ChapterSync(SyncService):
    """Surah metadata, with Bangla names when Quran.com has them."""

    job_name = "quran-chapters"

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def _chapters(self, language: str) -> list[Any]:
        body = await self.client.fetch("/chapters", params={"language": language})
        if not isinstance(body, dict) or not isinstance(body.get("chapters"), list):
            raise MappingError(f"Chapters response ({language}) has no chapters list")
        return body["chapters"]

    async def _bangla_names(self) -> dict[Any, str]:
        try:
            chapters = await self._chapters("bn")
        except (UpstreamError, MappingError) as e:
            # Names stay empty until a later sync gets them
            logger.warning(f"Bangla chapter names unavailable: {e}")
            return {}
        names = {}
        for raw in chapters:
            translated = raw.get("translated_name") if isinstance(raw, dict) else None
            # Quran.com falls back to English where it has no Bangla name
            if isinstance(translated, dict) and translated.get("language_name") == "bengali":
                names[raw.get("id")] = translated.get("name")
        return names

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        chapters = await self._chapters("en")
        bangla = await self._bangla_names()
        return [
            (raw, bangla.get(raw.get("id") if isinstance(raw, dict) else None))
            for raw in chapters
        ]

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        raw, name_bangla = unit
        values = map_chapter(raw, name_bangla)
        if name_bangla is None:
            # Keep a Bangla name from an earlier sync
            values.pop("name_bangla")
        upsert(db, QuranChapter, values, index_elements=["chapter_number"])

    def describe_unit(self, unit: Any) -> str:
        raw = unit[0]
        return f"chapter {raw.get('id') if isinstance(raw, dict) else raw}"


class TranslationResourceSync(SyncService):
    job_name = "quran-translation-resources"

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        body = await self.client.fetch("/resources/translations")
        if not isinstance(body, dict) or not isinstance(body.get("translations"), list):
            raise MappingError("Translations response has no translations list")
        wanted = set(self.settings.quran_translation_languages)
        return [
            raw
            for raw in body["translations"]
            if isinstance(raw, dict) and language_code(raw) in wanted
        ]

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        upsert(db, TranslationResource, map_translation_resource(unit), index_elements=["source_id"])

    def describe_unit(self, unit: Any) -> str:
        return f"translation resource {unit.get('id') if isinstance(unit, dict) else unit}"


class VerseSync(SyncService):
    """All verses of one chapter, following Quran.com pagination."""

    job_name = "quran-verses"

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        chapter = parse_chapter(key, "verses")
        verses: list[Any] = []
        page = 1
        while page:
            body = await self.client.fetch(
                f"/verses/by_chapter/{chapter}",
                params={
                    "page": page,
                    "per_page": VERSES_PER_PAGE,
                    "words": "false",
                    "fields": VERSE_FIELDS,
                },
            )
            if not isinstance(body, dict) or not isinstance(body.get("verses"), list):
                raise MappingError(f"Chapter {chapter} page {page} has no verses list")
            verses.extend(body["verses"])
            page = (body.get("pagination") or {}).get("next_page")
        return verses

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        values = map_verse(unit)
        upsert(db, QuranVerse, values, index_elements=["verse_key"])

    def describe_unit(self, unit: Any) -> str:
        return f"verse {unit.get('verse_key') if isinstance(unit, dict) else unit}"


class VerseTranslationSync(SyncService):
    """Translations of every stored verse of a chapter, one upstream call per verse.

    Needs the chapter's verses and the translation resources synced first.
    """

    job_name = "quran-verse-translations"
    throttle_units = True

    def default_client(self) -> UpstreamClient:
        return quran_client()

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        resources = (
            db.query(TranslationResource)
            .filter(TranslationResource.language_code.in_(self.settings.quran_translation_languages))
            .all()
        )
        if not resources:
            raise LookupError("No translation resources stored; sync translation-resources first")
        return {"resource_ids": {resource.source_id: resource.id for resource in resources}}

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        chapter = parse_chapter(key, "translations")
        with get_db_context() as db:
            rows = (
                db.query(QuranVerse.id, QuranVerse.verse_key)
                .filter(QuranVerse.chapter_number == chapter)
                .order_by(QuranVerse.verse_number)
                .all()
            )
        return [(verse_id, verse_key) for verse_id, verse_key in rows]

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        verse_id, verse_key = unit
        resource_ids = state["resource_ids"]
        body = await self.client.fetch(
            f"/verses/by_key/{verse_key}",
            params={
                "words": "false",
                "translations": ",".join(str(source_id) for source_id in resource_ids),
                "translation_fields": "text,resource_id,language_name",
            },
        )
        translations = ((body or {}).get("verse") or {}).get("translations")
        if not isinstance(translations, list):
            raise MappingError(f"Verse {verse_key} response has no translations list")

        now = datetime.utcnow()
        for translation in translations:
            local_id = resource_ids.get(translation.get("resource_id"))
            if local_id is None or not translation.get("text"):
                continue
            upsert(
                db,
                VerseTranslation,
                {
                    "verse_id": verse_id,
                    "resource_id": local_id,
                    "text": clean_translation_text(translation["text"]),
                    "source": "quran.com",
                    "raw_response": json.dumps(translation),
                    "last_synced": now,
                },
                index_elements=["verse_id", "resource_id"],
            )

    def describe_unit(self, unit: Any) -> str:
        return f"verse {unit[1]}"


class QuranSyncTarget(SyncTarget):
    """Keys: "chapters", "translation-resources", "verses:{ch}", "translations:{ch}"."""

    job_type = "quran"
    job_label = "Quran Data Sync"

    def service_for(self, key: str) -> SyncService:
        if key == "chapters":
            return ChapterSync()
        if key == "translation-resources":
            return TranslationResourceSync()
        if key.startswith("verses:"):
            return VerseSync()
        if key.startswith("translations:"):
            return VerseTranslationSync()
        raise ValueError(f"Unknown Quran resource '{key}'")

    def default_resources(self) -> list[str]:
        return ["chapters", "translation-resources"] + [
            f"verses:{chapter}" for chapter in range(1, TOTAL_CHAPTERS + 1)
        ]
