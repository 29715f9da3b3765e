"""Hadith collections, books and hadith from Sunnah.com.

A collection sync upserts the collection row, its books and every hadith
page, then leaves ``pending`` translation jobs for hadith without Bangla
text. Translation itself runs in its own pipeline so a provider outage
never fails the corpus sync.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from deenhub.api.services.translation_service import register_pending
from deenhub.api.services.upstream_client import UpstreamClient, sunnah_client
from deenhub.core.database import upsert
from deenhub.core.exceptions import MappingError
from deenhub.core.sync.base import EXPECTED_UNITS, SyncOptions, SyncService, SyncTarget
from deenhub.models.hadith import Hadith, HadithBook, HadithCollection

logger = logging.getLogger(__name__)

# Hard stop for a runaway paginator
MAX_PAGES = 2000


def _by_lang(entries: Any, lang: str) -> dict[str, Any]:
    if not isinstance(entries, list):
        return {}
    for entry in entries:
        if isinstance(entry, dict) and entry.get("lang") == lang:
            return entry
    return {}


def map_collection(raw: Any, name: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise MappingError(f"Malformed collection response for {name}")
    english = _by_lang(raw.get("collection"), "en")
    arabic = _by_lang(raw.get("collection"), "ar")
    return {
        "name": raw.get("name") or name,
        "title_en": english.get("title") or name,
        "title_ar": arabic.get("title"),
        "total_hadith": raw.get("totalHadith") or raw.get("totalAvailableHadith"),
        "has_books": bool(raw.get("hasBooks", True)),
        "sync_status": "syncing",
        "source": "sunnah.com",
    }


def map_book(raw: Any, collection_id: int) -> dict[str, Any]:
    if not isinstance(raw, dict) or raw.get("bookNumber") in (None, ""):
        raise MappingError(f"Malformed book: {raw!r}"[:200])
    number = str(raw["bookNumber"])
    english = _by_lang(raw.get("book"), "en")
    arabic = _by_lang(raw.get("book"), "ar")
    return {
        "collection_id": collection_id,
        "number": number,
        "title_en": english.get("name") or f"Book {number}",
        "title_ar": arabic.get("name"),
        "hadith_start": raw.get("hadithStartNumber"),
        "hadith_end": raw.get("hadithEndNumber"),
        "total_hadith": raw.get("numberOfHadith"),
        "last_synced": datetime.utcnow(),
    }


def map_hadith(raw: Any, collection_id: int, book_id: int | None) -> dict[str, Any]:
    """Map a Sunnah.com hadith.

    Accepts the v1 shape (``hadith: [{lang, body, grades}]``) and the flat
    shape (``hadithEnglish``/``hadithArabic``).
    """
    if not isinstance(raw, dict) or raw.get("hadithNumber") in (None, ""):
        raise MappingError(f"Malformed hadith: {raw!r}"[:200])

    english = _by_lang(raw.get("hadith"), "en")
    arabic = _by_lang(raw.get("hadith"), "ar")
    text_en = english.get("body") or raw.get("hadithEnglish")
    text_ar = arabic.get("body") or raw.get("hadithArabic")
    if not text_en and not text_ar:
        raise MappingError(f"Hadith {raw['hadithNumber']} has no text")

    grades = english.get("grades") or raw.get("grades") or []
    return {
        "collection_id": collection_id,
        "book_id": book_id,
        "hadith_number": str(raw["hadithNumber"]),
        "text_ar": text_ar,
        "text_en": text_en,
        "narrator": raw.get("englishNarrator"),
        "grades_json": json.dumps(grades),
        "refs_json": json.dumps(raw.get("reference")) if raw.get("reference") else None,
        "source": "sunnah.com",
        "raw_response": json.dumps(raw),
        "last_synced": datetime.utcnow(),
    }


class HadithCollectionSync(SyncService):
    """One collection by name: books first, then hadith pages."""

    job_name = "hadith"

    def default_client(self) -> UpstreamClient:
        return sunnah_client()

    async def prepare(self, db: Session, key: str, options: SyncOptions) -> dict[str, Any]:
        raw = await self.client.fetch(f"/collections/{key}")
        values = map_collection(raw, key)
        upsert(db, HadithCollection, values, index_elements=["name"])
        collection_id = db.query(HadithCollection.id).filter(HadithCollection.name == key).scalar()
        return {
            "collection_id": collection_id,
            "book_ids": {},
            EXPECTED_UNITS: values["total_hadith"],
        }

    async def _pages(self, path: str) -> AsyncIterator[list[Any]]:
        """Yield each page's records until a short or final page."""
        size = self.settings.hadith_page_size
        for page in range(1, MAX_PAGES + 1):
            if page > 1 and self.inter_call_delay:
                await asyncio.sleep(self.inter_call_delay)
            body = await self.client.fetch(path, params={"limit": size, "page": page})
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, list):
                raise MappingError(f"{path} page {page} has no data list")
            yield data
            if len(data) < size or ("next" in body and body["next"] is None):
                return

    async def _records(self, key: str) -> AsyncIterator[tuple[str, Any]]:
        for kind, resource in (("book", "books"), ("hadith", "hadiths")):
            path = f"/collections/{key}/{resource}"
            async for page in self._pages(path):
                for raw in page:
                    yield kind, raw

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        return [unit async for unit in self._records(key)]

    async def iter_units(
        self, key: str, options: SyncOptions, state: dict[str, Any]
    ) -> AsyncIterator[Any]:
        # Each page is upserted before the next one is requested
        async for unit in self._records(key):
            yield unit

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        kind, raw = unit
        collection_id = state["collection_id"]

        if kind == "book":
            values = map_book(raw, collection_id)
            upsert(db, HadithBook, values, index_elements=["collection_id", "number"])
            state["book_ids"][values["number"]] = (
                db.query(HadithBook.id)
                .filter(
                    HadithBook.collection_id == collection_id,
                    HadithBook.number == values["number"],
                )
                .scalar()
            )
            return

        book_number = raw.get("bookNumber") if isinstance(raw, dict) else None
        book_id = state["book_ids"].get(str(book_number)) if book_number is not None else None
        values = map_hadith(raw, collection_id, book_id)
        # text_bn is owned by the translation pipeline
        upsert(db, Hadith, values, index_elements=["collection_id", "hadith_number"])

    async def finalize(
        self, db: Session, key: str, state: dict[str, Any], processed: int, failed: int
    ) -> None:
        collection = db.query(HadithCollection).filter(HadithCollection.id == state["collection_id"]).first()
        if collection is not None:
            collection.sync_status = "completed" if failed == 0 else "partial"
            collection.last_synced_at = datetime.utcnow()

        missing = [
            hadith_id
            for (hadith_id,) in db.query(Hadith.id).filter(
                Hadith.collection_id == state["collection_id"],
                Hadith.text_bn.is_(None),
                Hadith.text_en.isnot(None),
            )
        ]
        registered = register_pending(db, missing)
        if registered:
            logger.info(f"Registered {registered} pending translation jobs for {key}")

    def describe_unit(self, unit: Any) -> str:
        kind, raw = unit
        field = "bookNumber" if kind == "book" else "hadithNumber"
        return f"{kind} {raw.get(field) if isinstance(raw, dict) else raw}"


class HadithSyncTarget(SyncTarget):
    job_type = "hadith"
    job_label = "Hadith Data Sync"

    def service_for(self, key: str) -> SyncService:
        return HadithCollectionSync()

    def default_resources(self) -> list[str]:
        from deenhub.core.config import get_settings

        return list(get_settings().hadith_collections)
