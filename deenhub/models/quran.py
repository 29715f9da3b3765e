"""Quran chapter, verse, translation and recitation models."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base


class QuranChapter(Base):
    """Surah metadata keyed by chapter number."""

    __tablename__ = "quran_chapters"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    chapter_number: Mapped[int] = Column(Integer, unique=True, nullable=False)
    name_arabic: Mapped[str | None] = Column(String(100))
    name_simple: Mapped[str] = Column(String(100), nullable=False)
    name_english: Mapped[str | None] = Column(String(255))
    name_bangla: Mapped[str | None] = Column(String(255))
    revelation_place: Mapped[str | None] = Column(String(20))
    revelation_order: Mapped[int | None] = Column(Integer)
    verses_count: Mapped[int] = Column(Integer, nullable=False)
    bismillah_pre: Mapped[bool] = Column(Boolean, default=True)
    source: Mapped[str] = Column(String(50), default="quran.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<QuranChapter {self.chapter_number} {self.name_simple}>"


class QuranVerse(Base):
    """Single ayah keyed by its "chapter:verse" key."""

    __tablename__ = "quran_verses"
    __table_args__ = (
        Index("idx_quran_verses_chapter", "chapter_number", "verse_number"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    verse_key: Mapped[str] = Column(String(10), unique=True, nullable=False)
    chapter_number: Mapped[int] = Column(Integer, nullable=False)
    verse_number: Mapped[int] = Column(Integer, nullable=False)
    text_uthmani: Mapped[str | None] = Column(Text)
    juz_number: Mapped[int | None] = Column(Integer)
    page_number: Mapped[int | None] = Column(Integer)
    source: Mapped[str] = Column(String(50), default="quran.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<QuranVerse {self.verse_key}>"


class TranslationResource(Base):
    """A published Quran translation (translator + language)."""

    __tablename__ = "quran_translation_resources"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = Column(Integer, unique=True, nullable=False)
    name: Mapped[str] = Column(String(255), nullable=False)
    author_name: Mapped[str | None] = Column(String(255))
    language_name: Mapped[str | None] = Column(String(50))
    language_code: Mapped[str | None] = Column(String(10))
    slug: Mapped[str | None] = Column(String(255))
    source: Mapped[str] = Column(String(50), default="quran.com")
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<TranslationResource {self.source_id} {self.language_code}>"


class VerseTranslation(Base):
    """Translated text of a verse for one translation resource."""

    __tablename__ = "quran_verse_translations"
    __table_args__ = (
        UniqueConstraint("verse_id", "resource_id", name="uq_verse_translation"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    verse_id: Mapped[int] = Column(Integer, ForeignKey("quran_verses.id"), nullable=False)
    resource_id: Mapped[int] = Column(
        Integer, ForeignKey("quran_translation_resources.id"), nullable=False
    )
    text: Mapped[str] = Column(Text, nullable=False)
    source: Mapped[str] = Column(String(50), default="quran.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)


class QuranReciter(Base):
    """Reciter as listed by the Quran.com recitations resource."""

    __tablename__ = "quran_reciters"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = Column(Integer, unique=True, nullable=False)
    name: Mapped[str] = Column(String(255), nullable=False)
    english_name: Mapped[str | None] = Column(String(255))
    style: Mapped[str | None] = Column(String(50))
    language_name: Mapped[str] = Column(String(50), default="arabic")
    source_api: Mapped[str] = Column(String(50), default="quran.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<QuranReciter {self.source_id} {self.name}>"


class QuranAudioFile(Base):
    """Recitation audio for one verse by one reciter."""

    __tablename__ = "quran_audio_files"
    __table_args__ = (
        UniqueConstraint("verse_id", "reciter_id", name="uq_audio_verse_reciter"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    verse_id: Mapped[int] = Column(Integer, ForeignKey("quran_verses.id"), nullable=False)
    reciter_id: Mapped[int] = Column(Integer, ForeignKey("quran_reciters.id"), nullable=False)
    url: Mapped[str] = Column(String(500), nullable=False)
    format: Mapped[str] = Column(String(10), default="mp3")
    quality: Mapped[str] = Column(String(20), default="128kbps")
    duration_seconds: Mapped[float | None] = Column(Float)
    last_verified: Mapped[datetime | None] = Column(DateTime)
    source: Mapped[str] = Column(String(50), default="quran.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)
