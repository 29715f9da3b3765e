"""Hadith corpus and translation job models."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base

# TranslationJob.status values
TRANSLATION_PENDING = "pending"
TRANSLATION_PROCESSING = "processing"
TRANSLATION_COMPLETED = "completed"
TRANSLATION_FAILED = "failed"


class HadithCollection(Base):
    """A hadith collection as published by sunnah.com (bukhari, muslim, ...)."""

    __tablename__ = "hadith_collections"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = Column(String(100), unique=True, nullable=False)
    title_en: Mapped[str | None] = Column(String(255))
    title_ar: Mapped[str | None] = Column(String(255))
    total_hadith: Mapped[int | None] = Column(Integer)
    has_books: Mapped[bool] = Column(Boolean, default=True)
    sync_status: Mapped[str] = Column(String(20), default="pending")
    last_synced_at: Mapped[datetime | None] = Column(DateTime)
    source: Mapped[str] = Column(String(50), default="sunnah.com")

    def __repr__(self) -> str:
        return f"<HadithCollection {self.name}>"


class HadithBook(Base):
    """Book (chapter group) inside a collection."""

    __tablename__ = "hadith_books"
    __table_args__ = (
        UniqueConstraint("collection_id", "number", name="uq_hadith_book"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[int] = Column(
        Integer, ForeignKey("hadith_collections.id"), nullable=False
    )
    number: Mapped[str] = Column(String(20), nullable=False)
    title_en: Mapped[str | None] = Column(String(500))
    title_ar: Mapped[str | None] = Column(String(500))
    hadith_start: Mapped[int | None] = Column(Integer)
    hadith_end: Mapped[int | None] = Column(Integer)
    total_hadith: Mapped[int | None] = Column(Integer)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)


class Hadith(Base):
    """Single hadith keyed by (collection, hadith number).

    ``text_bn`` is written only by the translation pipeline.
    """

    __tablename__ = "hadiths"
    __table_args__ = (
        UniqueConstraint("collection_id", "hadith_number", name="uq_hadith_number"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[int] = Column(
        Integer, ForeignKey("hadith_collections.id"), nullable=False
    )
    book_id: Mapped[int | None] = Column(Integer, ForeignKey("hadith_books.id"))
    hadith_number: Mapped[str] = Column(String(50), nullable=False)
    text_ar: Mapped[str | None] = Column(Text)
    text_en: Mapped[str | None] = Column(Text)
    text_bn: Mapped[str | None] = Column(Text)
    narrator: Mapped[str | None] = Column(String(500))
    grades_json: Mapped[str | None] = Column(Text)
    refs_json: Mapped[str | None] = Column(Text)
    source: Mapped[str] = Column(String(50), default="sunnah.com")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Hadith {self.collection_id}:{self.hadith_number}>"


class TranslationJob(Base):
    """Machine translation of one hadith into one target language."""

    __tablename__ = "translation_jobs"
    __table_args__ = (
        UniqueConstraint("hadith_id", "target_lang", name="uq_translation_job"),
        Index("idx_translation_jobs_status", "status", "retry_count"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    hadith_id: Mapped[int] = Column(Integer, ForeignKey("hadiths.id"), nullable=False)
    source_lang: Mapped[str] = Column(String(10), nullable=False, default="en")
    target_lang: Mapped[str] = Column(String(10), nullable=False, default="bn")
    status: Mapped[str] = Column(String(20), nullable=False, default=TRANSLATION_PENDING)
    translated_text: Mapped[str | None] = Column(Text)
    is_machine_translated: Mapped[bool] = Column(Boolean, default=True)
    retry_count: Mapped[int] = Column(Integer, default=0)
    error: Mapped[str | None] = Column(Text)
    created_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    completed_at: Mapped[datetime | None] = Column(DateTime)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hadith_id": self.hadith_id,
            "source_lang": self.source_lang,
            "target_lang": self.target_lang,
            "status": self.status,
            "translated_text": self.translated_text,
            "retry_count": self.retry_count,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
