"""Sync trigger, job and translation schemas."""

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncDomain(str, Enum):
    """Syncable domains."""

    QURAN = "quran"
    PRAYER = "prayer"
    AUDIO = "audio"
    FINANCE = "finance"
    HADITH = "hadith"


class SyncOptionsIn(BaseModel):
    """Options for one sync call."""

    force: bool = False
    dry_run: bool = False
    start_date: date | None = None
    days: int | None = Field(default=None, ge=1, le=365)
    params: dict[str, Any] = Field(default_factory=dict)


class SyncTriggerRequest(BaseModel):
    """Admin sync trigger; without ``key`` every default resource is synced."""

    key: str | None = Field(default=None, max_length=200)
    options: SyncOptionsIn = Field(default_factory=SyncOptionsIn)


class JobAccepted(BaseModel):
    """Response for an enqueued job."""

    job_id: str
    status: str
    job_type: str
    job_name: str


class TranslationTriggerRequest(BaseModel):
    """Bulk translation trigger."""

    action: str = Field(default="bulk", pattern="^(bulk|pending|retry)$")
    limit: int | None = Field(default=None, ge=1, le=5000)
    collection: str | None = Field(default=None, max_length=100)
    batch_size: int | None = Field(default=None, ge=1, le=100)
