"""Environment-driven settings.

Every knob is read from the process environment (or `.env`) once and
shared through ``get_settings()``. List values accept comma separated
strings; prayer coordinates use `;` because each one contains a comma.
"""

import logging
import os
import secrets
from functools import lru_cache
from typing import Annotated, Literal

from apscheduler.triggers.cron import CronTrigger
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Settings for the API process, scheduler and workers.

    Production refuses to start with DEBUG on or a wildcard CORS origin.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # =========================================================================
    # Environment
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "DeenHub Sync Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/deenhub.db"
    database_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    database_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW")
    database_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    slow_query_threshold_ms: float = Field(default=500.0, alias="SLOW_QUERY_THRESHOLD_MS")
    enable_query_logging: bool = Field(default=False, alias="ENABLE_QUERY_LOGGING")

    # Admin access (header X-Admin-Key)
    admin_api_key: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        alias="ADMIN_API_KEY",
    )

    # CORS (RESTRICTED in production - no wildcards allowed)
    cors_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_allow_credentials: bool = True

    # Caching / shared key-value store
    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    cache_ttl_gold_prices: int = Field(default=900, alias="CACHE_TTL_GOLD_PRICES")  # 15 min
    cache_ttl_sync_summary: int = Field(default=300, alias="CACHE_TTL_SYNC_SUMMARY")  # 5 min

    # =========================================================================
    # Upstream APIs
    # =========================================================================

    quran_api_base_url: str = Field(
        default="https://api.quran.com/api/v4", alias="QURAN_API_BASE_URL"
    )
    quran_audio_cdn_url: str = Field(
        default="https://audio.qurancdn.com", alias="QURAN_AUDIO_CDN_URL"
    )
    quran_translation_languages: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["en", "bn"], alias="QURAN_TRANSLATION_LANGUAGES"
    )
    aladhan_api_base_url: str = Field(
        default="https://api.aladhan.com/v1", alias="ALADHAN_API_BASE_URL"
    )
    sunnah_api_base_url: str = Field(
        default="https://api.sunnah.com/v1", alias="SUNNAH_API_BASE_URL"
    )
    sunnah_api_key: str | None = Field(default=None, alias="SUNNAH_API_KEY")
    gold_price_source_url: str = Field(
        default="https://www.bajus.org/gold-price", alias="GOLD_PRICE_SOURCE_URL"
    )

    upstream_timeout_seconds: float = Field(default=30.0, alias="UPSTREAM_TIMEOUT_SECONDS")
    upstream_max_retries: int = Field(default=3, alias="UPSTREAM_MAX_RETRIES")
    upstream_backoff_factor: float = Field(default=1.0, alias="UPSTREAM_BACKOFF_FACTOR")
    upstream_max_wait_seconds: float = Field(default=30.0, alias="UPSTREAM_MAX_WAIT_SECONDS")
    upstream_retry_jitter_seconds: float = Field(default=0.5, alias="UPSTREAM_RETRY_JITTER_SECONDS")
    upstream_breaker_failure_threshold: int = Field(
        default=5, alias="UPSTREAM_BREAKER_FAILURE_THRESHOLD"
    )
    upstream_breaker_recovery_seconds: float = Field(
        default=30.0, alias="UPSTREAM_BREAKER_RECOVERY_SECONDS"
    )

    # =========================================================================
    # Sync behaviour
    # =========================================================================

    sync_enabled: bool = Field(default=True, alias="SYNC_ENABLED")
    sync_freshness_hours: float = Field(default=24.0, alias="SYNC_FRESHNESS_HOURS")
    sync_inter_call_delay_ms: int = Field(default=100, alias="SYNC_INTER_CALL_DELAY_MS")
    # Per-job overrides, e.g. SYNC_FRESHNESS_OVERRIDES='{"gold-prices": 6}'
    sync_freshness_overrides: dict[str, float] = Field(
        default_factory=dict, alias="SYNC_FRESHNESS_OVERRIDES"
    )
    sync_delay_overrides: dict[str, int] = Field(
        default_factory=dict, alias="SYNC_DELAY_OVERRIDES"
    )

    # Tracked resources for cron runs
    prayer_locations: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["23.8103,90.4125"], alias="PRAYER_LOCATIONS"
    )
    prayer_default_method: str = Field(default="KARACHI", alias="PRAYER_DEFAULT_METHOD")
    prayer_default_school: str = Field(default="HANAFI", alias="PRAYER_DEFAULT_SCHOOL")
    prayer_prewarm_days: int = Field(default=7, alias="PRAYER_PREWARM_DAYS")
    hadith_collections: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["bukhari", "muslim"], alias="HADITH_COLLECTIONS"
    )
    hadith_page_size: int = Field(default=50, alias="HADITH_PAGE_SIZE")
    # Reciter source ids for the scheduled audio sync; empty means every stored reciter
    audio_reciter_ids: Annotated[list[int], NoDecode] = Field(
        default_factory=list, alias="AUDIO_RECITER_IDS"
    )

    # =========================================================================
    # Translation pipeline
    # =========================================================================

    translation_provider: Literal["placeholder", "mymemory"] = Field(
        default="placeholder", alias="TRANSLATION_PROVIDER"
    )
    translation_api_url: str = Field(
        default="https://api.mymemory.translated.net/get", alias="TRANSLATION_API_URL"
    )
    translation_batch_size: int = Field(default=10, alias="TRANSLATION_BATCH_SIZE")
    translation_batch_delay_ms: int = Field(default=100, alias="TRANSLATION_BATCH_DELAY_MS")
    translation_max_retries: int = Field(default=3, alias="TRANSLATION_MAX_RETRIES")
    translation_bulk_limit: int = Field(default=100, alias="TRANSLATION_BULK_LIMIT")

    # =========================================================================
    # Job queue, workers and schedules
    # =========================================================================

    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_poll_interval_seconds: int = Field(default=5, alias="WORKER_POLL_INTERVAL_SECONDS")
    worker_concurrency: int = Field(default=2, alias="WORKER_CONCURRENCY")
    job_stale_after_seconds: int = Field(default=600, alias="JOB_STALE_AFTER_SECONDS")
    job_max_attempts: int = Field(default=3, alias="JOB_MAX_ATTEMPTS")

    cron_prayer_methods: str = Field(default="0 3 * * sun", alias="CRON_PRAYER_METHODS")
    cron_prayer_times: str = Field(default="0 4 * * *", alias="CRON_PRAYER_TIMES")
    cron_hadith: str = Field(default="0 2 * * *", alias="CRON_HADITH")
    cron_quran: str = Field(default="0 3 * * *", alias="CRON_QURAN")
    cron_audio: str = Field(default="0 5 * * sun", alias="CRON_AUDIO")
    cron_gold_prices: str = Field(default="0 4 * * *", alias="CRON_GOLD_PRICES")
    cron_translation_retry: str = Field(default="30 * * * *", alias="CRON_TRANSLATION_RETRY")

    # =========================================================================
    # Abuse protection and telemetry
    # =========================================================================

    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_rules_ttl_seconds: float = Field(default=5.0, alias="RATE_LIMIT_RULES_TTL_SECONDS")
    blocklist_sweep_interval_minutes: int = Field(
        default=5, alias="BLOCKLIST_SWEEP_INTERVAL_MINUTES"
    )
    telemetry_enabled: bool = Field(default=True, alias="TELEMETRY_ENABLED")
    request_log_retention_days: int = Field(default=30, alias="REQUEST_LOG_RETENTION_DAYS")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Normalise case; fall back to PRODUCTION/PROD/STAGING flags."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @model_validator(mode="after")
    def check_production_safety(self):
        if self.environment != "production":
            return self
        if self.debug:
            logger.error("Refusing to start: DEBUG is on with ENVIRONMENT=production")
            raise ValueError("DEBUG cannot be True in production environment")
        if any(origin.strip() == "*" for origin in self.cors_origins):
            raise ValueError("Wildcard CORS origin (*) not allowed in production")
        return self

    @field_validator(
        "cors_origins",
        "prayer_locations",
        "hadith_collections",
        "quran_translation_languages",
        "audio_reciter_ids",
        mode="before",
    )
    @classmethod
    def parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            # Coordinates are separated by ';' since they contain a comma themselves
            separator = ";" if ";" in v else ","
            return [item.strip() for item in v.split(separator) if item.strip()]
        return v

    @field_validator(
        "cron_prayer_methods",
        "cron_prayer_times",
        "cron_hadith",
        "cron_quran",
        "cron_audio",
        "cron_gold_prices",
        "cron_translation_retry",
    )
    @classmethod
    def validate_cron_expression(cls, v: str) -> str:
        """Reject cron expressions APScheduler cannot parse."""
        try:
            CronTrigger.from_crontab(v)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression '{v}': {e}") from e
        return v

    @field_validator("prayer_prewarm_days")
    @classmethod
    def validate_prewarm_days(cls, v: int) -> int:
        """Prayer ranges are limited to one year."""
        if not 1 <= v <= 365:
            raise ValueError("PRAYER_PREWARM_DAYS must be between 1 and 365")
        return v

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_freshness_hours(self, job_name: str) -> float:
        """Freshness window for a sync job, honouring per-job overrides."""
        return self.sync_freshness_overrides.get(job_name, self.sync_freshness_hours)

    def get_inter_call_delay_ms(self, job_name: str) -> int:
        """Delay between upstream calls for a sync job."""
        return self.sync_delay_overrides.get(job_name, self.sync_inter_call_delay_ms)

    def get_cache_ttl(self, data_type: str) -> int:
        """Seconds a cached read of ``data_type`` stays valid (5 minutes if unknown)."""
        return {
            "gold_prices": self.cache_ttl_gold_prices,
            "sync_summary": self.cache_ttl_sync_summary,
        }.get(data_type, 300)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, built on first use."""
    return Settings()
