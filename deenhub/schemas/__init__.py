"""Pydantic schemas for API request/response validation."""

from deenhub.schemas.jobs import (
    JobAccepted,
    SyncDomain,
    SyncOptionsIn,
    SyncTriggerRequest,
    TranslationTriggerRequest,
)
from deenhub.schemas.monitoring import (
    IpBlockRequest,
    RateLimitRuleCreate,
    RateLimitRuleUpdate,
)

__all__ = [
    "JobAccepted",
    "SyncDomain",
    "SyncOptionsIn",
    "SyncTriggerRequest",
    "TranslationTriggerRequest",
    "IpBlockRequest",
    "RateLimitRuleCreate",
    "RateLimitRuleUpdate",
]
