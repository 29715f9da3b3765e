"""Rate limit rule and IP blocking schemas."""

import ipaddress
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

HTTP_METHODS = {"ALL", "GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


def _check_method(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.upper()
    if value not in HTTP_METHODS:
        raise ValueError(f"method must be one of {sorted(HTTP_METHODS)}")
    return value


class RateLimitRuleCreate(BaseModel):
    """New rate limit rule. ``endpoint`` may end with ``*`` to match a prefix."""

    endpoint: str = Field(..., min_length=1, max_length=255)
    method: str = "ALL"
    limit_count: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1, le=86400)
    enabled: bool = True
    description: str | None = None

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        return _check_method(v)


class RateLimitRuleUpdate(BaseModel):
    """Partial rule update."""

    endpoint: str | None = Field(default=None, min_length=1, max_length=255)
    method: str | None = None
    limit_count: int | None = Field(default=None, ge=1)
    window_seconds: int | None = Field(default=None, ge=1, le=86400)
    enabled: bool | None = None
    description: str | None = None

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str | None) -> str | None:
        return _check_method(v)


class IpBlockRequest(BaseModel):
    """Block an IP, optionally until ``expires_at`` (UTC)."""

    ip_address: str = Field(..., min_length=3, max_length=45)
    reason: str | None = Field(default=None, max_length=1000)
    expires_at: datetime | None = None

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        return str(ipaddress.ip_address(v.strip()))
