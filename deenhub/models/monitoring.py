"""Abuse protection and request telemetry models."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base


class RateLimitRule(Base):
    """Admission rule for an endpoint (exact path or trailing-* prefix)."""

    __tablename__ = "rate_limit_rules"
    __table_args__ = (
        UniqueConstraint("endpoint", "method", name="uq_rate_limit_rule"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = Column(String(255), nullable=False)
    method: Mapped[str] = Column(String(10), nullable=False, default="ALL")
    limit_count: Mapped[int] = Column(Integer, nullable=False)
    window_seconds: Mapped[int] = Column(Integer, nullable=False)
    enabled: Mapped[bool] = Column(Boolean, default=True, nullable=False)
    description: Mapped[str | None] = Column(Text)
    created_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<RateLimitRule {self.method} {self.endpoint}: {self.limit_count}/{self.window_seconds}s>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "method": self.method,
            "limit_count": self.limit_count,
            "window_seconds": self.window_seconds,
            "enabled": self.enabled,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class IpBlockingRule(Base):
    """Block on a client IP; active iff enabled and not yet expired."""

    __tablename__ = "ip_blocking_rules"
    __table_args__ = (
        Index("idx_ip_blocking_rules_enabled", "enabled", "expires_at"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = Column(String(45), unique=True, nullable=False)
    reason: Mapped[str | None] = Column(Text)
    blocked_by: Mapped[str | None] = Column(String(255))
    blocked_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = Column(DateTime)
    enabled: Mapped[bool] = Column(Boolean, default=True, nullable=False)
    unblocked_at: Mapped[datetime | None] = Column(DateTime)
    unblocked_by: Mapped[str | None] = Column(String(255))

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return bool(self.enabled) and (self.expires_at is None or self.expires_at > now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "reason": self.reason,
            "blocked_by": self.blocked_by,
            "blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "enabled": self.enabled,
            "active": self.is_active(),
            "unblocked_at": self.unblocked_at.isoformat() if self.unblocked_at else None,
        }


class ClientIpStat(Base):
    """Running request counters per client IP plus denormalized block flag."""

    __tablename__ = "client_ip_stats"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = Column(String(45), unique=True, nullable=False)
    request_count: Mapped[int] = Column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = Column(Integer, default=0, nullable=False)
    last_request: Mapped[datetime | None] = Column(DateTime)
    blocked: Mapped[bool] = Column(Boolean, default=False, nullable=False)
    block_reason: Mapped[str | None] = Column(Text)
    blocked_at: Mapped[datetime | None] = Column(DateTime)
    expires_at: Mapped[datetime | None] = Column(DateTime)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "last_request": self.last_request.isoformat() if self.last_request else None,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class ApiEndpointStat(Base):
    """Running request/error counters and online mean latency per endpoint."""

    __tablename__ = "api_endpoint_stats"
    __table_args__ = (
        UniqueConstraint("endpoint", "method", name="uq_api_endpoint_stat"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = Column(String(255), nullable=False)
    method: Mapped[str] = Column(String(10), nullable=False)
    request_count: Mapped[int] = Column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = Column(Integer, default=0, nullable=False)
    avg_latency_ms: Mapped[float] = Column(Float, default=0.0, nullable=False)
    last_request: Mapped[datetime | None] = Column(DateTime)

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "error_rate": (
                round(self.error_count / self.request_count * 100, 2)
                if self.request_count else 0.0
            ),
            "avg_latency_ms": round(self.avg_latency_ms or 0.0, 2),
            "last_request": self.last_request.isoformat() if self.last_request else None,
        }


class ApiRequestLog(Base):
    """Immutable per-request log row."""

    __tablename__ = "api_request_logs"
    __table_args__ = (
        Index("idx_api_request_logs_timestamp", "timestamp"),
        Index("idx_api_request_logs_status", "status_code"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = Column(String(255), nullable=False)
    method: Mapped[str] = Column(String(10), nullable=False)
    status_code: Mapped[int] = Column(Integer, nullable=False)
    latency_ms: Mapped[float] = Column(Float, nullable=False)
    request_ip: Mapped[str | None] = Column(String(45))
    user_agent: Mapped[str | None] = Column(String(500))
    user_id: Mapped[str | None] = Column(String(255))
    metadata_json: Mapped[str | None] = Column(Text)
    timestamp: Mapped[datetime] = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "request_ip": self.request_ip,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
