"""Request telemetry: raw request log plus online per-endpoint/per-IP aggregates.

Each request appends one ``ApiRequestLog`` row and folds its latency into
``ApiEndpointStat`` with a running mean computed inside the upsert itself,
so aggregates never re-read history and concurrent writers cannot lose an
update.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from deenhub.core.database import get_db_context, upsert
from deenhub.models.monitoring import ApiEndpointStat, ApiRequestLog, ClientIpStat

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

# Telemetry writes in flight; keeps tasks referenced until done
_pending_writes: set[asyncio.Task] = set()


@dataclass
class RequestLogEntry:
    endpoint: str
    method: str
    status_code: int
    latency_ms: float
    request_ip: str | None = None
    user_agent: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


class ApiMonitoringService:
    """Service for request telemetry and analytics."""

    def __init__(self, db: Session):
        self.db = db

    def log_request(self, entry: RequestLogEntry) -> None:
        error_increment = 1 if entry.is_error else 0

        self.db.add(
            ApiRequestLog(
                endpoint=entry.endpoint,
                method=entry.method,
                status_code=entry.status_code,
                latency_ms=entry.latency_ms,
                request_ip=entry.request_ip,
                user_agent=(entry.user_agent or "")[:500] or None,
                user_id=entry.user_id,
                metadata_json=json.dumps(entry.metadata) if entry.metadata else None,
                timestamp=entry.timestamp,
            )
        )

        # SET expressions see the pre-update row: count is the old count here
        upsert(
            self.db,
            ApiEndpointStat,
            {
                "endpoint": entry.endpoint,
                "method": entry.method,
                "request_count": 1,
                "error_count": error_increment,
                "avg_latency_ms": entry.latency_ms,
                "last_request": entry.timestamp,
            },
            index_elements=["endpoint", "method"],
            set_={
                "avg_latency_ms": lambda excluded: (
                    ApiEndpointStat.avg_latency_ms * ApiEndpointStat.request_count
                    + excluded.avg_latency_ms
                ) / (ApiEndpointStat.request_count + 1),
                "request_count": ApiEndpointStat.request_count + 1,
                "error_count": ApiEndpointStat.error_count + error_increment,
                "last_request": lambda excluded: excluded.last_request,
            },
        )

        if entry.request_ip:
            upsert(
                self.db,
                ClientIpStat,
                {
                    "ip_address": entry.request_ip,
                    "request_count": 1,
                    "error_count": error_increment,
                    "last_request": entry.timestamp,
                    "blocked": False,
                },
                index_elements=["ip_address"],
                set_={
                    "request_count": ClientIpStat.request_count + 1,
                    "error_count": ClientIpStat.error_count + error_increment,
                    "last_request": lambda excluded: excluded.last_request,
                },
            )
        self.db.commit()

    def get_endpoint_stats(
        self,
        endpoint: str | None = None,
        method: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        query = self.db.query(ApiEndpointStat)
        if endpoint:
            query = query.filter(ApiEndpointStat.endpoint.contains(endpoint))
        if method:
            query = query.filter(ApiEndpointStat.method == method.upper())
        rows = query.order_by(ApiEndpointStat.request_count.desc()).limit(limit).all()
        return [row.to_dict() for row in rows]

    def get_client_ip_stats(
        self,
        ip_address: str | None = None,
        blocked: bool | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        query = self.db.query(ClientIpStat)
        if ip_address:
            query = query.filter(ClientIpStat.ip_address.contains(ip_address))
        if blocked is not None:
            query = query.filter(ClientIpStat.blocked.is_(blocked))
        rows = query.order_by(ClientIpStat.request_count.desc()).limit(limit).all()
        return [row.to_dict() for row in rows]

    def get_request_logs(
        self,
        endpoint: str | None = None,
        method: str | None = None,
        status_code: int | None = None,
        request_ip: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        query = self.db.query(ApiRequestLog)
        if endpoint:
            query = query.filter(ApiRequestLog.endpoint.contains(endpoint))
        if method:
            query = query.filter(ApiRequestLog.method == method.upper())
        if status_code:
            query = query.filter(ApiRequestLog.status_code == status_code)
        if request_ip:
            query = query.filter(ApiRequestLog.request_ip == request_ip)
        if since:
            query = query.filter(ApiRequestLog.timestamp >= since)
        if until:
            query = query.filter(ApiRequestLog.timestamp <= until)

        total = query.count()
        rows = query.order_by(ApiRequestLog.timestamp.desc()).offset(offset).limit(limit).all()
        return {"items": [row.to_dict() for row in rows], "total": total, "limit": limit, "offset": offset}

    def get_analytics(self, time_range: str = "24h", now: datetime | None = None) -> dict[str, Any]:
        """Totals, error breakdown and request trend over a time window.

        Raises:
            ValueError: unknown time range
        """
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {sorted(TIME_RANGES)}")
        now = now or datetime.utcnow()
        since = now - TIME_RANGES[time_range]
        window = self.db.query(ApiRequestLog).filter(ApiRequestLog.timestamp >= since)

        total, errors, avg_latency = window.with_entities(
            func.count(ApiRequestLog.id),
            func.sum(case((ApiRequestLog.status_code >= 400, 1), else_=0)),
            func.avg(ApiRequestLog.latency_ms),
        ).one()
        total = total or 0
        errors = errors or 0

        status_rows = (
            window.with_entities(ApiRequestLog.status_code, func.count(ApiRequestLog.id))
            .filter(ApiRequestLog.status_code >= 400)
            .group_by(ApiRequestLog.status_code)
            .order_by(func.count(ApiRequestLog.id).desc())
            .all()
        )
        error_rates = [
            {
                "status_code": status_code,
                "count": count,
                "percentage": round(count / errors * 100, 2) if errors else 0.0,
            }
            for status_code, count in status_rows
        ]

        return {
            "time_range": time_range,
            "total_requests": total,
            "total_errors": errors,
            "error_rate": round(errors / total * 100, 2) if total else 0.0,
            "average_latency_ms": round(avg_latency or 0.0, 2),
            "top_endpoints": self.get_endpoint_stats(limit=10),
            "error_rates": error_rates,
            "request_trends": self._request_trends(since, now, hourly=TIME_RANGES[time_range] <= timedelta(hours=24)),
        }

    def _request_trends(self, since: datetime, now: datetime, hourly: bool) -> list[dict[str, Any]]:
        step = timedelta(hours=1) if hourly else timedelta(days=1)

        def bucket_of(moment: datetime) -> datetime:
            if hourly:
                return moment.replace(minute=0, second=0, microsecond=0)
            return moment.replace(hour=0, minute=0, second=0, microsecond=0)

        buckets: dict[datetime, dict[str, int]] = {}
        cursor = bucket_of(since)
        while cursor <= now:
            buckets[cursor] = {"requests": 0, "errors": 0}
            cursor += step

        rows = (
            self.db.query(ApiRequestLog.timestamp, ApiRequestLog.status_code)
            .filter(ApiRequestLog.timestamp >= since, ApiRequestLog.timestamp <= now)
            .yield_per(1000)
        )
        for timestamp, status_code in rows:
            bucket = buckets.setdefault(bucket_of(timestamp), {"requests": 0, "errors": 0})
            bucket["requests"] += 1
            if status_code >= 400:
                bucket["errors"] += 1

        return [
            {"timestamp": moment.isoformat(), **counts}
            for moment, counts in sorted(buckets.items())
        ]

    def prune_request_logs(self, retention_days: int, now: datetime | None = None) -> int:
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        deleted = (
            self.db.query(ApiRequestLog)
            .filter(ApiRequestLog.timestamp < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info(f"Pruned {deleted} request logs older than {retention_days} days")
        return deleted


def log_request(entry: RequestLogEntry) -> None:
    """Record one request; telemetry failures are logged, never raised."""
    try:
        with get_db_context() as db:
            ApiMonitoringService(db).log_request(entry)
    except Exception as e:
        logger.error(f"Failed to record request telemetry: {e}", exc_info=True)


def schedule_log_request(entry: RequestLogEntry) -> asyncio.Task:
    """Write telemetry off the request path."""
    task = asyncio.create_task(run_in_threadpool(log_request, entry))
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)
    return task


async def drain_pending_writes() -> None:
    if _pending_writes:
        await asyncio.gather(*_pending_writes, return_exceptions=True)
