"""API protection and telemetry routes: rate limits, IP blocks, request analytics."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from deenhub.api.services.api_monitoring_service import TIME_RANGES, ApiMonitoringService
from deenhub.api.services.ip_blocking_service import IpBlockingService
from deenhub.core.auth import AdminPrincipal, require_admin
from deenhub.core.database import get_db
from deenhub.core.rate_limit import RateLimitRuleService, rate_limiter
from deenhub.schemas.monitoring import IpBlockRequest, RateLimitRuleCreate, RateLimitRuleUpdate

router = APIRouter(
    prefix="/api/v1/monitoring",
    tags=["monitoring"],
    dependencies=[Depends(require_admin)],
)


# =============================================================================
# Rate limit rules
# =============================================================================


@router.get("/rate-limits")
async def list_rate_limit_rules(
    enabled: bool | None = None,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    rules = RateLimitRuleService(db).list_rules(enabled=enabled)
    return {"items": rules, "total": len(rules)}


@router.post("/rate-limits", status_code=status.HTTP_201_CREATED)
async def create_rate_limit_rule(
    body: RateLimitRuleCreate,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create a rule. ``endpoint`` ending in ``*`` matches every path with that prefix."""
    try:
        rule = RateLimitRuleService(db).create_rule(**body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None
    return rule.to_dict()


@router.get("/rate-limits/status")
async def get_rate_limit_status(
    ip: str = Query(..., min_length=3, max_length=45),
    endpoint: str = Query(..., min_length=1, max_length=255),
    method: str = Query(default="GET", max_length=10),
) -> dict[str, Any]:
    """Current window for a client without counting a request."""
    result = await rate_limiter.get_status(ip, endpoint, method)
    return {"ip": ip, "endpoint": endpoint, "method": method.upper(), **result.to_dict()}


@router.get("/rate-limits/{rule_id}")
async def get_rate_limit_rule(rule_id: int, db: Session = Depends(get_db)) -> dict[str, Any]:
    rule = RateLimitRuleService(db).get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rate limit rule not found")
    return rule.to_dict()


@router.patch("/rate-limits/{rule_id}")
async def update_rate_limit_rule(
    rule_id: int,
    body: RateLimitRuleUpdate,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    try:
        rule = RateLimitRuleService(db).update_rule(rule_id, **body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None
    if rule is None:
        raise HTTPException(status_code=404, detail="Rate limit rule not found")
    return rule.to_dict()


@router.delete("/rate-limits/{rule_id}")
async def delete_rate_limit_rule(rule_id: int, db: Session = Depends(get_db)) -> dict[str, Any]:
    if not RateLimitRuleService(db).delete_rule(rule_id):
        raise HTTPException(status_code=404, detail="Rate limit rule not found")
    return {"deleted": True, "rule_id": rule_id}


# =============================================================================
# IP blocking
# =============================================================================


@router.get("/ip-blocks")
async def list_ip_blocks(
    active_only: bool = True,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return IpBlockingService(db).list_rules(active_only=active_only, limit=limit, offset=offset)


@router.post("/ip-blocks", status_code=status.HTTP_201_CREATED)
async def block_ip(
    body: IpBlockRequest,
    admin: AdminPrincipal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Block an IP address, indefinitely unless ``expires_at`` is given."""
    if body.expires_at is not None and body.expires_at <= datetime.utcnow():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="expires_at must be in the future",
        )
    rule = IpBlockingService(db).block_ip(
        body.ip_address,
        reason=body.reason,
        blocked_by=admin.name,
        expires_at=body.expires_at,
    )
    return rule.to_dict()


@router.get("/ip-blocks/count")
async def get_blocked_count(db: Session = Depends(get_db)) -> dict[str, int]:
    return {"blocked": IpBlockingService(db).get_blocked_count()}


@router.get("/ip-blocks/top")
async def get_top_blocked_ips(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return IpBlockingService(db).get_top_blocked_ips(limit=limit)


@router.delete("/ip-blocks/{ip_address}")
async def unblock_ip(
    ip_address: str,
    admin: AdminPrincipal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if not IpBlockingService(db).unblock_ip(ip_address, unblocked_by=admin.name):
        raise HTTPException(status_code=404, detail="No block rule for that IP")
    return {"unblocked": True, "ip_address": ip_address}


# =============================================================================
# Request telemetry
# =============================================================================


@router.get("/endpoints")
async def get_endpoint_stats(
    endpoint: str | None = Query(default=None, max_length=255),
    method: str | None = Query(default=None, max_length=10),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Per-endpoint request counts, error counts and mean latency."""
    return ApiMonitoringService(db).get_endpoint_stats(endpoint=endpoint, method=method, limit=limit)


@router.get("/ips")
async def get_client_ip_stats(
    ip_address: str | None = Query(default=None, max_length=45),
    blocked: bool | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return ApiMonitoringService(db).get_client_ip_stats(ip_address=ip_address, blocked=blocked, limit=limit)


@router.get("/logs")
async def get_request_logs(
    endpoint: str | None = Query(default=None, max_length=255),
    method: str | None = Query(default=None, max_length=10),
    status_code: int | None = Query(default=None, ge=100, le=599),
    request_ip: str | None = Query(default=None, max_length=45),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ApiMonitoringService(db).get_request_logs(
        endpoint=endpoint,
        method=method,
        status_code=status_code,
        request_ip=request_ip,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


@router.get("/analytics")
async def get_analytics(
    time_range: str = Query(default="24h"),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Totals, error breakdown and request trend for 1h, 24h, 7d or 30d."""
    if time_range not in TIME_RANGES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"time_range must be one of {list(TIME_RANGES)}",
        )
    return ApiMonitoringService(db).get_analytics(time_range)
