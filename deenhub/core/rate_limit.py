"""Rule-driven rate limiting for the HTTP API.

Rules live in the ``rate_limit_rules`` table and are matched per request:
exact ``(endpoint, method)``, then ``(endpoint, ALL)``, then the longest
trailing-``*`` prefix (method-specific before ``ALL``, then oldest rule).
Counting is a fixed window in the shared cache (Redis when configured), so
every replica sees the same counters. Unmatched endpoints and internal
errors fail open.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deenhub.core.cache import CacheManager, cache_manager
from deenhub.core.config import get_settings
from deenhub.core.database import get_db_context
from deenhub.models.monitoring import RateLimitRule

logger = logging.getLogger(__name__)

ALL_METHODS = "ALL"
KEY_PREFIX = "rl"


@dataclass
class RateLimitResult:
    """Outcome of a rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int | None = None
    window_seconds: int = 0
    rule_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "window_seconds": self.window_seconds,
            "rule_id": self.rule_id,
        }


@dataclass(frozen=True)
class RuleSnapshot:
    """Detached copy of a rule, safe to use after the session closes."""

    id: int
    endpoint: str
    method: str
    limit_count: int
    window_seconds: int
    enabled: bool = True

    @property
    def is_wildcard(self) -> bool:
        return self.endpoint.endswith("*")

    @classmethod
    def from_model(cls, rule: RateLimitRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            endpoint=rule.endpoint,
            method=(rule.method or ALL_METHODS).upper(),
            limit_count=rule.limit_count,
            window_seconds=rule.window_seconds,
            enabled=bool(rule.enabled),
        )


def _allow_unlimited() -> RateLimitResult:
    return RateLimitResult(allowed=True, limit=0, remaining=0, reset_time=0)


def resolve_rule(rules: Iterable[RuleSnapshot], endpoint: str, method: str) -> RuleSnapshot | None:
    """Pick the enabled rule governing ``method endpoint``."""
    method = method.upper()
    enabled = [rule for rule in rules if rule.enabled]

    for wanted in (method, ALL_METHODS):
        for rule in enabled:
            if rule.endpoint == endpoint and rule.method == wanted:
                return rule

    candidates = [
        rule
        for rule in enabled
        if rule.is_wildcard
        and endpoint.startswith(rule.endpoint[:-1])
        and rule.method in (method, ALL_METHODS)
    ]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda rule: (-len(rule.endpoint), rule.method == ALL_METHODS, rule.id),
    )


def load_enabled_rules() -> list[RuleSnapshot]:
    with get_db_context() as db:
        rules = db.query(RateLimitRule).filter(RateLimitRule.enabled.is_(True)).all()
        return [RuleSnapshot.from_model(rule) for rule in rules]


class RateLimiter:
    """Fixed-window limiter over the shared counter store."""

    def __init__(
        self,
        cache: CacheManager | None = None,
        rule_loader: Callable[[], list[RuleSnapshot]] | None = None,
        clock: Callable[[], float] = time.time,
        rules_ttl_seconds: float | None = None,
    ) -> None:
        self.cache = cache or cache_manager
        self.rule_loader = rule_loader or load_enabled_rules
        self.clock = clock
        self.rules_ttl_seconds = (
            get_settings().rate_limit_rules_ttl_seconds
            if rules_ttl_seconds is None
            else rules_ttl_seconds
        )
        self._rules: list[RuleSnapshot] | None = None
        self._rules_loaded_at = 0.0

    async def rules(self) -> list[RuleSnapshot]:
        """Enabled rules, reloaded in a worker thread once the snapshot is older than the TTL."""
        age = time.monotonic() - self._rules_loaded_at
        if self._rules is None or age >= self.rules_ttl_seconds:
            self._rules = await run_in_threadpool(self.rule_loader)
            self._rules_loaded_at = time.monotonic()
        return self._rules

    def invalidate_rules(self) -> None:
        self._rules = None

    @staticmethod
    def counter_key(ip: str, endpoint: str, window_start: int) -> str:
        return f"{KEY_PREFIX}:{ip}:{endpoint}:{window_start}"

    def _window(self, rule: RuleSnapshot) -> tuple[float, int, int]:
        now = self.clock()
        window_start = int(now // rule.window_seconds) * rule.window_seconds
        return now, window_start, window_start + rule.window_seconds

    async def check(self, ip: str, endpoint: str, method: str) -> RateLimitResult:
        """Count this request and decide whether it is admitted."""
        try:
            rule = resolve_rule(await self.rules(), endpoint, method)
            if rule is None:
                return _allow_unlimited()

            now, window_start, reset_time = self._window(rule)
            count = await self.cache.incr(
                self.counter_key(ip, endpoint, window_start), rule.window_seconds
            )
            result = RateLimitResult(
                allowed=count <= rule.limit_count,
                limit=rule.limit_count,
                remaining=max(0, rule.limit_count - count),
                reset_time=reset_time,
                window_seconds=rule.window_seconds,
                rule_id=rule.id,
            )
            if not result.allowed:
                result.retry_after = max(1, math.ceil(reset_time - now))
                logger.info(f"Rate limit exceeded: {ip} {method} {endpoint} ({count}/{rule.limit_count})")
            return result
        except Exception as e:
            logger.error(f"Rate limit check failed, allowing request: {e}", exc_info=True)
            return _allow_unlimited()

    async def get_status(self, ip: str, endpoint: str, method: str = ALL_METHODS) -> RateLimitResult:
        """Current window state without counting a request."""
        try:
            rule = resolve_rule(await self.rules(), endpoint, method)
            if rule is None:
                return _allow_unlimited()

            _, window_start, reset_time = self._window(rule)
            count, _ = await self.cache.peek_counter(self.counter_key(ip, endpoint, window_start))
            return RateLimitResult(
                allowed=count < rule.limit_count,
                limit=rule.limit_count,
                remaining=max(0, rule.limit_count - count),
                reset_time=reset_time,
                window_seconds=rule.window_seconds,
                rule_id=rule.id,
            )
        except Exception as e:
            logger.error(f"Rate limit status lookup failed: {e}", exc_info=True)
            return _allow_unlimited()


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    if not result.limit:
        return {}
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
        "X-RateLimit-Window": str(result.window_seconds),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def too_many_requests_response(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please try again later.",
            "retry_after": result.retry_after,
        },
        headers=rate_limit_headers(result),
    )


def rate_limiting_enabled() -> bool:
    return get_settings().rate_limit_enabled


class RateLimitRuleService:
    """CRUD over rate limit rules."""

    def __init__(self, db: Session):
        self.db = db

    def list_rules(self, enabled: bool | None = None) -> list[dict[str, Any]]:
        query = self.db.query(RateLimitRule)
        if enabled is not None:
            query = query.filter(RateLimitRule.enabled.is_(enabled))
        return [rule.to_dict() for rule in query.order_by(RateLimitRule.created_at.desc(), RateLimitRule.id.desc())]

    def get_rule(self, rule_id: int) -> RateLimitRule | None:
        return self.db.query(RateLimitRule).filter(RateLimitRule.id == rule_id).first()

    def create_rule(
        self,
        endpoint: str,
        limit_count: int,
        window_seconds: int,
        method: str = ALL_METHODS,
        enabled: bool = True,
        description: str | None = None,
    ) -> RateLimitRule:
        """Raises ValueError when a rule for (endpoint, method) exists."""
        rule = RateLimitRule(
            endpoint=endpoint,
            method=method.upper(),
            limit_count=limit_count,
            window_seconds=window_seconds,
            enabled=enabled,
            description=description,
        )
        self.db.add(rule)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValueError(f"Rule for {method.upper()} {endpoint} already exists") from None
        self.db.refresh(rule)
        logger.info(f"Created rate limit rule {rule!r}")
        rate_limiter.invalidate_rules()
        return rule

    def update_rule(self, rule_id: int, **changes: Any) -> RateLimitRule | None:
        rule = self.get_rule(rule_id)
        if rule is None:
            return None
        for name, value in changes.items():
            if value is None or not hasattr(rule, name):
                continue
            setattr(rule, name, value.upper() if name == "method" else value)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValueError("Another rule already covers that endpoint and method") from None
        self.db.refresh(rule)
        rate_limiter.invalidate_rules()
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        rule = self.get_rule(rule_id)
        if rule is None:
            return False
        self.db.delete(rule)
        self.db.commit()
        rate_limiter.invalidate_rules()
        logger.info(f"Deleted rate limit rule {rule_id}")
        return True


# Process-wide limiter; rule edits made through RateLimitRuleService drop its
# rule snapshot immediately, other replicas pick them up within the TTL
rate_limiter = RateLimiter()
