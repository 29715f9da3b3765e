"""IP blocklist.

A rule blocks while it is enabled and not expired; ``is_blocked`` checks
both on every lookup, so an expired rule stops blocking before the sweep
runs. The sweep disables expired rules and clears the matching
``ClientIpStat.blocked`` flag in the same transaction.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from deenhub.core.database import upsert
from deenhub.models.monitoring import ClientIpStat, IpBlockingRule

logger = logging.getLogger(__name__)


def _active_filter(now: datetime):
    return (
        IpBlockingRule.enabled.is_(True),
        or_(IpBlockingRule.expires_at.is_(None), IpBlockingRule.expires_at > now),
    )


class IpBlockingService:
    """Service for managing blocked client IPs."""

    def __init__(self, db: Session):
        self.db = db

    def is_blocked(self, ip_address: str, now: datetime | None = None) -> bool:
        """Point lookup; fails open on storage errors."""
        try:
            now = now or datetime.utcnow()
            return (
                self.db.query(IpBlockingRule.id)
                .filter(IpBlockingRule.ip_address == ip_address, *_active_filter(now))
                .first()
                is not None
            )
        except Exception as e:
            logger.error(f"Blocklist lookup failed for {ip_address}, allowing: {e}", exc_info=True)
            return False

    def block_ip(
        self,
        ip_address: str,
        reason: str | None = None,
        blocked_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> IpBlockingRule:
        """Block (or re-block) an IP; ``expires_at=None`` blocks indefinitely."""
        now = datetime.utcnow()
        upsert(
            self.db,
            IpBlockingRule,
            {
                "ip_address": ip_address,
                "reason": reason,
                "blocked_by": blocked_by,
                "blocked_at": now,
                "expires_at": expires_at,
                "enabled": True,
                "unblocked_at": None,
                "unblocked_by": None,
            },
            index_elements=["ip_address"],
        )
        upsert(
            self.db,
            ClientIpStat,
            {
                "ip_address": ip_address,
                "request_count": 0,
                "error_count": 0,
                "blocked": True,
                "block_reason": reason,
                "blocked_at": now,
                "expires_at": expires_at,
            },
            index_elements=["ip_address"],
            update_fields=["blocked", "block_reason", "blocked_at", "expires_at"],
        )
        self.db.commit()
        logger.warning(f"Blocked IP {ip_address} until {expires_at or 'further notice'}: {reason}")
        return self.db.query(IpBlockingRule).filter(IpBlockingRule.ip_address == ip_address).one()

    def unblock_ip(self, ip_address: str, unblocked_by: str | None = None) -> bool:
        rule = self.db.query(IpBlockingRule).filter(IpBlockingRule.ip_address == ip_address).first()
        if rule is None:
            return False
        self._release(rule, datetime.utcnow(), unblocked_by)
        self.db.commit()
        logger.info(f"Unblocked IP {ip_address}")
        return True

    def _release(self, rule: IpBlockingRule, now: datetime, unblocked_by: str | None) -> None:
        rule.enabled = False
        rule.unblocked_at = now
        rule.unblocked_by = unblocked_by
        self.db.query(ClientIpStat).filter(ClientIpStat.ip_address == rule.ip_address).update(
            {"blocked": False, "block_reason": None, "blocked_at": None, "expires_at": None},
            synchronize_session=False,
        )

    def list_rules(
        self,
        active_only: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        query = self.db.query(IpBlockingRule)
        if active_only:
            query = query.filter(*_active_filter(datetime.utcnow()))
        total = query.count()
        rules = query.order_by(IpBlockingRule.blocked_at.desc()).offset(offset).limit(limit).all()
        return {"items": [rule.to_dict() for rule in rules], "total": total, "limit": limit, "offset": offset}

    def get_blocked_count(self) -> int:
        return self.db.query(IpBlockingRule).filter(*_active_filter(datetime.utcnow())).count()

    def get_top_blocked_ips(self, limit: int = 10) -> list[dict[str, Any]]:
        """Blocked IPs with the most recorded traffic."""
        rows = (
            self.db.query(IpBlockingRule, ClientIpStat)
            .outerjoin(ClientIpStat, ClientIpStat.ip_address == IpBlockingRule.ip_address)
            .filter(*_active_filter(datetime.utcnow()))
            .order_by(ClientIpStat.request_count.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                **rule.to_dict(),
                "request_count": stat.request_count if stat else 0,
                "error_count": stat.error_count if stat else 0,
            }
            for rule, stat in rows
        ]

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Disable expired rules and clear their stat flags."""
        now = now or datetime.utcnow()
        expired = (
            self.db.query(IpBlockingRule)
            .filter(
                IpBlockingRule.enabled.is_(True),
                IpBlockingRule.expires_at.isnot(None),
                IpBlockingRule.expires_at <= now,
            )
            .all()
        )
        for rule in expired:
            self._release(rule, now, "expiry-sweep")
        self.db.commit()
        if expired:
            logger.info(f"Blocklist sweep released {len(expired)} expired blocks")
        return len(expired)
