"""Admin authentication.

Admin routes require the shared ``X-Admin-Key`` header. The key is
compared in constant time; the operator label from ``X-Admin-User`` (if
any) is recorded on audit fields such as ``blocked_by``.
"""

import logging
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from deenhub.core.config import get_settings

logger = logging.getLogger(__name__)

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


class AdminPrincipal(BaseModel):
    """Caller authenticated with the admin API key."""

    name: str = "admin"


def verify_admin_key(provided: str | None) -> bool:
    expected = get_settings().admin_api_key
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


async def require_admin(
    request: Request,
    api_key: str | None = Depends(admin_key_header),
) -> AdminPrincipal:
    """Dependency guarding admin endpoints."""
    if not verify_admin_key(api_key):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected admin request from {client} to {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )
    return AdminPrincipal(name=request.headers.get("X-Admin-User") or "admin")
