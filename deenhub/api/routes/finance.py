"""Public gold and silver price routes.

Reads are cached under ``gold_prices``; the gold price sync invalidates
that data type whenever it writes new observations. Unit conversion runs
on the cached rows, so one entry serves every ``preferred_unit``.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from deenhub.core.cache import cached
from deenhub.core.database import get_db
from deenhub.core.sync.finance import (
    METAL_GOLD,
    METAL_SILVER,
    get_latest_prices,
    get_price_history,
    in_unit,
    normalize_unit,
)

router = APIRouter(prefix="/api/v1/finance", tags=["finance"])


@cached("gold_prices")
async def _latest(db: Session) -> dict[str, Any]:
    items = get_latest_prices(db)
    return {"items": items, "total": len(items)}


@cached("gold_prices")
async def _history(db: Session, **filters: Any) -> dict[str, Any]:
    return get_price_history(db, **filters)


def _preferred_unit(preferred_unit: str | None) -> str | None:
    if preferred_unit is None:
        return None
    try:
        return normalize_unit(preferred_unit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None


@router.get("/gold-prices/latest")
async def latest_gold_prices(
    preferred_unit: str | None = Query(default=None, max_length=20),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Most recent price per metal, category and unit, optionally converted to one unit."""
    unit = _preferred_unit(preferred_unit)
    data = await _latest(db=db)
    if unit:
        data = {**data, "items": in_unit(data["items"], unit)}
    return data


@router.get("/gold-prices/history")
async def gold_price_history(
    metal: str | None = Query(default=None, max_length=20),
    category: str | None = Query(default=None, max_length=50),
    unit: str | None = Query(default=None, max_length=20),
    preferred_unit: str | None = Query(default=None, max_length=20),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Observations oldest first, filtered by metal, category, stored unit and time."""
    if metal and metal not in (METAL_GOLD, METAL_SILVER):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"metal must be {METAL_GOLD} or {METAL_SILVER}",
        )
    target_unit = _preferred_unit(preferred_unit)
    data = await _history(
        db=db,
        metal=metal,
        category=category,
        unit=unit,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    if target_unit:
        data = {**data, "items": in_unit(data["items"], target_unit)}
    return data
