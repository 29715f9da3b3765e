"""Gold and silver prices scraped from the BAJUS price page."""

import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from bs4 import BeautifulSoup
from sqlalchemy import func
from sqlalchemy.orm import Session

from deenhub.api.services.upstream_client import UpstreamClient, scraper_client
from deenhub.core.exceptions import MappingError
from deenhub.core.sync.base import SyncOptions, SyncService, SyncTarget
from deenhub.models.finance import GoldPrice

logger = logging.getLogger(__name__)

GRAMS_PER_VORI = 11.664
CURRENCY = "BDT"

CHANGE_UP = "up"
CHANGE_DOWN = "down"
CHANGE_UNCHANGED = "unchanged"

METAL_GOLD = "Gold"
METAL_SILVER = "Silver"

UNIT_GRAM = "Gram"
UNIT_VORI = "Vori"
UNITS = (UNIT_GRAM, UNIT_VORI)

_BANGLA_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")
_CATEGORY_RE = re.compile(r"(22K|21K|18K|Traditional|Tradition|Silver)", re.IGNORECASE)
_FALLBACK_PRICE_RE = re.compile(r"([0-9০-৯][0-9০-৯,.]*)\s*(?:BDT|Tk|৳)?")


def normalize_bangla_number(text: str) -> float:
    """Parse a price that may use Bangla digits and thousands separators.

    Raises:
        ValueError: nothing numeric in ``text``
    """
    cleaned = re.sub(r"[^0-9.]", "", text.strip().translate(_BANGLA_DIGITS))
    try:
        return float(cleaned)
    except ValueError:
        raise ValueError(f"Failed to parse numeric value from: {text!r}") from None


def detect_change_direction(previous: float | None, current: float) -> str | None:
    if previous is None:
        return None
    if current > previous:
        return CHANGE_UP
    if current < previous:
        return CHANGE_DOWN
    return CHANGE_UNCHANGED


def convert_price_between_units(price: float, from_unit: str, to_unit: str) -> float:
    source, target = from_unit.lower(), to_unit.lower()
    if source == "gram" and target == "vori":
        return price * GRAMS_PER_VORI
    if source == "vori" and target == "gram":
        return price / GRAMS_PER_VORI
    return price


def normalize_unit(unit: str) -> str:
    """Stored spelling of a unit name, any case; ValueError for anything else."""
    for known in UNITS:
        if unit.strip().lower() == known.lower():
            return known
    raise ValueError(f"unit must be {UNIT_GRAM} or {UNIT_VORI}")


def in_unit(items: list[dict[str, Any]], preferred_unit: str) -> list[dict[str, Any]]:
    """Price rows re-expressed per ``preferred_unit``."""
    return [
        {
            **item,
            "unit": preferred_unit,
            "price": round(convert_price_between_units(item["price"], item["unit"], preferred_unit), 2),
        }
        for item in items
    ]


@dataclass
class ParsedPrice:
    metal: str
    category: str
    unit: str
    price: float


def _classify(label: str) -> tuple[str, str, str]:
    metal = METAL_SILVER if re.search("silver", label, re.IGNORECASE) else METAL_GOLD
    match = _CATEGORY_RE.search(label)
    category = label
    if match:
        category = match.group(1).upper()
        if category == "TRADITION":
            category = "TRADITIONAL"
    unit = UNIT_GRAM if re.search("gram", label, re.IGNORECASE) else UNIT_VORI
    return metal, category, unit


class GoldPriceParser:
    """Table rows first; falls back to scanning list items and divs."""

    def parse(self, html: str) -> list[ParsedPrice]:
        soup = BeautifulSoup(html, "html.parser")
        results: list[ParsedPrice] = []

        for row in soup.select("table tr"):
            cells = row.find_all("td")
            if len(cells) < 2:
                continue
            label = cells[0].get_text(" ", strip=True)
            price_text = cells[-1].get_text(" ", strip=True)
            if not label or not price_text:
                continue
            try:
                price = normalize_bangla_number(price_text)
            except ValueError:
                logger.debug(f"Skipping price row without a number: {label!r}")
                continue
            results.append(ParsedPrice(*_classify(label), price))

        if results:
            return results

        for element in soup.find_all(["li", "div"]):
            text = element.get_text(" ", strip=True)
            if not text or not _CATEGORY_RE.search(text):
                continue
            # Only the innermost matching element, not every ancestor div
            if any(
                _CATEGORY_RE.search(child.get_text(" ", strip=True))
                for child in element.find_all(["li", "div"])
            ):
                continue
            match = _FALLBACK_PRICE_RE.search(_CATEGORY_RE.sub("", text))
            if not match:
                continue
            try:
                price = normalize_bangla_number(match.group(1))
            except ValueError:
                continue
            metal, category, unit = _classify(text)
            if category == text:
                category = "UNKNOWN"
            results.append(ParsedPrice(metal, category, unit, price))

        return results


def latest_observation(db: Session, metal: str, category: str, unit: str) -> GoldPrice | None:
    return (
        db.query(GoldPrice)
        .filter(GoldPrice.metal == metal, GoldPrice.category == category, GoldPrice.unit == unit)
        .order_by(GoldPrice.fetched_at.desc(), GoldPrice.id.desc())
        .first()
    )


class GoldPriceSync(SyncService):
    """Appends one observation per parsed price with its change direction."""

    job_name = "gold-prices"

    def __init__(self, client: UpstreamClient | None = None, parser: GoldPriceParser | None = None):
        super().__init__(client)
        self.parser = parser or GoldPriceParser()

    def default_client(self) -> UpstreamClient:
        return scraper_client()

    async def fetch_units(self, key: str, options: SyncOptions) -> list[Any]:
        html = await self.client.fetch(self.settings.gold_price_source_url)
        if not isinstance(html, str):
            raise MappingError("Gold price page did not return HTML")
        items = self.parser.parse(html)
        if not items:
            raise MappingError("No prices found on the gold price page")
        return items

    async def process_unit(self, db: Session, unit: Any, state: dict, options: SyncOptions) -> None:
        previous = latest_observation(db, unit.metal, unit.category, unit.unit)
        change = detect_change_direction(previous.price if previous else None, unit.price)
        db.add(
            GoldPrice(
                metal=unit.metal,
                category=unit.category,
                unit=unit.unit,
                price=unit.price,
                currency=CURRENCY,
                change=change,
                source=self.settings.gold_price_source_url,
                raw_response=json.dumps(asdict(unit)),
                fetched_at=datetime.utcnow(),
            )
        )
        db.flush()

    def describe_unit(self, unit: Any) -> str:
        if isinstance(unit, ParsedPrice):
            return f"{unit.metal} {unit.category}/{unit.unit}"
        return str(unit)


def get_latest_prices(db: Session) -> list[dict[str, Any]]:
    """Most recent observation per (metal, category, unit); ties go to the newest row."""
    ranked = (
        db.query(
            GoldPrice.id.label("id"),
            func.row_number()
            .over(
                partition_by=[GoldPrice.metal, GoldPrice.category, GoldPrice.unit],
                order_by=[GoldPrice.fetched_at.desc(), GoldPrice.id.desc()],
            )
            .label("row_rank"),
        )
    ).subquery()
    rows = (
        db.query(GoldPrice)
        .join(ranked, GoldPrice.id == ranked.c.id)
        .filter(ranked.c.row_rank == 1)
        .order_by(GoldPrice.metal, GoldPrice.category, GoldPrice.unit)
        .all()
    )
    return [row.to_dict() for row in rows]


def get_price_history(
    db: Session,
    metal: str | None = None,
    category: str | None = None,
    unit: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> dict[str, Any]:
    query = db.query(GoldPrice)
    if metal:
        query = query.filter(GoldPrice.metal == metal)
    if category:
        query = query.filter(GoldPrice.category == category.upper())
    if unit:
        query = query.filter(GoldPrice.unit == unit)
    if since:
        query = query.filter(GoldPrice.fetched_at >= since)
    if until:
        query = query.filter(GoldPrice.fetched_at <= until)

    total = query.count()
    rows = query.order_by(GoldPrice.fetched_at.asc(), GoldPrice.id.asc()).offset(offset).limit(limit).all()
    return {
        "items": [row.to_dict() for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


class FinanceSyncTarget(SyncTarget):
    job_type = "finance"
    job_label = "Gold Price Update"

    def service_for(self, key: str) -> SyncService:
        if key != "gold-prices":
            raise ValueError(f"Unknown finance resource '{key}'")
        return GoldPriceSync()

    def default_resources(self) -> list[str]:
        return ["gold-prices"]
