"""Gold and silver price observations."""

from datetime import datetime
from typing import Any

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base


class GoldPrice(Base):
    """One scraped price observation.

    ``change`` is derived at write time against the previous observation
    for the same (metal, category, unit) and never recomputed.
    """

    __tablename__ = "gold_prices"
    __table_args__ = (
        Index("idx_gold_prices_key_fetched", "metal", "category", "unit", "fetched_at"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    metal: Mapped[str] = Column(String(20), nullable=False)  # Gold, Silver
    category: Mapped[str] = Column(String(50), nullable=False)  # 22K, 21K, 18K, TRADITIONAL
    unit: Mapped[str] = Column(String(20), nullable=False)  # Vori, Gram
    price: Mapped[float] = Column(Float, nullable=False)
    currency: Mapped[str] = Column(String(10), default="BDT")
    change: Mapped[str | None] = Column(String(10))  # up, down, unchanged, NULL for first
    source: Mapped[str] = Column(String(500))
    raw_response: Mapped[str | None] = Column(Text)
    fetched_at: Mapped[datetime] = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<GoldPrice {self.metal} {self.category}/{self.unit}: {self.price}>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "metal": self.metal,
            "category": self.category,
            "unit": self.unit,
            "price": self.price,
            "currency": self.currency,
            "change": self.change,
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
        }
