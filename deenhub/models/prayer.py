"""Prayer calculation method, location and daily timings models."""

from datetime import date, datetime

from sqlalchemy import Column, Date, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped

from deenhub.core.database import Base


class PrayerCalculationMethod(Base):
    """Calculation method published by Aladhan."""

    __tablename__ = "prayer_calculation_methods"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    method_code: Mapped[str] = Column(String(50), unique=True, nullable=False)
    method_name: Mapped[str] = Column(String(255), nullable=False)
    fajr_angle: Mapped[float] = Column(Float, default=18.0)
    isha_angle: Mapped[float] = Column(Float, default=18.0)
    maghrib_angle: Mapped[float] = Column(Float, default=0.0)
    midnight_mode: Mapped[str] = Column(String(20), default="Standard")
    source: Mapped[str] = Column(String(50), default="aladhan")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<PrayerCalculationMethod {self.method_code}>"


class PrayerLocation(Base):
    """A coordinate pair whose timings are kept warm."""

    __tablename__ = "prayer_locations"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    loc_key: Mapped[str] = Column(String(32), unique=True, nullable=False)
    latitude: Mapped[float] = Column(Float, nullable=False)
    longitude: Mapped[float] = Column(Float, nullable=False)
    qibla_direction: Mapped[float | None] = Column(Float)  # degrees from true north
    timezone: Mapped[str | None] = Column(String(64))
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<PrayerLocation {self.loc_key} ({self.latitude}, {self.longitude})>"


class PrayerTime(Base):
    """Daily timings for a location, method and school."""

    __tablename__ = "prayer_times"
    __table_args__ = (
        UniqueConstraint("loc_key", "prayer_date", "method", "school", name="uq_prayer_times_key"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    loc_key: Mapped[str] = Column(String(32), nullable=False)
    prayer_date: Mapped[date] = Column(Date, nullable=False)
    method: Mapped[str] = Column(String(50), nullable=False)
    school: Mapped[str] = Column(String(20), nullable=False)
    fajr: Mapped[str] = Column(String(8), nullable=False)
    sunrise: Mapped[str | None] = Column(String(8))
    dhuhr: Mapped[str] = Column(String(8), nullable=False)
    asr: Mapped[str] = Column(String(8), nullable=False)
    maghrib: Mapped[str] = Column(String(8), nullable=False)
    isha: Mapped[str] = Column(String(8), nullable=False)
    imsak: Mapped[str | None] = Column(String(8))
    midnight: Mapped[str | None] = Column(String(8))
    timezone: Mapped[str | None] = Column(String(64))
    source: Mapped[str] = Column(String(50), default="aladhan")
    raw_response: Mapped[str | None] = Column(Text)
    last_synced: Mapped[datetime] = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<PrayerTime {self.loc_key} {self.prayer_date} {self.method}/{self.school}>"
