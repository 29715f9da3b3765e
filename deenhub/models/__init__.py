"""Database models module."""

from deenhub.models.finance import GoldPrice
from deenhub.models.hadith import Hadith, HadithBook, HadithCollection, TranslationJob
from deenhub.models.monitoring import (
    ApiEndpointStat,
    ApiRequestLog,
    ClientIpStat,
    IpBlockingRule,
    RateLimitRule,
)
from deenhub.models.prayer import PrayerCalculationMethod, PrayerLocation, PrayerTime
from deenhub.models.quran import (
    QuranAudioFile,
    QuranChapter,
    QuranReciter,
    QuranVerse,
    TranslationResource,
    VerseTranslation,
)
from deenhub.models.sync import QueueJob, SyncRun

__all__ = [
    # Ledger and queue
    "SyncRun",
    "QueueJob",
    # Prayer
    "PrayerCalculationMethod",
    "PrayerLocation",
    "PrayerTime",
    # Quran and audio
    "QuranChapter",
    "QuranVerse",
    "TranslationResource",
    "VerseTranslation",
    "QuranReciter",
    "QuranAudioFile",
    # Hadith
    "HadithCollection",
    "HadithBook",
    "Hadith",
    "TranslationJob",
    # Finance
    "GoldPrice",
    # Abuse protection and telemetry
    "RateLimitRule",
    "IpBlockingRule",
    "ClientIpStat",
    "ApiEndpointStat",
    "ApiRequestLog",
]
