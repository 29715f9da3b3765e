"""Domain sync targets.

Each domain is a ``SyncTarget`` variant; adding a domain means adding an
entry to ``SYNC_TARGETS``.
"""

from deenhub.core.sync.audio import AudioSyncTarget
from deenhub.core.sync.base import JobContext, SyncOptions, SyncResult, SyncTarget
from deenhub.core.sync.finance import FinanceSyncTarget
from deenhub.core.sync.hadith import HadithSyncTarget
from deenhub.core.sync.prayer import PrayerSyncTarget
from deenhub.core.sync.quran import QuranSyncTarget

SYNC_TARGETS: dict[str, SyncTarget] = {
    target.job_type: target
    for target in (
        QuranSyncTarget(),
        PrayerSyncTarget(),
        AudioSyncTarget(),
        FinanceSyncTarget(),
        HadithSyncTarget(),
    )
}


def get_sync_target(domain: str) -> SyncTarget:
    try:
        return SYNC_TARGETS[domain]
    except KeyError:
        raise ValueError(f"Unknown sync domain '{domain}'") from None


async def sync_resource(
    domain: str,
    key: str,
    options: SyncOptions | dict | None = None,
    context: JobContext | None = None,
) -> SyncResult:
    """Sync one resource of one domain in-process."""
    if not isinstance(options, SyncOptions):
        options = SyncOptions.from_dict(options)
    return await get_sync_target(domain).sync_resource(key, options, context)


__all__ = [
    "SYNC_TARGETS",
    "SyncOptions",
    "SyncResult",
    "SyncTarget",
    "get_sync_target",
    "sync_resource",
]
