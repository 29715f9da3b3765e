"""Core module initialization.

Only leaf modules are re-exported here; the scheduler, worker and sync
packages import services and are imported directly.
"""

from deenhub.core.cache import (
    cache_manager,
    cached,
    invalidate_on_sync_completion,
)
from deenhub.core.config import Settings, get_settings
from deenhub.core.database import (
    Base,
    get_db,
    get_db_context,
    get_db_stats,
    init_db,
    upsert,
)
from deenhub.core.exceptions import (
    DeenHubError,
    InvalidJobTransition,
    JobInterrupted,
    MappingError,
    StorageError,
    UpstreamError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "get_db_context",
    "get_db_stats",
    "init_db",
    "upsert",
    # Cache
    "cache_manager",
    "cached",
    "invalidate_on_sync_completion",
    # Errors
    "DeenHubError",
    "UpstreamError",
    "MappingError",
    "StorageError",
    "JobInterrupted",
    "InvalidJobTransition",
]
