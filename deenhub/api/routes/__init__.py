"""API routes module."""

from deenhub.api.routes.finance import router as finance_router
from deenhub.api.routes.jobs import router as jobs_router
from deenhub.api.routes.monitoring import router as monitoring_router
from deenhub.api.routes.sync import router as sync_router
from deenhub.api.routes.translations import router as translations_router

__all__ = [
    "sync_router",
    "jobs_router",
    "translations_router",
    "monitoring_router",
    "finance_router",
]
