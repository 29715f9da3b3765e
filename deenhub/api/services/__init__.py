"""API services module."""

from deenhub.api.services.api_monitoring_service import ApiMonitoringService
from deenhub.api.services.ip_blocking_service import IpBlockingService
from deenhub.api.services.ledger_service import SyncLedgerService
from deenhub.api.services.translation_service import TranslationService
from deenhub.api.services.upstream_client import UpstreamClient

__all__ = [
    "UpstreamClient",
    "SyncLedgerService",
    "TranslationService",
    "IpBlockingService",
    "ApiMonitoringService",
]
