"""Servicios del motor de sincronización de reportes Mercado Pago."""

from .distributed_lock import (  # noqa: F401
    DatabaseAdvisoryLock,
    DistributedLock,
    InMemoryDistributedLock,
    RedisDistributedLock,
    create_distributed_lock,
)
from .job_tracker import JobState, JobTracker  # noqa: F401
from .report_import_pipeline import BatchImportResult, ReportImportPipeline  # noqa: F401
from .report_importer import ReportImporter, SQLAlchemyReportImporter  # noqa: F401
from .report_provider import MercadoPagoReportClient, ReportProviderClient  # noqa: F401
from .report_readiness import EnsureReportResult, ReportReadinessTracker  # noqa: F401
from .scheduler import SyncScheduler  # noqa: F401
from .settings_store import InMemorySettingsStore, SettingsStore, SQLAlchemySettingsStore  # noqa: F401
from .sync_orchestrator import ReportSyncOrchestrator, build_orchestrator  # noqa: F401
from .sync_run_log import SQLAlchemySyncRunLog, SyncRunLog  # noqa: F401
from .sync_state import (  # noqa: F401
    CooldownStore,
    PendingWebhookQueue,
    ProcessedFileRegistry,
    SyncControlStore,
    WatermarkStore,
)
from .webhook_debouncer import WebhookDebouncer, WebhookResyncHandler  # noqa: F401

__all__ = [
    "DistributedLock",
    "InMemoryDistributedLock",
    "DatabaseAdvisoryLock",
    "RedisDistributedLock",
    "create_distributed_lock",
    "JobState",
    "JobTracker",
    "BatchImportResult",
    "ReportImportPipeline",
    "ReportImporter",
    "SQLAlchemyReportImporter",
    "ReportProviderClient",
    "MercadoPagoReportClient",
    "EnsureReportResult",
    "ReportReadinessTracker",
    "SyncScheduler",
    "SettingsStore",
    "InMemorySettingsStore",
    "SQLAlchemySettingsStore",
    "ReportSyncOrchestrator",
    "build_orchestrator",
    "SyncRunLog",
    "SQLAlchemySyncRunLog",
    "CooldownStore",
    "PendingWebhookQueue",
    "ProcessedFileRegistry",
    "SyncControlStore",
    "WatermarkStore",
    "WebhookDebouncer",
    "WebhookResyncHandler",
]
