"""Orquestación end-to-end de la sincronización de reportes Mercado Pago.

Una corrida recorre las fases::

    IDLE -> LOCK_ACQUIRED -> REPORTS_ENSURED -> WEBHOOKS_DRAINED
         -> FILES_IMPORTED -> FINALIZED

y termina en ABORTED si una excepción escapa de cualquier paso. El lock
distribuido se libera en todos los caminos de salida y la fila de auditoría
creada al tomar el lock se finaliza exactamente una vez.
"""

from __future__ import annotations

import random
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import structlog
from sqlalchemy.engine import Engine

from report_sync.config import Settings
from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.models import (
    ImportStats,
    RemoteReportDescriptor,
    ReportCategory,
    SyncRunResult,
    SyncRunStatus,
)
from report_sync.services.distributed_lock import DistributedLock, create_distributed_lock
from report_sync.services.job_tracker import JobTracker
from report_sync.services.report_import_pipeline import BatchImportResult, ReportImportPipeline
from report_sync.services.report_importer import SQLAlchemyReportImporter
from report_sync.services.report_provider import MercadoPagoReportClient, ReportProviderClient
from report_sync.services.report_readiness import ReportReadinessTracker
from report_sync.services.settings_store import SettingsStore, SQLAlchemySettingsStore
from report_sync.services.sync_run_log import SQLAlchemySyncRunLog, SyncRunLog
from report_sync.services.sync_state import (
    Clock,
    CooldownStore,
    PendingWebhookQueue,
    ProcessedFileRegistry,
    SyncControlStore,
    WatermarkStore,
    utcnow,
)

JOB_TYPE = "mp-auto-sync"
MAX_JITTER_SECONDS = 45.0


class RunPhase(str, Enum):
    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    REPORTS_ENSURED = "reports_ensured"
    WEBHOOKS_DRAINED = "webhooks_drained"
    FILES_IMPORTED = "files_imported"
    FINALIZED = "finalized"
    ABORTED = "aborted"


_PHASE_STEPS = {
    RunPhase.LOCK_ACQUIRED: 1,
    RunPhase.REPORTS_ENSURED: 2,
    RunPhase.WEBHOOKS_DRAINED: 3,
    RunPhase.FILES_IMPORTED: 4,
    RunPhase.FINALIZED: 5,
}


class ReportSyncOrchestrator:
    """Coordina lock, reportes diarios, cola de webhooks, importación y auditoría."""

    def __init__(
        self,
        *,
        provider: ReportProviderClient,
        lock: DistributedLock,
        run_log: SyncRunLog,
        readiness: ReportReadinessTracker,
        pipeline: ReportImportPipeline,
        pending_queue: PendingWebhookQueue,
        control: SyncControlStore,
        job_tracker: Optional[JobTracker] = None,
        categories: Sequence[ReportCategory] = (ReportCategory.RELEASE, ReportCategory.SETTLEMENT),
        max_jitter_seconds: float = MAX_JITTER_SECONDS,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.provider = provider
        self.lock = lock
        self.run_log = run_log
        self.readiness = readiness
        self.pipeline = pipeline
        self.pending_queue = pending_queue
        self.control = control
        self.job_tracker = job_tracker or JobTracker()
        self.categories = tuple(categories)
        self.max_jitter_seconds = max_jitter_seconds
        self.clock = clock
        self.sleep = sleep
        self.jitter = jitter
        self.logger = logger or structlog.get_logger("report_sync")

    def run(
        self,
        *,
        trigger_source: str = "scheduler",
        trigger_label: str = "",
        targeted: bool = False,
    ) -> SyncRunResult:
        started_at = self.clock()
        result = SyncRunResult(
            trigger_source=trigger_source,
            trigger_label=trigger_label or trigger_source,
            status=SyncRunStatus.SKIPPED,
            started_at=started_at,
        )
        context = ensure_log_context(
            etapa="inicio",
            trigger=result.trigger_label,
            correlation_id=uuid4().hex[:12],
        )
        logger = bind_log_context(self.logger, context)

        if not self.control.is_enabled():
            logger.warning("Sincronización automática deshabilitada, se omite", error_code="sync_disabled")
            result.skipped_reason = "sync_disabled"
            result.finished_at = self.clock()
            return result

        job_id = self.job_tracker.try_start_job(JOB_TYPE, total_steps=len(_PHASE_STEPS))
        if job_id is None:
            logger.warning("Ya hay una sincronización en curso en este proceso", error_code="sync_already_running")
            result.skipped_reason = "sync_already_running"
            result.finished_at = self.clock()
            return result
        self.job_tracker.update_progress(job_id, 0, "Inicio sincronización Mercado Pago")

        try:
            acquired = self.lock.try_acquire()
        except Exception as exc:  # noqa: BLE001
            logger.error("No se pudo consultar el lock distribuido", etapa="lock", error=str(exc), error_code="lock_unavailable")
            result.status = SyncRunStatus.ERROR
            result.error_message = str(exc)
            result.finished_at = self.clock()
            result.phase = RunPhase.ABORTED.value
            self.job_tracker.fail_job(job_id, str(exc))
            return result
        if not acquired:
            return self._skip_on_contention(result, job_id, logger)

        run_id: Optional[int] = None
        phase = RunPhase.LOCK_ACQUIRED
        try:
            run_id = self.run_log.create(trigger_source=trigger_source, trigger_label=result.trigger_label)
            result.run_id = run_id
            context["run_id"] = run_id
            logger = bind_log_context(self.logger, context)
            self._advance(job_id, phase, "Lock adquirido")
            logger.info("Sincronización iniciada", etapa="lock", targeted=targeted)

            self._apply_jitter(logger)

            listings, ensured = self._ensure_reports(context, targeted=targeted)
            phase = RunPhase.REPORTS_ENSURED
            self._advance(job_id, phase, "Reportes diarios verificados")

            webhook_batch = self._drain_webhooks(context, job_id)
            phase = RunPhase.WEBHOOKS_DRAINED
            self._advance(job_id, phase, "Cola de webhooks drenada")

            batches = self._import_categories(listings, context, job_id)
            phase = RunPhase.FILES_IMPORTED
            self._advance(job_id, phase, "Archivos importados")

            self._aggregate(result, batches, webhook_batch, listings, ensured)
            result.status = SyncRunStatus.SUCCESS
            result.finished_at = self.clock()
            self.control.mark_last_run(started_at)
            self.run_log.finalize(
                run_id,
                status=SyncRunStatus.SUCCESS,
                inserted=result.stats.inserted_rows,
                skipped=result.stats.skipped_rows,
                excluded=result.stats.duplicate_rows,
                details=self._details(result, phase=RunPhase.FINALIZED),
            )
            phase = RunPhase.FINALIZED
            result.phase = phase.value
            self.job_tracker.complete_job(job_id, result.to_dict())
            logger.info(
                "Sincronización finalizada",
                etapa="fin",
                records_processed=result.stats.inserted_rows,
                records_skipped=result.stats.skipped_rows + result.stats.duplicate_rows,
                files=sum(len(item.get("imported", [])) for item in result.per_category.values()),
            )
        except Exception as exc:  # noqa: BLE001
            result.status = SyncRunStatus.ERROR
            result.error_message = str(exc) or exc.__class__.__name__
            result.finished_at = self.clock()
            logger.error(
                "Error en la sincronización",
                etapa=phase.value,
                error=result.error_message,
                error_code="sync_run_failed",
                exc_info=True,
            )
            self._finalize_error(run_id, result, phase, logger)
            self.job_tracker.fail_job(job_id, result.error_message)
            phase = RunPhase.ABORTED
        finally:
            self.lock.release()

        result.phase = phase.value
        return result

    def _skip_on_contention(
        self,
        result: SyncRunResult,
        job_id: str,
        logger: structlog.stdlib.BoundLogger,
    ) -> SyncRunResult:
        logger.warning("Lock distribuido ocupado por otra instancia, se omite", etapa="lock", error_code="lock_not_acquired")
        result.skipped_reason = "lock_not_acquired"
        result.finished_at = self.clock()
        try:
            run_id = self.run_log.create(trigger_source=result.trigger_source, trigger_label=result.trigger_label)
            result.run_id = run_id
            self.run_log.finalize(
                run_id,
                status=SyncRunStatus.SKIPPED,
                error_message="lock_not_acquired",
                details={"reason": "lock_not_acquired"},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("No se pudo registrar la corrida omitida", error=str(exc), error_code="sync_run_log_failed")
        self.job_tracker.complete_job(job_id, {"skipped": "lock_not_acquired"})
        return result

    def _apply_jitter(self, logger: structlog.stdlib.BoundLogger) -> None:
        if self.max_jitter_seconds <= 0:
            return
        delay = self.jitter(0, self.max_jitter_seconds)
        if delay > 0:
            logger.debug("Aplicando jitter antes de sincronizar", delay_seconds=round(delay, 2))
            self.sleep(delay)

    def _ensure_reports(
        self,
        context: dict,
        *,
        targeted: bool,
    ) -> Tuple[Dict[ReportCategory, List[RemoteReportDescriptor]], Dict[str, Dict[str, Any]]]:
        # El listado inicial no tiene frontera por ítem: si falla, la corrida aborta
        listings = {category: self.provider.list_reports(category) for category in self.categories}
        ensured: Dict[str, Dict[str, Any]] = {}
        if targeted:
            return listings, ensured

        for category in self.categories:
            try:
                outcome = self.readiness.ensure_daily_report(category, listings[category], log_context=context)
            except Exception as exc:  # noqa: BLE001
                bind_log_context(self.logger, context, etapa="ensure_report", category=category.value).error(
                    "Fallo al asegurar el reporte diario, se continúa con el listado actual",
                    error=str(exc),
                    error_code="ensure_report_failed",
                )
                ensured[category.value] = {"action": "ensure_failed", "ready": False, "error": str(exc)}
                continue
            listings[category] = outcome.reports
            ensured[category.value] = outcome.to_dict()
        return listings, ensured

    def _drain_webhooks(self, context: dict, job_id: str) -> Optional[BatchImportResult]:
        pending = self.pending_queue.pending()
        if not pending:
            return None
        try:
            return self.pipeline.process_webhook_files(
                pending,
                log_context=context,
                on_file=lambda namespace, name: self.job_tracker.update_progress(
                    job_id, _PHASE_STEPS[RunPhase.REPORTS_ENSURED], f"Procesando {namespace}: {name}"
                ),
            )
        finally:
            self.pending_queue.remove(pending)

    def _import_categories(
        self,
        listings: Dict[ReportCategory, List[RemoteReportDescriptor]],
        context: dict,
        job_id: str,
    ) -> Dict[ReportCategory, BatchImportResult]:
        batches: Dict[ReportCategory, BatchImportResult] = {}
        for category in self.categories:
            batches[category] = self.pipeline.process_ready_reports(
                category,
                listings.get(category, []),
                log_context=context,
                on_file=lambda namespace, name: self.job_tracker.update_progress(
                    job_id, _PHASE_STEPS[RunPhase.WEBHOOKS_DRAINED], f"Procesando {namespace}: {name}"
                ),
            )
        return batches

    def _aggregate(
        self,
        result: SyncRunResult,
        batches: Dict[ReportCategory, BatchImportResult],
        webhook_batch: Optional[BatchImportResult],
        listings: Dict[ReportCategory, List[RemoteReportDescriptor]],
        ensured: Dict[str, Dict[str, Any]],
    ) -> None:
        total = ImportStats()
        for category, batch in batches.items():
            total.add(batch.stats)
            entry = batch.to_dict()
            entry["listed"] = len(listings.get(category, []))
            if category.value in ensured:
                entry["ensure"] = ensured[category.value]
            result.per_category[category.value] = entry
        if webhook_batch is not None:
            total.add(webhook_batch.stats)
            result.per_category[webhook_batch.namespace] = webhook_batch.to_dict()
        result.stats = total

    def _details(self, result: SyncRunResult, *, phase: RunPhase) -> Dict[str, Any]:
        return {
            "phase": phase.value,
            "stats": result.stats.to_dict(),
            "categories": result.per_category,
            "files": {
                namespace: entry.get("imported", [])
                for namespace, entry in result.per_category.items()
            },
        }

    def _finalize_error(
        self,
        run_id: Optional[int],
        result: SyncRunResult,
        phase: RunPhase,
        logger: structlog.stdlib.BoundLogger,
    ) -> None:
        if run_id is None:
            return
        try:
            self.run_log.finalize(
                run_id,
                status=SyncRunStatus.ERROR,
                inserted=result.stats.inserted_rows,
                skipped=result.stats.skipped_rows,
                excluded=result.stats.duplicate_rows,
                error_message=result.error_message,
                details={"last_phase": phase.value, "categories": result.per_category},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("No se pudo finalizar la corrida con error", error=str(exc), error_code="sync_run_log_failed")

    def _advance(self, job_id: str, phase: RunPhase, message: str) -> None:
        self.job_tracker.update_progress(job_id, _PHASE_STEPS[phase], message)


def build_orchestrator(
    settings: Settings,
    engine: Engine,
    *,
    job_tracker: Optional[JobTracker] = None,
    settings_store: Optional[SettingsStore] = None,
    provider: Optional[ReportProviderClient] = None,
    lock: Optional[DistributedLock] = None,
    pending_queue: Optional[PendingWebhookQueue] = None,
) -> ReportSyncOrchestrator:
    """Arma el orquestador con las implementaciones de producción."""

    store = settings_store or SQLAlchemySettingsStore(engine)
    if provider is None:
        importer = SQLAlchemyReportImporter(engine, id_column=settings.mp_report_id_column)
        provider = MercadoPagoReportClient(
            access_token=settings.mp_access_token or "",
            importer=importer,
            base_url=settings.mp_api_base_url,
            timeout_seconds=settings.mp_timeout_seconds,
        )

    readiness = ReportReadinessTracker(provider, CooldownStore(store), timezone_name=settings.mp_timezone)
    pipeline = ReportImportPipeline(
        provider,
        ProcessedFileRegistry(store),
        WatermarkStore(store),
        max_files_per_run=settings.mp_sync_max_files_per_run,
    )
    return ReportSyncOrchestrator(
        provider=provider,
        lock=lock or create_distributed_lock(settings, engine),
        run_log=SQLAlchemySyncRunLog(engine),
        readiness=readiness,
        pipeline=pipeline,
        pending_queue=pending_queue or PendingWebhookQueue(store),
        control=SyncControlStore(store),
        job_tracker=job_tracker,
        max_jitter_seconds=settings.mp_sync_max_jitter_seconds,
    )
