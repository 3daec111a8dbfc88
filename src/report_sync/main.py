"""
Servicio de sincronización de reportes Mercado Pago
API HTTP: webhook de reportes, disparo manual, estado y log de corridas
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from report_sync.config import configure_logging, get_settings
from report_sync.exceptions import ReportProviderError, ReportSyncError
from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.models import PendingWebhookFile, ReportCategory, WebhookNotification
from report_sync.services.database import create_sync_engine, init_schema
from report_sync.services.job_tracker import JobTracker
from report_sync.services.report_provider import ReportProviderClient
from report_sync.services.scheduler import SyncScheduler
from report_sync.services.settings_store import SettingsStore, SQLAlchemySettingsStore
from report_sync.services.sync_orchestrator import JOB_TYPE, ReportSyncOrchestrator, build_orchestrator
from report_sync.services.sync_run_log import SQLAlchemySyncRunLog, SyncRunLog
from report_sync.services.sync_state import PendingWebhookQueue, SyncControlStore, WatermarkStore, utcnow
from report_sync.services.webhook_debouncer import WebhookDebouncer, WebhookResyncHandler


engine: Optional[Engine] = None
settings_store: Optional[SettingsStore] = None
sync_run_log: Optional[SyncRunLog] = None
pending_queue: Optional[PendingWebhookQueue] = None
job_tracker: JobTracker = JobTracker()
orchestrator: Optional[ReportSyncOrchestrator] = None
webhook_debouncer: Optional[WebhookDebouncer] = None
sync_scheduler: Optional[SyncScheduler] = None
logger = structlog.get_logger("app.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configuración del ciclo de vida de la aplicación"""
    global engine, settings_store, sync_run_log, pending_queue, orchestrator, webhook_debouncer, sync_scheduler

    settings = get_settings()
    configure_logging(settings)

    startup_logger = bind_log_context(logger, ensure_log_context(etapa="startup"))
    startup_logger.info("Iniciando servicio de sincronización Mercado Pago")

    try:
        engine = create_sync_engine(settings)
        init_schema(engine)
    except (ValueError, SQLAlchemyError) as e:
        # No fallar el startup: los endpoints responden 503 hasta corregir la configuración
        startup_logger.error("Base de datos no disponible, motor deshabilitado", error=str(e), error_code="database_unavailable")
        engine = None

    if engine is not None:
        settings_store = SQLAlchemySettingsStore(engine)
        sync_run_log = SQLAlchemySyncRunLog(engine)
        pending_queue = PendingWebhookQueue(settings_store)
        try:
            orchestrator = build_orchestrator(
                settings,
                engine,
                job_tracker=job_tracker,
                settings_store=settings_store,
                pending_queue=pending_queue,
            )
        except (ReportSyncError, ValueError) as e:
            startup_logger.error("No se pudo construir el orquestador", error=str(e), error_code="orchestrator_unavailable")
            orchestrator = None

    if orchestrator is not None:
        webhook_debouncer = WebhookDebouncer(
            WebhookResyncHandler(orchestrator.run, known_account_ids=[settings.mp_user_id or ""]),
            window_seconds=settings.mp_webhook_debounce_seconds,
        )
        if settings.mp_sync_scheduler_enabled:
            sync_scheduler = SyncScheduler.from_settings(orchestrator.run, settings)
            sync_scheduler.start()
        else:
            startup_logger.info("Scheduler deshabilitado por configuración")

    yield

    # Shutdown
    shutdown_logger = bind_log_context(logger, ensure_log_context(etapa="shutdown"))
    shutdown_logger.info("Cerrando servicio de sincronización Mercado Pago")
    if sync_scheduler:
        sync_scheduler.stop()
    if webhook_debouncer:
        webhook_debouncer.shutdown()
    if engine is not None:
        engine.dispose()

    sync_scheduler = None
    webhook_debouncer = None
    orchestrator = None


# Crear aplicación FastAPI
app = FastAPI(
    title="MP Report Sync",
    description="Sincronización recurrente de reportes de liberaciones y liquidaciones de Mercado Pago",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SyncEnabledRequest(BaseModel):
    enabled: bool = Field(..., description="Activa o desactiva la sincronización automática")


class SyncTriggerResponse(BaseModel):
    accepted: bool
    trigger: str


class WebhookResponse(BaseModel):
    queued: int
    ignored: int


class CreateReportRequest(BaseModel):
    category: ReportCategory = ReportCategory.RELEASE
    begin_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def validate_range(self) -> "CreateReportRequest":
        if self.end_date < self.begin_date:
            raise ValueError("end_date debe ser posterior a begin_date")
        return self


def get_settings_store() -> SettingsStore:
    if settings_store is None:
        raise HTTPException(status_code=503, detail="Almacén de configuración no disponible")
    return settings_store


def get_sync_run_log() -> SyncRunLog:
    if sync_run_log is None:
        raise HTTPException(status_code=503, detail="Log de corridas no disponible")
    return sync_run_log


def get_pending_queue() -> PendingWebhookQueue:
    if pending_queue is None:
        raise HTTPException(status_code=503, detail="Cola de webhooks no disponible")
    return pending_queue


def get_orchestrator() -> ReportSyncOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Motor de sincronización no inicializado")
    return orchestrator


def get_webhook_debouncer() -> WebhookDebouncer:
    if webhook_debouncer is None:
        raise HTTPException(status_code=503, detail="Receptor de webhooks no inicializado")
    return webhook_debouncer


def get_report_provider(
    engine_orchestrator: ReportSyncOrchestrator = Depends(get_orchestrator),
) -> ReportProviderClient:
    return engine_orchestrator.provider


def get_job_tracker() -> JobTracker:
    return job_tracker


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "mp-report-sync",
        "version": "1.0.0",
        "scheduler_running": bool(sync_scheduler and sync_scheduler.running),
    }


@app.post("/mercadopago/webhook", response_model=WebhookResponse)
def mercadopago_webhook(
    payload: Any = Body(default=None),
    queue: PendingWebhookQueue = Depends(get_pending_queue),
    debouncer: WebhookDebouncer = Depends(get_webhook_debouncer),
) -> WebhookResponse:
    """Encola los CSV notificados y arma la resincronización diferida.

    Responde 200 siempre: el proveedor reintenta ante cualquier otro código.
    """
    webhook_logger = bind_log_context(logger, ensure_log_context(etapa="webhook", trigger="webhook"))
    try:
        notification = WebhookNotification.model_validate(payload or {})
    except ValidationError as e:
        webhook_logger.warning("Payload de webhook inválido", error=str(e), error_code="webhook_payload_invalid")
        return WebhookResponse(queued=0, ignored=0)

    received_at = utcnow()
    csv_files = [
        PendingWebhookFile(
            name=item.name,
            url=item.url,
            category=ReportCategory.from_hint(item.type, item.name) or ReportCategory.RELEASE,
            received_at=received_at,
        )
        for item in notification.files
        if item.is_csv
    ]
    ignored = len(notification.files) - len(csv_files)

    queued = 0
    try:
        queued = queue.enqueue(csv_files)
    except ReportSyncError as e:
        webhook_logger.error("No se pudo encolar archivos de webhook", error=str(e), error_code="webhook_enqueue_failed")

    debouncer.on_notification(notification.account_id)
    webhook_logger.info("Webhook recibido", queued=queued, ignored=ignored)
    return WebhookResponse(queued=queued, ignored=ignored)


@app.post("/mercadopago/sync", status_code=202, response_model=SyncTriggerResponse)
def trigger_sync(
    background_tasks: BackgroundTasks,
    engine_orchestrator: ReportSyncOrchestrator = Depends(get_orchestrator),
) -> SyncTriggerResponse:
    """Dispara una corrida manual fuera del request; el lock decide si procede."""
    label = "manual:api"
    background_tasks.add_task(engine_orchestrator.run, trigger_source="manual", trigger_label=label)
    return SyncTriggerResponse(accepted=True, trigger=label)


@app.get("/mercadopago/sync/status")
def sync_status(
    store: SettingsStore = Depends(get_settings_store),
    queue: PendingWebhookQueue = Depends(get_pending_queue),
    tracker: JobTracker = Depends(get_job_tracker),
):
    control = SyncControlStore(store)
    watermarks = WatermarkStore(store)
    active = tracker.active_jobs(JOB_TYPE)
    return {
        "enabled": control.is_enabled(),
        "last_run": _isoformat(control.last_run()),
        "active_job": active[0].to_dict() if active else None,
        "watermarks": {
            category.value: _isoformat(watermarks.get(category)) for category in ReportCategory
        },
        "pending_webhook_files": len(queue.pending()),
    }


@app.put("/mercadopago/sync/enabled")
def set_sync_enabled(
    payload: SyncEnabledRequest,
    store: SettingsStore = Depends(get_settings_store),
):
    SyncControlStore(store).set_enabled(payload.enabled)
    bind_log_context(logger, ensure_log_context(etapa="control")).info(
        "Bandera de sincronización automática actualizada", enabled=payload.enabled
    )
    return {"enabled": payload.enabled}


@app.get("/mercadopago/sync/logs")
def sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    run_log: SyncRunLog = Depends(get_sync_run_log),
):
    try:
        return {"runs": run_log.list_recent(limit)}
    except ReportSyncError as e:
        bind_log_context(logger, ensure_log_context(etapa="audit_log")).error(
            "Error consultando log de corridas", error=str(e), error_code="sync_run_log_failed"
        )
        raise HTTPException(status_code=500, detail=f"Error consultando log de corridas: {str(e)}")


@app.get("/mercadopago/reports")
def list_reports(
    category: ReportCategory = Query(default=ReportCategory.RELEASE),
    provider: ReportProviderClient = Depends(get_report_provider),
):
    """Lista los reportes que el proveedor tiene para la categoría."""
    try:
        reports = provider.list_reports(category)
    except ReportProviderError as e:
        bind_log_context(logger, ensure_log_context(etapa="reports", category=category)).error(
            "Error listando reportes del proveedor", error=str(e), error_code="provider_list_failed"
        )
        raise HTTPException(status_code=502, detail=f"Error consultando Mercado Pago: {str(e)}")
    return {
        "category": category.value,
        "reports": [
            {**report.model_dump(mode="json"), "ready": report.is_ready}
            for report in reports
        ],
    }


@app.post("/mercadopago/reports", status_code=201)
def create_report(
    payload: CreateReportRequest,
    provider: ReportProviderClient = Depends(get_report_provider),
):
    """Solicita un reporte para un rango arbitrario (por ejemplo, recuperar un día perdido)."""
    report_logger = bind_log_context(logger, ensure_log_context(etapa="reports", category=payload.category))
    try:
        provider.create_report(payload.category, begin_date=payload.begin_date, end_date=payload.end_date)
    except ReportProviderError as e:
        report_logger.error("Error solicitando reporte al proveedor", error=str(e), error_code="create_report_failed")
        raise HTTPException(status_code=502, detail=f"Error consultando Mercado Pago: {str(e)}")
    report_logger.info(
        "Reporte solicitado manualmente",
        begin=payload.begin_date.isoformat(),
        end=payload.end_date.isoformat(),
    )
    return {
        "requested": True,
        "category": payload.category.value,
        "begin_date": payload.begin_date.isoformat(),
        "end_date": payload.end_date.isoformat(),
    }

@app.get("/jobs/{job_id}")
def get_job(job_id: str, tracker: JobTracker = Depends(get_job_tracker)):
    job = tracker.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Trabajo no encontrado")
    return job.to_dict()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "report_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
