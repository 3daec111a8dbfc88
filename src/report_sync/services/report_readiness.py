"""Garantiza que exista el reporte diario de cada categoría.

Decide si hay que pedir la creación del reporte de la fecha objetivo (ayer, en
la zona horaria configurada, evaluado al mediodía local) y espera a que el
proveedor lo marque como listo. Un reporte que no queda listo a tiempo no es un
error de la corrida: se reintenta en el siguiente tick.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from report_sync.exceptions import ReportProviderError
from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.models import RemoteReportDescriptor, ReportCategory
from report_sync.services.report_provider import ReportProviderClient
from report_sync.services.sync_state import Clock, CooldownStore, utcnow

CREATE_COOLDOWN = timedelta(minutes=30)
POLL_INTERVAL_SECONDS = 30.0
POLL_TIMEOUT_SECONDS = 10 * 60.0

ACTION_ALREADY_READY = "already_ready"
ACTION_WAITED_EXISTING = "waited_existing"
ACTION_CREATED = "created"
ACTION_COOLDOWN = "cooldown"
ACTION_CREATE_FAILED = "create_failed"


@dataclass
class EnsureReportResult:
    category: ReportCategory
    target_date: datetime
    action: str
    ready: bool
    reports: List[RemoteReportDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "target_date": self.target_date.date().isoformat(),
            "action": self.action,
            "ready": self.ready,
        }


def find_covering(reports: List[RemoteReportDescriptor], target: datetime) -> List[RemoteReportDescriptor]:
    return [report for report in reports if report.covers(target)]


class ReportReadinessTracker:
    """Cooldown de creación y sondeo de disponibilidad por categoría."""

    def __init__(
        self,
        provider: ReportProviderClient,
        cooldown_store: CooldownStore,
        *,
        timezone_name: str = "America/Santiago",
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        cooldown: timedelta = CREATE_COOLDOWN,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        poll_timeout_seconds: float = POLL_TIMEOUT_SECONDS,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.provider = provider
        self.cooldown_store = cooldown_store
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self.sleep = sleep
        self.cooldown = cooldown
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.logger = logger or structlog.get_logger("report_sync")

    def target_date(self) -> datetime:
        """Ayer al mediodía local, para esquivar bordes de horario de verano."""
        local_now = self.clock().astimezone(self.tz)
        yesterday = local_now.date() - timedelta(days=1)
        return datetime(yesterday.year, yesterday.month, yesterday.day, 12, tzinfo=self.tz)

    def day_range(self, target: datetime) -> Tuple[datetime, datetime]:
        local = target.astimezone(self.tz)
        begin = local.replace(hour=0, minute=0, second=0, microsecond=0)
        end = local.replace(hour=23, minute=59, second=59, microsecond=999000)
        return begin, end

    def ensure_daily_report(
        self,
        category: ReportCategory,
        reports: List[RemoteReportDescriptor],
        *,
        log_context: Optional[dict] = None,
    ) -> EnsureReportResult:
        target = self.target_date()
        context = ensure_log_context(log_context, etapa="ensure_report", category=category)
        logger = bind_log_context(self.logger, context, target_date=target.date().isoformat())

        covering = find_covering(reports, target)
        if any(report.is_importable for report in covering):
            logger.debug("Reporte diario ya disponible")
            return EnsureReportResult(category, target, ACTION_ALREADY_READY, True, reports)

        if covering:
            logger.info("Reporte diario en generación, esperando disponibilidad")
            ready, latest = self.wait_until_ready(category, target, reports, log_context=context)
            return EnsureReportResult(category, target, ACTION_WAITED_EXISTING, ready, latest)

        now = self.clock()
        last_generated = self.cooldown_store.last_generated(category)
        if last_generated is not None and last_generated.astimezone(self.tz).date() == target.date():
            logger.warning(
                "Reporte marcado como generado pero ausente en el listado",
                last_generated=last_generated.isoformat(),
                error_code="report_missing_after_generation",
            )

        last_attempt = self.cooldown_store.last_attempt(category)
        if last_attempt is not None and now - last_attempt < self.cooldown:
            logger.warning(
                "Creación de reporte en cooldown, se omite en esta corrida",
                last_attempt=last_attempt.isoformat(),
                cooldown_seconds=int(self.cooldown.total_seconds()),
                error_code="create_report_cooldown",
            )
            return EnsureReportResult(category, target, ACTION_COOLDOWN, False, reports)

        # El intento cuenta para el cooldown aunque la llamada falle a mitad de camino
        self.cooldown_store.mark_attempt(category, now)
        begin, end = self.day_range(target)
        try:
            self.provider.create_report(category, begin_date=begin, end_date=end)
        except ReportProviderError as exc:
            logger.error(
                "Fallo al solicitar el reporte diario, se reintenta tras el cooldown",
                status_code=exc.status_code,
                error=str(exc),
                error_code="create_report_failed",
            )
            return EnsureReportResult(category, target, ACTION_CREATE_FAILED, False, reports)
        self.cooldown_store.mark_generated(category, target)
        logger.info("Reporte diario solicitado", begin=begin.isoformat(), end=end.isoformat())

        ready, latest = self.wait_until_ready(category, target, reports, log_context=context)
        return EnsureReportResult(category, target, ACTION_CREATED, ready, latest)

    def wait_until_ready(
        self,
        category: ReportCategory,
        target: datetime,
        reports: List[RemoteReportDescriptor],
        *,
        log_context: Optional[dict] = None,
    ) -> Tuple[bool, List[RemoteReportDescriptor]]:
        """Sondea el listado hasta que el reporte esté listo o se agote el tiempo.

        Devuelve el último listado observado, aunque el reporte no haya quedado listo.
        """
        logger = bind_log_context(self.logger, ensure_log_context(log_context, etapa="poll_report"))
        latest = reports
        attempts = max(1, int(self.poll_timeout_seconds // self.poll_interval_seconds))

        for attempt in range(1, attempts + 1):
            self.sleep(self.poll_interval_seconds)
            try:
                latest = self.provider.list_reports(category)
            except ReportProviderError as exc:
                logger.warning(
                    "Fallo al sondear reportes, se reintenta en el próximo intervalo",
                    attempt=attempt,
                    error=str(exc),
                    error_code="report_poll_failed",
                )
                continue
            if any(report.is_importable for report in find_covering(latest, target)):
                logger.info("Reporte diario listo", attempt=attempt)
                return True, latest

        logger.warning(
            "Reporte diario no quedó listo dentro del tiempo máximo",
            attempts=attempts,
            timeout_seconds=self.poll_timeout_seconds,
            error_code="report_not_ready_timeout",
        )
        return False, latest
