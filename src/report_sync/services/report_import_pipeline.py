"""Importación idempotente de archivos de reporte listos.

Por categoría: filtra reportes listos con archivo, descarta los que no son más
nuevos que el watermark, ordena del más antiguo al más nuevo e importa hasta
`max_files_per_run` archivos que no estén en el registro. El estado (registro y
watermark) se escribe una sola vez al terminar el lote.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.models import (
    WEBHOOK_NAMESPACE,
    ImportStats,
    PendingWebhookFile,
    RemoteReportDescriptor,
    ReportCategory,
)
from report_sync.services.report_provider import ReportProviderClient
from report_sync.services.sync_state import ProcessedFileRegistry, WatermarkStore

MAX_FILES_PER_RUN = 4

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

FileCallback = Callable[[str, str], None]


@dataclass
class BatchImportResult:
    """Resultado de un lote (categoría o cola de webhooks)."""

    namespace: str
    imported: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
    watermark: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": list(self.imported),
            "failed": list(self.failed),
            "stats": self.stats.to_dict(),
            "watermark": self.watermark.isoformat() if self.watermark else None,
        }


class ReportImportPipeline:
    """Aplica el registro de archivos procesados y el watermark a cada lote."""

    def __init__(
        self,
        provider: ReportProviderClient,
        registry: ProcessedFileRegistry,
        watermarks: WatermarkStore,
        *,
        max_files_per_run: int = MAX_FILES_PER_RUN,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.watermarks = watermarks
        self.max_files_per_run = max_files_per_run
        self.logger = logger or structlog.get_logger("report_sync")

    def select_candidates(
        self,
        category: ReportCategory,
        reports: List[RemoteReportDescriptor],
    ) -> List[RemoteReportDescriptor]:
        watermark = self.watermarks.get(category)
        candidates = [report for report in reports if report.is_importable]
        if watermark is not None:
            candidates = [
                report for report in candidates
                if report.created_at is not None and report.created_at > watermark
            ]
        return sorted(candidates, key=lambda report: report.created_at or _OLDEST)

    def process_ready_reports(
        self,
        category: ReportCategory,
        reports: List[RemoteReportDescriptor],
        *,
        log_context: Optional[dict] = None,
        on_file: Optional[FileCallback] = None,
    ) -> BatchImportResult:
        context = ensure_log_context(log_context, etapa="import", category=category)
        logger = bind_log_context(self.logger, context)
        result = BatchImportResult(namespace=category.value)

        processed = self.registry.load(category)
        newest: Optional[datetime] = None
        advancing = True

        for report in self.select_candidates(category, reports):
            if len(result.imported) >= self.max_files_per_run:
                break
            file_name = report.file_name or ""
            if file_name in processed:
                # Ya importado en una corrida previa: el watermark puede pasar sobre él
                if advancing and report.created_at is not None:
                    newest = report.created_at if newest is None else max(newest, report.created_at)
                continue

            if on_file:
                on_file(category.value, file_name)

            try:
                stats = self.provider.process_report(category, file_name=file_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Fallo al importar archivo de reporte",
                    file_name=file_name,
                    error=str(exc),
                    error_code="report_import_failed",
                )
                result.failed.append({"file_name": file_name, "error": str(exc)})
                # Un archivo fallido frena el avance del watermark para que se reintente
                advancing = False
                continue

            self.registry.add(category, file_name)
            processed.add(file_name)
            result.imported.append(file_name)
            result.stats.add(stats)
            if advancing and report.created_at is not None:
                newest = report.created_at if newest is None else max(newest, report.created_at)

            logger.info(
                "Archivo de reporte importado",
                file_name=file_name,
                records_processed=stats.inserted_rows,
                records_skipped=stats.skipped_rows + stats.duplicate_rows,
            )

        self.registry.persist(category)
        if newest is not None and self.watermarks.advance(category, newest):
            result.watermark = newest
        return result

    def process_webhook_files(
        self,
        files: List[PendingWebhookFile],
        *,
        log_context: Optional[dict] = None,
        on_file: Optional[FileCallback] = None,
    ) -> BatchImportResult:
        """Importa archivos llegados por webhook bajo el registro sintético `webhook`.

        No avanza el watermark de ninguna categoría.
        """
        context = ensure_log_context(log_context, etapa="webhook_drain", category=WEBHOOK_NAMESPACE)
        logger = bind_log_context(self.logger, context)
        result = BatchImportResult(namespace=WEBHOOK_NAMESPACE)

        processed = self.registry.load(WEBHOOK_NAMESPACE)
        for item in files:
            if item.name in processed:
                logger.debug("Archivo de webhook ya importado", file_name=item.name)
                continue

            if on_file:
                on_file(WEBHOOK_NAMESPACE, item.name)

            try:
                stats = self.provider.process_report(item.category, url=item.url)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Fallo al importar archivo de webhook",
                    file_name=item.name,
                    report_category=item.category.value,
                    error=str(exc),
                    error_code="report_import_failed",
                )
                result.failed.append({"file_name": item.name, "error": str(exc)})
                continue

            self.registry.add(WEBHOOK_NAMESPACE, item.name)
            processed.add(item.name)
            result.imported.append(item.name)
            result.stats.add(stats)
            logger.info(
                "Archivo de webhook importado",
                file_name=item.name,
                report_category=item.category.value,
                records_processed=stats.inserted_rows,
            )

        self.registry.persist(WEBHOOK_NAMESPACE)
        return result
