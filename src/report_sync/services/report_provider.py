"""Cliente HTTP para la API de reportes de Mercado Pago.

Expone el contrato mínimo que necesita el motor: listar reportes de una
categoría, solicitar la creación de uno nuevo y procesar un archivo listo
(desde el catálogo o desde una URL directa de webhook). El contenido del
archivo se entrega a un `ReportImporter`.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from report_sync.exceptions import ReportProviderError
from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.models import ImportStats, RemoteReportDescriptor, ReportCategory
from report_sync.services.report_importer import ReportImporter


class ReportProviderClient(ABC):
    """Contrato del proveedor externo de reportes."""

    @abstractmethod
    def list_reports(self, category: ReportCategory) -> List[RemoteReportDescriptor]:
        raise NotImplementedError

    @abstractmethod
    def create_report(self, category: ReportCategory, *, begin_date: datetime, end_date: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def process_report(
        self,
        category: ReportCategory,
        *,
        file_name: Optional[str] = None,
        url: Optional[str] = None,
    ) -> ImportStats:
        raise NotImplementedError


class MercadoPagoReportClient(ReportProviderClient):
    """Cliente síncrono para `/v1/account/{release,settlement}_report`."""

    def __init__(
        self,
        *,
        access_token: str,
        importer: ReportImporter,
        base_url: str = "https://api.mercadopago.com",
        timeout_seconds: int = 30,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        if not access_token:
            raise ValueError("Se requiere access_token para inicializar MercadoPagoReportClient")

        self._access_token = access_token
        self._importer = importer
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._logger = logger or structlog.get_logger("report_sync")

    def list_reports(self, category: ReportCategory) -> List[RemoteReportDescriptor]:
        response = self._request("GET", f"{self._endpoint(category)}/list", category=category)
        payload = response.json() if response.content else []
        if isinstance(payload, dict):
            payload = payload.get("results") or []
        reports: List[RemoteReportDescriptor] = []
        for item in payload:
            if isinstance(item, dict):
                reports.append(RemoteReportDescriptor.model_validate(item))
        return reports

    def create_report(self, category: ReportCategory, *, begin_date: datetime, end_date: datetime) -> None:
        body = {
            "begin_date": begin_date.isoformat(),
            "end_date": end_date.isoformat(),
        }
        self._request("POST", self._endpoint(category), category=category, json=body)

    def process_report(
        self,
        category: ReportCategory,
        *,
        file_name: Optional[str] = None,
        url: Optional[str] = None,
    ) -> ImportStats:
        if not file_name and not url:
            raise ValueError("process_report requiere file_name o url")

        target = url or f"{self._endpoint(category)}/{file_name}"
        response = self._request("GET", target, category=category, file_name=file_name or url)
        return self._importer.import_rows(category, response.content, source=file_name or url or "")

    def _endpoint(self, category: ReportCategory) -> str:
        return f"/v1/account/{category.api_path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        category: ReportCategory,
        file_name: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        context = ensure_log_context(etapa="mp_api", category=category, file_name=file_name)
        logger = bind_log_context(self._logger, context, method=method, path=path)

        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        start_time = time.perf_counter()
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            logger.error(
                "Timeout en la API de reportes",
                error_code="mp_api_timeout",
                duration_ms=self._elapsed_ms(start_time),
                exception=str(exc),
            )
            raise ReportProviderError(
                f"Timeout llamando {method} {path}", should_retry=True
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Error de red en la API de reportes",
                error_code="mp_api_network_error",
                duration_ms=self._elapsed_ms(start_time),
                exception=str(exc),
            )
            raise ReportProviderError(
                f"Error de red llamando {method} {path}: {exc}", should_retry=True
            ) from exc

        duration_ms = self._elapsed_ms(start_time)
        if response.status_code >= 400:
            logger.error(
                "La API de reportes respondió con error",
                error_code="mp_api_error",
                status_code=response.status_code,
                duration_ms=duration_ms,
                body=response.text[:500],
            )
            raise ReportProviderError(
                f"Mercado Pago API Error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
                should_retry=response.status_code >= 500 or response.status_code == 429,
            )

        logger.debug("Respuesta de la API de reportes", status_code=response.status_code, duration_ms=duration_ms)
        return response

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)
