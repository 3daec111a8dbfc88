"""Excepciones del motor de sincronización de reportes."""

from __future__ import annotations

from typing import Optional


class ReportSyncError(Exception):
    """Error genérico de la sincronización de reportes."""

    error_code: str = "report_sync_error"


class ReportProviderError(ReportSyncError):
    """Fallo al comunicarse con la API de reportes del proveedor."""

    error_code = "provider_request_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        should_retry: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.should_retry = should_retry


class SettingsStoreError(ReportSyncError):
    """Fallo de lectura/escritura en el almacén de configuración."""

    error_code = "settings_store_failed"


class DistributedLockError(ReportSyncError):
    """Proveedor de lock mal configurado o no soportado."""

    error_code = "lock_misconfigured"


class SyncRunLogError(ReportSyncError):
    """Fallo al escribir el log de auditoría de corridas."""

    error_code = "sync_run_log_failed"
