"""
Modelos de datos del motor de sincronización de reportes Mercado Pago
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

READY_STATUS_PATTERN = re.compile(r"ready|generated|available|finished|success", re.IGNORECASE)

# Espacio de nombres sintético para archivos recibidos por webhook
WEBHOOK_NAMESPACE = "webhook"


class ReportCategory(str, Enum):
    """Tipos de reporte financiero sincronizados de forma independiente"""
    RELEASE = "release"
    SETTLEMENT = "settlement"

    @property
    def api_path(self) -> str:
        return f"{self.value}_report"

    @classmethod
    def from_hint(cls, *hints: Optional[str]) -> Optional["ReportCategory"]:
        """Deduce la categoría a partir de un tipo o nombre de archivo."""
        for hint in hints:
            if not hint:
                continue
            lowered = hint.lower()
            for category in cls:
                if category.value in lowered:
                    return category
        return None


class SyncRunStatus(str, Enum):
    """Estados de una corrida en el log de auditoría"""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RemoteReportDescriptor(BaseModel):
    """Reporte conocido por el proveedor (efímero, nunca se persiste tal cual)"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    begin_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    file_name: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="date_created")

    @field_validator("begin_date", "end_date", "created_at", mode="before")
    @classmethod
    def parse_lenient_datetime(cls, v: Any) -> Optional[datetime]:
        """Fechas inválidas del proveedor se tratan como ausentes."""
        if v is None or v == "":
            return None
        if isinstance(v, datetime):
            return _as_utc(v)
        try:
            return _as_utc(datetime.fromisoformat(str(v).replace("Z", "+00:00")))
        except ValueError:
            return None

    @property
    def is_ready(self) -> bool:
        if not self.status:
            return False
        return bool(READY_STATUS_PATTERN.search(self.status))

    @property
    def is_importable(self) -> bool:
        return self.is_ready and bool(self.file_name)

    def covers(self, target: datetime) -> bool:
        if self.begin_date is None or self.end_date is None:
            return False
        target = _as_utc(target)
        return self.begin_date <= target <= self.end_date


@dataclass
class ImportStats:
    """Contadores de filas importadas; se suman campo a campo."""

    total_rows: int = 0
    valid_rows: int = 0
    inserted_rows: int = 0
    duplicate_rows: int = 0
    skipped_rows: int = 0
    error_count: int = 0

    def add(self, other: "ImportStats") -> "ImportStats":
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))
        return self

    def __add__(self, other: "ImportStats") -> "ImportStats":
        return ImportStats().add(self).add(other)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ImportStats":
        if not data:
            return cls()
        values = {}
        for item in fields(cls):
            try:
                values[item.name] = int(data.get(item.name) or 0)
            except (TypeError, ValueError):
                values[item.name] = 0
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class WebhookFile(BaseModel):
    """Archivo informado por una notificación push"""
    name: str
    type: Optional[str] = None
    url: str

    @property
    def is_csv(self) -> bool:
        return self.name.lower().endswith(".csv")


class WebhookNotification(BaseModel):
    """Payload del webhook de reportes (sin autenticación)"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_id: Optional[str] = Field(default=None, alias="user_id")
    files: List[WebhookFile] = Field(default_factory=list)

    @field_validator("account_id", mode="before")
    @classmethod
    def coerce_account_id(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v).strip() or None


class PendingWebhookFile(BaseModel):
    """Archivo en cola a la espera del próximo drenado"""
    name: str
    url: str
    category: ReportCategory
    received_at: datetime


@dataclass
class SyncRunResult:
    """Resumen de una orquestación completa"""

    trigger_source: str
    trigger_label: str
    status: SyncRunStatus
    run_id: Optional[int] = None
    stats: ImportStats = field(default_factory=ImportStats)
    per_category: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error_message: Optional[str] = None
    skipped_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger_source": self.trigger_source,
            "trigger_label": self.trigger_label,
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "per_category": self.per_category,
            "error_message": self.error_message,
            "skipped_reason": self.skipped_reason,
            "phase": self.phase,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
