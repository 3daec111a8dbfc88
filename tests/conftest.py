"""Configuraciones comunes de pytest para el servicio de sincronización."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
import structlog
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Asegurar que `src/` esté en PYTHONPATH para importar `report_sync.*`
ROOT_PATH = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT_PATH / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from report_sync.exceptions import ReportProviderError  # noqa: E402
from report_sync.models import ImportStats, RemoteReportDescriptor, ReportCategory  # noqa: E402
from report_sync.services.database import init_schema  # noqa: E402
from report_sync.services.report_provider import ReportProviderClient  # noqa: E402
from report_sync.services.settings_store import InMemorySettingsStore  # noqa: E402


class FakeClock:
    """Reloj manual: nunca avanza solo."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeReportProvider(ReportProviderClient):
    """Proveedor en memoria que registra cada llamada.

    `responses` permite encolar listados sucesivos por categoría; un elemento
    que sea una excepción se lanza en lugar de devolverse.
    """

    def __init__(self, listings: Optional[Dict[ReportCategory, List[RemoteReportDescriptor]]] = None) -> None:
        self.listings: Dict[ReportCategory, List[RemoteReportDescriptor]] = dict(listings or {})
        self.responses: Dict[ReportCategory, List[object]] = {}
        self.list_error: Optional[Exception] = None
        self.fail_files: Set[str] = set()
        self.create_errors: Dict[ReportCategory, Exception] = {}
        self.rows_per_file = 2
        self.list_calls: List[ReportCategory] = []
        self.created: List[Tuple[ReportCategory, datetime, datetime]] = []
        self.processed: List[Tuple[ReportCategory, Optional[str], Optional[str]]] = []
        self.on_list: Optional[Callable[[ReportCategory], None]] = None

    def list_reports(self, category: ReportCategory) -> List[RemoteReportDescriptor]:
        self.list_calls.append(category)
        if self.on_list:
            self.on_list(category)
        if self.list_error is not None:
            raise self.list_error
        queued = self.responses.get(category)
        if queued:
            item = queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return list(item)  # type: ignore[arg-type]
        return list(self.listings.get(category, []))

    def create_report(self, category: ReportCategory, *, begin_date: datetime, end_date: datetime) -> None:
        self.created.append((category, begin_date, end_date))
        if category in self.create_errors:
            raise self.create_errors[category]

    def process_report(
        self,
        category: ReportCategory,
        *,
        file_name: Optional[str] = None,
        url: Optional[str] = None,
    ) -> ImportStats:
        self.processed.append((category, file_name, url))
        name = file_name or url or ""
        if name in self.fail_files:
            raise ReportProviderError(f"Descarga fallida: {name}", status_code=500, should_retry=True)
        rows = self.rows_per_file
        return ImportStats(total_rows=rows, valid_rows=rows, inserted_rows=rows)

    @property
    def processed_names(self) -> List[Optional[str]]:
        return [file_name or url for _, file_name, url in self.processed]


class FakeTimer:
    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function()


class FakeTimerFactory:
    """Crea temporizadores que solo disparan cuando la prueba lo pide."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


def make_report(
    file_name: Optional[str],
    created_at: datetime,
    *,
    status: str = "ready",
    begin_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> RemoteReportDescriptor:
    return RemoteReportDescriptor(
        file_name=file_name,
        status=status,
        date_created=created_at,
        begin_date=begin_date,
        end_date=end_date,
    )


@pytest.fixture(autouse=True)
def clean_structlog_context() -> None:
    """Resetea contexto para evitar fugas entre pruebas."""

    structlog.contextvars.clear_contextvars()


@pytest.fixture()
def sqlite_engine():
    """Engine SQLite en memoria compartido entre hilos, con el esquema creado."""

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def store() -> InMemorySettingsStore:
    return InMemorySettingsStore()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 15, 15, 0, tzinfo=timezone.utc))


@pytest.fixture()
def provider() -> FakeReportProvider:
    return FakeReportProvider()


@pytest.fixture()
def provider_factory() -> Callable[..., FakeReportProvider]:
    return FakeReportProvider


@pytest.fixture()
def timer_factory() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture()
def report_factory() -> Callable[..., RemoteReportDescriptor]:
    return make_report
