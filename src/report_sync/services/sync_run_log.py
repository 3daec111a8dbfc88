"""Log de auditoría: una fila por intento de orquestación."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import structlog
from sqlalchemy import JSON, Column, DateTime, Integer, String, Table, Text, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from report_sync.exceptions import SyncRunLogError
from report_sync.models import SyncRunStatus
from report_sync.services.database import metadata

logger = structlog.get_logger("report_sync")

mp_sync_runs_table = Table(
    "mp_sync_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("trigger_source", String(32), nullable=False),
    Column("trigger_label", String(255), nullable=True),
    Column("status", String(16), nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("finished_at", DateTime, nullable=True),
    Column("inserted", Integer, nullable=False, default=0),
    Column("skipped", Integer, nullable=False, default=0),
    Column("excluded", Integer, nullable=False, default=0),
    Column("error_message", Text, nullable=True),
    Column("change_details", JSON, nullable=True),
)


class SyncRunLog(ABC):
    """Contrato del escritor del log de auditoría."""

    @abstractmethod
    def create(self, *, trigger_source: str, trigger_label: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def finalize(
        self,
        run_id: int,
        *,
        status: SyncRunStatus,
        inserted: int = 0,
        skipped: int = 0,
        excluded: int = 0,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        raise NotImplementedError


class SQLAlchemySyncRunLog(SyncRunLog):
    """Implementación sobre la tabla `mp_sync_runs`."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:  # noqa: BLE001
            session.rollback()
            raise SyncRunLogError(str(exc)) from exc
        finally:
            session.close()

    def create(self, *, trigger_source: str, trigger_label: str) -> int:
        with self._session() as session:
            result = session.execute(
                insert(mp_sync_runs_table).values(
                    trigger_source=trigger_source,
                    trigger_label=trigger_label[:255] if trigger_label else None,
                    status=SyncRunStatus.RUNNING.value,
                    started_at=datetime.utcnow(),
                    inserted=0,
                    skipped=0,
                    excluded=0,
                )
            )
            session.commit()
            return int(result.inserted_primary_key[0])

    def finalize(
        self,
        run_id: int,
        *,
        status: SyncRunStatus,
        inserted: int = 0,
        skipped: int = 0,
        excluded: int = 0,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if status == SyncRunStatus.RUNNING:
            raise ValueError("Una corrida no puede finalizarse en estado RUNNING")

        with self._session() as session:
            result = session.execute(
                update(mp_sync_runs_table)
                .where(
                    mp_sync_runs_table.c.id == run_id,
                    mp_sync_runs_table.c.status == SyncRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    finished_at=datetime.utcnow(),
                    inserted=inserted,
                    skipped=skipped,
                    excluded=excluded,
                    error_message=error_message,
                    change_details=details,
                )
            )
            session.commit()

        if not result.rowcount:
            logger.warning(
                "La corrida ya estaba finalizada o no existe",
                etapa="audit_log",
                run_id=run_id,
                error_code="sync_run_already_finalized",
            )
            return False
        return True

    def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        query = select(mp_sync_runs_table).order_by(mp_sync_runs_table.c.id.desc()).limit(limit)
        with self._session() as session:
            rows = session.execute(query).mappings().all()

        entries: List[Dict[str, Any]] = []
        for row in rows:
            entry = dict(row)
            for key in ("started_at", "finished_at"):
                if entry.get(key) is not None:
                    entry[key] = entry[key].isoformat()
            entries.append(entry)
        return entries

    def get(self, run_id: int) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.execute(
                select(mp_sync_runs_table).where(mp_sync_runs_table.c.id == run_id)
            ).mappings().first()
        return dict(row) if row else None
