"""Almacenamiento de filas crudas de reportes descargados.

El motor no interpreta el contenido de los reportes: cada fila del CSV se
guarda como JSON bajo su identificador de origen para que los módulos de
conciliación la procesen después.
"""

from __future__ import annotations

import csv
import io
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

import structlog
from sqlalchemy import Column, DateTime, Integer, String, Table, Text, UniqueConstraint, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from report_sync.models import ImportStats, ReportCategory
from report_sync.services.database import metadata

logger = structlog.get_logger("report_sync")

CSV_SEPARATORS = [";", ",", "\t"]

mp_report_rows_table = Table(
    "mp_report_rows",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("category", String(32), nullable=False),
    Column("source_id", String(191), nullable=False),
    Column("source_file", String(255), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("category", "source_id", name="uq_mp_report_rows_category_source"),
)


class ReportImporter(ABC):
    """Contrato para persistir el contenido de un reporte ya descargado."""

    @abstractmethod
    def import_rows(self, category: ReportCategory, content: bytes, *, source: str) -> ImportStats:
        raise NotImplementedError


def _decode(content: bytes) -> str:
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    return content.decode("utf-8", errors="replace")


def _sniff_separator(header_line: str) -> str:
    counts = {separator: header_line.count(separator) for separator in CSV_SEPARATORS}
    return max(counts, key=counts.get) if any(counts.values()) else ","


class SQLAlchemyReportImporter(ReportImporter):
    """Inserta filas nuevas y cuenta como duplicadas las que ya existen."""

    def __init__(self, engine: Engine, *, id_column: str = "SOURCE_ID") -> None:
        self.engine = engine
        self.id_column = id_column
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def import_rows(self, category: ReportCategory, content: bytes, *, source: str) -> ImportStats:
        stats = ImportStats()
        rows = self._parse_rows(content)
        stats.total_rows = len(rows)

        records: Dict[str, Dict[str, str]] = {}
        for row in rows:
            source_id = (row.get(self.id_column) or "").strip()
            if not source_id:
                stats.skipped_rows += 1
                continue
            if source_id in records:
                stats.duplicate_rows += 1
                continue
            records[source_id] = row
        stats.valid_rows = len(records)

        inserted, duplicates = self._persist_rows(category, records, source=source)
        stats.inserted_rows = inserted
        stats.duplicate_rows += duplicates

        logger.info(
            "Filas de reporte almacenadas",
            etapa="import_rows",
            category=category.value,
            file_name=source,
            records_processed=inserted,
            records_skipped=stats.skipped_rows + stats.duplicate_rows,
        )
        return stats

    def _parse_rows(self, content: bytes) -> List[Dict[str, str]]:
        text = _decode(content)
        if not text.strip():
            return []
        header_line = text.splitlines()[0]
        reader = csv.DictReader(io.StringIO(text), delimiter=_sniff_separator(header_line))
        return [
            {key.strip(): (value or "") for key, value in row.items() if key}
            for row in reader
        ]

    def _persist_rows(
        self,
        category: ReportCategory,
        records: Dict[str, Dict[str, str]],
        *,
        source: str,
    ) -> Tuple[int, int]:
        if not records:
            return 0, 0

        timestamp = datetime.utcnow()
        with self.session_factory() as session:
            existing_ids = self._fetch_existing_ids(session, category, records.keys())
            new_ids = [source_id for source_id in records if source_id not in existing_ids]

            if not new_ids:
                return 0, len(records)

            payload = [
                {
                    "category": category.value,
                    "source_id": source_id,
                    "source_file": source[:255],
                    "payload": json.dumps(records[source_id], ensure_ascii=False),
                    "created_at": timestamp,
                }
                for source_id in new_ids
            ]
            session.execute(insert(mp_report_rows_table), payload)
            session.commit()
            return len(new_ids), len(records) - len(new_ids)

    def _fetch_existing_ids(
        self,
        session: Session,
        category: ReportCategory,
        ids: Iterable[str],
    ) -> set[str]:
        id_list = list(ids)
        if not id_list:
            return set()
        result = session.execute(
            select(mp_report_rows_table.c.source_id).where(
                mp_report_rows_table.c.category == category.value,
                mp_report_rows_table.c.source_id.in_(id_list),
            )
        )
        return {row[0] for row in result}
