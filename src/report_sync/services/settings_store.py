"""Almacén clave→texto usado como primitiva de persistencia del motor."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional

from sqlalchemy import Column, DateTime, String, Table, Text, select, update, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from report_sync.exceptions import SettingsStoreError
from report_sync.services.database import metadata

app_settings_table = Table(
    "app_settings",
    metadata,
    Column("key", String(191), primary_key=True),
    Column("value", Text, nullable=True),
    Column("updated_at", DateTime, nullable=False),
)


class SettingsStore(ABC):
    """Mapa durable clave→texto, sin transacciones ni locks propios."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        raise NotImplementedError


class InMemorySettingsStore(SettingsStore):
    """Implementación en memoria, útil para despliegues de un solo proceso y pruebas."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._values)


class SQLAlchemySettingsStore(SettingsStore):
    """Almacén respaldado por la tabla `app_settings`."""

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
            raise SettingsStoreError(str(exc)) from exc
        finally:
            session.close()

    def get(self, key: str) -> Optional[str]:
        with self._session() as session:
            result = session.execute(
                select(app_settings_table.c.value).where(app_settings_table.c.key == key)
            ).first()
        return result[0] if result else None

    def set(self, key: str, value: str) -> None:
        timestamp = datetime.utcnow()
        with self._session() as session:
            updated = session.execute(
                update(app_settings_table)
                .where(app_settings_table.c.key == key)
                .values(value=value, updated_at=timestamp)
            )
            if not updated.rowcount:
                session.execute(
                    insert(app_settings_table).values(key=key, value=value, updated_at=timestamp)
                )
            session.commit()
