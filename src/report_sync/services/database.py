"""Motor SQLAlchemy compartido por el almacén de configuración, el log y los importadores."""

from __future__ import annotations

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine

from report_sync.config import Settings

metadata = MetaData()


def create_sync_engine(settings: Settings) -> Engine:
    url = settings.resolved_database_url()
    if not url:
        raise ValueError("DATABASE_URL o DB_HOST son requeridos para el motor de sincronización")
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600)


def init_schema(engine: Engine) -> None:
    """Crea las tablas propias del motor si aún no existen."""
    # Registra las tablas en `metadata` antes de crear
    from report_sync.services import report_importer, settings_store, sync_run_log  # noqa: F401

    metadata.create_all(engine)
