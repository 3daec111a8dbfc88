"""Lock distribuido no bloqueante para serializar corridas en toda la flota."""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import redis
import structlog
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from report_sync.exceptions import DistributedLockError

logger = structlog.get_logger("report_sync")

_REDIS_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class DistributedLock(ABC):
    """Contrato: `try_acquire` nunca espera; `release` es idempotente y no lanza."""

    @abstractmethod
    def try_acquire(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def release(self) -> None:
        raise NotImplementedError

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


class InMemoryDistributedLock(DistributedLock):
    """Lock de proceso único; útil en desarrollo y pruebas."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held = False

    def try_acquire(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        if acquired:
            self._held = True
        return acquired

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self._lock.release()


class DatabaseAdvisoryLock(DistributedLock):
    """Advisory lock de PostgreSQL o `GET_LOCK` de MySQL sobre una conexión dedicada.

    El lock vive mientras la conexión siga abierta, por eso se mantiene
    reservada desde `try_acquire` hasta `release`.
    """

    def __init__(self, engine: Engine, lock_key: int) -> None:
        dialect = engine.dialect.name
        if dialect not in ("postgresql", "mysql", "mariadb"):
            raise DistributedLockError(
                f"El dialecto {dialect} no soporta advisory locks; use lock_provider=memory o redis"
            )
        self._engine = engine
        self._lock_key = lock_key
        self._dialect = dialect
        self._connection: Optional[Connection] = None
        self._guard = threading.Lock()

    @property
    def lock_name(self) -> str:
        return f"mp_report_sync_{self._lock_key}"

    def try_acquire(self) -> bool:
        with self._guard:
            if self._connection is not None:
                return False
            connection = self._engine.connect()
            try:
                if self._dialect == "postgresql":
                    acquired = connection.execute(
                        text("SELECT pg_try_advisory_lock(:key)"), {"key": self._lock_key}
                    ).scalar()
                else:
                    acquired = connection.execute(
                        text("SELECT GET_LOCK(:name, 0)"), {"name": self.lock_name}
                    ).scalar()
                connection.commit()
            except SQLAlchemyError:
                connection.close()
                raise
            if not acquired:
                connection.close()
                return False
            self._connection = connection
            return True

    def release(self) -> None:
        with self._guard:
            connection, self._connection = self._connection, None
            if connection is None:
                return
            try:
                if self._dialect == "postgresql":
                    connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self._lock_key})
                else:
                    connection.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": self.lock_name})
                connection.commit()
            except SQLAlchemyError as exc:
                logger.warning(
                    "No se pudo liberar el advisory lock",
                    etapa="lock",
                    lock_key=self._lock_key,
                    error=str(exc),
                    error_code="lock_release_failed",
                )
            finally:
                connection.close()


class RedisDistributedLock(DistributedLock):
    """Lock con `SET NX PX`; solo el dueño del token puede liberarlo."""

    def __init__(self, client: Any, lock_key: int, *, ttl_seconds: int) -> None:
        self._client = client
        self._key = f"mp:report-sync:lock:{lock_key}"
        self._ttl_ms = int(ttl_seconds * 1000)
        self._token: Optional[str] = None

    def try_acquire(self) -> bool:
        if self._token is not None:
            return False
        token = uuid.uuid4().hex
        acquired = self._client.set(self._key, token, nx=True, px=self._ttl_ms)
        if not acquired:
            return False
        self._token = token
        return True

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        try:
            self._client.eval(_REDIS_RELEASE_SCRIPT, 1, self._key, token)
        except redis.RedisError as exc:
            logger.warning(
                "No se pudo liberar el lock en Redis",
                etapa="lock",
                clave=self._key,
                error=str(exc),
                error_code="lock_release_failed",
            )


def create_distributed_lock(settings: Any, engine: Optional[Engine] = None) -> DistributedLock:
    """Crear el lock distribuido según `lock_provider`."""

    provider = (getattr(settings, "lock_provider", "database") or "database").lower()
    lock_key = int(getattr(settings, "mp_sync_lock_key", 724_001))

    if provider == "redis":
        redis_url = getattr(settings, "redis_url", None)
        if not redis_url:
            raise DistributedLockError("redis_url es requerido cuando lock_provider=redis")
        client = redis.Redis.from_url(redis_url, decode_responses=True)
        return RedisDistributedLock(client, lock_key, ttl_seconds=settings.lock_ttl_seconds)

    if provider == "database":
        if engine is None:
            raise DistributedLockError("Se requiere un engine SQLAlchemy cuando lock_provider=database")
        return DatabaseAdvisoryLock(engine, lock_key)

    if provider != "memory":
        logger.warning(
            "Proveedor de lock desconocido, se usa memoria",
            etapa="lock",
            provider=provider,
            error_code="lock_provider_unknown",
        )
    return InMemoryDistributedLock()
