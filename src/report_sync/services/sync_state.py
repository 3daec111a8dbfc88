"""Repositorios tipados sobre el `SettingsStore` para el estado del motor.

Cada preocupación (registro de archivos procesados, cooldown de creación,
watermark, cola de webhooks y banderas de control) tiene su propio accesor para
que ningún llamador tenga que parsear JSON a mano. No hay transacciones: la
consistencia entre procesos depende del lock distribuido del orquestador.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

import structlog
from pydantic import ValidationError

from report_sync.models import PendingWebhookFile, ReportCategory
from report_sync.services.settings_store import SettingsStore

logger = structlog.get_logger("report_sync")

Clock = Callable[[], datetime]
Namespace = Union[ReportCategory, str]

PROCESSED_FILES_RETENTION = timedelta(days=45)
MAX_PROCESSED_FILES = 250

SETTINGS_KEYS = {
    "last_generated": "mp:lastGenerated:{namespace}",
    "last_generate_attempt": "mp:lastGenerateAttempt:{namespace}",
    "processed_files": "mp:processedFiles:{namespace}",
    "last_processed_at": "mp:lastProcessedAt:{namespace}",
    "last_run": "mp:lastAutoSyncRun",
    "pending_webhooks": "mp:pendingWebhookFiles",
    "auto_sync_enabled": "mp:autoSyncEnabled",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _namespace(value: Namespace) -> str:
    return value.value if isinstance(value, ReportCategory) else str(value)


def _key(name: str, namespace: Namespace) -> str:
    return SETTINGS_KEYS[name].format(namespace=_namespace(namespace))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(store: SettingsStore, key: str) -> object:
    raw = store.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(
            "Valor JSON inválido en configuración, se ignora",
            etapa="estado",
            clave=key,
            error_code="settings_payload_invalid",
        )
        return None


class ProcessedFileRegistry:
    """Registro acotado de archivos ya importados, por categoría.

    Se persiste como lista ordenada ``[{"name", "importedAt"}]``. Al cargar se
    descartan entradas más antiguas que la retención (las entradas sin fecha,
    de formatos previos, no expiran). Al guardar se conservan solo las
    ``max_entries`` más recientes.
    """

    def __init__(
        self,
        store: SettingsStore,
        *,
        clock: Clock = utcnow,
        retention: timedelta = PROCESSED_FILES_RETENTION,
        max_entries: int = MAX_PROCESSED_FILES,
    ) -> None:
        self._store = store
        self._clock = clock
        self._retention = retention
        self._max_entries = max_entries
        self._entries: Dict[str, Dict[str, Optional[datetime]]] = {}

    def load(self, namespace: Namespace) -> Set[str]:
        payload = _load_json(self._store, _key("processed_files", namespace))
        cutoff = self._clock() - self._retention
        entries: Dict[str, Optional[datetime]] = {}

        for item in payload if isinstance(payload, list) else []:
            if isinstance(item, str):
                name, imported_at = item, None
            elif isinstance(item, dict) and item.get("name"):
                name = str(item["name"])
                imported_at = parse_timestamp(item.get("importedAt"))
            else:
                continue
            if imported_at is not None and imported_at < cutoff:
                continue
            entries[name] = imported_at

        self._entries[_namespace(namespace)] = entries
        return set(entries)

    def contains(self, namespace: Namespace, file_name: str) -> bool:
        return file_name in self._ensure_loaded(namespace)

    def add(self, namespace: Namespace, file_name: str) -> None:
        entries = self._ensure_loaded(namespace)
        entries.pop(file_name, None)
        entries[file_name] = self._clock()

    def persist(self, namespace: Namespace) -> None:
        entries = self._ensure_loaded(namespace)
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        ordered = sorted(entries.items(), key=lambda item: item[1] or oldest)
        trimmed = ordered[-self._max_entries:] if self._max_entries else []
        payload = [
            {"name": name, "importedAt": imported_at.isoformat() if imported_at else None}
            for name, imported_at in trimmed
        ]
        self._store.set(_key("processed_files", namespace), json.dumps(payload))
        self._entries[_namespace(namespace)] = dict(trimmed)

    def _ensure_loaded(self, namespace: Namespace) -> Dict[str, Optional[datetime]]:
        if _namespace(namespace) not in self._entries:
            self.load(namespace)
        return self._entries[_namespace(namespace)]


class CooldownStore:
    """Fechas del último intento de creación y de la última generación por categoría."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def last_attempt(self, category: ReportCategory) -> Optional[datetime]:
        return parse_timestamp(self._store.get(_key("last_generate_attempt", category)))

    def mark_attempt(self, category: ReportCategory, when: datetime) -> None:
        self._store.set(_key("last_generate_attempt", category), when.isoformat())

    def last_generated(self, category: ReportCategory) -> Optional[datetime]:
        return parse_timestamp(self._store.get(_key("last_generated", category)))

    def mark_generated(self, category: ReportCategory, when: datetime) -> None:
        self._store.set(_key("last_generated", category), when.isoformat())


class WatermarkStore:
    """`lastProcessedAt` por categoría; solo avanza hacia adelante."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def get(self, category: ReportCategory) -> Optional[datetime]:
        return parse_timestamp(self._store.get(_key("last_processed_at", category)))

    def advance(self, category: ReportCategory, candidate: datetime) -> bool:
        current = self.get(category)
        if current is not None and candidate <= current:
            return False
        self._store.set(_key("last_processed_at", category), candidate.isoformat())
        return True


class PendingWebhookQueue:
    """Cola de archivos recibidos por webhook, persistida como arreglo JSON."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store
        self._lock = threading.Lock()

    def enqueue(self, files: Iterable[PendingWebhookFile]) -> int:
        with self._lock:
            pending = self._read()
            known = {(item.name, item.url) for item in pending}
            added = 0
            for item in files:
                if (item.name, item.url) in known:
                    continue
                pending.append(item)
                known.add((item.name, item.url))
                added += 1
            if added:
                self._write(pending)
            return added

    def pending(self) -> List[PendingWebhookFile]:
        with self._lock:
            return self._read()

    def remove(self, drained: Iterable[PendingWebhookFile]) -> None:
        """Quita los archivos drenados, conservando los que llegaron durante el drenado."""
        drained_keys = {(item.name, item.url) for item in drained}
        with self._lock:
            remaining = [item for item in self._read() if (item.name, item.url) not in drained_keys]
            self._write(remaining)

    def _read(self) -> List[PendingWebhookFile]:
        payload = _load_json(self._store, SETTINGS_KEYS["pending_webhooks"])
        items: List[PendingWebhookFile] = []
        for raw in payload if isinstance(payload, list) else []:
            try:
                items.append(PendingWebhookFile.model_validate(raw))
            except ValidationError:
                logger.warning(
                    "Archivo de webhook en cola con formato inválido",
                    etapa="webhook_queue",
                    error_code="webhook_payload_invalid",
                )
        return items

    def _write(self, items: List[PendingWebhookFile]) -> None:
        payload = [item.model_dump(mode="json") for item in items]
        self._store.set(SETTINGS_KEYS["pending_webhooks"], json.dumps(payload))


class SyncControlStore:
    """Bandera de auto-sincronización y marca de la última corrida exitosa."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def is_enabled(self) -> bool:
        raw = self._store.get(SETTINGS_KEYS["auto_sync_enabled"])
        if raw is None:
            return True
        return raw.strip().lower() != "false"

    def set_enabled(self, enabled: bool) -> None:
        self._store.set(SETTINGS_KEYS["auto_sync_enabled"], "true" if enabled else "false")

    def last_run(self) -> Optional[datetime]:
        return parse_timestamp(self._store.get(SETTINGS_KEYS["last_run"]))

    def mark_last_run(self, when: datetime) -> None:
        self._store.set(SETTINGS_KEYS["last_run"], when.isoformat())
