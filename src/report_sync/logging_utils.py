"""Utilidades para estandarizar el contexto de logging estructurado."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional

import structlog

# Campos obligatorios en cada evento del motor de sincronización
MANDATORY_FIELDS: Iterable[str] = (
    "run_id",
    "etapa",
    "trigger",
    "category",
    "file_name",
    "records_processed",
    "records_skipped",
    "error_code",
)


def short_identifier(value: Optional[str], length: int = 8) -> Optional[str]:
    """Recorta identificadores externos (cuentas, canales) para los logs."""

    if value is None:
        return None
    text = str(value)
    if len(text) <= length:
        return text
    return f"{text[:length]}..."


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def ensure_log_context(
    base: Optional[Dict[str, Any]] = None,
    *,
    etapa: Optional[str] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Genera un contexto de logging con campos obligatorios.

    Args:
        base: Contexto previo a clonar/actualizar (por ejemplo el de la corrida).
        etapa: Etapa de la sincronización (``lock``, ``ensure_report``, ``import``...).
        **overrides: Campos adicionales o reemplazos. Las categorías ``Enum`` se
            guardan por su valor para que el JSON sea estable.

    Returns:
        Diccionario con todos los campos obligatorios presentes (``None`` cuando no se
        proporcionan valores) y los overrides aplicados.
    """

    context: Dict[str, Any] = dict.fromkeys(MANDATORY_FIELDS)

    if base:
        context.update({key: _normalize(value) for key, value in base.items()})

    if etapa is not None:
        context["etapa"] = etapa

    for key, value in overrides.items():
        context[key] = _normalize(value)

    return context


def bind_log_context(
    logger: structlog.stdlib.BoundLogger,
    context: Optional[Dict[str, Any]],
    **extra: Any,
) -> structlog.stdlib.BoundLogger:
    """Devuelve un logger con el contexto unido, omitiendo valores ``None``."""

    merged: Dict[str, Any] = dict(context or {})
    merged.update({key: _normalize(value) for key, value in extra.items()})

    filtered = {key: value for key, value in merged.items() if value is not None}
    if not filtered:
        return logger

    return logger.bind(**filtered)
