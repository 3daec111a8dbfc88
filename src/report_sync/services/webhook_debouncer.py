"""Agrupa ráfagas de notificaciones push en una sola resincronización diferida.

Cada notificación reinicia la ventana de espera y conserva la cuenta más
reciente; cuando la ventana vence sin interrupciones se dispara exactamente una
resincronización. La carrera con un tick programado se resuelve en el lock
distribuido del orquestador, no aquí.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

import structlog

from report_sync.logging_utils import bind_log_context, ensure_log_context, short_identifier

logger = structlog.get_logger("mp_webhook")

DEBOUNCE_WINDOW_SECONDS = 5.0


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def _thread_timer(interval: float, function: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class DebounceState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


class WebhookDebouncer:
    """Máquina de estados Idle/Pending con un único temporizador."""

    def __init__(
        self,
        on_flush: Callable[[Optional[str]], Any],
        *,
        window_seconds: float = DEBOUNCE_WINDOW_SECONDS,
        timer_factory: TimerFactory = _thread_timer,
    ) -> None:
        self._on_flush = on_flush
        self._window_seconds = window_seconds
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._last_account_id: Optional[str] = None
        self._closed = False

    @property
    def state(self) -> DebounceState:
        with self._lock:
            return DebounceState.PENDING if self._timer is not None else DebounceState.IDLE

    @property
    def last_account_id(self) -> Optional[str]:
        with self._lock:
            return self._last_account_id

    def on_notification(self, account_id: Optional[str]) -> None:
        with self._lock:
            if self._closed:
                logger.warning(
                    "Notificación descartada: debouncer detenido",
                    etapa="webhook",
                    error_code="debouncer_closed",
                )
                return
            replaced = self._timer is not None
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._last_account_id = account_id
            self._timer = self._timer_factory(self._window_seconds, lambda: self._fire(generation))
            self._timer.start()

        logger.info(
            "Notificación recibida, resincronización diferida",
            etapa="webhook",
            account=short_identifier(account_id),
            replaced_pending=replaced,
            debounce_seconds=self._window_seconds,
        )

    def _fire(self, generation: int) -> None:
        with self._lock:
            # Un temporizador reemplazado puede disparar igual si ya estaba en curso
            if generation != self._generation or self._timer is None:
                return
            self._timer = None
            account_id = self._last_account_id

        logger.info("Ejecutando resincronización agrupada", etapa="webhook", account=short_identifier(account_id))
        self._on_flush(account_id)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1


class WebhookResyncHandler:
    """Resuelve la cuenta notificada y dispara la corrida correspondiente.

    Una cuenta conocida produce una resincronización dirigida (sin el paso de
    creación del reporte diario); una desconocida cae a una corrida completa.
    """

    def __init__(self, run_sync: Callable[..., Any], known_account_ids: Iterable[str] = ()) -> None:
        self._run_sync = run_sync
        self._known_account_ids = {str(account) for account in known_account_ids if account}

    def resolve(self, account_id: Optional[str]) -> Optional[str]:
        if account_id and account_id in self._known_account_ids:
            return account_id
        return None

    def __call__(self, account_id: Optional[str]) -> None:
        resolved = self.resolve(account_id)
        context = ensure_log_context(etapa="webhook_resync", trigger="webhook")
        bound = bind_log_context(logger, context, account=short_identifier(account_id))
        try:
            if resolved:
                self._run_sync(
                    trigger_source="webhook",
                    trigger_label=f"account:{short_identifier(resolved)}",
                    targeted=True,
                )
            else:
                bound.info("Cuenta no reconocida, se ejecuta sincronización completa")
                self._run_sync(trigger_source="webhook", trigger_label="webhook:full", targeted=False)
        except Exception as exc:  # noqa: BLE001
            bound.error(
                "Error en resincronización por webhook",
                error=str(exc),
                error_code="webhook_resync_failed",
            )
