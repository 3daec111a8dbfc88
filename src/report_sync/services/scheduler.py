"""Ticker en proceso que dispara la sincronización con cadencia pico/valle.

Dos cadencias independientes: la de horario pico (cada 20 minutos dentro de la
ventana local `[inicio, fin)`) y la de valle (cada 3 horas). Un disparo de valle
que cae dentro de la ventana pico se omite para no duplicar corridas.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from report_sync.config import Settings
from report_sync.logging_utils import bind_log_context, ensure_log_context
from report_sync.services.sync_state import Clock, utcnow

logger = structlog.get_logger("mp_scheduler")

CADENCE_PEAK = "peak"
CADENCE_OFFPEAK = "offpeak"
TICK_SECONDS = 30.0

Spawner = Callable[[Callable[[], None], str], None]


def _thread_spawner(target: Callable[[], None], name: str) -> None:
    threading.Thread(target=target, name=name, daemon=True).start()


class SyncScheduler:
    """Evalúa las cadencias en cada tick y lanza cada corrida en su propio hilo."""

    def __init__(
        self,
        run_sync: Callable[..., Any],
        *,
        timezone_name: str = "America/Santiago",
        peak_start_hour: int = 8,
        peak_end_hour: int = 21,
        peak_interval_seconds: float = 20 * 60,
        offpeak_interval_seconds: float = 3 * 60 * 60,
        tick_seconds: float = TICK_SECONDS,
        clock: Clock = utcnow,
        spawner: Spawner = _thread_spawner,
    ) -> None:
        self._run_sync = run_sync
        self.tz = ZoneInfo(timezone_name)
        self.peak_start_hour = peak_start_hour
        self.peak_end_hour = peak_end_hour
        self.intervals = {
            CADENCE_PEAK: timedelta(seconds=peak_interval_seconds),
            CADENCE_OFFPEAK: timedelta(seconds=offpeak_interval_seconds),
        }
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._spawner = spawner
        self._last_fired: Dict[str, Optional[datetime]] = {CADENCE_PEAK: None, CADENCE_OFFPEAK: None}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, run_sync: Callable[..., Any], settings: Settings) -> "SyncScheduler":
        return cls(
            run_sync,
            timezone_name=settings.mp_timezone,
            peak_start_hour=settings.mp_sync_peak_start_hour,
            peak_end_hour=settings.mp_sync_peak_end_hour,
            peak_interval_seconds=settings.mp_sync_peak_interval_seconds,
            offpeak_interval_seconds=settings.mp_sync_offpeak_interval_seconds,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_peak(self, now: datetime) -> bool:
        hour = now.astimezone(self.tz).hour
        start, end = self.peak_start_hour, self.peak_end_hour
        if start == end:
            return False
        if start < end:
            return start <= hour < end
        # Ventana que cruza la medianoche
        return hour >= start or hour < end

    def due_cadences(self, now: datetime) -> List[str]:
        """Cadencias que deben disparar en `now`; actualiza las marcas de último disparo."""
        due: List[str] = []
        in_peak = self.is_peak(now)
        with self._lock:
            for cadence, interval in self.intervals.items():
                last = self._last_fired[cadence]
                if last is not None and now - last < interval:
                    continue
                if cadence == CADENCE_PEAK and not in_peak:
                    continue
                self._last_fired[cadence] = now
                if cadence == CADENCE_OFFPEAK and in_peak:
                    logger.debug(
                        "Disparo de valle dentro de la ventana pico, se omite",
                        etapa="scheduler",
                        local_hour=now.astimezone(self.tz).hour,
                    )
                    continue
                due.append(cadence)
        return due

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self.clock()
        fired = self.due_cadences(now)
        for cadence in fired:
            self._spawner(lambda cadence=cadence: self._run(cadence), f"mp-sync-{cadence}")
        return fired

    def _run(self, cadence: str) -> None:
        bound = bind_log_context(logger, ensure_log_context(etapa="scheduler", trigger=f"scheduler:{cadence}"))
        bound.info("Disparo programado de sincronización")
        try:
            self._run_sync(trigger_source="scheduler", trigger_label=f"scheduler:{cadence}")
        except Exception as exc:  # noqa: BLE001
            bound.error("Error no controlado en corrida programada", error=str(exc), error_code="scheduler_run_failed")

    def start(self, *, fire_immediately: bool = False) -> None:
        if self.running:
            return
        if not fire_immediately:
            now = self.clock()
            with self._lock:
                for cadence in self._last_fired:
                    self._last_fired[cadence] = now
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="mp-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler de sincronización iniciado",
            etapa="scheduler",
            peak_window=f"{self.peak_start_hour:02d}-{self.peak_end_hour:02d}",
            timezone=str(self.tz),
        )

    def _loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("Fallo evaluando el tick del scheduler", etapa="scheduler", error=str(exc), error_code="scheduler_tick_failed")
            if self._stop_event.wait(self.tick_seconds):
                return

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Scheduler de sincronización detenido", etapa="scheduler")
