"""Seguimiento en memoria de trabajos en segundo plano para sondeo desde la UI."""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger("app")

MAX_FINISHED_JOBS = 50


@dataclass
class JobState:
    """Estado de un trabajo; `progress` va de 0 a `total_steps`."""

    job_id: str
    job_type: str
    total_steps: int
    status: str = "running"
    progress: int = 0
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def percent(self) -> int:
        if self.total_steps <= 0:
            return 100 if self.status != "running" else 0
        return min(100, int(self.progress * 100 / self.total_steps))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["percent"] = self.percent
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class JobTracker:
    """Registro de trabajos activos por tipo, con historial acotado de terminados."""

    def __init__(self, max_finished: int = MAX_FINISHED_JOBS) -> None:
        self._jobs: "OrderedDict[str, JobState]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_finished = max_finished

    def start_job(self, job_type: str, total_steps: int) -> str:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type, total_steps=total_steps)
        with self._lock:
            self._jobs[job.job_id] = job
            self._prune()
        return job.job_id

    def try_start_job(self, job_type: str, total_steps: int) -> Optional[str]:
        """Inicia el trabajo solo si no hay otro activo del mismo tipo."""
        with self._lock:
            if any(job.job_type == job_type and job.status == "running" for job in self._jobs.values()):
                return None
            job = JobState(job_id=uuid.uuid4().hex, job_type=job_type, total_steps=total_steps)
            self._jobs[job.job_id] = job
            self._prune()
            return job.job_id

    def update_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "running":
                return
            job.progress = progress
            if message is not None:
                job.message = message

    def complete_job(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        self._finish(job_id, status="completed", result=result)

    def fail_job(self, job_id: str, error: str) -> None:
        self._finish(job_id, status="failed", error=error)

    def active_jobs(self, job_type: str) -> List[JobState]:
        with self._lock:
            return [job for job in self._jobs.values() if job.job_type == job_type and job.status == "running"]

    def get_job(self, job_id: str) -> Optional[JobState]:
        with self._lock:
            return self._jobs.get(job_id)

    def _finish(self, job_id: str, *, status: str, result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "running":
                logger.warning("Trabajo inexistente o ya finalizado", etapa="jobs", job_id=job_id, status=status)
                return
            job.status = status
            job.result = result
            job.error = error
            job.finished_at = datetime.now(timezone.utc)
            if status == "completed":
                job.progress = job.total_steps
            self._prune()

    def _prune(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.status != "running"]
        for job_id in finished[: max(0, len(finished) - self._max_finished)]:
            self._jobs.pop(job_id, None)
