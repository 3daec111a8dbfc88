"""Pruebas end-to-end del orquestador con colaboradores en memoria y SQLite."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from report_sync.exceptions import ReportProviderError, SettingsStoreError
from report_sync.models import PendingWebhookFile, ReportCategory, SyncRunStatus
from report_sync.services.distributed_lock import DistributedLock, InMemoryDistributedLock
from report_sync.services.job_tracker import JobTracker
from report_sync.services.report_import_pipeline import ReportImportPipeline
from report_sync.services.report_readiness import ReportReadinessTracker
from report_sync.services.sync_orchestrator import JOB_TYPE, ReportSyncOrchestrator
from report_sync.services.sync_run_log import SQLAlchemySyncRunLog
from report_sync.services.sync_state import (
    CooldownStore,
    PendingWebhookQueue,
    ProcessedFileRegistry,
    SyncControlStore,
    WatermarkStore,
)

# Día objetivo para el reloj de pruebas (15/06/2024 15:00 UTC): 14/06 en Santiago
DAY_BEGIN = datetime.fromisoformat("2024-06-14T00:00:00-04:00")
DAY_END = datetime.fromisoformat("2024-06-14T23:59:59-04:00")


@pytest.fixture()
def run_log(sqlite_engine) -> SQLAlchemySyncRunLog:
    return SQLAlchemySyncRunLog(sqlite_engine)


@pytest.fixture()
def lock() -> InMemoryDistributedLock:
    return InMemoryDistributedLock()


@pytest.fixture()
def build(store, clock, run_log):
    """Arma un orquestador; cada llamada simula una instancia independiente."""

    def _build(
        provider,
        lock: DistributedLock,
        *,
        job_tracker: Optional[JobTracker] = None,
        jitter=lambda low, high: 0.0,
        sleeps: Optional[List[float]] = None,
    ) -> ReportSyncOrchestrator:
        sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
        readiness = ReportReadinessTracker(
            provider,
            CooldownStore(store),
            clock=clock,
            sleep=lambda seconds: None,
            poll_interval_seconds=30,
            poll_timeout_seconds=60,
        )
        pipeline = ReportImportPipeline(
            provider,
            ProcessedFileRegistry(store, clock=clock),
            WatermarkStore(store),
        )
        return ReportSyncOrchestrator(
            provider=provider,
            lock=lock,
            run_log=run_log,
            readiness=readiness,
            pipeline=pipeline,
            pending_queue=PendingWebhookQueue(store),
            control=SyncControlStore(store),
            job_tracker=job_tracker or JobTracker(),
            clock=clock,
            sleep=sleep,
            jitter=jitter,
        )

    return _build


@pytest.fixture()
def ready_listings(report_factory):
    created = datetime(2024, 6, 15, 6, 0, tzinfo=timezone.utc)
    return {
        ReportCategory.RELEASE: [
            report_factory("release-0614.csv", created, begin_date=DAY_BEGIN, end_date=DAY_END),
        ],
        ReportCategory.SETTLEMENT: [
            report_factory("settlement-0614.csv", created, begin_date=DAY_BEGIN, end_date=DAY_END),
        ],
    }


def test_successful_run_imports_and_finalizes_audit_row(build, provider, lock, run_log, store, clock, ready_listings):
    provider.listings = ready_listings
    tracker = JobTracker()

    result = build(provider, lock, job_tracker=tracker).run(trigger_source="scheduler", trigger_label="scheduler:peak")

    assert result.status is SyncRunStatus.SUCCESS
    assert result.phase == "finalized"
    assert result.stats.inserted_rows == 4
    assert sorted(provider.processed_names) == ["release-0614.csv", "settlement-0614.csv"]
    assert provider.created == []
    assert result.per_category["release"]["ensure"]["action"] == "already_ready"

    row = run_log.get(result.run_id)
    assert row["status"] == "SUCCESS"
    assert row["trigger_label"] == "scheduler:peak"
    assert row["inserted"] == 4
    assert row["change_details"]["files"]["settlement"] == ["settlement-0614.csv"]
    assert row["finished_at"] is not None

    assert SyncControlStore(store).last_run() == clock()
    assert tracker.active_jobs(JOB_TYPE) == []
    assert lock.try_acquire() is True


def test_second_run_is_idempotent(build, provider, lock, run_log, ready_listings):
    provider.listings = ready_listings
    orchestrator = build(provider, lock)

    orchestrator.run()
    provider.processed.clear()
    second = orchestrator.run()

    assert second.status is SyncRunStatus.SUCCESS
    assert second.stats.inserted_rows == 0
    assert provider.processed == []
    assert [row["status"] for row in run_log.list_recent()] == ["SUCCESS", "SUCCESS"]


def test_concurrent_instance_is_skipped_by_distributed_lock(build, provider_factory, lock, run_log, ready_listings):
    first_provider = provider_factory(ready_listings)
    second_provider = provider_factory(ready_listings)
    second = build(second_provider, lock, job_tracker=JobTracker())
    inner_results = []

    # Mientras la primera instancia lista reportes, la segunda intenta correr
    def _overlap(category):
        if not inner_results:
            inner_results.append(second.run(trigger_source="scheduler", trigger_label="scheduler:offpeak"))

    first_provider.on_list = _overlap
    first = build(first_provider, lock, job_tracker=JobTracker())

    result = first.run()

    assert result.status is SyncRunStatus.SUCCESS
    skipped = inner_results[0]
    assert skipped.status is SyncRunStatus.SKIPPED
    assert skipped.skipped_reason == "lock_not_acquired"
    assert second_provider.list_calls == []
    assert second_provider.processed == []

    statuses = {row["trigger_label"]: row["status"] for row in run_log.list_recent()}
    assert statuses == {"scheduler:offpeak": "SKIPPED", "scheduler": "SUCCESS"}


def test_in_process_active_job_short_circuits_before_lock(build, provider):
    lock = MagicMock(spec=DistributedLock)
    tracker = JobTracker()
    tracker.try_start_job(JOB_TYPE, total_steps=5)

    with capture_logs() as logs:
        result = build(provider, lock, job_tracker=tracker).run()

    assert result.status is SyncRunStatus.SKIPPED
    assert result.skipped_reason == "sync_already_running"
    lock.try_acquire.assert_not_called()
    assert any(event.get("error_code") == "sync_already_running" for event in logs)


def test_disabled_flag_skips_without_audit_row(build, provider, lock, run_log, store):
    SyncControlStore(store).set_enabled(False)

    result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SKIPPED
    assert result.skipped_reason == "sync_disabled"
    assert run_log.list_recent() == []
    assert provider.list_calls == []
    assert lock.try_acquire() is True


def test_listing_failure_finalizes_error_row_and_releases_lock(build, provider, lock, run_log):
    provider.list_error = ReportProviderError("Mercado Pago API Error: 500", status_code=500, should_retry=True)
    tracker = JobTracker()

    with capture_logs() as logs:
        result = build(provider, lock, job_tracker=tracker).run()

    assert result.status is SyncRunStatus.ERROR
    assert result.phase == "aborted"
    assert result.error_message == "Mercado Pago API Error: 500"

    row = run_log.get(result.run_id)
    assert row["status"] == "ERROR"
    assert row["error_message"] == "Mercado Pago API Error: 500"
    assert row["change_details"]["last_phase"] == "lock_acquired"

    job = tracker.get_job(next(iter(tracker._jobs)))
    assert job.status == "failed"
    assert lock.try_acquire() is True
    assert any(event.get("error_code") == "sync_run_failed" for event in logs)


def test_lock_backend_failure_returns_error_without_audit_row(build, provider, run_log):
    lock = MagicMock(spec=DistributedLock)
    lock.try_acquire.side_effect = ConnectionError("redis caído")
    tracker = JobTracker()

    result = build(provider, lock, job_tracker=tracker).run()

    assert result.status is SyncRunStatus.ERROR
    assert run_log.list_recent() == []
    assert tracker.active_jobs(JOB_TYPE) == []
    lock.release.assert_not_called()


def test_file_failure_does_not_fail_the_run(build, provider, lock, run_log, ready_listings):
    provider.listings = ready_listings
    provider.fail_files = {"release-0614.csv"}

    result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SUCCESS
    assert result.per_category["release"]["failed"][0]["file_name"] == "release-0614.csv"
    assert result.per_category["settlement"]["imported"] == ["settlement-0614.csv"]
    assert run_log.get(result.run_id)["status"] == "SUCCESS"


def test_pending_webhook_files_are_drained_once(build, provider, lock, store, clock, ready_listings):
    provider.listings = ready_listings
    queue = PendingWebhookQueue(store)
    queue.enqueue([
        PendingWebhookFile(
            name="hook.csv",
            url="https://files.example.com/hook.csv",
            category=ReportCategory.SETTLEMENT,
            received_at=clock(),
        )
    ])

    result = build(provider, lock).run(trigger_source="webhook", trigger_label="webhook:full")

    assert result.per_category["webhook"]["imported"] == ["hook.csv"]
    assert (ReportCategory.SETTLEMENT, None, "https://files.example.com/hook.csv") in provider.processed
    assert queue.pending() == []
    assert result.stats.inserted_rows == 6


def test_webhook_drain_failure_still_clears_queue(build, provider, lock, store, clock, ready_listings):
    provider.listings = ready_listings
    url = "https://files.example.com/broken.csv"
    provider.fail_files = {url}
    queue = PendingWebhookQueue(store)
    queue.enqueue([PendingWebhookFile(name="broken.csv", url=url, category=ReportCategory.RELEASE, received_at=clock())])

    result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SUCCESS
    assert result.per_category["webhook"]["failed"][0]["file_name"] == "broken.csv"
    assert queue.pending() == []


def test_targeted_run_skips_daily_report_creation(build, provider, lock):
    result = build(provider, lock).run(trigger_source="webhook", trigger_label="account:1234", targeted=True)

    assert result.status is SyncRunStatus.SUCCESS
    assert provider.created == []
    assert "ensure" not in result.per_category["release"]


def test_full_run_requests_missing_daily_reports(build, provider, lock):
    result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SUCCESS
    assert sorted(category.value for category, _, _ in provider.created) == ["release", "settlement"]
    assert result.per_category["settlement"]["ensure"] == {
        "target_date": "2024-06-14",
        "action": "created",
        "ready": False,
    }


def test_jitter_is_applied_once_after_lock(build, provider, lock):
    jitter = MagicMock(return_value=12.5)
    sleeps: List[float] = []

    build(provider, lock, jitter=jitter, sleeps=sleeps).run(targeted=True)

    jitter.assert_called_once_with(0, 45.0)
    assert sleeps == [12.5]


def test_create_failure_in_one_category_does_not_block_the_other(build, provider, lock, run_log, ready_listings):
    provider.listings = {ReportCategory.SETTLEMENT: ready_listings[ReportCategory.SETTLEMENT]}
    provider.create_errors[ReportCategory.RELEASE] = ReportProviderError(
        "Mercado Pago API Error: 500", status_code=500, should_retry=True
    )

    with capture_logs() as logs:
        result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SUCCESS
    assert result.phase == "finalized"
    assert provider.processed_names == ["settlement-0614.csv"]
    assert result.per_category["release"]["ensure"]["action"] == "create_failed"
    assert result.per_category["settlement"]["ensure"]["action"] == "already_ready"
    assert run_log.get(result.run_id)["status"] == "SUCCESS"
    assert any(event.get("error_code") == "create_report_failed" for event in logs)


def test_unexpected_ensure_error_is_contained_to_its_category(build, provider, lock, run_log, ready_listings):
    provider.listings = {ReportCategory.SETTLEMENT: ready_listings[ReportCategory.SETTLEMENT]}
    provider.create_errors[ReportCategory.RELEASE] = RuntimeError("respuesta inesperada")

    with capture_logs() as logs:
        result = build(provider, lock).run()

    assert result.status is SyncRunStatus.SUCCESS
    assert result.per_category["release"]["ensure"] == {
        "action": "ensure_failed",
        "ready": False,
        "error": "respuesta inesperada",
    }
    assert result.per_category["settlement"]["imported"] == ["settlement-0614.csv"]
    assert run_log.get(result.run_id)["status"] == "SUCCESS"
    assert any(event.get("error_code") == "ensure_report_failed" for event in logs)


def test_last_run_write_failure_leaves_error_audit_row(build, provider, lock, run_log, ready_listings):
    provider.listings = ready_listings
    orchestrator = build(provider, lock)
    orchestrator.control = MagicMock(spec=SyncControlStore)
    orchestrator.control.is_enabled.return_value = True
    orchestrator.control.mark_last_run.side_effect = SettingsStoreError("almacén no disponible")

    result = orchestrator.run()

    assert result.status is SyncRunStatus.ERROR
    assert result.phase == "aborted"
    row = run_log.get(result.run_id)
    assert row["status"] == "ERROR"
    assert row["error_message"] == "almacén no disponible"
    assert lock.try_acquire() is True
