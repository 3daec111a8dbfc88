"""Pruebas del agrupamiento de notificaciones push."""

from __future__ import annotations

from unittest.mock import MagicMock

from structlog.testing import capture_logs

from report_sync.services.webhook_debouncer import DebounceState, WebhookDebouncer, WebhookResyncHandler


def test_burst_of_notifications_triggers_single_flush_with_latest_account(timer_factory):
    flushed = []
    debouncer = WebhookDebouncer(flushed.append, window_seconds=5.0, timer_factory=timer_factory)

    for index in range(1, 6):
        debouncer.on_notification(f"acc-{index}")

    assert len(timer_factory.timers) == 5
    assert all(timer.cancelled for timer in timer_factory.timers[:-1])
    assert timer_factory.last.started and not timer_factory.last.cancelled
    assert timer_factory.last.interval == 5.0
    assert debouncer.state is DebounceState.PENDING

    timer_factory.last.fire()

    assert flushed == ["acc-5"]
    assert debouncer.state is DebounceState.IDLE


def test_stale_timer_callback_is_ignored(timer_factory):
    flushed = []
    debouncer = WebhookDebouncer(flushed.append, timer_factory=timer_factory)

    debouncer.on_notification("acc-1")
    debouncer.on_notification("acc-2")
    # El primer temporizador ya había empezado a disparar cuando fue cancelado
    timer_factory.timers[0].fire()

    assert flushed == []
    assert debouncer.state is DebounceState.PENDING

    timer_factory.last.fire()
    timer_factory.last.fire()

    assert flushed == ["acc-2"]


def test_new_notification_after_flush_arms_a_new_window(timer_factory):
    flushed = []
    debouncer = WebhookDebouncer(flushed.append, timer_factory=timer_factory)

    debouncer.on_notification("acc-1")
    timer_factory.last.fire()
    debouncer.on_notification(None)
    timer_factory.last.fire()

    assert flushed == ["acc-1", None]


def test_shutdown_cancels_pending_and_rejects_new_notifications(timer_factory):
    flushed = []
    debouncer = WebhookDebouncer(flushed.append, timer_factory=timer_factory)
    debouncer.on_notification("acc-1")

    debouncer.shutdown()
    with capture_logs() as logs:
        debouncer.on_notification("acc-2")
    timer_factory.timers[0].fire()

    assert timer_factory.timers[0].cancelled
    assert len(timer_factory.timers) == 1
    assert flushed == []
    assert debouncer.state is DebounceState.IDLE
    assert any(event.get("error_code") == "debouncer_closed" for event in logs)


def test_handler_runs_targeted_sync_for_known_account():
    run_sync = MagicMock()
    handler = WebhookResyncHandler(run_sync, known_account_ids=["123456789"])

    handler("123456789")

    run_sync.assert_called_once_with(
        trigger_source="webhook",
        trigger_label="account:12345678...",
        targeted=True,
    )


def test_handler_falls_back_to_full_sync_for_unknown_account():
    run_sync = MagicMock()
    handler = WebhookResyncHandler(run_sync, known_account_ids=["123"])

    handler("999")
    handler(None)

    assert run_sync.call_count == 2
    for call in run_sync.call_args_list:
        assert call.kwargs == {"trigger_source": "webhook", "trigger_label": "webhook:full", "targeted": False}


def test_handler_ignores_blank_known_accounts():
    handler = WebhookResyncHandler(MagicMock(), known_account_ids=["", None])

    assert handler.resolve("") is None


def test_handler_logs_and_swallows_sync_errors():
    run_sync = MagicMock(side_effect=RuntimeError("db caída"))
    handler = WebhookResyncHandler(run_sync, known_account_ids=["123"])

    with capture_logs() as logs:
        handler("123")

    errors = [event for event in logs if event.get("error_code") == "webhook_resync_failed"]
    assert errors and errors[0]["error"] == "db caída"
