"""Pruebas de utilidades de logging.

Validan que los campos obligatorios del motor se propaguen y que los valores
``None`` no ensucien los eventos.
"""

import structlog
import pytest
from structlog.testing import capture_logs

from report_sync.logging_utils import MANDATORY_FIELDS, bind_log_context, ensure_log_context, short_identifier
from report_sync.models import ReportCategory


@pytest.fixture(autouse=True)
def reset_structlog():
    """Restablece la configuración de structlog antes de cada prueba."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


def test_ensure_log_context_includes_mandatory_fields():
    """`ensure_log_context` llena todos los campos obligatorios y conserva la base."""
    base = {"run_id": 7, "trigger": "scheduler:peak"}

    context = ensure_log_context(base, etapa="import", file_name="release-2024-06-14.csv")

    for field in MANDATORY_FIELDS:
        assert field in context, f"El campo obligatorio {field} debe estar presente"

    assert context["run_id"] == 7
    assert context["trigger"] == "scheduler:peak"
    assert context["etapa"] == "import"
    assert context["file_name"] == "release-2024-06-14.csv"
    assert context["records_processed"] is None


def test_ensure_log_context_stores_enum_values():
    context = ensure_log_context(etapa="ensure_report", category=ReportCategory.SETTLEMENT)

    assert context["category"] == "settlement"


def test_ensure_log_context_does_not_mutate_base():
    base = {"run_id": 1, "etapa": "lock"}

    ensure_log_context(base, etapa="import")

    assert base == {"run_id": 1, "etapa": "lock"}


def test_bind_log_context_filters_none_and_binds():
    """`bind_log_context` adjunta campos con valor y omite los `None`."""
    context = ensure_log_context(etapa="webhook", trigger="webhook")

    with capture_logs() as logs:
        logger = structlog.get_logger("mp_webhook").bind(servicio="mp_webhook")
        bound_logger = bind_log_context(logger, context, records_processed=5, records_skipped=None)
        bound_logger.info("Evento de prueba")

    assert logs, "Se esperaba al menos un evento registrado"
    event = logs[-1]
    assert event["event"] == "Evento de prueba"
    assert event["servicio"] == "mp_webhook"
    assert event["etapa"] == "webhook"
    assert event["trigger"] == "webhook"
    assert event["records_processed"] == 5
    assert "records_skipped" not in event
    assert "run_id" not in event


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("1234", "1234"),
        ("12345678", "12345678"),
        ("123456789012", "12345678..."),
        (987654321, "98765432..."),
    ],
)
def test_short_identifier_truncates_long_values(value, expected):
    assert short_identifier(value) == expected
