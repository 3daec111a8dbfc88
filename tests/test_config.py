"""Pruebas de la configuración del servicio."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from report_sync.config import PROJECT_ROOT, Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_match_engine_cadences():
    settings = _settings()

    assert settings.mp_timezone == "America/Santiago"
    assert settings.mp_sync_peak_interval_seconds == 1200
    assert settings.mp_sync_offpeak_interval_seconds == 10800
    assert settings.mp_sync_max_files_per_run == 4
    assert settings.mp_webhook_debounce_seconds == 5.0
    assert settings.lock_provider == "database"
    assert settings.lock_ttl_seconds == 3600


def test_database_url_is_normalized_to_pymysql():
    settings = _settings(database_url="mysql://user:pw@db:3306/ccm")

    assert settings.resolved_database_url() == "mysql+pymysql://user:pw@db:3306/ccm"


def test_database_url_is_built_from_parts():
    settings = _settings(db_host="db", db_user="sync", db_password="secreto", db_name="ccm")

    assert settings.resolved_database_url() == "mysql+pymysql://sync:secreto@db:3306/ccm"


def test_database_url_missing_returns_none():
    assert _settings().resolved_database_url() is None


def test_relative_log_path_is_resolved_against_project_root():
    settings = _settings(log_file_path="logs/custom.log")

    assert Path(settings.log_file_path) == PROJECT_ROOT / "logs" / "custom.log"


def test_levels_and_providers_are_normalized():
    settings = _settings(log_level="debug", app_env="PRODUCTION", lock_provider="Redis")

    assert settings.log_level == "DEBUG"
    assert settings.app_env == "production"
    assert settings.lock_provider == "redis"


@pytest.mark.parametrize(
    "overrides",
    [
        {"log_level": "verbose"},
        {"app_env": "qa"},
        {"lock_provider": "zookeeper"},
        {"mp_sync_peak_start_hour": 25},
        {"lock_ttl_seconds": 600},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        _settings(**overrides)
