from __future__ import annotations

import pytest

from recovery_orchestrator.config.settings import Settings, get_settings


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECOVERY_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("RECOVERY_POLL_INTERVAL_S", "5")
    monkeypatch.setenv("RECOVERY_INSTANCE_READY_TIMEOUT_S", "600")
    monkeypatch.setenv("RECOVERY_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("RECOVERY_PROVIDER_BASE_URL", "http://rds.example:8090")

    settings = Settings()

    assert settings.storage_backend == "memory"
    assert settings.poll_interval_s == 5
    assert settings.instance_ready_timeout_s == 600
    assert settings.scheduler_enabled is False
    assert settings.provider_base_url == "http://rds.example:8090"


def test_settings_defaults_match_recovery_timings() -> None:
    settings = Settings(_env_file=None)

    assert settings.instance_ready_timeout_s == 30 * 60
    assert settings.stuck_task_timeout_s == 2 * 60 * 60
    assert settings.due_task_interval_s == 60 * 60
    assert settings.stuck_sweep_interval_s == 10 * 60
    assert settings.default_instance_class == "mysql.n1.micro.1"
    assert settings.default_storage_size == 20


def test_get_settings_is_cached() -> None:
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


def test_invalid_backend_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECOVERY_STORAGE_BACKEND", "sqlite")

    with pytest.raises(ValueError):
        Settings()
