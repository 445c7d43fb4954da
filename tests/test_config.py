"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from maintenance_agent.config import Config, get_config, reset_config
from maintenance_agent.models import Severity


class TestDefaults:
    def test_executor_defaults(self, config):
        assert config.executor.batch_size == 5
        assert config.executor.max_attempts == 3
        assert config.executor.stale_after_minutes == 15
        assert config.executor.tick_budget_seconds == 240

    def test_detector_defaults(self, config):
        assert config.detectors.timeout_seconds == 20
        assert config.detectors.error_window_minutes == 60
        assert config.detectors.error_high_threshold == 10
        assert config.detectors.slow_ms == 5000
        assert config.detectors.integrity_checks_path.name == "integrity_checks.yaml"

    def test_scheduler_defaults(self, config):
        assert config.scheduler.severity_threshold is Severity.MEDIUM
        assert config.scheduler.directives_path is None
        assert config.scheduler.requeue_failed is False

    def test_trigger_and_api_defaults(self, config):
        assert config.trigger.enabled is True
        assert config.trigger.manual_min_interval_seconds == 60
        assert config.api.port == 8082
        assert config.reports.window_hours == 24
        assert config.reports.webhook_url is None


class TestOverrides:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("EXECUTOR_BATCH_SIZE", "2")
        monkeypatch.setenv("STALE_AFTER_MINUTES", "5")
        monkeypatch.setenv("MAINTENANCE_ENABLED", "false")
        monkeypatch.setenv("TASK_SEVERITY_THRESHOLD", "HIGH")
        monkeypatch.setenv("MAINTENANCE_DIRECTIVES_PATH", "/etc/goals.yaml")
        monkeypatch.setenv("REQUEUE_FAILED", "true")

        config = Config.from_env()

        assert config.executor.batch_size == 2
        assert config.executor.stale_after_minutes == 5
        assert config.trigger.enabled is False
        assert config.scheduler.severity_threshold is Severity.HIGH
        assert config.scheduler.directives_path == Path("/etc/goals.yaml")
        assert config.scheduler.requeue_failed is True

    def test_unknown_threshold_falls_back_to_medium(self, monkeypatch):
        monkeypatch.setenv("TASK_SEVERITY_THRESHOLD", "urgent")
        assert Config.from_env().scheduler.severity_threshold is Severity.MEDIUM


class TestSupabaseRequirement:
    def test_supabase_backend_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL")
        monkeypatch.setenv("DB_BACKEND", "supabase")
        with pytest.raises(ValueError, match="SUPABASE_URL"):
            Config.from_env()

    def test_memory_backend_does_not(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL")
        config = Config.from_env()
        assert config.supabase is None
        assert config.database.backend == "memory"


def test_get_config_is_cached_until_reset(monkeypatch):
    first = get_config()
    assert get_config() is first

    monkeypatch.setenv("EXECUTOR_BATCH_SIZE", "9")
    reset_config()
    assert get_config().executor.batch_size == 9
