import pytest
from datetime import timedelta
from pydantic import ValidationError

from labalert.config import AlertingSettings, get_settings, set_settings


class TestAlertingSettings:

    def test_defaults(self):
        settings = AlertingSettings()

        assert settings.escalation_threshold == timedelta(minutes=30)
        assert settings.sweep_interval_seconds == 300
        assert settings.window_size == 20
        assert settings.dispatch_concurrency == 10

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LABALERT_ESCALATION_THRESHOLD_MINUTES", "15")
        monkeypatch.setenv("LABALERT_SWEEPER_ENABLED", "false")
        monkeypatch.setenv("LABALERT_LOG_LEVEL", "debug")

        settings = AlertingSettings.from_env()

        assert settings.escalation_threshold == timedelta(minutes=15)
        assert settings.sweeper_enabled is False
        assert settings.log_level == "DEBUG"

    def test_window_smaller_than_twenty_is_rejected(self):
        with pytest.raises(ValidationError):
            AlertingSettings(window_size=10)

    def test_unknown_environment_is_rejected(self):
        with pytest.raises(ValidationError):
            AlertingSettings(environment="qa-lab")

    def test_set_settings_overrides_process_settings(self):
        custom = AlertingSettings(application_name="lab-east")
        set_settings(custom)
        try:
            assert get_settings() is custom
        finally:
            set_settings(None)
