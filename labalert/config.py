"""
Configuration for the laboratory alerting service.

Settings can be set programmatically or loaded from ``LABALERT_`` prefixed
environment variables.
"""

import os
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class AlertingSettings(BaseModel):
    """Central configuration for QC evaluation and critical-result escalation.

    Example:
        >>> settings = AlertingSettings(escalation_threshold_minutes=15)
        >>> settings.escalation_threshold
        datetime.timedelta(seconds=900)

    Environment variables use the ``LABALERT_`` prefix, e.g.
    ``LABALERT_ESCALATION_THRESHOLD_MINUTES=30``.
    """

    application_name: str = Field(
        "lab-alerting-core", description="Name reported by the API"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: str = Field("INFO", description="Root logging level")
    database_url: str = Field(
        "sqlite:///./labalert.db", description="SQLAlchemy database URL"
    )
    default_tenant: str = Field("default", description="Tenant used when none is given")

    # QC evaluation
    window_size: int = Field(
        20, description="Prior QC points kept per test and control level", ge=20
    )

    # Critical results
    escalation_threshold_minutes: int = Field(
        30, description="Minutes without acknowledgement before escalation", gt=0
    )
    sweep_interval_seconds: int = Field(
        300, description="Seconds between escalation sweeps", gt=0
    )
    sweep_jitter_seconds: float = Field(
        0.0, description="Random delay added to each sweep interval", ge=0
    )
    sweeper_enabled: bool = Field(True, description="Run the sweeper in the API process")

    # Notification dispatch
    dispatch_concurrency: int = Field(
        10, description="Records dispatched in parallel during a sweep", gt=0, le=100
    )
    channel_timeout_seconds: float = Field(
        10.0, description="Deadline for a single channel send", gt=0
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @property
    def escalation_threshold(self) -> timedelta:
        return timedelta(minutes=self.escalation_threshold_minutes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary."""
        return self.model_dump()

    @classmethod
    def from_env(cls, prefix: str = "LABALERT_") -> "AlertingSettings":
        """
        Load settings from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Settings instance
        """
        values: Dict[str, Any] = {}
        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            raw = os.environ[env_var]
            if field_info.annotation is bool:
                values[field_name] = raw.lower() in ("true", "1", "yes", "on")
            else:
                # pydantic coerces numeric strings during validation
                values[field_name] = raw
        return cls.model_validate(values)


_settings: Optional[AlertingSettings] = None


def get_settings() -> AlertingSettings:
    """Return the process-wide settings, loading them from the environment once."""
    global _settings

    if _settings is None:
        _settings = AlertingSettings.from_env()
    return _settings


def set_settings(settings: Optional[AlertingSettings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""
    global _settings
    _settings = settings
