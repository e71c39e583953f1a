"""Exceptions raised by the alerting core.

``retryable`` marks errors where repeating the same call can succeed, such as
a lost optimistic-lock race. Configuration and input errors are not retryable.
"""

from typing import Optional


class AlertingError(Exception):
    """Base exception for QC evaluation and critical-result handling."""

    retryable = False

    def __init__(self, message: str, record_id: Optional[str] = None):
        self.record_id = record_id
        super().__init__(message)


class ConfigurationError(AlertingError):
    """Raised when targets, rosters or rule settings cannot be used."""


class MissingAnalyteTargetError(ConfigurationError):
    """Raised when no active target exists for a test code and control level."""

    def __init__(self, tenant_id: str, test_code: str, control_level: str):
        self.tenant_id = tenant_id
        self.test_code = test_code
        self.control_level = control_level
        super().__init__(
            f"No active QC target for {test_code}/{control_level} in tenant {tenant_id}"
        )


class RecipientNotFoundError(ConfigurationError):
    """Raised when a notification has nobody to go to."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message, record_id=record_id)


class PersistenceConflictError(AlertingError):
    """Raised when a conditional update lost the race to another writer."""

    retryable = True

    def __init__(self, record_id: str, expected_version: int):
        self.expected_version = expected_version
        super().__init__(
            f"Record {record_id} changed since version {expected_version}",
            record_id=record_id,
        )


class InvalidMeasurementError(AlertingError):
    """Raised for a malformed QC measurement; only that input is rejected."""


class InvalidTransitionError(AlertingError):
    """Raised when a critical result cannot move to the requested state."""

    def __init__(self, record_id: str, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Critical result {record_id} cannot go from {current} to {requested}",
            record_id=record_id,
        )


class CriticalResultNotFoundError(AlertingError):
    """Raised when a critical result id is unknown."""

    def __init__(self, record_id: str):
        super().__init__(f"Critical result {record_id} not found", record_id=record_id)
