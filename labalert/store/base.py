"""
Record store used by the alerting core.

The store owns physical persistence and is the single source of truth for
"what is pending" and "what is stale". Only single-record conditional writes
are assumed; nothing here requires multi-record transactions.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..audit.records import AuditEntry
from ..critical.records import CriticalResult
from ..models.critical_models import NotificationStatusEnum
from ..models.qc_models import QCStatusEnum
from ..qc.records import (
    QCAnalyteTarget,
    QCEvaluationResult,
    QCMeasurement,
    QCRunningStatistics,
    StatisticsKey,
)


class AlertStore(ABC):
    """Abstract storage interface for QC and critical-result records."""

    # QC targets

    @abstractmethod
    def get_analyte_target(self, key: StatisticsKey) -> Optional[QCAnalyteTarget]:
        """Return the active target for the key, if any."""

    @abstractmethod
    def activate_analyte_target(self, target: QCAnalyteTarget, activated_at: datetime) -> None:
        """Make ``target`` the active target for its key, retiring the previous lot."""

    # QC measurements and evaluations

    @abstractmethod
    def insert_measurement(self, measurement: QCMeasurement) -> bool:
        """Store a measurement. Returns False if the id already exists."""

    @abstractmethod
    def recent_measurements(self, key: StatisticsKey, limit: int) -> List[QCMeasurement]:
        """Most recent ``limit`` measurements for the key, oldest first."""

    @abstractmethod
    def get_evaluation(self, measurement_id: str) -> Optional[QCEvaluationResult]:
        """Return the stored evaluation for a measurement, if any."""

    @abstractmethod
    def insert_evaluation(self, result: QCEvaluationResult) -> QCEvaluationResult:
        """Store an evaluation unless one exists; return whichever is stored."""

    @abstractmethod
    def increment_statistics(
        self, key: StatisticsKey, measurement_id: str, status: QCStatusEnum, at: datetime
    ) -> bool:
        """
        Count ``measurement_id`` into the running statistics for the key.

        Must be atomic per key and idempotent per measurement id: returns
        False, changing nothing, when the measurement was already counted.
        """

    @abstractmethod
    def get_statistics(self, key: StatisticsKey) -> Optional[QCRunningStatistics]:
        """Return the running statistics for the key, if any run was counted."""

    @abstractmethod
    def claim_qc_alert(self, measurement_id: str) -> bool:
        """Mark the QC-failure alert for a measurement as raised. True only for the first caller."""

    # Critical results

    @abstractmethod
    def insert_critical_result(self, result: CriticalResult) -> bool:
        """Store a new critical result. Returns False if the id already exists."""

    @abstractmethod
    def get_critical_result(self, result_id: str) -> Optional[CriticalResult]:
        """Point lookup of a critical result."""

    @abstractmethod
    def find_critical_results(self, status: NotificationStatusEnum) -> List[CriticalResult]:
        """All critical results in ``status``, oldest first."""

    @abstractmethod
    def find_unacknowledged_notified(self, notified_before: datetime) -> List[CriticalResult]:
        """Notified, unacknowledged results whose last notification is at or before the cutoff."""

    @abstractmethod
    def compare_and_set_critical_result(self, result: CriticalResult, expected_version: int) -> bool:
        """
        Replace the stored record with ``result`` only if its version is still
        ``expected_version``. ``result.version`` must be ``expected_version + 1``.
        """

    # Audit trail

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> None:
        """Append to the audit trail. Entries are never changed afterwards."""

    @abstractmethod
    def audit_entries(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        """Audit entries for one record in the order they were written."""
