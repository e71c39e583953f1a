import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set

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
from .base import AlertStore


class InMemoryAlertStore(AlertStore):
    """Process-local store guarded by a single lock. Used by tests and single-node demos."""

    def __init__(self):
        self._lock = threading.RLock()
        self._targets: Dict[StatisticsKey, QCAnalyteTarget] = {}
        self._retired_targets: List[QCAnalyteTarget] = []
        self._measurements: Dict[str, QCMeasurement] = {}
        self._evaluations: Dict[str, QCEvaluationResult] = {}
        self._statistics: Dict[StatisticsKey, QCRunningStatistics] = {}
        self._counted: Set[str] = set()
        self._alerted: Set[str] = set()
        self._critical: Dict[str, CriticalResult] = {}
        self._audit: List[AuditEntry] = []

    def get_analyte_target(self, key: StatisticsKey) -> Optional[QCAnalyteTarget]:
        with self._lock:
            return self._targets.get(key)

    def activate_analyte_target(self, target: QCAnalyteTarget, activated_at: datetime) -> None:
        with self._lock:
            previous = self._targets.get(target.key)
            if previous is not None:
                self._retired_targets.append(previous)
            self._targets[target.key] = target

    def insert_measurement(self, measurement: QCMeasurement) -> bool:
        with self._lock:
            if measurement.measurement_id in self._measurements:
                return False
            self._measurements[measurement.measurement_id] = measurement
            return True

    def recent_measurements(self, key: StatisticsKey, limit: int) -> List[QCMeasurement]:
        with self._lock:
            matching = [m for m in self._measurements.values() if m.key == key]
        matching.sort(key=lambda m: m.timestamp)
        return matching[-limit:] if limit > 0 else []

    def get_evaluation(self, measurement_id: str) -> Optional[QCEvaluationResult]:
        with self._lock:
            return self._evaluations.get(measurement_id)

    def insert_evaluation(self, result: QCEvaluationResult) -> QCEvaluationResult:
        with self._lock:
            return self._evaluations.setdefault(result.measurement_id, result)

    def increment_statistics(self, key: StatisticsKey, measurement_id: str,
                             status: QCStatusEnum, at: datetime) -> bool:
        with self._lock:
            if measurement_id in self._counted:
                return False
            tenant_id, test_code, control_level = key
            stats = self._statistics.setdefault(
                key, QCRunningStatistics(test_code=test_code, control_level=control_level, tenant_id=tenant_id)
            )
            stats.record(status, at)
            self._counted.add(measurement_id)
            return True

    def get_statistics(self, key: StatisticsKey) -> Optional[QCRunningStatistics]:
        with self._lock:
            stats = self._statistics.get(key)
            return replace(stats) if stats is not None else None

    def claim_qc_alert(self, measurement_id: str) -> bool:
        with self._lock:
            if measurement_id in self._alerted:
                return False
            self._alerted.add(measurement_id)
            return True

    def insert_critical_result(self, result: CriticalResult) -> bool:
        with self._lock:
            if result.result_id in self._critical:
                return False
            self._critical[result.result_id] = result
            return True

    def get_critical_result(self, result_id: str) -> Optional[CriticalResult]:
        with self._lock:
            return self._critical.get(result_id)

    def find_critical_results(self, status: NotificationStatusEnum) -> List[CriticalResult]:
        with self._lock:
            found = [r for r in self._critical.values() if r.notification_status == status]
        return sorted(found, key=lambda r: r.flagged_at)

    def find_unacknowledged_notified(self, notified_before: datetime) -> List[CriticalResult]:
        with self._lock:
            found = [
                r for r in self._critical.values()
                if r.notification_status == NotificationStatusEnum.NOTIFIED
                and r.acknowledged_at is None
                and r.last_notification_at is not None
                and r.last_notification_at <= notified_before
            ]
        return sorted(found, key=lambda r: r.last_notification_at)

    def compare_and_set_critical_result(self, result: CriticalResult, expected_version: int) -> bool:
        with self._lock:
            current = self._critical.get(result.result_id)
            if current is None or current.version != expected_version:
                return False
            self._critical[result.result_id] = result
            return True

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def audit_entries(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        with self._lock:
            return [e for e in self._audit if e.entity_type == entity_type and e.entity_id == entity_id]
