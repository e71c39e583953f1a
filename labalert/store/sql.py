import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..audit.records import AuditEntry
from ..critical.records import CriticalResult
from ..models.audit_models import AuditLogRecord
from ..models.critical_models import CriticalResultRecord, NotificationStatusEnum
from ..models.qc_models import (
    QCMeasurementRecord, QCStatisticsLedger, QCStatisticsRecord, QCStatusEnum, QCTarget,
    RuleSeverityEnum, WestgardRuleEnum
)
from ..qc.records import (
    QCAnalyteTarget,
    QCEvaluationResult,
    QCMeasurement,
    QCRunningStatistics,
    RuleViolation,
    StatisticsKey,
)
from ..utils.timeutils import ensure_utc
from .base import AlertStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class SqlAlchemyAlertStore(AlertStore):
    """AlertStore over the SQLAlchemy models. Every call runs in its own session."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    # QC targets

    def get_analyte_target(self, key: StatisticsKey) -> Optional[QCAnalyteTarget]:
        tenant_id, test_code, control_level = key
        with self._session_factory() as db:
            row = db.query(QCTarget).filter(
                QCTarget.tenant_id == tenant_id,
                QCTarget.test_code == test_code,
                QCTarget.control_level == control_level,
                QCTarget.is_active.is_(True)
            ).order_by(QCTarget.activated_at.desc()).first()
            return _target_from_row(row) if row else None

    def activate_analyte_target(self, target: QCAnalyteTarget, activated_at: datetime) -> None:
        with self._session_factory() as db:
            db.query(QCTarget).filter(
                QCTarget.tenant_id == target.tenant_id,
                QCTarget.test_code == target.test_code,
                QCTarget.control_level == target.control_level,
                QCTarget.is_active.is_(True)
            ).update({QCTarget.is_active: False}, synchronize_session=False)
            db.add(QCTarget(
                tenant_id=target.tenant_id,
                test_code=target.test_code,
                control_level=target.control_level,
                lot_number=target.lot_number,
                target_mean=target.target_mean,
                target_sd=target.target_sd,
                acceptable_low=target.acceptable_low,
                acceptable_high=target.acceptable_high,
                enabled_rules=[rule.value for rule in target.enabled_rules],
                is_active=True,
                activated_at=activated_at
            ))
            db.commit()

    # QC measurements and evaluations

    def insert_measurement(self, measurement: QCMeasurement) -> bool:
        with self._session_factory() as db:
            db.add(QCMeasurementRecord(
                measurement_id=measurement.measurement_id,
                tenant_id=measurement.tenant_id,
                test_code=measurement.test_code,
                test_name=measurement.test_name,
                control_level=measurement.control_level,
                value=measurement.value,
                unit=measurement.unit,
                measured_at=measurement.timestamp,
                operator_id=measurement.operator_id,
                instrument_id=measurement.instrument_id,
                created_by=measurement.operator_id
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def recent_measurements(self, key: StatisticsKey, limit: int) -> List[QCMeasurement]:
        tenant_id, test_code, control_level = key
        with self._session_factory() as db:
            rows = db.query(QCMeasurementRecord).filter(
                QCMeasurementRecord.tenant_id == tenant_id,
                QCMeasurementRecord.test_code == test_code,
                QCMeasurementRecord.control_level == control_level
            ).order_by(QCMeasurementRecord.measured_at.desc(), QCMeasurementRecord.id.desc()).limit(limit).all()
            return [_measurement_from_row(row) for row in reversed(rows)]

    def get_evaluation(self, measurement_id: str) -> Optional[QCEvaluationResult]:
        with self._session_factory() as db:
            row = db.query(QCMeasurementRecord).filter(
                QCMeasurementRecord.measurement_id == measurement_id
            ).first()
            if row is None or row.status is None:
                return None
            return _evaluation_from_row(row)

    def insert_evaluation(self, result: QCEvaluationResult) -> QCEvaluationResult:
        with self._session_factory() as db:
            # conditional write: only the first evaluation of a measurement sticks
            updated = db.execute(
                update(QCMeasurementRecord)
                .where(
                    QCMeasurementRecord.measurement_id == result.measurement_id,
                    QCMeasurementRecord.status.is_(None)
                )
                .values(
                    status=result.status,
                    z_score=result.z_score,
                    violations=[v.to_dict() for v in result.violations],
                    evaluated_at=result.evaluated_at,
                    version=QCMeasurementRecord.version + 1
                )
            )
            db.commit()
            if updated.rowcount == 1:
                return result
        stored = self.get_evaluation(result.measurement_id)
        if stored is None:
            raise LookupError(f"QC measurement {result.measurement_id} must be stored before its evaluation")
        return stored

    def increment_statistics(self, key: StatisticsKey, measurement_id: str,
                             status: QCStatusEnum, at: datetime) -> bool:
        tenant_id, test_code, control_level = key
        with self._session_factory() as db:
            stats = self._get_or_create_statistics(db, key)
            db.add(QCStatisticsLedger(
                tenant_id=tenant_id,
                measurement_id=measurement_id,
                status=status,
                statistics_id=stats.id
            ))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info(f"QC measurement {measurement_id} already counted for {test_code}/{control_level.value}")
                return False

            counter = {
                QCStatusEnum.PASS: QCStatisticsRecord.pass_count,
                QCStatusEnum.WARNING: QCStatisticsRecord.warning_count,
                QCStatusEnum.FAIL: QCStatisticsRecord.fail_count,
            }[status]
            # increments happen in SQL so concurrent writers cannot lose updates
            db.execute(
                update(QCStatisticsRecord)
                .where(QCStatisticsRecord.id == stats.id)
                .values({
                    QCStatisticsRecord.total_runs: QCStatisticsRecord.total_runs + 1,
                    counter: counter + 1,
                    QCStatisticsRecord.last_run_at: at
                })
            )
            db.commit()
            return True

    def get_statistics(self, key: StatisticsKey) -> Optional[QCRunningStatistics]:
        tenant_id, test_code, control_level = key
        with self._session_factory() as db:
            row = db.query(QCStatisticsRecord).filter(
                QCStatisticsRecord.tenant_id == tenant_id,
                QCStatisticsRecord.test_code == test_code,
                QCStatisticsRecord.control_level == control_level
            ).first()
            if row is None:
                return None
            return QCRunningStatistics(
                test_code=row.test_code,
                control_level=row.control_level,
                tenant_id=row.tenant_id,
                total_runs=row.total_runs,
                pass_count=row.pass_count,
                warning_count=row.warning_count,
                fail_count=row.fail_count,
                last_run_at=ensure_utc(row.last_run_at)
            )

    def claim_qc_alert(self, measurement_id: str) -> bool:
        with self._session_factory() as db:
            claimed = db.execute(
                update(QCMeasurementRecord)
                .where(
                    QCMeasurementRecord.measurement_id == measurement_id,
                    QCMeasurementRecord.alert_raised.is_(False)
                )
                .values(alert_raised=True)
            )
            db.commit()
            return claimed.rowcount == 1

    # Critical results

    def insert_critical_result(self, result: CriticalResult) -> bool:
        with self._session_factory() as db:
            db.add(CriticalResultRecord(
                result_id=result.result_id,
                tenant_id=result.tenant_id,
                patient_id=result.patient_id,
                test_code=result.test_code,
                test_name=result.test_name,
                value=str(result.value),
                unit=result.unit,
                reference_range=result.reference_range,
                critical_message=result.critical_message,
                clinician_id=result.clinician_id,
                flagged_at=result.flagged_at,
                notification_status=result.notification_status,
                notification_attempts=result.notification_attempts,
                version=result.version
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def get_critical_result(self, result_id: str) -> Optional[CriticalResult]:
        with self._session_factory() as db:
            row = db.query(CriticalResultRecord).filter(
                CriticalResultRecord.result_id == result_id
            ).first()
            return _critical_from_row(row) if row else None

    def find_critical_results(self, status: NotificationStatusEnum) -> List[CriticalResult]:
        with self._session_factory() as db:
            rows = db.query(CriticalResultRecord).filter(
                CriticalResultRecord.notification_status == status
            ).order_by(CriticalResultRecord.flagged_at).all()
            return [_critical_from_row(row) for row in rows]

    def find_unacknowledged_notified(self, notified_before: datetime) -> List[CriticalResult]:
        with self._session_factory() as db:
            rows = db.query(CriticalResultRecord).filter(
                CriticalResultRecord.notification_status == NotificationStatusEnum.NOTIFIED,
                CriticalResultRecord.acknowledged_at.is_(None),
                CriticalResultRecord.last_notification_at <= notified_before
            ).order_by(CriticalResultRecord.last_notification_at).all()
            return [_critical_from_row(row) for row in rows]

    def compare_and_set_critical_result(self, result: CriticalResult, expected_version: int) -> bool:
        with self._session_factory() as db:
            updated = db.execute(
                update(CriticalResultRecord)
                .where(
                    CriticalResultRecord.result_id == result.result_id,
                    CriticalResultRecord.version == expected_version
                )
                .values(
                    notification_status=result.notification_status,
                    notification_attempts=result.notification_attempts,
                    last_notification_at=result.last_notification_at,
                    acknowledged_at=result.acknowledged_at,
                    acknowledged_by=result.acknowledged_by,
                    escalated_at=result.escalated_at,
                    notification_error=result.notification_error,
                    version=result.version
                )
            )
            db.commit()
            return updated.rowcount == 1

    # Audit trail

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._session_factory() as db:
            db.add(AuditLogRecord(
                tenant_id=entry.tenant_id,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                actor=entry.actor,
                details=entry.details,
                success=entry.success,
                occurred_at=entry.occurred_at
            ))
            db.commit()

    def audit_entries(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        with self._session_factory() as db:
            rows = db.query(AuditLogRecord).filter(
                AuditLogRecord.entity_type == entity_type,
                AuditLogRecord.entity_id == entity_id
            ).order_by(AuditLogRecord.occurred_at, AuditLogRecord.id).all()
            return [
                AuditEntry(
                    action=row.action,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    occurred_at=ensure_utc(row.occurred_at),
                    tenant_id=row.tenant_id,
                    actor=row.actor,
                    details=row.details or {},
                    success=row.success
                )
                for row in rows
            ]

    def _get_or_create_statistics(self, db: Session, key: StatisticsKey) -> QCStatisticsRecord:
        tenant_id, test_code, control_level = key
        query = db.query(QCStatisticsRecord).filter(
            QCStatisticsRecord.tenant_id == tenant_id,
            QCStatisticsRecord.test_code == test_code,
            QCStatisticsRecord.control_level == control_level
        )
        stats = query.first()
        if stats is not None:
            return stats
        stats = QCStatisticsRecord(tenant_id=tenant_id, test_code=test_code, control_level=control_level,
                                   total_runs=0, pass_count=0, warning_count=0, fail_count=0)
        db.add(stats)
        try:
            db.commit()
        except IntegrityError:
            # created concurrently by another writer
            db.rollback()
            return query.one()
        return stats


def _parse_value(raw: str) -> Union[float, str]:
    try:
        return float(raw)
    except ValueError:
        return raw


def _target_from_row(row: QCTarget) -> QCAnalyteTarget:
    return QCAnalyteTarget(
        test_code=row.test_code,
        control_level=row.control_level,
        target_mean=row.target_mean,
        target_sd=row.target_sd,
        enabled_rules=tuple(WestgardRuleEnum(code) for code in row.enabled_rules),
        acceptable_low=row.acceptable_low,
        acceptable_high=row.acceptable_high,
        lot_number=row.lot_number,
        tenant_id=row.tenant_id
    )


def _measurement_from_row(row: QCMeasurementRecord) -> QCMeasurement:
    return QCMeasurement(
        measurement_id=row.measurement_id,
        test_code=row.test_code,
        control_level=row.control_level,
        value=row.value,
        unit=row.unit,
        timestamp=ensure_utc(row.measured_at),
        operator_id=row.operator_id,
        tenant_id=row.tenant_id,
        test_name=row.test_name,
        instrument_id=row.instrument_id
    )


def _evaluation_from_row(row: QCMeasurementRecord) -> QCEvaluationResult:
    violations = tuple(
        RuleViolation(
            rule=WestgardRuleEnum(v["rule"]),
            severity=RuleSeverityEnum(v["severity"]),
            description=v["description"]
        )
        for v in (row.violations or [])
    )
    return QCEvaluationResult(
        measurement_id=row.measurement_id,
        z_score=row.z_score,
        violations=violations,
        status=row.status,
        evaluated_at=ensure_utc(row.evaluated_at)
    )


def _critical_from_row(row: CriticalResultRecord) -> CriticalResult:
    return CriticalResult(
        result_id=row.result_id,
        patient_id=row.patient_id,
        test_code=row.test_code,
        value=_parse_value(row.value),
        unit=row.unit,
        clinician_id=row.clinician_id,
        flagged_at=ensure_utc(row.flagged_at),
        tenant_id=row.tenant_id,
        test_name=row.test_name,
        reference_range=row.reference_range,
        critical_message=row.critical_message,
        notification_status=row.notification_status,
        notification_attempts=row.notification_attempts,
        last_notification_at=ensure_utc(row.last_notification_at),
        acknowledged_at=ensure_utc(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        escalated_at=ensure_utc(row.escalated_at),
        notification_error=row.notification_error,
        version=row.version
    )
