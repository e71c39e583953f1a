"""
Alert content for the three things the core notifies about: a critical
patient result, a failed QC run, and an unacknowledged critical result
being escalated.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..critical.records import CriticalResult
from ..models.qc_models import WestgardRuleEnum
from ..qc.records import QCAnalyteTarget, QCEvaluationResult, QCMeasurement


class ChannelEnum(enum.Enum):
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


class AlertKindEnum(enum.Enum):
    CRITICAL_RESULT = "critical_result"
    QC_FAILURE = "qc_failure"
    ESCALATION = "escalation"


class AlertPriorityEnum(enum.Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"


# A QC failure involving any of these needs immediate attention
URGENT_QC_RULES = frozenset({
    WestgardRuleEnum.RULE_13S,
    WestgardRuleEnum.RULE_R4S,
    WestgardRuleEnum.RULE_41S,
    WestgardRuleEnum.RULE_10X,
})


@dataclass(frozen=True)
class Alert:
    kind: AlertKindEnum
    priority: AlertPriorityEnum
    subject: str
    body: str
    record_id: str
    tenant_id: str = "default"
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'priority': self.priority.value,
            'subject': self.subject,
            'body': self.body,
            'record_id': self.record_id,
            'tenant_id': self.tenant_id,
            'data': self.data
        }


def qc_failure_priority(result: QCEvaluationResult) -> AlertPriorityEnum:
    if any(rule in URGENT_QC_RULES for rule in result.rules):
        return AlertPriorityEnum.URGENT
    return AlertPriorityEnum.HIGH


def build_qc_failure_alert(measurement: QCMeasurement, target: QCAnalyteTarget,
                           result: QCEvaluationResult) -> Alert:
    """QC failure notice for the lab's QC managers"""
    test_name = measurement.test_name or measurement.test_code
    z_text = f"{result.z_score:.2f}" if result.z_score is not None else "N/A"
    lines = [
        f"QC failure detected for {test_name}",
        f"Control Level: {measurement.control_level.value}",
        f"Value: {measurement.value} {measurement.unit} (Mean: {target.target_mean}, SD: {target.target_sd})",
        f"Z-Score: {z_text}",
    ]
    if result.violations:
        lines.append(f"Violations: {', '.join(v.rule.value for v in result.violations)}")
    if measurement.instrument_id:
        lines.append(f"Instrument: {measurement.instrument_id}")

    return Alert(
        kind=AlertKindEnum.QC_FAILURE,
        priority=qc_failure_priority(result),
        subject=f"QC Failure: {test_name} ({measurement.control_level.value})",
        body="\n".join(lines),
        record_id=measurement.measurement_id,
        tenant_id=measurement.tenant_id,
        data={
            'measurement_id': measurement.measurement_id,
            'test_code': measurement.test_code,
            'control_level': measurement.control_level.value,
            'value': measurement.value,
            'mean': target.target_mean,
            'sd': target.target_sd,
            'z_score': result.z_score,
            'violations': [v.rule.value for v in result.violations],
            'instrument_id': measurement.instrument_id
        }
    )


def _result_line(result: CriticalResult) -> str:
    test_name = result.test_name or result.test_code
    line = f"Patient {result.patient_id} - {test_name}: {result.value} {result.unit}".rstrip()
    if result.critical_message:
        line += f"\n{result.critical_message}"
    if result.reference_range:
        line += f"\nReference range: {result.reference_range}"
    return line


def build_critical_result_alert(result: CriticalResult) -> Alert:
    return Alert(
        kind=AlertKindEnum.CRITICAL_RESULT,
        priority=AlertPriorityEnum.URGENT,
        subject="Critical Laboratory Result",
        body=_result_line(result) + "\nPlease acknowledge receipt.",
        record_id=result.result_id,
        tenant_id=result.tenant_id,
        data={
            'result_id': result.result_id,
            'patient_id': result.patient_id,
            'test_code': result.test_code,
            'value': result.value,
            'unit': result.unit
        }
    )


def build_escalation_alert(result: CriticalResult, now: Optional[datetime] = None) -> Alert:
    """Escalation notice sent once a critical result went unacknowledged past the threshold"""
    waited = ""
    if now is not None and result.last_notification_at is not None:
        minutes = int((now - result.last_notification_at).total_seconds() // 60)
        waited = f" for {minutes} minutes"
    return Alert(
        kind=AlertKindEnum.ESCALATION,
        priority=AlertPriorityEnum.URGENT,
        subject="ESCALATION: Unacknowledged Critical Result",
        body=(
            f"{_result_line(result)}\n"
            f"Clinician {result.clinician_id} has not acknowledged this result{waited}."
        ),
        record_id=result.result_id,
        tenant_id=result.tenant_id,
        data={
            'result_id': result.result_id,
            'patient_id': result.patient_id,
            'clinician_id': result.clinician_id,
            'notification_attempts': result.notification_attempts
        }
    )
