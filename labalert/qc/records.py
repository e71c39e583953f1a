from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from ..models.qc_models import ControlLevelEnum, QCStatusEnum, RuleSeverityEnum, WestgardRuleEnum

DEFAULT_RULES: Tuple[WestgardRuleEnum, ...] = tuple(WestgardRuleEnum)

# (tenant_id, test_code, control_level)
StatisticsKey = Tuple[str, str, ControlLevelEnum]


@dataclass(frozen=True)
class QCAnalyteTarget:
    """Target mean/SD for one analyte and control level of a control lot"""
    test_code: str
    control_level: ControlLevelEnum
    target_mean: float
    target_sd: float
    enabled_rules: Tuple[WestgardRuleEnum, ...] = DEFAULT_RULES
    acceptable_low: Optional[float] = None
    acceptable_high: Optional[float] = None
    lot_number: Optional[str] = None
    tenant_id: str = "default"

    @property
    def key(self) -> StatisticsKey:
        return (self.tenant_id, self.test_code, self.control_level)

    def is_enabled(self, rule: WestgardRuleEnum) -> bool:
        return rule in self.enabled_rules


@dataclass(frozen=True)
class QCMeasurement:
    """A single QC run entry on control material"""
    measurement_id: str
    test_code: str
    control_level: ControlLevelEnum
    value: float
    unit: str
    timestamp: datetime
    operator_id: str
    tenant_id: str = "default"
    test_name: Optional[str] = None
    instrument_id: Optional[str] = None

    @property
    def key(self) -> StatisticsKey:
        return (self.tenant_id, self.test_code, self.control_level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'measurement_id': self.measurement_id,
            'tenant_id': self.tenant_id,
            'test_code': self.test_code,
            'test_name': self.test_name,
            'control_level': self.control_level.value,
            'value': self.value,
            'unit': self.unit,
            'timestamp': self.timestamp.isoformat(),
            'operator_id': self.operator_id,
            'instrument_id': self.instrument_id
        }


@dataclass(frozen=True)
class RuleViolation:
    rule: WestgardRuleEnum
    severity: RuleSeverityEnum
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'rule': self.rule.value,
            'severity': self.severity.value,
            'description': self.description
        }


def determine_status(violations: Sequence[RuleViolation]) -> QCStatusEnum:
    """fail on any error-severity violation, warning on any other violation, else pass"""
    if any(v.severity == RuleSeverityEnum.ERROR for v in violations):
        return QCStatusEnum.FAIL
    if violations:
        return QCStatusEnum.WARNING
    return QCStatusEnum.PASS


@dataclass(frozen=True)
class QCEvaluationResult:
    measurement_id: str
    z_score: Optional[float]
    violations: Tuple[RuleViolation, ...]
    status: QCStatusEnum
    evaluated_at: datetime

    @classmethod
    def from_violations(cls, measurement_id: str, z_score: Optional[float],
                        violations: Sequence[RuleViolation], evaluated_at: datetime) -> "QCEvaluationResult":
        return cls(
            measurement_id=measurement_id,
            z_score=z_score,
            violations=tuple(violations),
            status=determine_status(violations),
            evaluated_at=evaluated_at
        )

    @property
    def rules(self) -> Tuple[WestgardRuleEnum, ...]:
        return tuple(v.rule for v in self.violations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'measurement_id': self.measurement_id,
            'z_score': self.z_score,
            'violations': [v.to_dict() for v in self.violations],
            'status': self.status.value,
            'evaluated_at': self.evaluated_at.isoformat()
        }


@dataclass
class QCRunningStatistics:
    test_code: str
    control_level: ControlLevelEnum
    tenant_id: str = "default"
    total_runs: int = 0
    pass_count: int = 0
    warning_count: int = 0
    fail_count: int = 0
    last_run_at: Optional[datetime] = None

    def record(self, status: QCStatusEnum, at: datetime) -> None:
        self.total_runs += 1
        if status == QCStatusEnum.PASS:
            self.pass_count += 1
        elif status == QCStatusEnum.WARNING:
            self.warning_count += 1
        else:
            self.fail_count += 1
        self.last_run_at = at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'test_code': self.test_code,
            'control_level': self.control_level.value,
            'total_runs': self.total_runs,
            'pass_count': self.pass_count,
            'warning_count': self.warning_count,
            'fail_count': self.fail_count,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None
        }
