from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from ..models.critical_models import NotificationStatusEnum

# Statuses the sweeper never acts on again
TERMINAL_STATUSES = frozenset({NotificationStatusEnum.ACKNOWLEDGED, NotificationStatusEnum.ESCALATED})


@dataclass(frozen=True)
class CriticalResult:
    """Notification lifecycle of one critical patient result.

    Each state change produces a new instance with ``version`` bumped by one;
    the store only accepts it if the stored version is still the previous one.
    """
    result_id: str
    patient_id: str
    test_code: str
    value: Union[float, str]
    unit: str
    clinician_id: str
    flagged_at: datetime
    tenant_id: str = "default"
    test_name: Optional[str] = None
    reference_range: Optional[str] = None
    critical_message: Optional[str] = None
    notification_status: NotificationStatusEnum = NotificationStatusEnum.PENDING
    notification_attempts: int = 0
    last_notification_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    escalated_at: Optional[datetime] = None
    notification_error: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.notification_status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'result_id': self.result_id,
            'tenant_id': self.tenant_id,
            'patient_id': self.patient_id,
            'test_code': self.test_code,
            'test_name': self.test_name,
            'value': self.value,
            'unit': self.unit,
            'reference_range': self.reference_range,
            'critical_message': self.critical_message,
            'clinician_id': self.clinician_id,
            'flagged_at': iso(self.flagged_at),
            'notification_status': self.notification_status.value,
            'notification_attempts': self.notification_attempts,
            'last_notification_at': iso(self.last_notification_at),
            'acknowledged_at': iso(self.acknowledged_at),
            'acknowledged_by': self.acknowledged_by,
            'escalated_at': iso(self.escalated_at),
            'notification_error': self.notification_error,
            'version': self.version
        }
