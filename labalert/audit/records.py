from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..models.audit_models import AuditActionEnum

CRITICAL_RESULT = "critical_result"
QC_MEASUREMENT = "qc_measurement"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of the audit trail: what happened to which record, when and by whom."""
    action: AuditActionEnum
    entity_type: str
    entity_id: str
    occurred_at: datetime
    tenant_id: str = "default"
    actor: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'tenant_id': self.tenant_id,
            'occurred_at': self.occurred_at.isoformat(),
            'actor': self.actor,
            'details': dict(self.details),
            'success': self.success
        }
