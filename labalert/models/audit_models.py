from sqlalchemy import Column, String, DateTime, Boolean, Index, Enum, JSON
import enum
from .base import TimeStampedModel

class AuditActionEnum(enum.Enum):
    CRITICAL_RESULT_FLAGGED = "critical_result_flagged"
    CRITICAL_RESULT_NOTIFICATION = "critical_result_notification"
    CRITICAL_RESULT_NOTIFICATION_FAILED = "critical_result_notification_failed"
    CRITICAL_RESULT_ACKNOWLEDGED = "critical_result_acknowledged"
    CRITICAL_RESULT_ESCALATED = "critical_result_escalated"
    ESCALATION_NOTIFICATION = "escalation_notification"
    QC_FAILURE_NOTIFICATION = "qc_failure_notification"

class AuditLogRecord(TimeStampedModel):
    """Append-only audit log. Rows are inserted, never updated or deleted."""
    __tablename__ = "audit_logs"

    action = Column(Enum(AuditActionEnum), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    actor = Column(String(64))
    details = Column(JSON)
    success = Column(Boolean, default=True, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id', 'occurred_at'),
    )

    def __repr__(self):
        return f"<AuditLogRecord(action='{self.action.value}', entity='{self.entity_type}:{self.entity_id}')>"
