from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index, Enum, JSON
import enum
from .base import TimeStampedModel, AuditMixin

class NotificationStatusEnum(enum.Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"

class CriticalResultRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "critical_results"

    result_id = Column(String(64), unique=True, nullable=False, index=True)

    # Result data
    patient_id = Column(String(64), nullable=False)
    test_code = Column(String(50), nullable=False)
    test_name = Column(String(100))
    value = Column(String(50), nullable=False)
    unit = Column(String(20))
    reference_range = Column(String(100))
    critical_message = Column(Text)
    clinician_id = Column(String(64), nullable=False)
    flagged_at = Column(DateTime(timezone=True), nullable=False)

    # Notification lifecycle
    notification_status = Column(Enum(NotificationStatusEnum), nullable=False, default=NotificationStatusEnum.PENDING)
    notification_attempts = Column(Integer, default=0, nullable=False)
    last_notification_at = Column(DateTime(timezone=True))
    acknowledged_at = Column(DateTime(timezone=True))
    acknowledged_by = Column(String(64))
    escalated_at = Column(DateTime(timezone=True))
    notification_error = Column(Text)

    __table_args__ = (
        Index('idx_critical_status_notified', 'notification_status', 'last_notification_at'),
    )

    def __repr__(self):
        return f"<CriticalResultRecord(id='{self.result_id}', status='{self.notification_status.value}')>"

class StaffContact(TimeStampedModel):
    """Notification roster entry: who holds which capability and how to reach them."""
    __tablename__ = "staff_contacts"

    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100))
    roles = Column(JSON, nullable=False)  # capability codes
    phone_number = Column(String(32))
    email = Column(String(200))
    push_token = Column(String(500))
    notifications_enabled = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index('idx_staff_tenant_user', 'tenant_id', 'user_id', unique=True),
    )

    def __repr__(self):
        return f"<StaffContact(user='{self.user_id}', roles={self.roles})>"
