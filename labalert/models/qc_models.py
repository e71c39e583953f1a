from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, ForeignKey, Index, Enum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
import enum
from .base import TimeStampedModel, AuditMixin

class ControlLevelEnum(enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

class QCStatusEnum(enum.Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"

class WestgardRuleEnum(enum.Enum):
    RULE_12S = "1-2s"
    RULE_13S = "1-3s"
    RULE_22S = "2-2s"
    RULE_R4S = "R-4s"
    RULE_41S = "4-1s"
    RULE_10X = "10x"

class RuleSeverityEnum(enum.Enum):
    WARNING = "warning"
    ERROR = "error"

class QCTarget(TimeStampedModel, AuditMixin):
    """Target mean/SD for one control lot. Replaced, never edited, when a new lot is activated."""
    __tablename__ = "qc_targets"

    test_code = Column(String(50), nullable=False, index=True)
    control_level = Column(Enum(ControlLevelEnum), nullable=False)
    lot_number = Column(String(50))

    target_mean = Column(Float, nullable=False)
    target_sd = Column(Float, nullable=False)
    acceptable_low = Column(Float)
    acceptable_high = Column(Float)
    enabled_rules = Column(JSON, nullable=False)  # ordered list of rule codes

    is_active = Column(Boolean, default=True, nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_target_key_active', 'tenant_id', 'test_code', 'control_level', 'is_active'),
    )

    def __repr__(self):
        return f"<QCTarget(test='{self.test_code}', level='{self.control_level.value}', lot='{self.lot_number}')>"

class QCMeasurementRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "qc_measurements"

    measurement_id = Column(String(64), unique=True, nullable=False, index=True)

    # Measurement data, written once
    test_code = Column(String(50), nullable=False)
    test_name = Column(String(100))
    control_level = Column(Enum(ControlLevelEnum), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String(20))
    measured_at = Column(DateTime(timezone=True), nullable=False)
    operator_id = Column(String(100))
    instrument_id = Column(String(50))

    # Evaluation, written once when the measurement is evaluated
    status = Column(Enum(QCStatusEnum))
    z_score = Column(Float)
    violations = Column(JSON)
    evaluated_at = Column(DateTime(timezone=True))
    alert_raised = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index('idx_measurement_key_time', 'tenant_id', 'test_code', 'control_level', 'measured_at'),
    )

    def __repr__(self):
        return f"<QCMeasurementRecord(id='{self.measurement_id}', value={self.value})>"

class QCStatisticsRecord(TimeStampedModel):
    __tablename__ = "qc_statistics"

    test_code = Column(String(50), nullable=False)
    control_level = Column(Enum(ControlLevelEnum), nullable=False)

    total_runs = Column(Integer, default=0, nullable=False)
    pass_count = Column(Integer, default=0, nullable=False)
    warning_count = Column(Integer, default=0, nullable=False)
    fail_count = Column(Integer, default=0, nullable=False)
    last_run_at = Column(DateTime(timezone=True))

    counted_measurements = relationship("QCStatisticsLedger", back_populates="statistics")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'test_code', 'control_level', name='uq_statistics_key'),
    )

    def __repr__(self):
        return f"<QCStatisticsRecord(test='{self.test_code}', total={self.total_runs})>"

class QCStatisticsLedger(TimeStampedModel):
    """One row per measurement counted into ``qc_statistics``; makes increments idempotent."""
    __tablename__ = "qc_statistics_ledger"

    measurement_id = Column(String(64), unique=True, nullable=False)
    status = Column(Enum(QCStatusEnum), nullable=False)

    statistics_id = Column(Integer, ForeignKey('qc_statistics.id'), nullable=False)
    statistics = relationship("QCStatisticsRecord", back_populates="counted_measurements")
