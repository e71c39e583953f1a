import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set, Tuple

from labalert.critical.records import CriticalResult
from labalert.critical.sweeper import EscalationSweeper
from labalert.critical.tracker import CriticalResultTracker
from labalert.models.qc_models import ControlLevelEnum
from labalert.notifications.alerts import ChannelEnum
from labalert.notifications.dispatcher import NotificationDispatcher
from labalert.notifications.notifier import NotificationContent, Notifier, SendReceipt
from labalert.notifications.roster import CapabilityEnum, StaffMember, StaticRoster
from labalert.qc.evaluator import QCRunEvaluator
from labalert.qc.records import QCAnalyteTarget, QCMeasurement
from labalert.qc.window import StatisticsWindow
from labalert.store.memory import InMemoryAlertStore

T0 = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock shared by the tracker, evaluator and sweeper"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    """Records every send; channels in ``failing`` raise instead of sending"""

    def __init__(self, failing: Optional[Set[ChannelEnum]] = None):
        self.failing = failing or set()
        self.sent: List[Tuple[ChannelEnum, str, NotificationContent]] = []

    async def send(self, channel, address, content):
        if channel in self.failing:
            raise ConnectionError(f"{channel.value} provider unavailable")
        self.sent.append((channel, address, content))
        return SendReceipt(delivered=True, provider_id=f"{channel.value}-{len(self.sent)}")

    def addresses(self) -> List[str]:
        return [address for _, address, _ in self.sent]

    def subjects(self) -> List[str]:
        return [content.subject for _, _, content in self.sent]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def roster():
    return StaticRoster([
        StaffMember(user_id="dr-smith", name="Dr Smith", phone="+15550001", email="smith@lab.test"),
        StaffMember(user_id="qc-lee", name="Lee", capabilities=frozenset({CapabilityEnum.QC_MANAGER}),
                    email="lee@lab.test"),
        StaffMember(user_id="dr-oncall", name="On call", capabilities=frozenset({CapabilityEnum.ON_CALL_PHYSICIAN}),
                    phone="+15550002", push_token="push-oncall"),
        StaffMember(user_id="sup-kim", name="Kim", capabilities=frozenset({CapabilityEnum.LAB_SUPERVISOR}),
                    email="kim@lab.test"),
    ])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, channel_timeout_seconds=1.0)


@pytest.fixture
def tracker(store, clock):
    return CriticalResultTracker(store, timedelta(minutes=30), clock=clock)


@pytest.fixture
def sweeper(store, tracker, dispatcher, roster):
    return EscalationSweeper(store, tracker, dispatcher, roster, concurrency=10)


@pytest.fixture
def glucose_target():
    return QCAnalyteTarget(
        test_code="GLU",
        control_level=ControlLevelEnum.NORMAL,
        target_mean=100.0,
        target_sd=2.0,
        lot_number="LOT123"
    )


@pytest.fixture
def evaluator(store, dispatcher, roster, clock, glucose_target):
    window = StatisticsWindow(capacity=20, loader=store.recent_measurements)
    qc_evaluator = QCRunEvaluator(store, window, dispatcher, roster, clock=clock)
    qc_evaluator.activate_target(glucose_target)
    return qc_evaluator


def make_measurement(index: int, value: float, test_code: str = "GLU",
                     level: ControlLevelEnum = ControlLevelEnum.NORMAL) -> QCMeasurement:
    return QCMeasurement(
        measurement_id=f"RUN_{test_code}_{level.value}_{index:03d}",
        test_code=test_code,
        control_level=level,
        value=value,
        unit="mg/dL",
        timestamp=T0 + timedelta(hours=index),
        operator_id=f"OP{index % 3 + 1}",
        test_name="Glucose",
        instrument_id="CHEM-01"
    )


def make_critical_result(result_id: str = "CR-1", clinician_id: str = "dr-smith") -> CriticalResult:
    return CriticalResult(
        result_id=result_id,
        patient_id="P-100",
        test_code="K",
        test_name="Potassium",
        value=6.8,
        unit="mmol/L",
        clinician_id=clinician_id,
        flagged_at=T0,
        reference_range="3.5-5.1",
        critical_message="CRITICALLY HIGH: 6.8 mmol/L (Critical High: 6.2)"
    )
