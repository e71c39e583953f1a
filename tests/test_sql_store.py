import pytest
from dataclasses import replace
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labalert.audit.records import CRITICAL_RESULT, AuditEntry
from labalert.critical.sweeper import EscalationSweeper
from labalert.critical.tracker import CriticalResultTracker
from labalert.models.audit_models import AuditActionEnum
from labalert.models.base import Base
from labalert.models import audit_models, critical_models, qc_models  # noqa: F401
from labalert.models.critical_models import NotificationStatusEnum
from labalert.models.qc_models import QCStatusEnum, WestgardRuleEnum
from labalert.notifications.roster import CapabilityEnum, SqlRosterResolver, StaffMember
from labalert.qc.evaluator import QCRunEvaluator
from labalert.qc.records import QCEvaluationResult
from labalert.qc.window import StatisticsWindow
from labalert.store.sql import SqlAlchemyAlertStore

from conftest import T0, make_critical_result, make_measurement


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlAlchemyAlertStore(session_factory)


@pytest.fixture
def sql_roster(session_factory):
    resolver = SqlRosterResolver(session_factory)
    resolver.upsert(StaffMember(user_id="dr-smith", phone="+15550001", email="smith@lab.test"))
    resolver.upsert(StaffMember(user_id="qc-lee", capabilities=frozenset({CapabilityEnum.QC_MANAGER}),
                                email="lee@lab.test"))
    resolver.upsert(StaffMember(user_id="dr-oncall", capabilities=frozenset({CapabilityEnum.ON_CALL_PHYSICIAN}),
                                phone="+15550002"))
    return resolver


class TestQCPersistence:

    def test_target_activation_replaces_previous_lot(self, sql_store, glucose_target):
        sql_store.activate_analyte_target(glucose_target, T0)
        sql_store.activate_analyte_target(replace(glucose_target, lot_number="LOT124", target_mean=101.0),
                                          T0 + timedelta(days=30))

        active = sql_store.get_analyte_target(glucose_target.key)
        assert active.lot_number == "LOT124"
        assert active.target_mean == 101.0
        assert active.enabled_rules == glucose_target.enabled_rules

    def test_measurement_insert_is_idempotent(self, sql_store):
        measurement = make_measurement(0, 100.0)

        assert sql_store.insert_measurement(measurement) is True
        assert sql_store.insert_measurement(measurement) is False

    def test_recent_measurements_oldest_first(self, sql_store, glucose_target):
        for i in range(25):
            sql_store.insert_measurement(make_measurement(i, 100.0 + i))

        recent = sql_store.recent_measurements(glucose_target.key, 21)

        assert len(recent) == 21
        assert recent[0].value == 104.0
        assert recent[-1].value == 124.0
        assert recent[-1].timestamp == make_measurement(24, 124.0).timestamp

    def test_first_evaluation_wins(self, sql_store):
        measurement = make_measurement(0, 107.0)
        sql_store.insert_measurement(measurement)
        first = QCEvaluationResult.from_violations(measurement.measurement_id, 3.5, [], T0)
        second = replace(first, z_score=9.9)

        assert sql_store.insert_evaluation(first) == first
        assert sql_store.insert_evaluation(second) == first
        assert sql_store.get_evaluation(measurement.measurement_id) == first

    def test_statistics_counted_once_per_measurement(self, sql_store, glucose_target):
        key = glucose_target.key

        assert sql_store.increment_statistics(key, "RUN_1", QCStatusEnum.PASS, T0)
        assert sql_store.increment_statistics(key, "RUN_2", QCStatusEnum.FAIL, T0 + timedelta(hours=1))
        assert not sql_store.increment_statistics(key, "RUN_2", QCStatusEnum.FAIL, T0 + timedelta(hours=1))

        stats = sql_store.get_statistics(key)
        assert stats.total_runs == 2
        assert stats.pass_count == 1
        assert stats.fail_count == 1
        assert stats.last_run_at == T0 + timedelta(hours=1)

    def test_qc_alert_claimed_once(self, sql_store):
        measurement = make_measurement(0, 107.0)
        sql_store.insert_measurement(measurement)

        assert sql_store.claim_qc_alert(measurement.measurement_id)
        assert not sql_store.claim_qc_alert(measurement.measurement_id)

    @pytest.mark.asyncio
    async def test_evaluator_over_sql_store(self, sql_store, sql_roster, dispatcher, notifier, clock, glucose_target):
        window = StatisticsWindow(loader=sql_store.recent_measurements)
        evaluator = QCRunEvaluator(sql_store, window, dispatcher, sql_roster, clock=clock)
        evaluator.activate_target(glucose_target)

        await evaluator.evaluate(make_measurement(0, 104.2))
        # a fresh window must warm from the database
        evaluator.window.reset()
        result = await evaluator.evaluate(make_measurement(1, 104.6))

        assert result.rules == (WestgardRuleEnum.RULE_12S, WestgardRuleEnum.RULE_22S)
        assert result.status == QCStatusEnum.FAIL
        assert notifier.addresses() == ["lee@lab.test"]
        assert evaluator.get_statistics(glucose_target.key).total_runs == 2


class TestCriticalResultPersistence:

    def test_round_trip(self, sql_store):
        result = make_critical_result()

        assert sql_store.insert_critical_result(result)
        assert not sql_store.insert_critical_result(result)
        assert sql_store.get_critical_result("CR-1") == result

    def test_text_values_survive(self, sql_store):
        result = replace(make_critical_result(), value="Positive")
        sql_store.insert_critical_result(result)

        assert sql_store.get_critical_result("CR-1").value == "Positive"

    def test_compare_and_set_checks_version(self, sql_store):
        result = make_critical_result()
        sql_store.insert_critical_result(result)
        notified = replace(result, notification_status=NotificationStatusEnum.NOTIFIED,
                           last_notification_at=T0, notification_attempts=1, version=1)

        assert sql_store.compare_and_set_critical_result(notified, expected_version=0)
        assert not sql_store.compare_and_set_critical_result(replace(notified, version=1), expected_version=0)
        assert sql_store.get_critical_result("CR-1") == notified

    def test_stale_query_uses_cutoff(self, sql_store):
        for i, minutes in enumerate((10, 40)):
            result = replace(make_critical_result(f"CR-{i}"), notification_status=NotificationStatusEnum.NOTIFIED,
                             last_notification_at=T0 - timedelta(minutes=minutes))
            sql_store.insert_critical_result(result)

        stale = sql_store.find_unacknowledged_notified(T0 - timedelta(minutes=30))

        assert [r.result_id for r in stale] == ["CR-1"]

    @pytest.mark.asyncio
    async def test_sweep_over_sql_store(self, sql_store, sql_roster, dispatcher, notifier, clock):
        tracker = CriticalResultTracker(sql_store, timedelta(minutes=30), clock=clock)
        sweeper = EscalationSweeper(sql_store, tracker, dispatcher, sql_roster)
        tracker.register(make_critical_result())

        await sweeper.sweep()
        clock.advance(minutes=29)
        assert (await sweeper.sweep()).escalated == 0
        clock.advance(minutes=2)
        assert (await sweeper.sweep()).escalated == 1
        assert (await sweeper.sweep()).escalated == 0

        escalated = sql_store.get_critical_result("CR-1")
        assert escalated.notification_status == NotificationStatusEnum.ESCALATED
        assert escalated.escalated_at == clock.now
        assert notifier.addresses()[-1] == "+15550002"
        assert [e.action for e in tracker.history("CR-1")] == [
            AuditActionEnum.CRITICAL_RESULT_FLAGGED,
            AuditActionEnum.CRITICAL_RESULT_NOTIFICATION,
            AuditActionEnum.CRITICAL_RESULT_ESCALATED,
            AuditActionEnum.ESCALATION_NOTIFICATION,
        ]


class TestAuditLogPersistence:

    def test_entries_come_back_in_write_order(self, sql_store):
        for minutes, action in ((0, AuditActionEnum.CRITICAL_RESULT_FLAGGED),
                                (1, AuditActionEnum.CRITICAL_RESULT_NOTIFICATION_FAILED),
                                (1, AuditActionEnum.CRITICAL_RESULT_NOTIFICATION)):
            sql_store.append_audit_entry(AuditEntry(
                action=action,
                entity_type=CRITICAL_RESULT,
                entity_id="CR-1",
                occurred_at=T0 + timedelta(minutes=minutes),
                details={'attempt': minutes}
            ))
        sql_store.append_audit_entry(AuditEntry(
            action=AuditActionEnum.CRITICAL_RESULT_FLAGGED,
            entity_type=CRITICAL_RESULT,
            entity_id="CR-2",
            occurred_at=T0
        ))

        trail = sql_store.audit_entries(CRITICAL_RESULT, "CR-1")

        assert [e.action for e in trail] == [
            AuditActionEnum.CRITICAL_RESULT_FLAGGED,
            AuditActionEnum.CRITICAL_RESULT_NOTIFICATION_FAILED,
            AuditActionEnum.CRITICAL_RESULT_NOTIFICATION,
        ]
        assert trail[1].occurred_at == T0 + timedelta(minutes=1)
        assert trail[1].details == {'attempt': 1}


class TestSqlRoster:

    def test_resolve_user_and_capability(self, sql_roster):
        assert sql_roster.resolve_user("default", "dr-smith").phone == "+15550001"
        assert [r.recipient_id for r in sql_roster.resolve_capability("default", CapabilityEnum.QC_MANAGER)] == ["qc-lee"]
        assert sql_roster.resolve_user("other-tenant", "dr-smith") is None

    def test_disabled_contacts_are_not_resolved(self, sql_roster):
        sql_roster.upsert(StaffMember(user_id="qc-lee", capabilities=frozenset({CapabilityEnum.QC_MANAGER}),
                                      email="lee@lab.test", notifications_enabled=False))

        assert sql_roster.resolve_capability("default", CapabilityEnum.QC_MANAGER) == []
        assert len(sql_roster.list_staff("default")) == 3
