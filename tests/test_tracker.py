import pytest

from labalert.errors import CriticalResultNotFoundError, InvalidTransitionError, PersistenceConflictError
from labalert.models.audit_models import AuditActionEnum
from labalert.models.critical_models import NotificationStatusEnum
from labalert.notifications.alerts import ChannelEnum
from labalert.notifications.dispatcher import ChannelResult, DispatchResult

from conftest import T0, make_critical_result


def sent_dispatch(result_id="CR-1"):
    return DispatchResult(result_id, [ChannelResult("dr-smith", ChannelEnum.SMS, sent=True, provider_id="sms-1")])


def failed_dispatch(result_id="CR-1"):
    return DispatchResult(result_id, [ChannelResult("dr-smith", ChannelEnum.SMS, sent=False, error="gateway down")])


@pytest.fixture
def pending(tracker):
    return tracker.register(make_critical_result())


@pytest.fixture
def notified(tracker, pending):
    return tracker.record_dispatch(pending, sent_dispatch())


class TestCriticalResultTracker:

    def test_register_creates_pending(self, pending, store):
        assert pending.notification_status == NotificationStatusEnum.PENDING
        assert pending.notification_attempts == 0
        assert store.get_critical_result("CR-1") == pending

    def test_register_twice_keeps_first_record(self, tracker, notified):
        again = tracker.register(make_critical_result())

        assert again == notified

    def test_successful_dispatch_notifies(self, notified, clock):
        assert notified.notification_status == NotificationStatusEnum.NOTIFIED
        assert notified.notification_attempts == 1
        assert notified.last_notification_at == clock.now
        assert notified.notification_error is None
        assert notified.version == 1

    def test_failed_dispatch_stays_pending(self, tracker, pending):
        updated = tracker.record_dispatch(pending, failed_dispatch())

        assert updated.notification_status == NotificationStatusEnum.PENDING
        assert updated.notification_attempts == 1
        assert "gateway down" in updated.notification_error
        assert updated.last_notification_at is None

    def test_success_clears_previous_error(self, tracker, pending):
        failed = tracker.record_dispatch(pending, failed_dispatch())
        notified = tracker.record_dispatch(failed, sent_dispatch())

        assert notified.notification_error is None
        assert notified.notification_attempts == 2

    def test_acknowledge_is_terminal_and_idempotent(self, tracker, notified, clock):
        clock.advance(minutes=5)
        acknowledged = tracker.acknowledge("CR-1", "dr-smith")

        assert acknowledged.notification_status == NotificationStatusEnum.ACKNOWLEDGED
        assert acknowledged.acknowledged_at == clock.now
        assert acknowledged.acknowledged_by == "dr-smith"
        assert acknowledged.is_terminal
        assert tracker.acknowledge("CR-1", "dr-other") == acknowledged

    def test_acknowledge_pending_is_rejected(self, tracker, pending):
        with pytest.raises(InvalidTransitionError):
            tracker.acknowledge("CR-1", "dr-smith")

    def test_acknowledge_unknown_result(self, tracker):
        with pytest.raises(CriticalResultNotFoundError):
            tracker.acknowledge("missing", "dr-smith")

    def test_escalate_only_after_threshold(self, tracker, notified, clock):
        clock.advance(minutes=29)
        assert not tracker.is_due_for_escalation(notified)
        with pytest.raises(InvalidTransitionError):
            tracker.escalate(notified)

        clock.advance(minutes=1)
        escalated = tracker.escalate(notified)
        assert escalated.notification_status == NotificationStatusEnum.ESCALATED
        assert escalated.escalated_at == clock.now

    def test_escalated_is_terminal(self, tracker, notified, clock):
        clock.advance(minutes=31)
        escalated = tracker.escalate(notified)

        with pytest.raises(InvalidTransitionError):
            tracker.acknowledge("CR-1", "dr-smith")
        with pytest.raises(InvalidTransitionError):
            tracker.record_dispatch(escalated, sent_dispatch())
        with pytest.raises(InvalidTransitionError):
            tracker.escalate(escalated)

    def test_stale_copy_loses_the_race(self, tracker, notified, clock):
        clock.advance(minutes=31)
        tracker.acknowledge("CR-1", "dr-smith")

        with pytest.raises(PersistenceConflictError):
            tracker.escalate(notified)
        assert tracker.get("CR-1").notification_status == NotificationStatusEnum.ACKNOWLEDGED

    def test_escalation_dispatch_keeps_state(self, tracker, notified, clock):
        clock.advance(minutes=31)
        escalated = tracker.escalate(notified)

        recorded = tracker.record_escalation_dispatch(escalated, failed_dispatch())

        assert recorded.notification_status == NotificationStatusEnum.ESCALATED
        assert recorded.notification_attempts == 2
        assert recorded.notification_error is not None

    def test_record_failure_counts_attempt(self, tracker, pending):
        updated = tracker.record_failure(pending, "No notification contact for clinician dr-x")

        assert updated.notification_status == NotificationStatusEnum.PENDING
        assert updated.notification_attempts == 1
        assert updated.notification_error == "No notification contact for clinician dr-x"

    def test_attempt_counter_never_decreases(self, tracker, pending):
        attempts = []
        current = pending
        for dispatch in (failed_dispatch(), failed_dispatch(), sent_dispatch()):
            current = tracker.record_dispatch(current, dispatch)
            attempts.append(current.notification_attempts)

        assert attempts == [1, 2, 3]
        assert current.version == 3
        assert current.flagged_at == T0


class TestCriticalResultAuditTrail:

    def test_acknowledgement_is_recorded_with_the_clinician(self, tracker, notified, clock):
        clock.advance(minutes=5)
        tracker.acknowledge("CR-1", "dr-smith")
        tracker.acknowledge("CR-1", "dr-other")

        trail = tracker.history("CR-1")

        assert [e.action for e in trail] == [
            AuditActionEnum.CRITICAL_RESULT_FLAGGED,
            AuditActionEnum.CRITICAL_RESULT_NOTIFICATION,
            AuditActionEnum.CRITICAL_RESULT_ACKNOWLEDGED,
        ]
        acknowledged = trail[-1]
        assert acknowledged.actor == "dr-smith"
        assert acknowledged.occurred_at == clock.now
        assert acknowledged.details['notified_at'] == T0.isoformat()

    def test_lost_race_writes_no_entry(self, tracker, notified, clock):
        clock.advance(minutes=31)
        tracker.acknowledge("CR-1", "dr-smith")

        with pytest.raises(PersistenceConflictError):
            tracker.escalate(notified)

        actions = [e.action for e in tracker.history("CR-1")]
        assert AuditActionEnum.CRITICAL_RESULT_ESCALATED not in actions

    def test_reflagging_is_not_recorded_twice(self, tracker, pending):
        tracker.register(make_critical_result())

        assert [e.action for e in tracker.history("CR-1")] == [AuditActionEnum.CRITICAL_RESULT_FLAGGED]
