"""
Critical-result notification state machine.

    pending --(dispatch sent)--> notified --(clinician ack)--> acknowledged
                                     |
                                     +--(no ack past threshold)--> escalated

A dispatch that reaches no channel leaves the state unchanged and only
records the error and the attempt, so the next sweep retries it.
``acknowledged`` and ``escalated`` are terminal.

Every transition is a new ``CriticalResult`` with ``version + 1``, committed
with the store's compare-and-set. Losing that race raises
``PersistenceConflictError``; the record has already been moved on by
someone else and the caller should not act on it further.

Every committed change, and every notification attempt, is then appended to
the audit trail.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..audit.records import CRITICAL_RESULT, AuditEntry
from ..audit.trail import AuditTrail
from ..errors import CriticalResultNotFoundError, InvalidTransitionError, PersistenceConflictError
from ..models.audit_models import AuditActionEnum
from ..models.critical_models import NotificationStatusEnum
from ..notifications.dispatcher import DispatchResult
from ..store.base import AlertStore
from ..utils.timeutils import utcnow
from .records import CriticalResult

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_THRESHOLD = timedelta(minutes=30)

# acknowledge() re-reads and retries this many times when it loses a race
ACK_ATTEMPTS = 3


class CriticalResultTracker:
    def __init__(self, store: AlertStore,
                 escalation_threshold: timedelta = DEFAULT_ESCALATION_THRESHOLD,
                 clock: Callable[[], datetime] = utcnow,
                 audit: Optional[AuditTrail] = None):
        self.store = store
        self.escalation_threshold = escalation_threshold
        self.clock = clock
        self.audit = audit or AuditTrail(store, clock)

    def register(self, result: CriticalResult) -> CriticalResult:
        """Start tracking a newly flagged result. Re-flagging an existing id returns the stored record."""
        pending = replace(
            result,
            notification_status=NotificationStatusEnum.PENDING,
            notification_attempts=0,
            version=0
        )
        if self.store.insert_critical_result(pending):
            logger.warning(f"Critical result {result.result_id} flagged for patient {result.patient_id}: {result.critical_message}")
            self._log(pending, AuditActionEnum.CRITICAL_RESULT_FLAGGED, details={
                'patient_id': result.patient_id,
                'test_code': result.test_code,
                'value': result.value,
                'unit': result.unit,
                'clinician_id': result.clinician_id,
                'critical_message': result.critical_message
            })
            return pending
        logger.info(f"Critical result {result.result_id} already tracked")
        return self.get(result.result_id)

    def get(self, result_id: str) -> CriticalResult:
        result = self.store.get_critical_result(result_id)
        if result is None:
            raise CriticalResultNotFoundError(result_id)
        return result

    def record_dispatch(self, result: CriticalResult, dispatch: DispatchResult) -> CriticalResult:
        """Apply the outcome of a clinician notification."""
        if result.notification_status not in (NotificationStatusEnum.PENDING, NotificationStatusEnum.NOTIFIED):
            raise InvalidTransitionError(result.result_id, result.notification_status.value,
                                         NotificationStatusEnum.NOTIFIED.value)
        if dispatch.any_sent:
            updated = self._next(
                result,
                notification_status=NotificationStatusEnum.NOTIFIED,
                notification_attempts=result.notification_attempts + 1,
                last_notification_at=self.clock(),
                notification_error=None
            )
        else:
            updated = self._next(
                result,
                notification_attempts=result.notification_attempts + 1,
                notification_error=dispatch.error_summary()
            )
        committed = self._commit(result, updated)
        action = (AuditActionEnum.CRITICAL_RESULT_NOTIFICATION if dispatch.any_sent
                  else AuditActionEnum.CRITICAL_RESULT_NOTIFICATION_FAILED)
        self.audit.log_dispatch(action, CRITICAL_RESULT, committed.result_id, committed.tenant_id, dispatch,
                                attempt=committed.notification_attempts)
        return committed

    def record_failure(self, result: CriticalResult, reason: str) -> CriticalResult:
        """Count a notification attempt that could not be made at all, e.g. no contact on file."""
        if result.is_terminal:
            raise InvalidTransitionError(result.result_id, result.notification_status.value,
                                         result.notification_status.value)
        updated = self._next(
            result,
            notification_attempts=result.notification_attempts + 1,
            notification_error=reason
        )
        committed = self._commit(result, updated)
        self._log(committed, AuditActionEnum.CRITICAL_RESULT_NOTIFICATION_FAILED, success=False,
                  details={'attempt': committed.notification_attempts, 'error': reason})
        return committed

    def acknowledge(self, result_id: str, acknowledged_by: str) -> CriticalResult:
        """Record the clinician's acknowledgement. Acknowledging twice is a no-op."""
        for _ in range(ACK_ATTEMPTS):
            current = self.get(result_id)
            if current.notification_status == NotificationStatusEnum.ACKNOWLEDGED:
                return current
            if current.notification_status != NotificationStatusEnum.NOTIFIED:
                raise InvalidTransitionError(result_id, current.notification_status.value,
                                             NotificationStatusEnum.ACKNOWLEDGED.value)
            updated = self._next(
                current,
                notification_status=NotificationStatusEnum.ACKNOWLEDGED,
                acknowledged_at=self.clock(),
                acknowledged_by=acknowledged_by
            )
            try:
                committed = self._commit(current, updated)
            except PersistenceConflictError:
                logger.info(f"Acknowledgement of {result_id} raced another update, re-reading")
                continue
            logger.info(f"Critical result {result_id} acknowledged by {acknowledged_by}")
            self._log(committed, AuditActionEnum.CRITICAL_RESULT_ACKNOWLEDGED, actor=acknowledged_by,
                      details={'notified_at': _iso(committed.last_notification_at)})
            return committed
        raise PersistenceConflictError(result_id, self.get(result_id).version)

    def is_due_for_escalation(self, result: CriticalResult, now: Optional[datetime] = None) -> bool:
        if result.notification_status != NotificationStatusEnum.NOTIFIED:
            return False
        if result.acknowledged_at is not None or result.last_notification_at is None:
            return False
        now = now or self.clock()
        return now - result.last_notification_at >= self.escalation_threshold

    def escalate(self, result: CriticalResult) -> CriticalResult:
        """Move an unacknowledged, stale notification to ``escalated``. Commit before notifying anyone."""
        now = self.clock()
        if not self.is_due_for_escalation(result, now):
            raise InvalidTransitionError(result.result_id, result.notification_status.value,
                                         NotificationStatusEnum.ESCALATED.value)
        updated = self._next(result, notification_status=NotificationStatusEnum.ESCALATED, escalated_at=now)
        committed = self._commit(result, updated)
        logger.warning(
            f"Critical result {result.result_id} escalated: unacknowledged since "
            f"{result.last_notification_at.isoformat()}"
        )
        self._log(committed, AuditActionEnum.CRITICAL_RESULT_ESCALATED, details={
            'unacknowledged_since': _iso(result.last_notification_at),
            'threshold_minutes': self.escalation_threshold.total_seconds() / 60
        })
        return committed

    def record_escalation_dispatch(self, result: CriticalResult, dispatch: DispatchResult) -> CriticalResult:
        if result.notification_status != NotificationStatusEnum.ESCALATED:
            raise InvalidTransitionError(result.result_id, result.notification_status.value,
                                         NotificationStatusEnum.ESCALATED.value)
        if not dispatch.any_sent:
            logger.error(f"Escalation notice for {result.result_id} reached nobody: {dispatch.error_summary()}")
        updated = self._next(
            result,
            notification_attempts=result.notification_attempts + 1,
            last_notification_at=self.clock() if dispatch.any_sent else result.last_notification_at,
            notification_error=dispatch.error_summary()
        )
        committed = self._commit(result, updated)
        self.audit.log_dispatch(AuditActionEnum.ESCALATION_NOTIFICATION, CRITICAL_RESULT, committed.result_id,
                                committed.tenant_id, dispatch, clinician_id=committed.clinician_id)
        return committed

    def history(self, result_id: str) -> List[AuditEntry]:
        """Audit trail of one critical result, oldest first"""
        return self.audit.entity_history(CRITICAL_RESULT, result_id)

    def _next(self, result: CriticalResult, **changes) -> CriticalResult:
        return replace(result, version=result.version + 1, **changes)

    def _commit(self, current: CriticalResult, updated: CriticalResult) -> CriticalResult:
        if not self.store.compare_and_set_critical_result(updated, expected_version=current.version):
            raise PersistenceConflictError(current.result_id, current.version)
        return updated

    def _log(self, result: CriticalResult, action: AuditActionEnum, **kwargs) -> None:
        self.audit.log_activity(action, CRITICAL_RESULT, result.result_id, result.tenant_id, **kwargs)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
