import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from ..audit.records import QC_MEASUREMENT, AuditEntry
from ..audit.trail import AuditTrail
from ..errors import AlertingError, MissingAnalyteTargetError
from ..models.audit_models import AuditActionEnum
from ..models.qc_models import QCStatusEnum
from ..notifications.alerts import build_qc_failure_alert
from ..notifications.dispatcher import DispatchResult, NotificationDispatcher
from ..notifications.roster import CapabilityEnum, RecipientResolver
from ..store.base import AlertStore
from ..utils.timeutils import utcnow
from .lot_statistics import LotStatistics, calculate_lot_statistics
from .records import QCAnalyteTarget, QCEvaluationResult, QCMeasurement, QCRunningStatistics, StatisticsKey
from .westgard import WestgardRuleEngine, z_score
from .window import StatisticsWindow

logger = logging.getLogger(__name__)


@dataclass
class QCBatchOutcome:
    evaluated: List[QCEvaluationResult] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'evaluated': [r.to_dict() for r in self.evaluated],
            'rejected': dict(self.rejected)
        }


class QCRunEvaluator:
    """Evaluates QC runs and applies their side effects exactly once per measurement.

    For every measurement: look up the active target, run the Westgard rules
    over the recent window, persist the measurement and its evaluation, count
    the run into the running statistics and, on ``fail``, alert the tenant's
    QC managers. A redelivered measurement reuses its stored evaluation and
    changes nothing.
    """

    def __init__(self, store: AlertStore, window: StatisticsWindow,
                 dispatcher: NotificationDispatcher, resolver: RecipientResolver,
                 engine: Optional[WestgardRuleEngine] = None,
                 clock: Callable[[], datetime] = utcnow,
                 audit: Optional[AuditTrail] = None):
        self.store = store
        self.window = window
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.engine = engine or WestgardRuleEngine()
        self.clock = clock
        self.audit = audit or AuditTrail(store, clock)

    def activate_target(self, target: QCAnalyteTarget) -> None:
        """Activate a new control lot's target; cached history for the key starts over"""
        self.store.activate_analyte_target(target, self.clock())
        self.window.reset(target.key)
        logger.info(
            f"Activated QC target for {target.test_code}/{target.control_level.value} "
            f"lot {target.lot_number}: mean={target.target_mean}, SD={target.target_sd}"
        )

    def get_target(self, key: StatisticsKey) -> QCAnalyteTarget:
        target = self.store.get_analyte_target(key)
        if target is None:
            raise MissingAnalyteTargetError(key[0], key[1], key[2].value)
        return target

    async def evaluate(self, measurement: QCMeasurement) -> QCEvaluationResult:
        target = self.get_target(measurement.key)

        result = self.store.get_evaluation(measurement.measurement_id)
        if result is None:
            values = self.window.values_for(measurement)
            violations = self.engine.evaluate(measurement, target, values)
            candidate = QCEvaluationResult.from_violations(
                measurement.measurement_id,
                z_score(measurement.value, target),
                violations,
                self.clock()
            )
            self.store.insert_measurement(measurement)
            result = self.store.insert_evaluation(candidate)
            self.window.append(measurement)
        else:
            logger.info(f"QC measurement {measurement.measurement_id} already evaluated, reusing result")

        if self.store.increment_statistics(measurement.key, measurement.measurement_id,
                                           result.status, measurement.timestamp):
            logger.info(
                f"QC {measurement.test_code}/{measurement.control_level.value} "
                f"run {measurement.measurement_id}: {result.status.value} {[r.value for r in result.rules]}"
            )

        if result.status == QCStatusEnum.FAIL:
            await self._alert_qc_managers(measurement, target, result)
        return result

    async def evaluate_many(self, measurements: Sequence[QCMeasurement]) -> QCBatchOutcome:
        """Evaluate in order; a bad measurement is rejected without stopping the batch"""
        outcome = QCBatchOutcome()
        for measurement in measurements:
            try:
                outcome.evaluated.append(await self.evaluate(measurement))
            except AlertingError as e:
                outcome.rejected[measurement.measurement_id] = str(e)
                logger.error(f"Rejected QC measurement {measurement.measurement_id}: {str(e)}")
            except Exception as e:
                outcome.rejected[measurement.measurement_id] = str(e) or type(e).__name__
                logger.exception(f"Unexpected error evaluating QC measurement {measurement.measurement_id}: {str(e)}")
        return outcome

    def get_statistics(self, key: StatisticsKey) -> QCRunningStatistics:
        stats = self.store.get_statistics(key)
        if stats is None:
            tenant_id, test_code, control_level = key
            return QCRunningStatistics(test_code=test_code, control_level=control_level, tenant_id=tenant_id)
        return stats

    def history(self, measurement_id: str) -> List[AuditEntry]:
        """Audit trail of one QC measurement, oldest first"""
        return self.audit.entity_history(QC_MEASUREMENT, measurement_id)

    def lot_statistics(self, key: StatisticsKey, limit: int = 100) -> LotStatistics:
        target = self.get_target(key)
        values = [m.value for m in self.store.recent_measurements(key, limit)]
        return calculate_lot_statistics(values, target)

    async def _alert_qc_managers(self, measurement: QCMeasurement, target: QCAnalyteTarget,
                                 result: QCEvaluationResult) -> Optional[DispatchResult]:
        recipients = self.resolver.resolve_capability(measurement.tenant_id, CapabilityEnum.QC_MANAGER)
        if not recipients:
            # not claimed, so a redelivery can still raise the alert once the roster is fixed
            logger.error(
                f"QC failure on {measurement.measurement_id} but tenant {measurement.tenant_id} has no QC manager"
            )
            return None
        if not self.store.claim_qc_alert(measurement.measurement_id):
            return None

        outcome = await self.dispatcher.dispatch(build_qc_failure_alert(measurement, target, result), recipients)
        if not outcome.any_sent:
            logger.error(f"QC failure alert for {measurement.measurement_id} reached nobody: {outcome.error_summary()}")
        self.audit.log_dispatch(
            AuditActionEnum.QC_FAILURE_NOTIFICATION, QC_MEASUREMENT, measurement.measurement_id,
            measurement.tenant_id, outcome,
            test_code=measurement.test_code,
            control_level=measurement.control_level.value,
            value=measurement.value,
            rules=[r.value for r in result.rules],
            lot_number=target.lot_number
        )
        return outcome
