import math
import pytest
from dataclasses import replace

from labalert.errors import MissingAnalyteTargetError
from labalert.models.audit_models import AuditActionEnum
from labalert.models.qc_models import ControlLevelEnum, QCStatusEnum, WestgardRuleEnum
from labalert.notifications.alerts import (
    AlertPriorityEnum, build_qc_failure_alert, qc_failure_priority
)
from labalert.notifications.roster import StaticRoster
from labalert.qc.evaluator import QCRunEvaluator
from labalert.qc.window import StatisticsWindow

from conftest import make_measurement


class TestQCRunEvaluator:

    @pytest.mark.asyncio
    async def test_statistics_count_every_run(self, evaluator, glucose_target):
        values = [100.0, 101.0, 104.5, 99.0, 107.0]  # pass, pass, warning, pass, fail
        for i, value in enumerate(values):
            await evaluator.evaluate(make_measurement(i, value))

        stats = evaluator.get_statistics(glucose_target.key)
        assert stats.total_runs == 5
        assert stats.pass_count == 3
        assert stats.warning_count == 1
        assert stats.fail_count == 1
        assert stats.pass_count + stats.warning_count + stats.fail_count == stats.total_runs
        assert stats.last_run_at == make_measurement(4, 107.0).timestamp

    @pytest.mark.asyncio
    async def test_history_carries_across_evaluations(self, evaluator):
        await evaluator.evaluate(make_measurement(0, 104.2))
        result = await evaluator.evaluate(make_measurement(1, 104.6))

        assert WestgardRuleEnum.RULE_22S in result.rules
        assert result.status == QCStatusEnum.FAIL

    @pytest.mark.asyncio
    async def test_failure_alerts_qc_managers(self, evaluator, notifier):
        result = await evaluator.evaluate(make_measurement(0, 107.0))

        assert result.status == QCStatusEnum.FAIL
        assert result.z_score == pytest.approx(3.5)
        assert notifier.addresses() == ["lee@lab.test"]
        assert notifier.subjects() == ["QC Failure: Glucose (normal)"]
        body = notifier.sent[0][2].body
        assert "Violations: 1-3s" in body
        assert "Instrument: CHEM-01" in body

    @pytest.mark.asyncio
    async def test_warning_does_not_alert(self, evaluator, notifier):
        result = await evaluator.evaluate(make_measurement(0, 104.5))

        assert result.status == QCStatusEnum.WARNING
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, evaluator, notifier, glucose_target):
        measurement = make_measurement(0, 107.0)

        first = await evaluator.evaluate(measurement)
        second = await evaluator.evaluate(measurement)

        assert second == first
        stats = evaluator.get_statistics(glucose_target.key)
        assert stats.total_runs == 1
        assert stats.fail_count == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_late_redelivery_leaves_window_order_alone(self, evaluator, notifier, glucose_target):
        first = make_measurement(0, 104.2)
        await evaluator.evaluate(first)
        for i in range(1, 25):
            await evaluator.evaluate(make_measurement(i, 100.0))

        # long since rolled out of the window
        await evaluator.evaluate(first)
        result = await evaluator.evaluate(make_measurement(25, 104.6))

        assert result.rules == (WestgardRuleEnum.RULE_12S,)
        assert result.status == QCStatusEnum.WARNING
        assert notifier.sent == []
        prior = evaluator.window.prior_points(make_measurement(26, 100.0))
        assert [p.value for p in prior[-2:]] == [100.0, 104.6]
        assert first.measurement_id not in [p.measurement_id for p in prior]

    @pytest.mark.asyncio
    async def test_missing_target_is_configuration_error(self, evaluator):
        with pytest.raises(MissingAnalyteTargetError):
            await evaluator.evaluate(make_measurement(0, 100.0, test_code="NA"))

    @pytest.mark.asyncio
    async def test_batch_continues_past_bad_measurement(self, evaluator, glucose_target):
        batch = [
            make_measurement(0, 100.0),
            make_measurement(1, math.nan),
            make_measurement(2, 100.0, level=ControlLevelEnum.HIGH),  # no target for this level
            make_measurement(3, 101.0),
        ]

        outcome = await evaluator.evaluate_many(batch)

        assert len(outcome.evaluated) == 2
        assert set(outcome.rejected) == {batch[1].measurement_id, batch[2].measurement_id}
        assert evaluator.get_statistics(glucose_target.key).total_runs == 2

    @pytest.mark.asyncio
    async def test_new_lot_replaces_target(self, evaluator, glucose_target, store):
        evaluator.activate_target(replace(glucose_target, target_mean=200.0, lot_number="LOT124"))

        result = await evaluator.evaluate(make_measurement(0, 200.0))

        assert result.status == QCStatusEnum.PASS
        assert store.get_analyte_target(glucose_target.key).lot_number == "LOT124"

    @pytest.mark.asyncio
    async def test_failure_without_qc_manager_is_not_claimed(self, store, dispatcher, notifier, clock, glucose_target):
        roster = StaticRoster()
        window = StatisticsWindow(loader=store.recent_measurements)
        evaluator = QCRunEvaluator(store, window, dispatcher, roster, clock=clock)
        evaluator.activate_target(glucose_target)

        result = await evaluator.evaluate(make_measurement(0, 107.0))

        assert result.status == QCStatusEnum.FAIL
        assert notifier.sent == []
        assert store.claim_qc_alert(result.measurement_id) is True

    @pytest.mark.asyncio
    async def test_failure_alert_is_audited(self, evaluator, glucose_target):
        measurement = make_measurement(0, 107.0)
        await evaluator.evaluate(measurement)
        await evaluator.evaluate(measurement)

        trail = evaluator.history(measurement.measurement_id)

        assert [e.action for e in trail] == [AuditActionEnum.QC_FAILURE_NOTIFICATION]
        entry = trail[0]
        assert entry.success
        assert entry.details['recipients'] == ["qc-lee"]
        assert entry.details['rules'] == ["1-3s"]
        assert entry.details['lot_number'] == "LOT123"

    @pytest.mark.asyncio
    async def test_lot_statistics_against_target(self, evaluator, glucose_target):
        for i, value in enumerate([98.0, 100.0, 102.0, 100.0, 99.0, 101.0]):
            await evaluator.evaluate(make_measurement(i, value))

        stats = evaluator.lot_statistics(glucose_target.key)

        assert stats.n_points == 6
        assert stats.mean == pytest.approx(100.0)
        assert stats.bias_percent == pytest.approx(0.0)


class TestQCFailureAlert:

    @pytest.mark.asyncio
    async def test_priority_urgent_for_reject_rules(self, evaluator, glucose_target):
        result = await evaluator.evaluate(make_measurement(0, 107.0))

        assert qc_failure_priority(result) == AlertPriorityEnum.URGENT

    @pytest.mark.asyncio
    async def test_priority_high_for_22s_only(self, evaluator, glucose_target):
        await evaluator.evaluate(make_measurement(0, 104.2))
        result = await evaluator.evaluate(make_measurement(1, 104.6))
        failing = replace(result, violations=tuple(v for v in result.violations
                                                   if v.rule == WestgardRuleEnum.RULE_22S))

        alert = build_qc_failure_alert(make_measurement(1, 104.6), glucose_target, failing)

        assert alert.priority == AlertPriorityEnum.HIGH
        assert "Z-Score: 2.30" in alert.body
