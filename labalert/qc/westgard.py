import math
import logging
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from ..errors import InvalidMeasurementError
from ..models.qc_models import RuleSeverityEnum, WestgardRuleEnum
from .records import QCAnalyteTarget, QCMeasurement, RuleViolation

logger = logging.getLogger(__name__)

# Rules that cannot be evaluated without a usable target SD
SD_RULES = frozenset({
    WestgardRuleEnum.RULE_12S,
    WestgardRuleEnum.RULE_13S,
    WestgardRuleEnum.RULE_22S,
    WestgardRuleEnum.RULE_R4S,
    WestgardRuleEnum.RULE_41S,
})


def z_score(value: float, target: QCAnalyteTarget) -> Optional[float]:
    """(value - target mean) / target SD, or None when the target SD is unusable"""
    if not _usable_sd(target):
        return None
    return (value - target.target_mean) / target.target_sd


def _usable_sd(target: QCAnalyteTarget) -> bool:
    return math.isfinite(target.target_sd) and target.target_sd > 0


class WestgardRuleEngine:
    """Westgard multi-rule evaluation of a single QC point.

    The engine is stateless: every call receives the point, its analyte target
    and the recent values for the same test and control level, oldest first,
    with the new value as the last element. Every enabled rule is evaluated
    independently and every firing rule is reported.
    """

    def __init__(self):
        self._checks: Dict[WestgardRuleEnum, Callable[[np.ndarray, np.ndarray, QCAnalyteTarget], Optional[RuleViolation]]] = {
            WestgardRuleEnum.RULE_12S: self._check_12s,
            WestgardRuleEnum.RULE_13S: self._check_13s,
            WestgardRuleEnum.RULE_22S: self._check_22s,
            WestgardRuleEnum.RULE_R4S: self._check_r4s,
            WestgardRuleEnum.RULE_41S: self._check_41s,
            WestgardRuleEnum.RULE_10X: self._check_10x,
        }

    def evaluate(self, measurement: QCMeasurement, target: QCAnalyteTarget,
                 values: Sequence[float]) -> List[RuleViolation]:
        """Evaluate the enabled rules, in the target's order, for the last point of ``values``"""
        if not math.isfinite(measurement.value):
            raise InvalidMeasurementError(
                f"QC value {measurement.value!r} is not a finite number",
                record_id=measurement.measurement_id
            )
        series = np.asarray(list(values) or [measurement.value], dtype=float)
        if series[-1] != measurement.value:
            raise InvalidMeasurementError(
                "QC window must end with the measurement being evaluated",
                record_id=measurement.measurement_id
            )
        if not math.isfinite(target.target_mean):
            logger.warning(f"Target mean for {target.test_code}/{target.control_level.value} is not finite, skipping all rules")
            return []

        sd_usable = _usable_sd(target)
        if not sd_usable:
            logger.warning(
                f"Target SD {target.target_sd} for {target.test_code}/{target.control_level.value} "
                f"is unusable, skipping SD-based rules for {measurement.measurement_id}"
            )
        z_scores = (series - target.target_mean) / target.target_sd if sd_usable else np.array([])

        violations = []
        for rule in dict.fromkeys(target.enabled_rules):
            if rule in SD_RULES and not sd_usable:
                continue
            if violation := self._checks[rule](series, z_scores, target):
                violations.append(violation)
        return violations

    def _check_12s(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """1-2s: current point between 2SD and 3SD from the mean"""
        z = float(z_scores[-1])
        if 2 <= abs(z) < 3:
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_12S,
                severity=RuleSeverityEnum.WARNING,
                description=f"Result is {z:.2f} SD from mean (warning)"
            )
        return None

    def _check_13s(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """1-3s: current point 3SD or more from the mean"""
        z = float(z_scores[-1])
        if abs(z) >= 3:
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_13S,
                severity=RuleSeverityEnum.ERROR,
                description=f"Result is {z:.2f} SD from mean (reject)"
            )
        return None

    def _check_22s(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """2-2s: current and previous point both beyond 2SD on the same side"""
        if len(z_scores) < 2:
            return None
        z_prev, z = float(z_scores[-2]), float(z_scores[-1])
        if abs(z) >= 2 and abs(z_prev) >= 2 and np.sign(z) == np.sign(z_prev):
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_22S,
                severity=RuleSeverityEnum.ERROR,
                description=f"2 consecutive results outside 2SD on same side ({z_prev:.2f}, {z:.2f})"
            )
        return None

    def _check_r4s(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """R-4s: range between the two latest points exceeds 4SD"""
        if len(series) < 2:
            return None
        range_val = abs(float(series[-1] - series[-2]))
        # one SD per lot and level, so the average of the two SDs is the target SD
        avg_sd = (target.target_sd + target.target_sd) / 2
        if range_val > 4 * avg_sd:
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_R4S,
                severity=RuleSeverityEnum.ERROR,
                description=f"Range between consecutive results exceeds 4SD (range: {range_val:.2f})"
            )
        return None

    def _check_41s(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """4-1s: last four points beyond 1SD on the same side"""
        if len(z_scores) < 4:
            return None
        last4 = z_scores[-4:]
        if np.all(np.abs(last4) > 1) and (np.all(last4 > 0) or np.all(last4 < 0)):
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_41S,
                severity=RuleSeverityEnum.ERROR,
                description="4 consecutive results outside 1SD on same side"
            )
        return None

    def _check_10x(self, series: np.ndarray, z_scores: np.ndarray, target: QCAnalyteTarget) -> Optional[RuleViolation]:
        """10x: last ten points on the same side of the mean; a point on the mean breaks the run"""
        if len(series) < 10:
            return None
        signs = np.sign(series[-10:] - target.target_mean)
        if np.all(signs == 1) or np.all(signs == -1):
            side = "above" if signs[-1] > 0 else "below"
            return RuleViolation(
                rule=WestgardRuleEnum.RULE_10X,
                severity=RuleSeverityEnum.WARNING,
                description=f"10 consecutive results {side} the mean"
            )
        return None
