import math
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats
from scipy.stats import normaltest

from .records import QCAnalyteTarget, QCMeasurement

logger = logging.getLogger(__name__)

MIN_LOT_POINTS = 20
MAX_LOT_CV_PERCENT = 15.0


@dataclass
class LotStatistics:
    """Statistical summary of the QC points of one control lot"""
    n_points: int
    mean: float
    std_dev: float
    cv_percent: float
    min_value: float
    max_value: float
    q1: float
    median: float
    q3: float
    iqr: float
    outlier_count: int
    normality_p_value: Optional[float] = None
    trend_slope: Optional[float] = None
    trend_p_value: Optional[float] = None
    bias_percent: Optional[float] = None
    precision_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_points": self.n_points,
            "mean": self.mean,
            "std_dev": self.std_dev,
            "cv_percent": self.cv_percent,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "quartiles": {"q1": self.q1, "median": self.median, "q3": self.q3, "iqr": self.iqr},
            "outlier_count": self.outlier_count,
            "normality_p_value": self.normality_p_value,
            "trend": {"slope": self.trend_slope, "p_value": self.trend_p_value},
            "bias_percent": self.bias_percent,
            "precision_ratio": self.precision_ratio
        }


def _finite_or_none(value: float) -> Optional[float]:
    value = float(value)
    return value if math.isfinite(value) else None


def calculate_lot_statistics(values: Sequence[float], target: Optional[QCAnalyteTarget] = None) -> LotStatistics:
    """Descriptive statistics, normality, drift and (given a target) bias and precision."""
    if len(values) < 2:
        raise ValueError(f"At least 2 QC values are needed for lot statistics, got {len(values)}")
    values_array = np.asarray(values, dtype=float)

    n_points = len(values_array)
    mean = float(np.mean(values_array))
    std_dev = float(np.std(values_array, ddof=1))  # sample SD
    cv_percent = (std_dev / abs(mean)) * 100 if mean != 0 else 0.0

    q1, median, q3 = (float(q) for q in np.percentile(values_array, [25, 50, 75]))
    iqr = q3 - q1
    outlier_count = int(np.sum((values_array < q1 - 1.5 * iqr) | (values_array > q3 + 1.5 * iqr)))

    normality_p_value = None
    if n_points >= 8 and std_dev > 0:
        _, p = normaltest(values_array)
        normality_p_value = _finite_or_none(p)

    trend_slope = None
    trend_p_value = None
    if n_points >= 5 and std_dev > 0:
        regression = stats.linregress(np.arange(n_points), values_array)
        trend_slope = _finite_or_none(regression.slope)
        trend_p_value = _finite_or_none(regression.pvalue)

    bias_percent = None
    precision_ratio = None
    if target is not None:
        if target.target_mean != 0:
            bias_percent = (mean - target.target_mean) / abs(target.target_mean) * 100
        if target.target_sd > 0:
            precision_ratio = std_dev / target.target_sd

    return LotStatistics(
        n_points=n_points,
        mean=mean,
        std_dev=std_dev,
        cv_percent=cv_percent,
        min_value=float(np.min(values_array)),
        max_value=float(np.max(values_array)),
        q1=q1,
        median=median,
        q3=q3,
        iqr=iqr,
        outlier_count=outlier_count,
        normality_p_value=normality_p_value,
        trend_slope=trend_slope,
        trend_p_value=trend_p_value,
        bias_percent=bias_percent,
        precision_ratio=precision_ratio
    )


def propose_target(measurements: List[QCMeasurement], min_points: int = MIN_LOT_POINTS) -> Dict[str, Any]:
    """Validate a new control lot's baseline run and propose its target mean and SD"""
    if len(measurements) < min_points:
        return {
            "valid": False,
            "message": f"Insufficient data points. Need at least {min_points}, got {len(measurements)}",
            "recommendations": [
                f"Collect at least {min_points} QC measurements before establishing limits",
                "Ensure QC measurements span multiple days and operators"
            ]
        }

    statistics = calculate_lot_statistics([m.value for m in measurements])
    checks = {
        "sufficient_data": True,
        "acceptable_cv": statistics.cv_percent <= MAX_LOT_CV_PERCENT,
        "normal_distribution": statistics.normality_p_value is None or statistics.normality_p_value > 0.05,
        "no_excessive_outliers": statistics.outlier_count / statistics.n_points <= 0.05
    }

    recommendations = []
    if not checks["acceptable_cv"]:
        recommendations.append(f"CV too high ({statistics.cv_percent:.1f}%) - investigate precision")
    if not checks["normal_distribution"]:
        recommendations.append("Non-normal distribution - review methodology")
    if not checks["no_excessive_outliers"]:
        recommendations.append("Too many outliers - investigate and remove invalid results")

    valid = all(checks.values())
    if not valid:
        logger.warning(f"Proposed target for {measurements[0].test_code} failed validation: {recommendations}")
    return {
        "valid": valid,
        "validation_results": checks,
        "proposed_mean": statistics.mean,
        "proposed_sd": statistics.std_dev,
        "calculated_cv": statistics.cv_percent,
        "statistics": statistics.to_dict(),
        "recommendations": recommendations
    }
