import math
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CriticalRange:
    """Critical (panic) limits for one test. Values at a limit are critical."""
    test_code: str
    critical_low: Optional[float] = None
    critical_high: Optional[float] = None
    critical_text_values: FrozenSet[str] = field(default_factory=frozenset)

    def describe(self) -> Optional[str]:
        if self.critical_low is None and self.critical_high is None:
            return None
        low = "" if self.critical_low is None else f"{self.critical_low:g}"
        high = "" if self.critical_high is None else f"{self.critical_high:g}"
        return f"{low}-{high}"


@dataclass(frozen=True)
class CriticalClassification:
    is_critical: bool
    message: str = ""
    direction: Optional[str] = None  # "low", "high" or "text"


NOT_CRITICAL = CriticalClassification(is_critical=False)


def _as_number(value: Union[float, str]) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def classify_value(value: Union[float, str], unit: str, critical_range: CriticalRange) -> CriticalClassification:
    """Decide whether a patient result is critical.

    Numeric results are compared with the critical limits (``<= low`` is
    critically low, ``>= high`` critically high). Non-numeric results such as
    "Positive" are critical when listed in ``critical_text_values``.
    """
    number = _as_number(value)
    if number is None:
        text = str(value).strip()
        if text in critical_range.critical_text_values:
            return CriticalClassification(True, f"Critical value detected: {text}", "text")
        return NOT_CRITICAL

    if critical_range.critical_low is not None and number <= critical_range.critical_low:
        return CriticalClassification(
            True,
            f"CRITICALLY LOW: {value} {unit} (Critical Low: {critical_range.critical_low})",
            "low"
        )
    if critical_range.critical_high is not None and number >= critical_range.critical_high:
        return CriticalClassification(
            True,
            f"CRITICALLY HIGH: {value} {unit} (Critical High: {critical_range.critical_high})",
            "high"
        )
    return NOT_CRITICAL
