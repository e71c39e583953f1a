import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .records import QCMeasurement, StatisticsKey

logger = logging.getLogger(__name__)

MIN_WINDOW_SIZE = 20

# (key, limit) -> most recent measurements for the key, oldest first
HistoryLoader = Callable[[StatisticsKey, int], List[QCMeasurement]]


class StatisticsWindow:
    """Rolling per-(tenant, test, control level) history of recent QC points.

    Keys not seen since start-up are warmed from ``loader`` (normally the
    record store's "most recent N" query) on first use.
    """

    def __init__(self, capacity: int = MIN_WINDOW_SIZE, loader: Optional[HistoryLoader] = None):
        if capacity < MIN_WINDOW_SIZE:
            raise ValueError(f"Window capacity must be at least {MIN_WINDOW_SIZE}, got {capacity}")
        self.capacity = capacity
        self._loader = loader
        self._history: Dict[StatisticsKey, Deque[QCMeasurement]] = {}
        self._lock = threading.Lock()

    def prior_points(self, measurement: QCMeasurement) -> List[QCMeasurement]:
        """Points preceding ``measurement`` for its key, oldest first, excluding the point itself"""
        history = self._warm(measurement.key)
        with self._lock:
            return [p for p in history if p.measurement_id != measurement.measurement_id]

    def values_for(self, measurement: QCMeasurement) -> List[float]:
        """Prior values with the new value appended, as the rule engine expects"""
        return [p.value for p in self.prior_points(measurement)] + [measurement.value]

    def append(self, measurement: QCMeasurement) -> None:
        """Add an evaluated point, keeping the history in timestamp order"""
        history = self._warm(measurement.key)
        with self._lock:
            if any(p.measurement_id == measurement.measurement_id for p in history):
                return
            if not history or measurement.timestamp >= history[-1].timestamp:
                history.append(measurement)
                return
            if len(history) == history.maxlen and measurement.timestamp < history[0].timestamp:
                # older than everything kept, it would fall straight out again
                return
            points = sorted([*history, measurement], key=lambda p: p.timestamp)
            history.clear()
            history.extend(points[-history.maxlen:])

    def reset(self, key: Optional[StatisticsKey] = None) -> None:
        """Forget cached history, e.g. after a new control lot is activated"""
        with self._lock:
            if key is None:
                self._history.clear()
            else:
                self._history.pop(key, None)

    def __len__(self) -> int:
        return len(self._history)

    def _warm(self, key: StatisticsKey) -> Deque[QCMeasurement]:
        with self._lock:
            history = self._history.get(key)
        if history is not None:
            return history

        loaded: List[QCMeasurement] = []
        if self._loader is not None:
            # one extra, since the store may already hold the point under evaluation
            loaded = self._loader(key, self.capacity + 1)
            logger.debug(f"Warmed QC window for {key[1]}/{key[2].value} with {len(loaded)} points")

        with self._lock:
            # another thread may have warmed the key meanwhile
            return self._history.setdefault(key, deque(loaded, maxlen=self.capacity + 1))
