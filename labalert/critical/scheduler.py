import asyncio
import logging
import random
from typing import Optional

from .sweeper import EscalationSweeper

logger = logging.getLogger(__name__)


class SweepTicker:
    """Runs ``sweeper.sweep()`` now and then every ``interval_seconds`` (plus jitter) until stopped."""

    def __init__(self, sweeper: EscalationSweeper, interval_seconds: float, jitter_seconds: float = 0.0):
        if interval_seconds <= 0:
            raise ValueError("Sweep interval must be positive")
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.cycles = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="escalation-sweep-ticker")
        logger.info(f"Escalation sweeps scheduled every {self.interval_seconds}s (jitter up to {self.jitter_seconds}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        # a sweep in flight runs to completion
        await self._task
        self._task = None
        logger.info("Escalation sweep ticker stopped")

    def next_delay(self) -> float:
        return self.interval_seconds + (random.uniform(0, self.jitter_seconds) if self.jitter_seconds else 0.0)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweeper.sweep()
            except Exception as e:
                logger.exception(f"Escalation sweep cycle failed: {str(e)}")
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
