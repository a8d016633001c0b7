from __future__ import annotations

import logging

from detector.clock import Clock, now_ms
from detector.scheduler import PeriodicTask
from detector.state import DetectionState, SweepResult

log = logging.getLogger(__name__)


class Housekeeper:
    """Evicts expired tracker entries and idle profiles once per correlation window."""

    def __init__(self, state: DetectionState, interval_s: float, *, clock: Clock = now_ms) -> None:
        self.state = state
        self.clock = clock
        self._task = PeriodicTask("housekeeping", interval_s, self.sweep_once)

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def sweep_once(self) -> SweepResult:
        result = await self.state.sweep(self.clock())
        log.info(
            "cleanup: tracking %d potential front-runs, %d addresses (evicted %d entries, %d profiles)",
            result.tracked_entries,
            result.tracked_profiles,
            result.evicted_entries,
            result.evicted_profiles,
        )
        return result
