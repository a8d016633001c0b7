from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, TypeVar

from detector import config
from detector.profiles import ProfileStore
from detector.tracker import FrontRunTracker

T = TypeVar("T")


@dataclass(frozen=True)
class SweepResult:
    evicted_entries: int
    evicted_profiles: int
    tracked_entries: int
    tracked_profiles: int


@dataclass(frozen=True)
class StateStats:
    tracked_entries: int
    tracked_profiles: int
    suspicious_profiles: int


class DetectionState:
    """Owner of the profile store and front-run tracker.

    All access goes through ``run_locked``, which runs a synchronous function
    against both tables under one asyncio lock. The function cannot await, so
    the lock is never held across network I/O.
    """

    def __init__(
        self,
        *,
        profile_ttl_ms: int = config.PROFILE_TTL_MS,
        tracker_ttl_ms: int = 2 * config.DEFAULT_CORRELATION_WINDOW_MS,
    ) -> None:
        self._profiles = ProfileStore(ttl_ms=profile_ttl_ms)
        self._tracker = FrontRunTracker(ttl_ms=tracker_ttl_ms)
        self._lock = asyncio.Lock()

    async def run_locked(self, fn: Callable[[ProfileStore, FrontRunTracker], T]) -> T:
        async with self._lock:
            return fn(self._profiles, self._tracker)

    async def sweep(self, now_ms: int) -> SweepResult:
        def _sweep(profiles: ProfileStore, tracker: FrontRunTracker) -> SweepResult:
            entries = tracker.evict_stale(now_ms)
            stale_profiles = profiles.evict_stale(now_ms)
            return SweepResult(
                evicted_entries=len(entries),
                evicted_profiles=len(stale_profiles),
                tracked_entries=len(tracker),
                tracked_profiles=len(profiles),
            )

        return await self.run_locked(_sweep)

    async def stats(self) -> StateStats:
        return await self.run_locked(
            lambda profiles, tracker: StateStats(
                tracked_entries=len(tracker),
                tracked_profiles=len(profiles),
                suspicious_profiles=profiles.suspicious_count(),
            )
        )
