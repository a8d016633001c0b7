from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from detector import config


@dataclass
class AddressProfile:
    address: str
    tx_count: int
    high_gas_count: int
    first_seen: int
    last_seen: int

    @property
    def high_gas_ratio(self) -> float:
        if self.tx_count <= 0:
            return 0.0
        return self.high_gas_count / self.tx_count

    def is_suspicious(self) -> bool:
        """Gas-aggressive (>70% high-gas txs) or bursty (>10 txs within a minute)."""
        if self.tx_count <= 0:
            return False
        if self.high_gas_ratio > config.SUSPICIOUS_HIGH_GAS_RATIO:
            return True
        return self.tx_count > config.BURST_TX_COUNT and (self.last_seen - self.first_seen) < config.BURST_WINDOW_MS


@dataclass(frozen=True)
class BehaviorSnapshot:
    """Profile state as seen by the scorer, before the current tx is counted."""

    is_suspicious: bool
    tx_count: int
    high_gas_ratio: float


class ProfileStore:
    """Per-sender rolling counters. Not synchronized: DetectionState owns the lock."""

    def __init__(self, ttl_ms: int = config.PROFILE_TTL_MS) -> None:
        self.ttl_ms = int(ttl_ms)
        self._profiles: Dict[str, AddressProfile] = {}

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, address: str) -> Optional[AddressProfile]:
        return self._profiles.get(address.lower())

    def get_or_create(self, address: str, now_ms: int) -> AddressProfile:
        key = address.lower()
        profile = self._profiles.get(key)
        if profile is None:
            profile = AddressProfile(address=key, tx_count=0, high_gas_count=0, first_seen=now_ms, last_seen=now_ms)
            self._profiles[key] = profile
        return profile

    def observe(self, address: str, now_ms: int) -> BehaviorSnapshot:
        """Count one qualifying tx from address; returns the pre-update behavior."""
        profile = self.get_or_create(address, now_ms)
        before = BehaviorSnapshot(
            is_suspicious=profile.is_suspicious(),
            tx_count=profile.tx_count,
            high_gas_ratio=profile.high_gas_ratio,
        )
        profile.tx_count += 1
        profile.last_seen = max(profile.last_seen, now_ms)
        return before

    def record_high_gas(self, address: str) -> None:
        profile = self._profiles.get(address.lower())
        if profile is not None and profile.high_gas_count < profile.tx_count:
            profile.high_gas_count += 1

    def suspicious_count(self) -> int:
        return sum(1 for p in self._profiles.values() if p.is_suspicious())

    def evict_stale(self, now_ms: int) -> List[str]:
        stale = [a for a, p in self._profiles.items() if now_ms - p.last_seen > self.ttl_ms]
        for address in stale:
            del self._profiles[address]
        return stale
