from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from eth_utils import from_wei

from detector import alerts, config
from detector.alerts import Alert, BehavioralInsights
from detector.clock import Clock, now_ms
from detector.config import DetectionRules
from detector.profiles import ProfileStore
from detector.state import DetectionState
from detector.tracker import FrontRunTracker
from infra.metrics import METRICS
from mempool.decoders import ADD_LIQUIDITY, SWAP, Decoder, DexDecoder
from mempool.feed import Feed
from mempool.types import DecodedCall, FeeSnapshot, PendingTx, SimulationResult

log = logging.getLogger(__name__)

AlertCallback = Callable[[Alert], Awaitable[Any]]


@dataclass(frozen=True)
class GasAssessment:
    is_high_gas: bool
    weight: int
    factor: Optional[str]
    info: str


def _format_gwei(wei: int) -> str:
    value = Decimal(from_wei(int(wei), "gwei")).normalize()
    return f"{value:f}"


def _multiple(value: int, average: int) -> float:
    # Two decimals, truncated.
    return (int(value) * 100 // int(average)) / 100


def assess_gas(tx: PendingTx, fees: FeeSnapshot, gas_multiple_threshold: float) -> GasAssessment:
    """Compare tx's fee bid against the network average.

    The tip check applies when both the tx and the oracle report a priority
    fee; otherwise the legacy gas price check applies.
    """
    tip = tx.max_priority_fee_per_gas
    avg_tip = fees.max_priority_fee_per_gas
    if tip and avg_tip:
        multiple = _multiple(tip, avg_tip)
        info = f"{_format_gwei(tip)} Gwei tip ({multiple:.1f}x avg)"
        if tip > avg_tip * gas_multiple_threshold:
            return GasAssessment(True, config.WEIGHT_HIGH_TIP, f"High gas tip: {multiple:.1f}x network average", info)
        return GasAssessment(False, 0, None, info)

    price = tx.gas_price
    avg_price = fees.gas_price
    if price and avg_price:
        multiple = _multiple(price, avg_price)
        info = f"{_format_gwei(price)} Gwei ({multiple:.1f}x avg)"
        if price > avg_price * config.LEGACY_GAS_MULTIPLE:
            return GasAssessment(
                True, config.WEIGHT_HIGH_GAS_PRICE, f"High gas price: {multiple:.1f}x network average", info
            )
        return GasAssessment(False, 0, None, info)

    return GasAssessment(False, 0, None, "")


def score_decoded(decoded: Optional[DecodedCall]) -> List[Tuple[int, str]]:
    if decoded is None or decoded.function_name != SWAP:
        return []
    amount_in, min_out = decoded.args[0], decoded.args[1]
    out = []
    if min_out <= config.LOW_SLIPPAGE_MAX_MIN_OUT:
        out.append((config.WEIGHT_LOW_SLIPPAGE, "Very low slippage protection (minOut too low)"))
    if amount_in > config.LARGE_TRADE_WEI:
        out.append((config.WEIGHT_LARGE_TRADE, "Large swap amount (MEV attractive)"))
    return out


class ClassificationEngine:
    """Scores and classifies pending transactions sent to one contract.

    ``handle`` is safe to call concurrently: fee lookup and simulation run
    without the state lock, then every profile/tracker read and write for the
    transaction happens in a single locked step. A transaction that fails
    before that step leaves no trace in the state.
    """

    def __init__(
        self,
        feed: Feed,
        state: DetectionState,
        rules: DetectionRules,
        contract_address: str,
        *,
        alert_cb: Optional[AlertCallback] = None,
        clock: Clock = now_ms,
        journal_path: Optional[Path] = None,
    ) -> None:
        self.feed = feed
        self.state = state
        self.rules = rules
        self.decoder: Decoder = DexDecoder(contract_address)
        self.alert_cb = alert_cb
        self.clock = clock
        self.journal_path = journal_path

    def qualifies(self, tx: PendingTx) -> Optional[str]:
        """Return the tracked function name, or None if tx is out of scope."""
        if not self.decoder.targets_contract(tx):
            return None
        return self.decoder.function_name(tx)

    async def handle(self, tx: PendingTx) -> Optional[Alert]:
        METRICS.inc("engine_seen_total")
        function_name = self.qualifies(tx)
        if function_name is None:
            METRICS.inc_reason("engine_ignored", "not_monitored")
            return None

        t0 = time.perf_counter()
        decoded = self.decoder.decode(tx) if function_name == SWAP else None
        if function_name == SWAP and decoded is None:
            METRICS.inc_reason("engine_decode", "swap_args_undecodable")

        try:
            fees, simulation = await asyncio.gather(self.feed.current_fees(), self.feed.simulate(tx))
        except Exception as exc:
            METRICS.inc_reason("engine_dropped", "lookup_failed")
            log.debug("dropping %s: lookup failed: %s", tx.tx_hash, exc)
            return None

        now = self.clock()
        alert, emit = await self.state.run_locked(
            lambda profiles, tracker: self._decide(
                profiles, tracker, tx, function_name, decoded, fees, simulation, now
            )
        )
        METRICS.observe("engine_latency_ms", (time.perf_counter() - t0) * 1000.0)
        METRICS.inc_reason("engine_mev_type", alert.mev_type)

        if not emit:
            return None
        METRICS.inc("engine_alerts_total")
        log.info(
            "%s %s from %s: %s (score %d) %s",
            alert.function_name,
            alert.tx_hash[:10],
            alert.sender[:10],
            alert.risk_level,
            alert.risk_score,
            alert.mev_badge,
        )
        if alert.risk_factors:
            log.info("   risk factors: %s", ", ".join(alert.risk_factors))
        self._journal(alert)
        if self.alert_cb:
            await self.alert_cb(alert)
        return alert

    def _decide(
        self,
        profiles: ProfileStore,
        tracker: FrontRunTracker,
        tx: PendingTx,
        function_name: str,
        decoded: Optional[DecodedCall],
        fees: FeeSnapshot,
        simulation: SimulationResult,
        now: int,
    ) -> Tuple[Alert, bool]:
        sender = tx.from_addr.lower()
        behavior = profiles.observe(sender, now)
        is_swap = function_name == SWAP
        is_known_bot = self.rules.is_known_bot(sender)

        score = 0
        factors: List[str] = []
        if is_known_bot:
            score += config.WEIGHT_KNOWN_BOT
            factors.append("Known MEV bot address")
        if behavior.is_suspicious:
            score += config.WEIGHT_SUSPICIOUS_BEHAVIOR
            # Counts include this tx; its own high-gas flag is not recorded yet.
            current = profiles.get(sender)
            factors.append(
                f"Suspicious behavior pattern ({current.tx_count} txs, {current.high_gas_ratio * 100:.0f}% high gas)"
            )
        if is_swap and not simulation.success:
            score += config.WEIGHT_SIMULATION_FAILED
            factors.append("Transaction simulation failed - possible attack")

        gas = assess_gas(tx, fees, self.rules.gas_multiple_threshold)
        if gas.is_high_gas:
            score += gas.weight
            factors.append(gas.factor or "")
            profiles.record_high_gas(sender)

        for weight, factor in score_decoded(decoded):
            score += weight
            factors.append(factor)

        high_risk = gas.is_high_gas and score >= config.MEV_PATTERN_MIN_SCORE
        if high_risk and tracker.live(sender, now) is None:
            mev_type = alerts.FRONT_RUN
            factors.insert(0, "Potential front-run transaction detected")
            tracker.register(
                sender,
                tx_hash=tx.tx_hash,
                timestamp=now,
                risk_score=score,
                function_signature=tx.input[:10],
            )
        elif high_risk:
            mev_type = alerts.BACK_RUN
            factors.insert(0, "Potential back-run transaction detected")
        elif score < config.RISK_MEDIUM:
            mev_type = alerts.NORMAL
        else:
            mev_type = alerts.SUSPICIOUS

        profile = profiles.get(sender)
        alert = Alert(
            tx_hash=tx.tx_hash,
            sender=tx.from_addr,
            function_name=SWAP if is_swap else ADD_LIQUIDITY,
            risk_level=alerts.risk_level(score),
            risk_score=score,
            risk_factors=tuple(factors),
            gas_info=gas.info,
            timestamp=now,
            amount_in=decoded.args[0] if decoded is not None else None,
            amount_out_min=decoded.args[1] if decoded is not None else None,
            mev_type=mev_type,
            insights=BehavioralInsights(
                is_known_bot=is_known_bot,
                is_suspicious_behavior=behavior.is_suspicious,
                address_tx_count=profile.tx_count if profile else behavior.tx_count + 1,
                simulation_success=simulation.success,
            ),
        )
        return alert, (is_swap or score > 0)

    def _journal(self, alert: Alert) -> None:
        if self.journal_path is None:
            return
        try:
            with self.journal_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(alert.to_message()) + "\n")
        except OSError as exc:
            log.debug("alert journal write failed: %s", exc)
