import asyncio
import json
from pathlib import Path
from typing import List, Optional

import pytest
from eth_abi import encode

from detector import alerts
from detector.config import DetectionRules
from detector.engine import ClassificationEngine, assess_gas
from detector.state import DetectionState
from mempool.decoders.dex import SIG_ADD_LIQUIDITY, SIG_SWAP
from mempool.decoders.utils import selector
from mempool.types import FeeSnapshot, PendingTx, SimulationResult

GWEI = 10**9
TOKEN = 10**18
CONTRACT = "0x" + "d" * 40
SENDER = "0x" + "1" * 40


class ManualClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.t = start_ms

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: int) -> None:
        self.t += ms


class FakeFeed:
    def __init__(self, *, gas_price: int = 10 * GWEI, tip: Optional[int] = 1 * GWEI) -> None:
        self.fees = FeeSnapshot(gas_price=gas_price, max_priority_fee_per_gas=tip)
        self.sim_ok = True
        self.fail_fees = False

    async def current_fees(self) -> FeeSnapshot:
        await asyncio.sleep(0)
        if self.fail_fees:
            raise RuntimeError("eth_gasPrice timeout")
        return self.fees

    async def simulate(self, tx: PendingTx) -> SimulationResult:
        await asyncio.sleep(0)
        if self.sim_ok:
            return SimulationResult(success=True, result="0x")
        return SimulationResult(success=False, error="revert:slippage")


_counter = 0


def _call(signature: str, a: int, b: int) -> str:
    return "0x" + selector(signature) + encode(["uint256", "uint256"], [a, b]).hex()


def _swap(amount_in: int = 10 * TOKEN, min_out: int = 9 * TOKEN) -> str:
    return _call(SIG_SWAP, amount_in, min_out)


def _tx(
    input_data: str,
    *,
    sender: str = SENDER,
    to: Optional[str] = CONTRACT,
    gas_price: Optional[int] = 10 * GWEI,
    tip: Optional[int] = None,
) -> PendingTx:
    global _counter
    _counter += 1
    return PendingTx(
        tx_hash="0x" + f"{_counter:064x}",
        from_addr=sender,
        to_addr=to,
        input=input_data,
        value=0,
        gas_price=gas_price,
        max_fee_per_gas=None,
        max_priority_fee_per_gas=tip,
        tx_type=2 if tip is not None else 0,
        nonce=_counter,
        seen_at_ms=0,
    )


def _high_tip_swap(sender: str = SENDER) -> PendingTx:
    # 10x the 1 gwei average tip, threshold is 5x
    return _tx(_swap(), sender=sender, tip=10 * GWEI)


class Harness:
    def __init__(self, tmp_path: Optional[Path] = None) -> None:
        self.clock = ManualClock()
        self.feed = FakeFeed()
        self.state = DetectionState()
        self.rules = DetectionRules()
        self.sent: List[alerts.Alert] = []
        self.engine = ClassificationEngine(
            self.feed,
            self.state,
            self.rules,
            CONTRACT.upper().replace("0X", "0x"),
            alert_cb=self._on_alert,
            clock=self.clock,
            journal_path=(tmp_path / "alerts.jsonl") if tmp_path else None,
        )

    async def _on_alert(self, alert: alerts.Alert) -> None:
        self.sent.append(alert)

    async def profile(self, address: str = SENDER):
        return await self.state.run_locked(lambda profiles, tracker: profiles.get(address))

    async def tracker_entry(self, address: str = SENDER):
        return await self.state.run_locked(lambda profiles, tracker: tracker.live(address, self.clock()))


@pytest.mark.asyncio
async def test_other_contract_ignored_without_state_change() -> None:
    h = Harness()
    out = await h.engine.handle(_tx(_swap(), to="0x" + "e" * 40, tip=50 * GWEI))
    assert out is None
    assert h.sent == []
    stats = await h.state.stats()
    assert stats.tracked_profiles == 0
    assert stats.tracked_entries == 0


@pytest.mark.asyncio
async def test_untracked_selector_and_contract_creation_ignored() -> None:
    h = Harness()
    assert await h.engine.handle(_tx("0x12345678")) is None
    assert await h.engine.handle(_tx(_swap(), to=None)) is None
    assert await h.engine.handle(_tx("0x")) is None
    assert h.sent == []
    assert await h.profile() is None


@pytest.mark.asyncio
async def test_swap_alerts_even_with_zero_score() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx(_swap()))
    assert alert is not None
    assert len(h.sent) == 1
    assert alert.risk_score == 0
    assert alert.risk_level == alerts.LOW
    assert alert.mev_type == alerts.NORMAL
    assert alert.risk_factors == ()
    assert alert.gas_info == "10 Gwei (1.0x avg)"


@pytest.mark.asyncio
async def test_add_liquidity_with_zero_score_not_emitted() -> None:
    h = Harness()
    out = await h.engine.handle(_tx(_call(SIG_ADD_LIQUIDITY, 5 * TOKEN, 5 * TOKEN)))
    assert out is None
    assert h.sent == []
    profile = await h.profile()
    assert profile is not None and profile.tx_count == 1


@pytest.mark.asyncio
async def test_add_liquidity_with_score_is_emitted() -> None:
    h = Harness()
    h.rules.add_known_bot(SENDER)
    alert = await h.engine.handle(_tx(_call(SIG_ADD_LIQUIDITY, 5 * TOKEN, 5 * TOKEN)))
    assert alert is not None
    assert alert.function_name == "addLiquidity"
    assert alert.to_message()["decodedData"] is None


@pytest.mark.asyncio
async def test_low_slippage_swap_is_high_risk_but_suspicious() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx(_swap(amount_in=10 * TOKEN, min_out=1)))
    assert alert is not None
    assert alert.risk_score == 30
    assert alert.risk_level == alerts.HIGH
    assert alert.mev_type == alerts.SUSPICIOUS
    assert alert.risk_factors == ("Very low slippage protection (minOut too low)",)
    assert alert.to_message()["decodedData"] == {"amountIn": str(10 * TOKEN), "amountOutMin": "1"}
    assert await h.tracker_entry() is None


@pytest.mark.asyncio
async def test_large_trade_factor() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx(_swap(amount_in=101 * TOKEN, min_out=90 * TOKEN)))
    assert alert is not None
    assert alert.risk_score == 10
    assert alert.risk_level == alerts.LOW
    assert alert.mev_type == alerts.NORMAL
    assert alert.risk_factors == ("Large swap amount (MEV attractive)",)


@pytest.mark.asyncio
async def test_undecodable_swap_args_still_alert() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx("0x" + selector(SIG_SWAP) + "00ff"))
    assert alert is not None
    assert alert.risk_score == 0
    assert alert.amount_in is None
    assert alert.to_message()["decodedData"] is None


@pytest.mark.asyncio
async def test_front_run_then_back_run_within_window() -> None:
    h = Harness()
    first = await h.engine.handle(_high_tip_swap())
    assert first is not None
    assert first.mev_type == alerts.FRONT_RUN
    assert first.risk_score == 40
    assert first.risk_factors[0] == "Potential front-run transaction detected"
    assert "High gas tip: 10.0x network average" in first.risk_factors
    entry = await h.tracker_entry()
    assert entry is not None and entry.tx_hash == first.tx_hash

    h.clock.advance(10_000)
    second = await h.engine.handle(_high_tip_swap())
    assert second is not None
    assert second.mev_type == alerts.BACK_RUN
    assert second.risk_factors[0] == "Potential back-run transaction detected"
    # A back-run does not replace the pending front-run.
    entry = await h.tracker_entry()
    assert entry is not None and entry.tx_hash == first.tx_hash


@pytest.mark.asyncio
async def test_expired_tracker_entry_starts_fresh_cycle() -> None:
    h = Harness()
    first = await h.engine.handle(_high_tip_swap())
    assert first is not None and first.mev_type == alerts.FRONT_RUN

    h.clock.advance(60_001)
    second = await h.engine.handle(_high_tip_swap())
    assert second is not None
    assert second.mev_type == alerts.FRONT_RUN
    entry = await h.tracker_entry()
    assert entry is not None and entry.tx_hash == second.tx_hash


@pytest.mark.asyncio
async def test_legacy_gas_price_check() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx(_swap(), gas_price=30 * GWEI, tip=None))
    assert alert is not None
    assert alert.risk_score == 30
    assert alert.mev_type == alerts.FRONT_RUN
    assert alert.gas_info == "30 Gwei (3.0x avg)"
    assert "High gas price: 3.0x network average" in alert.risk_factors


@pytest.mark.asyncio
async def test_tip_check_takes_precedence_over_gas_price() -> None:
    h = Harness()
    alert = await h.engine.handle(_tx(_swap(), gas_price=100 * GWEI, tip=1 * GWEI))
    assert alert is not None
    assert alert.risk_score == 0
    assert alert.gas_info == "1 Gwei tip (1.0x avg)"
    profile = await h.profile()
    assert profile.high_gas_count == 0


@pytest.mark.asyncio
async def test_high_gas_ratio_marks_sender_suspicious() -> None:
    h = Harness()
    await h.engine.handle(_tx(_swap()))
    for _ in range(4):
        h.clock.advance(1_000)
        await h.engine.handle(_high_tip_swap())
    profile = await h.profile()
    assert profile.tx_count == 5
    assert profile.high_gas_count == 4

    h.clock.advance(1_000)
    alert = await h.engine.handle(_tx(_swap()))
    assert alert is not None
    assert alert.insights.is_suspicious_behavior is True
    assert alert.insights.address_tx_count == 6
    assert alert.risk_score == 25
    assert alert.risk_factors == ("Suspicious behavior pattern (6 txs, 67% high gas)",)


@pytest.mark.asyncio
async def test_idle_profile_restarts_after_sweep() -> None:
    h = Harness()
    await h.engine.handle(_tx(_swap()))
    await h.engine.handle(_tx(_swap()))
    first_seen = (await h.profile()).first_seen

    h.clock.advance(300_001)
    result = await h.state.sweep(h.clock())
    assert result.evicted_profiles == 1
    assert await h.profile() is None

    alert = await h.engine.handle(_tx(_swap()))
    assert alert.insights.address_tx_count == 1
    profile = await h.profile()
    assert profile.tx_count == 1
    assert profile.first_seen == h.clock() != first_seen


@pytest.mark.asyncio
async def test_burst_of_transactions_is_suspicious() -> None:
    h = Harness()
    for _ in range(11):
        h.clock.advance(100)
        await h.engine.handle(_tx(_swap()))
    alert = await h.engine.handle(_tx(_swap()))
    assert alert is not None
    assert alert.insights.is_suspicious_behavior is True


@pytest.mark.asyncio
async def test_known_bot_set_updates_at_runtime() -> None:
    h = Harness()
    before = await h.engine.handle(_tx(_swap()))
    assert before.insights.is_known_bot is False

    h.rules.add_known_bot(SENDER.upper().replace("0X", "0x"))
    alert = await h.engine.handle(_tx(_swap()))
    assert alert.insights.is_known_bot is True
    assert alert.risk_score == 50
    assert alert.risk_level == alerts.HIGH
    assert alert.mev_type == alerts.SUSPICIOUS


@pytest.mark.asyncio
async def test_gas_multiple_threshold_updates_at_runtime() -> None:
    h = Harness()
    h.rules.gas_multiple_threshold = 20
    alert = await h.engine.handle(_high_tip_swap())
    assert alert.risk_score == 0
    assert alert.mev_type == alerts.NORMAL


@pytest.mark.asyncio
async def test_simulation_failure_counts_for_swaps_only() -> None:
    h = Harness()
    h.feed.sim_ok = False
    alert = await h.engine.handle(_tx(_swap()))
    assert alert.risk_score == 20
    assert alert.risk_level == alerts.MEDIUM
    assert alert.mev_type == alerts.SUSPICIOUS
    assert alert.insights.simulation_success is False

    out = await h.engine.handle(_tx(_call(SIG_ADD_LIQUIDITY, 1, 1)))
    assert out is None


@pytest.mark.asyncio
async def test_fee_lookup_failure_drops_transaction() -> None:
    h = Harness()
    h.feed.fail_fees = True
    assert await h.engine.handle(_high_tip_swap()) is None
    assert h.sent == []
    assert await h.profile() is None
    assert await h.tracker_entry() is None


@pytest.mark.asyncio
async def test_concurrent_transactions_from_one_sender_do_not_race() -> None:
    h = Harness()
    results = await asyncio.gather(*(h.engine.handle(_high_tip_swap()) for _ in range(4)))
    kinds = sorted(a.mev_type for a in results)
    assert kinds.count(alerts.FRONT_RUN) == 1
    assert kinds.count(alerts.BACK_RUN) == 3
    profile = await h.profile()
    assert profile.tx_count == 4
    assert profile.high_gas_count == 4


@pytest.mark.asyncio
async def test_alert_message_shape_and_journal(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    alert = await h.engine.handle(_high_tip_swap())
    msg = alert.to_message()
    assert msg["type"] == "MEV_ALERT"
    assert msg["from"] == SENDER
    assert msg["functionName"] == "swapTokenAForTokenB"
    assert msg["riskLevel"] == alerts.HIGH
    assert msg["mevType"] == alerts.FRONT_RUN
    assert msg["mevBadge"] == "FRONT-RUN ATTEMPT"
    assert msg["timestamp"] == h.clock()
    assert set(msg["behavioralInsights"]) >= {
        "isKnownBot",
        "isSuspiciousBehavior",
        "addressTxCount",
        "simulationSuccess",
    }
    lines = (tmp_path / "alerts.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["hash"] == alert.tx_hash


def test_assess_gas_without_fee_data() -> None:
    tx = _tx(_swap(), gas_price=None, tip=None)
    gas = assess_gas(tx, FeeSnapshot(gas_price=10 * GWEI, max_priority_fee_per_gas=None), 5)
    assert gas.is_high_gas is False
    assert gas.info == ""
