# detector/config.py
# Scoring weights and thresholds are module constants; deployment settings
# come from the environment (optionally a .env file) via load_settings().

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Mapping, Optional, Set

from eth_utils import is_address

log = logging.getLogger(__name__)

# Correlation window: tracker TTL is twice this, housekeeping runs once per window.
DEFAULT_CORRELATION_WINDOW_MS = 30_000
# Alert if the priority fee is this many times the network average.
DEFAULT_GAS_MULTIPLE_THRESHOLD = 5
# Legacy (type 0) transactions: gas price multiple that counts as high gas.
LEGACY_GAS_MULTIPLE = 2

WEIGHT_KNOWN_BOT = 50
WEIGHT_SUSPICIOUS_BEHAVIOR = 25
WEIGHT_SIMULATION_FAILED = 20
WEIGHT_HIGH_TIP = 40
WEIGHT_HIGH_GAS_PRICE = 30
WEIGHT_LOW_SLIPPAGE = 30
WEIGHT_LARGE_TRADE = 10

# Risk level floors (score >= floor).
RISK_CRITICAL = 60
RISK_HIGH = 30
RISK_MEDIUM = 15

# Score at which a high-gas transaction counts as a front/back-run.
MEV_PATTERN_MIN_SCORE = 30

# amountOutMin at or below this is treated as no slippage protection.
LOW_SLIPPAGE_MAX_MIN_OUT = 1
LARGE_TRADE_WEI = 100 * 10**18

# Behavioral profile: >70% high-gas txs, or >10 txs inside one minute.
SUSPICIOUS_HIGH_GAS_RATIO = 0.7
BURST_TX_COUNT = 10
BURST_WINDOW_MS = 60_000
PROFILE_TTL_MS = 5 * 60_000

# Used when neither RPC_HTTP_URLS nor a websocket feed is configured.
DEFAULT_RPC_URL = "https://ethereum-sepolia-rpc.publicnode.com"

STATUS_INTERVAL_S = 30.0
DETECTION_ENGINE = "Mempool Behavioral MEV Detection"

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 0.5
RPC_TIMEOUT_MAX_S = 10.0
RPC_DEFAULT_TIMEOUT_S = 3.0

# Circuit breaker: N consecutive transport errors -> endpoint skipped for cooldown.
RPC_CB_THRESHOLD = 5
RPC_CB_COOLDOWN_S = 30.0
RPC_HEALTH_WINDOW = 50


class ConfigError(Exception):
    pass


def _split(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [p.strip() for p in str(raw).replace("\n", ",").split(",") if p.strip()]


def _derive_http_url(ws_url: str) -> Optional[str]:
    raw = str(ws_url or "").strip()
    if raw.startswith("wss://"):
        return "https://" + raw[len("wss://"):]
    if raw.startswith("ws://"):
        return "http://" + raw[len("ws://"):]
    return None


class DetectionRules:
    """Runtime-tunable inputs of the scorer: known-bot set and tip threshold."""

    def __init__(
        self,
        known_bots: Iterable[str] = (),
        gas_multiple_threshold: float = DEFAULT_GAS_MULTIPLE_THRESHOLD,
    ) -> None:
        self._known_bots: Set[str] = {str(a).lower() for a in known_bots if str(a).strip()}
        self.gas_multiple_threshold = gas_multiple_threshold

    @property
    def gas_multiple_threshold(self) -> float:
        return self._gas_multiple_threshold

    @gas_multiple_threshold.setter
    def gas_multiple_threshold(self, value: float) -> None:
        if float(value) <= 0:
            raise ValueError("gas multiple threshold must be positive")
        self._gas_multiple_threshold = float(value)

    @property
    def known_bots(self) -> FrozenSet[str]:
        return frozenset(self._known_bots)

    def is_known_bot(self, address: str) -> bool:
        return str(address).lower() in self._known_bots

    def add_known_bot(self, address: str) -> None:
        self._known_bots.add(str(address).lower())

    def remove_known_bot(self, address: str) -> None:
        self._known_bots.discard(str(address).lower())

    def replace_known_bots(self, addresses: Iterable[str]) -> None:
        self._known_bots = {str(a).lower() for a in addresses if str(a).strip()}


@dataclass(frozen=True)
class Settings:
    contract_address: str
    ws_urls: List[str] = field(default_factory=list)
    rpc_urls: List[str] = field(default_factory=list)
    correlation_window_ms: int = DEFAULT_CORRELATION_WINDOW_MS
    gas_multiple_threshold: float = DEFAULT_GAS_MULTIPLE_THRESHOLD
    known_bots: List[str] = field(default_factory=list)
    feed_subscription: str = "standard"
    fetch_concurrency: int = 20
    rpc_timeout_s: float = RPC_DEFAULT_TIMEOUT_S
    alert_host: str = "0.0.0.0"
    alert_port: int = 8080
    status_interval_s: float = STATUS_INTERVAL_S
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @property
    def tracker_ttl_ms(self) -> int:
        return 2 * self.correlation_window_ms

    def rules(self) -> DetectionRules:
        return DetectionRules(self.known_bots, self.gas_multiple_threshold)


def _int(env: Mapping[str, str], name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        log.warning("%s must be an integer, got %r; using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        log.warning("%s must be at least %s, got %r; using %s", name, minimum, raw, default)
        return default
    return value


def _float(env: Mapping[str, str], name: str, default: float, *, positive: bool = False) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        log.warning("%s must be a number, got %r; using %s", name, raw, default)
        return default
    if positive and value <= 0:
        log.warning("%s must be positive, got %r; using %s", name, raw, default)
        return default
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables.

    Raises ConfigError only when the monitored contract is missing or
    malformed. Any other bad option is logged and replaced by its default;
    invalid known-bot addresses are skipped.
    """
    env = os.environ if env is None else env

    contract = (env.get("MONITORED_CONTRACT") or env.get("MY_DEX_ADDRESS") or "").strip()
    if not contract:
        raise ConfigError("MONITORED_CONTRACT (or MY_DEX_ADDRESS) is not set")
    if not is_address(contract):
        raise ConfigError(f"MONITORED_CONTRACT is not a valid address: {contract!r}")

    ws_urls = _split(env.get("WSS_URLS")) or _split(env.get("ALCHEMY_WSS_URL"))
    rpc_urls = _split(env.get("RPC_HTTP_URLS"))
    if not rpc_urls:
        rpc_urls = [u for u in (_derive_http_url(w) for w in ws_urls) if u]
    if not rpc_urls:
        rpc_urls = [DEFAULT_RPC_URL]

    known_bots = []
    for addr in _split(env.get("KNOWN_MEV_BOTS")):
        if not is_address(addr):
            log.warning("KNOWN_MEV_BOTS: skipping invalid address %r", addr)
            continue
        known_bots.append(addr.lower())

    subscription = (env.get("FEED_SUBSCRIPTION") or "standard").strip().lower()
    if subscription not in ("standard", "alchemy"):
        log.warning("FEED_SUBSCRIPTION must be 'standard' or 'alchemy', got %r; using 'standard'", subscription)
        subscription = "standard"

    return Settings(
        contract_address=contract.lower(),
        ws_urls=ws_urls,
        rpc_urls=rpc_urls,
        correlation_window_ms=_int(env, "CORRELATION_WINDOW_MS", DEFAULT_CORRELATION_WINDOW_MS, minimum=1),
        gas_multiple_threshold=_float(env, "GAS_MULTIPLE_THRESHOLD", DEFAULT_GAS_MULTIPLE_THRESHOLD, positive=True),
        known_bots=known_bots,
        feed_subscription=subscription,
        fetch_concurrency=_int(env, "FETCH_CONCURRENCY", 20, minimum=1),
        rpc_timeout_s=_float(env, "RPC_TIMEOUT_S", RPC_DEFAULT_TIMEOUT_S, positive=True),
        alert_host=(env.get("ALERT_HOST") or "0.0.0.0").strip(),
        alert_port=_int(env, "ALERT_PORT", 8080, minimum=0),
        status_interval_s=_float(env, "STATUS_INTERVAL_S", STATUS_INTERVAL_S, positive=True),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        log_dir=(env.get("LOG_DIR") or "").strip() or None,
    )
