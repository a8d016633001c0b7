# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple

import aiohttp

from detector import config
from infra.metrics import METRICS

log = logging.getLogger(__name__)


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _normalize_rpc_error(msg: Any) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "revert" in text:
        return "revert"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    return "internal_error"


def _percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


def _extract_revert_hex(err_data: Any) -> Optional[str]:
    if isinstance(err_data, str):
        return err_data
    if isinstance(err_data, dict):
        for key in ("data", "result"):
            if isinstance(err_data.get(key), str):
                return err_data[key]
    return None


class RPCError(Exception):
    """JSON-RPC error response. ``data`` holds revert bytes when the node sent any."""

    def __init__(self, message: str, *, code: Optional[int] = None, data: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class EndpointHealth:
    def __init__(self, maxlen: int = 50) -> None:
        self._samples: Deque[Tuple[float, bool, str]] = deque(maxlen=max(1, int(maxlen)))

    def record(self, ok: bool, latency_ms: float, reason: str) -> None:
        self._samples.append((float(latency_ms), bool(ok), str(reason)))

    def stats(self) -> Dict[str, Any]:
        if not self._samples:
            return {"count": 0, "success_rate": None, "timeout_rate": None, "p95_latency_ms": None}
        total = len(self._samples)
        oks = sum(1 for _, ok, _ in self._samples if ok)
        timeouts = sum(1 for _, _, reason in self._samples if reason == "timeout")
        return {
            "count": total,
            "success_rate": oks / total,
            "timeout_rate": timeouts / total,
            "p95_latency_ms": _percentile([lat for lat, _, _ in self._samples], 95.0),
        }


class AsyncRPC:
    """Single-endpoint JSON-RPC client over a persistent aiohttp session."""

    def __init__(self, url: str, *, default_timeout_s: float = 3.0) -> None:
        self.url = _normalize_url(url)
        self.default_timeout_s = float(default_timeout_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        return max(config.RPC_TIMEOUT_MIN_S, min(config.RPC_TIMEOUT_MAX_S, to_s))

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
    ) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        to_s = self._clamp_timeout(timeout_s)

        async def _do() -> Any:
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise aiohttp.ClientResponseError(
                        request_info=resp.request_info,
                        history=resp.history,
                        status=resp.status,
                        message=text,
                        headers=resp.headers,
                    )
                return await resp.json()

        t0 = time.perf_counter()
        METRICS.inc("rpc_requests_total")
        try:
            data = await asyncio.wait_for(_do(), timeout=to_s)
        except asyncio.TimeoutError as exc:
            raise RPCError(f"timeout({to_s}s) {method}") from exc
        except aiohttp.ClientResponseError as exc:
            raise RPCError(f"http_{exc.status} {method}") from exc
        except aiohttp.ClientError as exc:
            raise RPCError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            METRICS.observe("rpc_latency_ms", (time.perf_counter() - t0) * 1000.0)

        if isinstance(data, dict) and "error" in data:
            err = data["error"]
            if isinstance(err, dict):
                raise RPCError(
                    f"rpc_error:{err.get('message')}",
                    code=err.get("code"),
                    data=_extract_revert_hex(err.get("data")),
                )
            raise RPCError(f"rpc_error:{err}")
        if not isinstance(data, dict):
            raise RPCError(f"rpc_error:unexpected response for {method}")
        return data.get("result")


class RPCPool:
    """Load-balanced JSON-RPC pool.

    Each request goes to one endpoint chosen by least in-flight load, latency
    and recent failures. A transport error (timeout, HTTP, connection) moves
    the request to another endpoint; a JSON-RPC error response is final and
    propagates as RPCError. Endpoints that fail ``cb_threshold`` times in a
    row are skipped for ``cb_cooldown_s``.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        default_timeout_s: Optional[float] = None,
        per_rpc_max_inflight: int = 10,
        ewma_alpha: float = 0.20,
        cb_threshold: Optional[int] = None,
        cb_cooldown_s: Optional[float] = None,
    ) -> None:
        if default_timeout_s is None:
            default_timeout_s = config.RPC_DEFAULT_TIMEOUT_S
        cleaned = [_normalize_url(u) for u in (urls or []) if str(u).strip()]
        if not cleaned:
            raise ValueError("RPCPool requires at least one url")
        self.urls: List[str] = cleaned
        self._clients = [AsyncRPC(u, default_timeout_s=default_timeout_s) for u in self.urls]
        self._sems = [asyncio.Semaphore(max(1, int(per_rpc_max_inflight))) for _ in self._clients]
        self._ewma_alpha = float(ewma_alpha)
        self._lat_ewma_ms: List[float] = [350.0 for _ in self._clients]
        self._inflight: List[int] = [0 for _ in self._clients]
        self._ok: List[int] = [0 for _ in self._clients]
        self._fail: List[int] = [0 for _ in self._clients]

        self._cb_threshold = int(cb_threshold if cb_threshold is not None else config.RPC_CB_THRESHOLD)
        self._cb_cooldown_s = float(cb_cooldown_s if cb_cooldown_s is not None else config.RPC_CB_COOLDOWN_S)
        self._cb_fail: List[int] = [0 for _ in self._clients]
        self._cb_open_until: List[float] = [0.0 for _ in self._clients]
        self._health = [EndpointHealth(config.RPC_HEALTH_WINDOW) for _ in self._clients]

    async def close(self) -> None:
        for c in self._clients:
            try:
                await c.close()
            except Exception as exc:
                log.debug("rpc close failed for %s: %s", c.url, exc)

    def _is_cb_open(self, idx: int, now_s: Optional[float] = None) -> bool:
        now = float(now_s if now_s is not None else time.time())
        return now < self._cb_open_until[idx]

    def _score(self, idx: int) -> float:
        """Lower is better."""
        ok = self._ok[idx]
        fail = self._fail[idx]
        fail_rate = float(fail) / float(ok + fail + 1)
        return float(self._inflight[idx]) + (self._lat_ewma_ms[idx] / 250.0) + (fail_rate * 6.0)

    def _pick_idx(self, excluded: Set[int]) -> Optional[int]:
        now = time.time()
        candidates = [i for i in range(len(self._clients)) if i not in excluded and not self._is_cb_open(i, now)]
        if not candidates:
            return None
        best = min(candidates, key=self._score)
        self._inflight[best] += 1
        return best

    def _done_idx(self, idx: int, ok: bool, latency_ms: float, reason: str) -> None:
        self._inflight[idx] = max(0, self._inflight[idx] - 1)
        self._health[idx].record(ok, latency_ms, reason)
        if ok:
            self._ok[idx] += 1
            self._cb_fail[idx] = 0
            self._cb_open_until[idx] = 0.0
            self._lat_ewma_ms[idx] = (1.0 - self._ewma_alpha) * self._lat_ewma_ms[idx] + self._ewma_alpha * latency_ms
            return
        self._fail[idx] += 1
        self._cb_fail[idx] += 1
        if self._cb_threshold > 0 and self._cb_fail[idx] >= self._cb_threshold:
            self._cb_open_until[idx] = time.time() + self._cb_cooldown_s
            self._cb_fail[idx] = 0
            log.warning("rpc endpoint %s disabled for %.0fs after repeated failures", self.urls[idx], self._cb_cooldown_s)

    def health_snapshot(self) -> List[Dict[str, Any]]:
        out = []
        for i, url in enumerate(self.urls):
            out.append({
                "url": url,
                "inflight": self._inflight[i],
                "ok": self._ok[i],
                "fail": self._fail[i],
                "lat_ms": round(self._lat_ewma_ms[i], 1),
                "cb_open": self._is_cb_open(i),
                **self._health[i].stats(),
            })
        return out

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        excluded: Set[int] = set()
        last_err: Optional[Exception] = None
        while len(excluded) < len(self._clients):
            idx = self._pick_idx(excluded)
            if idx is None:
                break
            t0 = time.perf_counter()
            try:
                async with self._sems[idx]:
                    res = await self._clients[idx].call(method, params, timeout_s=timeout_s)
            except RPCError as exc:
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if exc.code is not None or str(exc).startswith("rpc_error"):
                    # The node answered; another endpoint would answer the same.
                    self._done_idx(idx, True, dt_ms, "ok")
                    raise
                reason = _normalize_rpc_error(exc)
                self._done_idx(idx, False, dt_ms, reason)
                METRICS.inc_reason("rpc_fail_by_reason", reason)
                last_err = exc
                excluded.add(idx)
                continue
            except Exception as exc:
                self._done_idx(idx, False, (time.perf_counter() - t0) * 1000.0, "internal_error")
                METRICS.inc_reason("rpc_fail_by_reason", "internal_error")
                last_err = exc
                excluded.add(idx)
                continue
            self._done_idx(idx, True, (time.perf_counter() - t0) * 1000.0, "ok")
            return res
        raise last_err or RPCError("rpc_error:no endpoint available")
