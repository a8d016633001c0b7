import asyncio

import pytest

from mempool.feed import RPCFeed, tx_from_rpc

RAW_TX = {
    "hash": "0xABCD" + "00" * 30,
    "from": "0x" + "AA" * 20,
    "to": "0x" + "DD" * 20,
    "input": "0xdeadbeef",
    "value": "0x0",
    "gasPrice": "0x3b9aca00",
    "maxFeePerGas": "0x77359400",
    "maxPriorityFeePerGas": "0x3b9aca00",
    "type": "0x2",
    "nonce": "0x7",
    "blockNumber": None,
}


class FakeRPC:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def call(self, method, params, timeout_s=None):
        self.calls.append((method, params))
        res = self.responses.get(method)
        if isinstance(res, Exception):
            raise res
        return res


def test_tx_from_rpc() -> None:
    tx = tx_from_rpc(RAW_TX, seen_at_ms=5)
    assert tx.tx_hash == RAW_TX["hash"].lower()
    assert tx.from_addr == "0x" + "aa" * 20
    assert tx.to_addr == "0x" + "dd" * 20
    assert tx.gas_price == 10**9
    assert tx.max_fee_per_gas == 2 * 10**9
    assert tx.max_priority_fee_per_gas == 10**9
    assert (tx.tx_type, tx.nonce, tx.seen_at_ms) == (2, 7, 5)
    assert tx.block_number is None


def test_tx_from_rpc_contract_creation_and_missing_fields() -> None:
    tx = tx_from_rpc({**RAW_TX, "to": None, "gasPrice": None})
    assert tx.to_addr is None
    assert tx.gas_price is None
    with pytest.raises(ValueError):
        tx_from_rpc({"hash": "0x01"})


def test_resolve() -> None:
    feed = RPCFeed(FakeRPC({"eth_getTransactionByHash": RAW_TX}))
    tx = asyncio.run(feed.resolve(RAW_TX["hash"]))
    assert tx is not None and tx.input == "0xdeadbeef"
    assert asyncio.run(RPCFeed(FakeRPC({})).resolve("0x01")) is None


def test_mined_block() -> None:
    block = {
        "number": "0x64",
        "timestamp": "0x10",
        "transactions": [
            {**RAW_TX, "hash": "0x01", "blockNumber": "0x64", "transactionIndex": "0x0"},
            {**RAW_TX, "hash": "0x02", "blockNumber": "0x64", "transactionIndex": "0x1"},
        ],
    }
    rpc = FakeRPC({"eth_getBlockByNumber": block})
    txs = asyncio.run(RPCFeed(rpc).get_mined_block(100))
    assert [t.tx_hash for t in txs] == ["0x01", "0x02"]
    assert txs[1].transaction_index == 1
    assert txs[0].seen_at_ms == 16_000
    assert rpc.calls[0][1] == ["0x64", True]
    assert asyncio.run(RPCFeed(FakeRPC({})).get_mined_block(1)) is None


def test_receipt() -> None:
    receipt = {
        "transactionHash": "0x01",
        "status": "0x1",
        "blockNumber": "0x64",
        "gasUsed": "0x5208",
        "effectiveGasPrice": "0x3b9aca00",
        "logs": [{}, {}],
    }
    feed = RPCFeed(FakeRPC({"eth_getTransactionReceipt": receipt}))
    res = asyncio.run(feed.get_receipt("0x01"))
    assert (res.status, res.block_number, res.gas_used, res.logs) == (1, 100, 21000, 2)
    assert asyncio.run(RPCFeed(FakeRPC({})).get_receipt("0x01")) is None
    failing = RPCFeed(FakeRPC({"eth_getTransactionReceipt": RuntimeError("down")}))
    assert asyncio.run(failing.get_receipt("0x01")) is None


def test_current_fees() -> None:
    feed = RPCFeed(FakeRPC({"eth_gasPrice": "0x64", "eth_maxPriorityFeePerGas": "0xa"}))
    fees = asyncio.run(feed.current_fees())
    assert (fees.gas_price, fees.max_priority_fee_per_gas) == (100, 10)
