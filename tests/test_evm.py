import pytest

from shares_gate.chains.evm import (
    SHARES_BALANCE_SELECTOR,
    TRADE_TOPIC0,
    EvmBlockchain,
    encode_address_word,
)
from shares_gate.config import EvmChainConfig
from shares_gate.errors import QueryError, RPCError, StartupError
from shares_gate.models import Checkpoint

from .fakes import FakeRPC

CONTRACT = "0x" + "cd" * 20
TRADER = "0x" + "aa" * 20
SUBJECT = "0x" + "bb" * 20


def word(value: int) -> str:
    return format(value, "064x")


def trade_log(tx: str, log_index: int, block: int, is_buy: bool, amount: int, removed=False):
    data = (
        "0x"
        + encode_address_word(TRADER)
        + encode_address_word(SUBJECT)
        + word(1 if is_buy else 0)
        + word(amount)
        + word(10**18)
        + word(1)
        + word(2)
        + word(amount + 7)
    )
    return {
        "address": CONTRACT,
        "topics": [TRADE_TOPIC0],
        "data": data,
        "blockNumber": hex(block),
        "transactionHash": tx,
        "logIndex": hex(log_index),
        "removed": removed,
    }


def make_chain(responses=None, start_block=0, batch_blocks=100):
    cfg = EvmChainConfig(
        name="monad",
        rpc_url="http://node",
        shares_contract=CONTRACT,
        start_block=start_block,
        batch_blocks=batch_blocks,
    )
    return EvmBlockchain(cfg, FakeRPC(responses))


def test_topic_and_selector_constants():
    assert TRADE_TOPIC0.startswith("0x") and len(TRADE_TOPIC0) == 66
    assert SHARES_BALANCE_SELECTOR.startswith("0x") and len(SHARES_BALANCE_SELECTOR) == 10


def test_decode_trade_log():
    chain = make_chain()
    ev = chain.decode(trade_log("0xABC", 3, 120, True, 5))
    assert ev.trader == "aa" * 20
    assert ev.subject == "bb" * 20
    assert ev.is_buy
    assert ev.amount == 5
    assert ev.event_key == "0xabc:3"
    assert ev.block_number == 120


def test_decode_sell_and_uint256_amount():
    chain = make_chain()
    ev = chain.decode(trade_log("0x1", 0, 1, False, 2**255))
    assert not ev.is_buy
    assert ev.amount == 2**255


def test_decode_short_data_rejected():
    chain = make_chain()
    with pytest.raises(ValueError):
        chain.decode({"data": "0x" + word(1) * 2, "transactionHash": "0x1", "logIndex": "0x0"})


@pytest.mark.asyncio()
async def test_fetch_batch_window_is_capped():
    logs = [
        trade_log("0x2", 0, 1050, True, 1),
        trade_log("0x1", 1, 1010, True, 1),
        trade_log("0x1", 0, 1010, True, 1),
        trade_log("0x3", 0, 1020, True, 1, removed=True),
    ]
    chain = make_chain({"eth_blockNumber": hex(5000), "eth_getLogs": logs})
    batch = await chain.fetch_batch(Checkpoint("monad", 1000))

    assert batch.checkpoint.position == 1100
    method, params = chain.rpc.calls[-1]
    assert method == "eth_getLogs"
    assert params[0]["fromBlock"] == hex(1000)
    assert params[0]["toBlock"] == hex(1100)
    assert params[0]["topics"] == [TRADE_TOPIC0]
    assert params[0]["address"] == CONTRACT
    assert [(lg["transactionHash"], lg["logIndex"]) for lg in batch.raw_events] == [
        ("0x1", "0x0"),
        ("0x1", "0x1"),
        ("0x2", "0x0"),
    ]


@pytest.mark.asyncio()
async def test_fetch_batch_stops_at_head():
    chain = make_chain({"eth_blockNumber": hex(1030), "eth_getLogs": []})
    batch = await chain.fetch_batch(Checkpoint("monad", 1000))
    assert batch.checkpoint.position == 1030
    assert batch.raw_events == []


@pytest.mark.asyncio()
async def test_fetch_batch_caught_up():
    chain = make_chain({"eth_blockNumber": hex(1000)})
    assert await chain.fetch_batch(Checkpoint("monad", 1000)) is None


@pytest.mark.asyncio()
async def test_fetch_batch_propagates_rpc_error():
    chain = make_chain({"eth_blockNumber": hex(2000), "eth_getLogs": RPCError("boom")})
    with pytest.raises(RPCError):
        await chain.fetch_batch(Checkpoint("monad", 1000))


@pytest.mark.asyncio()
async def test_share_balance():
    chain = make_chain({"eth_call": "0x" + word(42)})
    assert await chain.get_share_balance(SUBJECT, TRADER) == 42
    _, params = chain.rpc.calls[-1]
    data = params[0]["data"]
    assert data.startswith(SHARES_BALANCE_SELECTOR)
    assert data.endswith(encode_address_word(TRADER))


@pytest.mark.asyncio()
async def test_share_balance_errors_become_query_errors():
    chain = make_chain({"eth_call": RPCError("reverted")})
    with pytest.raises(QueryError):
        await chain.get_share_balance(SUBJECT, TRADER)
    chain = make_chain({"eth_call": "0x"})
    with pytest.raises(QueryError):
        await chain.get_share_balance(SUBJECT, TRADER)
    with pytest.raises(QueryError):
        await chain.get_share_balance("0x12", TRADER)


@pytest.mark.asyncio()
async def test_probe_failure_is_startup_error():
    chain = make_chain({"eth_chainId": RPCError("refused")})
    with pytest.raises(StartupError):
        await chain.probe()
    chain = make_chain({"eth_chainId": "0x279f"})
    await chain.probe()
