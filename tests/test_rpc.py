import pytest

from shares_gate.rpc import RPCClient


@pytest.mark.asyncio()
async def test_calls_outside_session_fail_loudly():
    client = RPCClient("http://127.0.0.1:1")
    with pytest.raises(RuntimeError, match="not initialized"):
        await client.call("eth_blockNumber", [])
    with pytest.raises(RuntimeError, match="not initialized"):
        await client._post({"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []})
