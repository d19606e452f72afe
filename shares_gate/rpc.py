import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp

from .errors import RPCError

logger = logging.getLogger(__name__)

Params = Union[List[Any], Dict[str, Any]]


class RPCClient:
    def __init__(self, url: str, max_retries: int = 3, timeout_sec: int = 15):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _post(self, payload: Dict[str, Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        async with self._session.post(self.url, json=payload) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise RPCError(f"RPC request failed: HTTP {resp.status}")
            try:
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise RPCError(f"RPC returned malformed body: {e}") from e
        if not isinstance(data, dict):
            raise RPCError("RPC returned a non-object response")
        if data.get("error") is not None:
            raise RPCError(f"RPC error: {data['error']}")
        if "result" not in data:
            raise RPCError("RPC response has no result")
        return data["result"]

    async def call(self, method: str, params: Params) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._post(payload)
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt >= self.max_retries:
                    if isinstance(e, RPCError):
                        raise
                    raise RPCError(f"{method} failed: {e!r}") from e
                logger.debug("%s attempt %d failed: %r", method, attempt, e)
                await asyncio.sleep(backoff)
                backoff *= 2
        raise RPCError(f"{method} failed")

    async def chain_id(self) -> int:
        result = await self.call("eth_chainId", [])
        return int(result, 16)

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise RPCError(f"malformed block number: {result!r}") from e

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        if result is None:
            return []
        if not isinstance(result, list):
            raise RPCError("eth_getLogs returned a non-list result")
        return result

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result
