# network.py
import itertools
from typing import Any, List, Optional

import httpx


class RpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class JsonRpcClient:
    """
    Minimal async JSON-RPC 2.0 client for an EVM node.

    Transport failures surface as httpx.HTTPError; error objects in the
    response surface as RpcError. Callers decide what those mean.
    """

    def __init__(self, url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._ids = itertools.count(1)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        r = await self._client.post(self.url, json=payload)
        r.raise_for_status()
        body = r.json()
        if not isinstance(body, dict):
            raise RpcError(None, "malformed response")
        if body.get("error"):
            err = body["error"]
            if isinstance(err, dict):
                raise RpcError(err.get("code"), str(err.get("message", "")), err.get("data"))
            raise RpcError(None, str(err))
        if "result" not in body:
            raise RpcError(None, "response carried no result")
        return body["result"]

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block])
