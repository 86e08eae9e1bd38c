"""Minimal async JSON-RPC transport over httpx."""

import asyncio
import itertools
import logging
from typing import Any, Optional

import httpx

from crosspay.errors import RpcError

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """POSTs JSON-RPC 2.0 requests to a single endpoint.

    The httpx client may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise one is created and owned here.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout: float = 15.0,
    ):
        self.url = url
        self.default_timeout = default_timeout
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.default_timeout)
        return self._client

    async def call(self, method: str, params: list, timeout: Optional[float] = None) -> Any:
        """Invoke ``method`` and return its ``result``.

        Raises:
            RpcError: the node returned an error object
            httpx.HTTPError: transport or HTTP status failure
            TimeoutError: no answer within ``timeout``
        """
        timeout = timeout or self.default_timeout
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}

        response = await asyncio.wait_for(
            self.client.post(self.url, json=payload, timeout=timeout),
            timeout=timeout,
        )
        response.raise_for_status()
        data = response.json()

        if data.get("error"):
            error = data["error"]
            raise RpcError(
                int(error.get("code", -32000)),
                str(error.get("message", "unknown error")),
                error.get("data"),
            )
        if "result" not in data:
            raise RpcError(-32603, f"Malformed response to {method}")
        return data["result"]

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
