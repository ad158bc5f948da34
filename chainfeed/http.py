import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import RPCError, TransportError

logger = logging.getLogger(__name__)


class HttpClient:
    """JSON over HTTP with one shared session; every failure becomes a TransportError."""

    def __init__(self, timeout_sec: int = 12, max_retries: int = 1):
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self.max_retries = max(1, max_retries)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("HTTP session is not initialized")
        return self._session

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        session = self._require_session()
        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with session.request(method, url, **kwargs) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise TransportError(f"HTTP error! status: {resp.status}", status=resp.status)
                    return await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TransportError) as e:
                if attempt >= self.max_retries:
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError(f"{method} {url} failed: {e!r}") from e
                logger.debug("retrying %s %s after %r (attempt %d)", method, url, e, attempt)
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        return await self._request("GET", url, params=params)

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", url, json=payload)


class RPCClient:
    def __init__(self, url: str, max_retries: int = 3, timeout_sec: int = 12):
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

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise TransportError(f"RPC HTTP status {resp.status}", status=resp.status)
                    data = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TransportError) as e:
                if attempt >= self.max_retries:
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError(f"RPC {method} failed: {e!r}") from e
                await asyncio.sleep(backoff)
                backoff *= 2
                continue
            # An error object is the node's answer, not a transport hiccup.
            if isinstance(data, dict) and data.get("error"):
                err = data["error"]
                if isinstance(err, dict):
                    raise RPCError(str(err.get("message", err)), code=int(err.get("code", 0) or 0))
                raise RPCError(str(err))
            if not isinstance(data, dict):
                raise TransportError(f"RPC {method} returned a non-object payload")
            return data.get("result")

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result
