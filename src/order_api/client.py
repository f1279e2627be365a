"""
Order API Client

- OrderClient: aiohttp session wrapper for submitting and looking up orders
- stream_updates: websockets reader yielding decoded status frames
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
import websockets
from loguru import logger


class OrderApiError(Exception):
    """Non-success response from the order API"""

    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class OrderClient:
    """
    Thin async client for the order API

    Usage::

        async with OrderClient("http://localhost:3000") as client:
            created = await client.submit_order({...})
            order = await client.get_order(created['orderId'])
    """

    def __init__(self, base_url: str = "http://localhost:3000",
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def __aenter__(self) -> 'OrderClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        async with self.session.request(method, f"{self.base_url}{path}", **kwargs) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                message = body.get('error', response.reason) if isinstance(body, dict) else response.reason
                raise OrderApiError(response.status, message)
            return body

    async def submit_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """POST an order; returns the creation response (orderId, websocketUrl...)"""
        return await self._request("POST", "/api/orders/execute", json=order)

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/api/orders/{order_id}")
        return body['order']

    async def resubmit_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/orders/{order_id}/resubmit")

    async def get_metrics(self) -> Dict[str, Any]:
        body = await self._request("GET", "/api/metrics")
        return body['metrics']

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")

    def stream_url(self, order_id: Optional[str] = None) -> str:
        """WebSocket URL for one order, or for every order when ``order_id`` is None"""
        ws_base = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        if order_id is None:
            return f"{ws_base}/api/orders/stream"
        return f"{ws_base}/api/orders/{order_id}/stream"


async def stream_updates(url: str, until_terminal: bool = False) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield decoded frames from an order stream

    Args:
        url: WebSocket URL (see OrderClient.stream_url)
        until_terminal: Stop after the first confirmed or failed status
            update; a failed order may still be retried by the engine
    """
    async with websockets.connect(url) as ws:
        async for raw in ws:
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed frame: {raw[:100]!r}")
                continue
            yield message
            if (until_terminal and message.get('type') == 'status_update'
                    and message.get('status') in ('confirmed', 'failed')):
                return
