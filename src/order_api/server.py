"""
Order API Server - HTTP and WebSocket transport for the execution engine

Routes:
- POST /api/orders/execute        create and queue an order
- GET  /api/orders/{order_id}     current order snapshot
- POST /api/orders/{order_id}/resubmit  queue a fresh job for a failed order
- GET  /api/metrics               queue, order, latency and worker metrics
- GET  /health                    liveness
- WS   /api/orders/{order_id}/stream   status updates for one order
- WS   /api/orders/stream              status updates for every order

Engine errors are mapped to status codes by one middleware; the handlers
only deal with the happy path.
"""

import asyncio
import json
import weakref
from typing import Any, Dict, Optional

from aiohttp import WSCloseCode, WSMsgType, web
from loguru import logger

from order_execution.errors import InvalidTransitionError, NotFoundError, QueueFullOrDuplicateError, ValidationError
from order_execution.event_bus import GLOBAL_TOPIC, EventStream
from order_execution.execution_engine import ExecutionEngine
from order_execution.order_schemas import utc_now

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    QueueFullOrDuplicateError: 409,
    InvalidTransitionError: 409,
}


def _timestamp() -> str:
    return utc_now().isoformat()


def _error_response(status: int, message: str) -> web.Response:
    return web.json_response({'success': False, 'error': message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except tuple(ERROR_STATUS) as e:
        status = next(code for kind, code in ERROR_STATUS.items() if isinstance(e, kind))
        logger.info(f"{request.method} {request.path} -> {status}: {e}")
        return _error_response(status, str(e))
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return _error_response(500, f"Internal server error: {e.__class__.__name__}")


class OrderApiServer:
    """aiohttp application exposing an ExecutionEngine"""

    def __init__(self, engine: ExecutionEngine, manage_engine: bool = True,
                 heartbeat_seconds: Optional[float] = 30.0):
        self.engine = engine
        self.manage_engine = manage_engine
        self.heartbeat_seconds = heartbeat_seconds
        self._sockets: "weakref.WeakSet[web.WebSocketResponse]" = weakref.WeakSet()

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])

        # The global stream must be matched before the {order_id} routes
        app.add_routes([
            web.post('/api/orders/execute', self.execute_order),
            web.get('/api/orders/stream', self.global_stream),
            web.get('/api/orders/{order_id}/stream', self.order_stream),
            web.get('/api/orders/{order_id}', self.get_order),
            web.post('/api/orders/{order_id}/resubmit', self.resubmit_order),
            web.get('/api/metrics', self.metrics),
            web.get('/health', self.health),
        ])

        if self.manage_engine:
            app.on_startup.append(self._on_startup)
            app.on_cleanup.append(self._on_cleanup)
        app.on_shutdown.append(self._on_shutdown)
        return app

    # HTTP handlers

    async def execute_order(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Request body must be valid JSON")

        order = await self.engine.submit_order(payload)
        return web.json_response({
            'success': True,
            'orderId': order.id,
            'status': order.status.value,
            'message': 'Order created. Connect to WebSocket for live updates.',
            'websocketUrl': f"/api/orders/{order.id}/stream",
        })

    async def get_order(self, request: web.Request) -> web.Response:
        order = await self.engine.get_order(request.match_info['order_id'])
        return web.json_response({'success': True, 'order': order.to_dict()})

    async def resubmit_order(self, request: web.Request) -> web.Response:
        order = await self.engine.resubmit_order(request.match_info['order_id'])
        return web.json_response({
            'success': True,
            'orderId': order.id,
            'status': order.status.value,
            'retryCount': order.retry_count,
            'websocketUrl': f"/api/orders/{order.id}/stream",
        })

    async def metrics(self, request: web.Request) -> web.Response:
        return web.json_response({
            'success': True,
            'metrics': await self.engine.get_metrics(),
            'timestamp': _timestamp(),
        })

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'healthy' if self.engine.running else 'starting',
            'timestamp': _timestamp(),
        })

    # WebSocket handlers

    async def order_stream(self, request: web.Request) -> web.StreamResponse:
        order_id = request.match_info['order_id']
        return await self._stream(request, order_id, {
            'orderId': order_id,
            'message': 'WebSocket connected. Listening for order updates...',
        })

    async def global_stream(self, request: web.Request) -> web.StreamResponse:
        return await self._stream(request, GLOBAL_TOPIC, {
            'message': 'WebSocket connected. Listening for all order updates...',
        })

    async def _stream(self, request: web.Request, topic: str,
                      greeting: Dict[str, Any]) -> web.StreamResponse:
        if self.engine.event_bus.closed:
            return _error_response(503, "Server is shutting down")

        ws = web.WebSocketResponse(heartbeat=self.heartbeat_seconds)
        await ws.prepare(request)
        self._sockets.add(ws)
        logger.info(f"WebSocket connected for {topic[:8]}")

        # Subscribed before the greeting, so nothing published after it is missed
        stream = self.engine.event_bus.open_stream(topic, self.engine.config.stream_buffer_size)
        with stream:
            await ws.send_json({'type': 'connected', **greeting, 'timestamp': _timestamp()})
            forwarder = asyncio.create_task(self._forward(ws, stream))
            try:
                async for message in ws:
                    if message.type == WSMsgType.TEXT:
                        await self._handle_client_message(ws, message.data)
                    elif message.type == WSMsgType.ERROR:
                        logger.warning(f"WebSocket error for {topic[:8]}: {ws.exception()}")
            finally:
                forwarder.cancel()
                await asyncio.gather(forwarder, return_exceptions=True)
                self._sockets.discard(ws)

        logger.info(f"WebSocket closed for {topic[:8]} ({stream.dropped} updates dropped)")
        return ws

    async def _forward(self, ws: web.WebSocketResponse, stream: EventStream) -> None:
        async for update in stream:
            if ws.closed:
                break
            try:
                await ws.send_json(update.to_message())
            except ConnectionResetError:
                break

    async def _handle_client_message(self, ws: web.WebSocketResponse, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed WebSocket message: {raw[:100]!r}")
            return
        if isinstance(message, dict) and message.get('type') == 'ping':
            await ws.send_json({'type': 'pong', 'timestamp': _timestamp()})

    # Lifecycle

    async def _on_startup(self, app: web.Application) -> None:
        await self.engine.start()

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.engine.stop()


def create_app(engine: ExecutionEngine, manage_engine: bool = True) -> web.Application:
    """
    Build the aiohttp application for ``engine``

    Args:
        engine: Engine to expose
        manage_engine: Start and stop the engine with the application
    """
    return OrderApiServer(engine, manage_engine=manage_engine).build_app()
