"""
Event Bus - Process-wide publish/subscribe hub for order status updates

Every update is delivered to the subscribers of its order id and to the
subscribers of the global channel. Delivery is synchronous and in call
order; handlers must not block. Consumers that need to await (sockets,
tests) use an :class:`EventStream`, which buffers into a bounded queue and
drops the oldest buffered update once the buffer is full instead of
stalling the publisher.

The bus is constructed once by the engine and passed to every component
that needs it; there is no module-level instance.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .order_schemas import OrderStatus, StatusUpdate

GLOBAL_TOPIC = "*"

Handler = Callable[[StatusUpdate], None]


class EventBus:
    """Registry of status-update subscribers keyed by order id"""

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._closed = False
        self.published_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Register ``handler`` for an order id, or for :data:`GLOBAL_TOPIC`"""
        with self._lock:
            if self._closed:
                raise RuntimeError("Event bus is closed")
            self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        """Remove one registration of ``handler``; returns False if it was not registered"""
        with self._lock:
            handlers = self._subscribers.get(topic)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._subscribers[topic]
            return True

    def publish(self, order_id: str, status: OrderStatus,
                data: Optional[Dict[str, Any]] = None) -> StatusUpdate:
        """
        Deliver a status update to the order's subscribers, then to the global channel

        The handler list is copied before delivery starts, so subscribing or
        unsubscribing from inside a handler (or from another thread) never
        causes an update to be lost or delivered twice to a handler that was
        registered for the whole call.
        """
        update = StatusUpdate(order_id=order_id, status=status, data=dict(data or {}))

        with self._lock:
            if self._closed:
                logger.debug(f"Event bus closed - dropping {status.value} for {order_id[:8]}")
                return update
            targets = list(self._subscribers.get(order_id, ()))
            targets.extend(self._subscribers.get(GLOBAL_TOPIC, ()))
            self.published_count += 1

        for handler in targets:
            try:
                handler(update)
            except Exception:
                logger.exception(f"Status handler failed for order {order_id[:8]}")

        return update

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, ()))
            return sum(len(handlers) for handlers in self._subscribers.values())

    def open_stream(self, topic: str, max_buffer: int = 1000) -> 'EventStream':
        """Subscribe a buffered async stream to ``topic``"""
        return EventStream(self, topic, max_buffer)

    def close(self) -> None:
        """Drop every subscription; later publishes are ignored"""
        with self._lock:
            dropped = sum(len(handlers) for handlers in self._subscribers.values())
            self._subscribers.clear()
            self._closed = True
        logger.info(f"Event bus closed ({dropped} subscriptions dropped)")


class EventStream:
    """
    Bounded, non-blocking subscription for async consumers

    Use as a context manager so the subscription is removed when the
    consumer goes away::

        with bus.open_stream(order_id) as stream:
            async for update in stream:
                ...
    """

    def __init__(self, bus: EventBus, topic: str, max_buffer: int = 1000):
        self.bus = bus
        self.topic = topic
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffer)
        self._subscribed = False

    def _on_update(self, update: StatusUpdate) -> None:
        if self._queue.full():
            # Evict the oldest; the newest status is always kept
            oldest = self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Stream for {self.topic[:8]} is full - dropped {oldest.status.value} update")
        self._queue.put_nowait(update)

    def open(self) -> 'EventStream':
        if not self._subscribed:
            self.bus.subscribe(self.topic, self._on_update)
            self._subscribed = True
        return self

    def close(self) -> None:
        if self._subscribed:
            self.bus.unsubscribe(self.topic, self._on_update)
            self._subscribed = False

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> StatusUpdate:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def __enter__(self) -> 'EventStream':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusUpdate:
        return await self._queue.get()
