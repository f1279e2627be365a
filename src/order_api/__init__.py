"""
Order API Module

aiohttp HTTP/WebSocket transport and client for the order execution engine.
"""

from .server import OrderApiServer, create_app
from .client import OrderApiError, OrderClient, stream_updates

__all__ = [
    'OrderApiServer',
    'create_app',
    'OrderApiError',
    'OrderClient',
    'stream_updates',
]
