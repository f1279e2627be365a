"""
Order Execution Module

Asynchronous execution engine for token swap orders routed across
decentralized exchange liquidity providers.

Core Components:
- OrderStateStore: Order lifecycle owner (SQLAlchemy store + snapshot cache)
- QuoteRouter: Best-quote routing across providers
- ExecutionPipeline: One routing/building/submission/confirmation attempt
- JobQueue / WorkerPool: Prioritized, rate-limited, retried execution
- EventBus: Status update fan-out to subscribers
- ExecutionEngine: Main orchestration engine
"""

from .order_schemas import CreateOrderRequest, ExecutionResult, Order, OrderStatus, OrderType, Quote, StatusUpdate
from .errors import (
    ExecutionError,
    InvalidTransitionError,
    NotFoundError,
    OrderEngineError,
    QueueFullOrDuplicateError,
    RoutingError,
    SlippageExceededError,
    UnsupportedOrderTypeError,
    ValidationError,
)
from .event_bus import GLOBAL_TOPIC, EventBus, EventStream
from .order_store import InMemorySnapshotCache, OrderStateStore, SqlOrderRepository
from .dex_router import Provider, QuoteRouter, SimulatedProvider, default_providers
from .execution_pipeline import ExecutionPipeline
from .job_queue import Job, JobQueue, JobState
from .rate_limiter import SlidingWindowRateLimiter
from .worker_pool import WorkerPool
from .latency_monitor import LatencyMonitor
from .execution_engine import ExecutionConfig, ExecutionEngine, create_execution_engine

__all__ = [
    # Order schemas
    'CreateOrderRequest',
    'ExecutionResult',
    'Order',
    'OrderStatus',
    'OrderType',
    'Quote',
    'StatusUpdate',

    # Errors
    'ExecutionError',
    'InvalidTransitionError',
    'NotFoundError',
    'OrderEngineError',
    'QueueFullOrDuplicateError',
    'RoutingError',
    'SlippageExceededError',
    'UnsupportedOrderTypeError',
    'ValidationError',

    # Core components
    'GLOBAL_TOPIC',
    'EventBus',
    'EventStream',
    'InMemorySnapshotCache',
    'OrderStateStore',
    'SqlOrderRepository',
    'Provider',
    'QuoteRouter',
    'SimulatedProvider',
    'default_providers',
    'ExecutionPipeline',
    'Job',
    'JobQueue',
    'JobState',
    'SlidingWindowRateLimiter',
    'WorkerPool',
    'LatencyMonitor',
    'ExecutionEngine',
    'ExecutionConfig',
    'create_execution_engine',
]
