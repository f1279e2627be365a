"""
Shared fixtures and test doubles for the order execution tests
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from order_execution.dex_router import Provider, QuoteRouter
from order_execution.errors import ExecutionError
from order_execution.event_bus import EventBus
from order_execution.execution_engine import ExecutionConfig, ExecutionEngine
from order_execution.order_schemas import ExecutionResult, Quote, StatusUpdate
from order_execution.order_store import InMemorySnapshotCache, OrderStateStore, SqlOrderRepository


class StaticProvider(Provider):
    """Deterministic provider: fixed price, scripted failures, optional delays"""

    def __init__(self, name: str, price: float = 100.0, fee: float = 0.0,
                 quote_delay: float = 0.0, execution_delay: float = 0.0,
                 fill_ratio: float = 1.0, failures: int = 0,
                 quote_error: Optional[Exception] = None):
        self.name = name
        self.price = price
        self.fee = fee
        self.quote_delay = quote_delay
        self.execution_delay = execution_delay
        self.fill_ratio = fill_ratio
        self.failures = failures
        self.quote_error = quote_error
        self.quote_calls = 0
        self.swap_calls = 0

    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        self.quote_calls += 1
        if self.quote_delay:
            await asyncio.sleep(self.quote_delay)
        if self.quote_error is not None:
            raise self.quote_error
        return Quote(
            provider=self.name,
            price=self.price,
            amount_out=amount * self.price * (1 - self.fee),
            fee=self.fee,
            liquidity_depth=10000.0,
            estimated_slippage=0.001,
        )

    async def submit_swap(self, token_in: str, token_out: str, amount: float,
                          expected_out: float) -> ExecutionResult:
        self.swap_calls += 1
        if self.execution_delay:
            await asyncio.sleep(self.execution_delay)
        if self.swap_calls <= self.failures:
            raise ExecutionError(f"{self.name}: simulated failure #{self.swap_calls}")
        amount_out = expected_out * self.fill_ratio
        return ExecutionResult(
            tx_hash=f"{self.name.lower()}-tx-{self.swap_calls:04d}",
            executed_price=amount_out / amount,
            amount_out=amount_out,
            provider=self.name,
        )


class UpdateRecorder:
    """Event bus handler that keeps every update it receives"""

    def __init__(self):
        self.updates: List[StatusUpdate] = []

    def __call__(self, update: StatusUpdate) -> None:
        self.updates.append(update)

    def statuses(self, order_id: Optional[str] = None) -> List[str]:
        return [u.status.value for u in self.updates if order_id is None or u.order_id == order_id]


def market_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        'order_type': 'market',
        'token_in': 'SOL',
        'token_out': 'USDC',
        'amount_in': 1.0,
        'slippage': 0.01,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def event_bus():
    bus = EventBus()
    yield bus
    bus.close()


@pytest.fixture
def repository():
    repo = SqlOrderRepository("sqlite:///:memory:")
    yield repo
    repo.close()


@pytest.fixture
def cache():
    return InMemorySnapshotCache()


@pytest.fixture
def store(repository, cache, event_bus):
    return OrderStateStore(repository, cache, event_bus, cache_ttl_seconds=60)


@pytest.fixture
def recorder(event_bus):
    handler = UpdateRecorder()
    event_bus.subscribe("*", handler)
    return handler


@pytest.fixture
def providers():
    return [StaticProvider("Raydium", price=100.0, fee=0.003),
            StaticProvider("Meteora", price=101.0, fee=0.002)]


@pytest.fixture
def router(providers):
    return QuoteRouter(providers)


@pytest.fixture
def fast_config():
    """Engine config without artificial delays"""
    return ExecutionConfig(
        database_url="sqlite:///:memory:",
        max_concurrent_orders=4,
        max_orders_per_minute=1000,
        max_retry_attempts=3,
        retry_backoff_seconds=0.01,
        enqueue_delay_seconds=0.0,
        shutdown_timeout_seconds=1.0,
        housekeeping_interval_seconds=3600.0,
    )


@pytest_asyncio.fixture
async def engine(fast_config, providers):
    engine = ExecutionEngine(fast_config, providers=providers)
    await engine.start()
    yield engine
    await engine.stop()
