"""
Rate limiter and worker pool tests - bounded concurrency, shared rate limit,
retry hand-off and graceful shutdown
"""

import asyncio
from collections import defaultdict
from typing import Dict, List

import pytest

from order_execution.errors import ExecutionError
from order_execution.job_queue import JobQueue, JobState
from order_execution.latency_monitor import LatencyMonitor
from order_execution.order_schemas import Order, OrderType
from order_execution.rate_limiter import SlidingWindowRateLimiter
from order_execution.worker_pool import WorkerPool

class FakeTime:
    """Clock plus a sleep that advances it instantly"""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

class MockPipeline:
    """Pipeline stand-in recording concurrency and scripted failures"""

    def __init__(self, duration: float = 0.0, failures: Dict[str, int] = None):
        self.duration = duration
        self.failures = dict(failures or {})
        self.calls: List[str] = []
        self.in_flight: Dict[str, int] = defaultdict(int)
        self.max_in_flight_per_order = 0
        self.current = 0
        self.peak = 0

    async def run(self, order: Order):
        self.calls.append(order.id)
        self.in_flight[order.id] += 1
        self.current += 1
        self.peak = max(self.peak, self.current)
        self.max_in_flight_per_order = max(self.max_in_flight_per_order, self.in_flight[order.id])
        try:
            await asyncio.sleep(self.duration)
            if self.failures.get(order.id, 0) > 0:
                self.failures[order.id] -= 1
                raise ExecutionError(f"scripted failure for {order.id}")
            return {'order_id': order.id}
        finally:
            self.in_flight[order.id] -= 1
            self.current -= 1

def make_order(order_id: str, order_type: OrderType = OrderType.MARKET) -> Order:
    return Order(id=order_id, order_type=order_type, token_in="SOL",
                 token_out="USDC", amount_in=1.0, slippage=0.01)

async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)

class TestSlidingWindowRateLimiter:
    """Test the sliding-window limit"""

    def test_try_acquire_respects_budget(self):
        fake = FakeTime()
        limiter = SlidingWindowRateLimiter(max_events=3, window_seconds=60.0, clock=fake.clock)

        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]

        fake.now = 60.0
        assert limiter.try_acquire()
        assert limiter.in_window() == 1

    @pytest.mark.asyncio
    async def test_acquire_waits_for_window(self):
        fake = FakeTime()
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=10.0,
                                           clock=fake.clock, sleep=fake.sleep)

        await limiter.acquire()
        fake.now = 4.0
        await limiter.acquire()
        await limiter.acquire()

        # Third start had to wait for the first to leave the window
        assert fake.sleeps == [pytest.approx(6.0)]
        assert fake.now == pytest.approx(10.0)
        assert limiter.total_waits == 1

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_events=0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(window_seconds=0)

class TestWorkerPool:
    """Test the worker pool"""

    @pytest.mark.asyncio
    async def test_processes_all_jobs_with_bounded_concurrency(self):
        queue = JobQueue()
        pipeline = MockPipeline(duration=0.02)
        pool = WorkerPool(queue, pipeline, concurrency=3)
        for index in range(9):
            queue.enqueue(f"order-{index}", make_order(f"order-{index}"))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 9)
        await pool.close()

        assert pipeline.peak <= 3
        assert pool.peak_in_flight <= 3
        assert queue.metrics()['completed'] == 9

    @pytest.mark.asyncio
    async def test_priority_then_fifo_with_single_worker(self):
        queue = JobQueue()
        pipeline = MockPipeline()
        pool = WorkerPool(queue, pipeline, concurrency=1)
        queue.enqueue("limit-1", make_order("limit-1", OrderType.LIMIT))
        queue.enqueue("market-1", make_order("market-1"))
        queue.enqueue("market-2", make_order("market-2"))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 3)
        await pool.close()

        assert pipeline.calls == ["market-1", "market-2", "limit-1"]

    @pytest.mark.asyncio
    async def test_never_two_attempts_for_one_order(self):
        queue = JobQueue(backoff_base_seconds=0.0)
        pipeline = MockPipeline(duration=0.01, failures={"order-1": 2})
        pool = WorkerPool(queue, pipeline, concurrency=5)
        queue.enqueue("order-1", make_order("order-1"))
        for index in range(4):
            queue.enqueue(f"other-{index}", make_order(f"other-{index}"))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 5)
        await pool.close()

        assert pipeline.max_in_flight_per_order == 1
        assert pipeline.calls.count("order-1") == 3

    @pytest.mark.asyncio
    async def test_failures_are_handed_to_retry_logic(self):
        queue = JobQueue(max_attempts=2, backoff_base_seconds=0.0)
        pipeline = MockPipeline(failures={"order-1": 5})
        pool = WorkerPool(queue, pipeline, concurrency=2)
        queue.enqueue("order-1", make_order("order-1"))

        pool.start()
        await wait_until(lambda: pool.jobs_failed == 1)
        await pool.close()

        job = queue.get_job("order-1")
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2
        assert pool.attempts_failed == 2

    @pytest.mark.asyncio
    async def test_rate_limit_shared_across_workers(self):
        queue = JobQueue()
        pipeline = MockPipeline()
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=30.0)
        pool = WorkerPool(queue, pipeline, concurrency=4, rate_limiter=limiter)
        for index in range(4):
            queue.enqueue(f"order-{index}", make_order(f"order-{index}"))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 2)
        await asyncio.sleep(0.05)

        # Workers waiting for budget hold no job
        assert len(pipeline.calls) == 2
        assert pool.in_flight() == 0
        assert queue.metrics()['waiting'] == 2
        assert queue.metrics()['active'] == 0

        await pool.close(timeout=0)

        assert pool.jobs_abandoned == 0
        assert queue.get_job("order-2").attempts_made == 0

    @pytest.mark.asyncio
    async def test_market_order_overtakes_while_rate_limited(self):
        queue = JobQueue()
        pipeline = MockPipeline()
        limiter = SlidingWindowRateLimiter(max_events=1, window_seconds=0.3)
        pool = WorkerPool(queue, pipeline, concurrency=1, rate_limiter=limiter)
        queue.enqueue("limit-a", make_order("limit-a", OrderType.LIMIT))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 1)
        queue.enqueue("limit-b", make_order("limit-b", OrderType.LIMIT))
        await asyncio.sleep(0.05)

        assert queue.metrics()['active'] == 0
        assert queue.metrics()['waiting'] == 1

        queue.enqueue("market-m", make_order("market-m"))
        await wait_until(lambda: pool.jobs_completed == 3)
        await pool.close()

        assert pipeline.calls == ["limit-a", "market-m", "limit-b"]

    @pytest.mark.asyncio
    async def test_close_lets_in_flight_attempts_finish(self):
        queue = JobQueue()
        pipeline = MockPipeline(duration=0.05)
        pool = WorkerPool(queue, pipeline, concurrency=2)
        queue.enqueue("order-1", make_order("order-1"))

        pool.start()
        await wait_until(lambda: pool.in_flight() == 1)
        await pool.close(timeout=1.0)

        assert pool.jobs_completed == 1
        assert queue.get_job("order-1").state == JobState.COMPLETED
        assert not pool.running

    @pytest.mark.asyncio
    async def test_close_deadline_abandons_and_requeues(self):
        queue = JobQueue()
        pipeline = MockPipeline(duration=5.0)
        pool = WorkerPool(queue, pipeline, concurrency=1)
        queue.enqueue("order-1", make_order("order-1"))

        pool.start()
        await wait_until(lambda: pool.in_flight() == 1)
        await pool.close(timeout=0.01)

        job = queue.get_job("order-1")
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert pool.jobs_abandoned == 1

    @pytest.mark.asyncio
    async def test_records_queue_wait(self):
        queue = JobQueue()
        monitor = LatencyMonitor()
        pool = WorkerPool(queue, MockPipeline(), concurrency=1, latency_monitor=monitor)
        queue.enqueue("order-1", make_order("order-1"))

        pool.start()
        await wait_until(lambda: pool.jobs_completed == 1)
        await pool.close()

        assert monitor.get_stats("queue_wait").count == 1
