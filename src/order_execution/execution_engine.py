"""
Execution Engine - Composition root for order execution

Wires the components together and owns their lifecycle:
- Order state store (SQLAlchemy repository + snapshot cache)
- Quote router over the registered providers
- Execution pipeline
- Job queue and worker pool (with the shared rate limiter)
- Event bus for status streaming
- Periodic housekeeping (APScheduler)

This is the interface the transport layer talks to.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .dex_router import Provider, QuoteRouter, default_providers
from .errors import InvalidTransitionError, QueueFullOrDuplicateError
from .event_bus import EventBus
from .execution_pipeline import ExecutionPipeline
from .job_queue import Job, JobQueue, JobState
from .latency_monitor import LatencyMonitor
from .order_schemas import CreateOrderRequest, Order, OrderStatus, utc_now
from .order_store import InMemorySnapshotCache, OrderRepository, OrderStateStore, SnapshotCache, SqlOrderRepository
from .rate_limiter import SlidingWindowRateLimiter
from .worker_pool import WorkerPool


@dataclass
class ExecutionConfig:
    """Configuration for the Execution Engine"""

    # Storage
    database_url: str = "sqlite:///:memory:"
    cache_ttl_seconds: float = 3600.0

    # Workers
    max_concurrent_orders: int = 10             # Worker slots
    max_orders_per_minute: int = 100            # Attempt starts per window
    rate_limit_window_seconds: float = 60.0

    # Queue
    max_retry_attempts: int = 3
    retry_backoff_seconds: float = 2.0          # Doubles per attempt
    enqueue_delay_seconds: float = 1.0          # Lets clients open a stream before work starts
    max_pending_jobs: Optional[int] = None
    job_retention_seconds: float = 3600.0

    # Orders
    default_slippage: float = 0.01

    # Simulated providers
    quote_latency_seconds: float = 0.2
    execution_latency_seconds: Tuple[float, float] = (2.0, 3.0)
    simulation_failure_rate: float = 0.05
    simulation_seed: Optional[int] = None

    # Lifecycle
    recover_on_start: bool = True              # Requeue orders left unfinished by a previous run
    shutdown_timeout_seconds: float = 30.0
    housekeeping_interval_seconds: float = 60.0
    stream_buffer_size: int = 1000


class ExecutionEngine:
    """
    Main execution engine

    Accepts order requests, persists them, queues them for the worker pool
    and exposes lookup, metrics and the event bus for status streaming.
    """

    def __init__(self, config: Optional[ExecutionConfig] = None,
                 repository: Optional[OrderRepository] = None,
                 cache: Optional[SnapshotCache] = None,
                 providers: Optional[List[Provider]] = None):
        self.config = config or ExecutionConfig()
        config = self.config

        self.event_bus = EventBus()
        self.latency_monitor = LatencyMonitor()

        self.repository = repository or SqlOrderRepository(config.database_url)
        self.cache = cache or InMemorySnapshotCache()
        self.store = OrderStateStore(self.repository, self.cache, self.event_bus,
                                     cache_ttl_seconds=config.cache_ttl_seconds)

        if providers is None:
            providers = default_providers(
                quote_latency_seconds=config.quote_latency_seconds,
                execution_latency_seconds=config.execution_latency_seconds,
                failure_rate=config.simulation_failure_rate,
                seed=config.simulation_seed,
            )
        self.router = QuoteRouter(providers)
        self.pipeline = ExecutionPipeline(self.store, self.router, self.latency_monitor)

        self.job_queue = JobQueue(
            max_attempts=config.max_retry_attempts,
            backoff_base_seconds=config.retry_backoff_seconds,
            enqueue_delay_seconds=config.enqueue_delay_seconds,
            max_pending=config.max_pending_jobs,
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            max_events=config.max_orders_per_minute,
            window_seconds=config.rate_limit_window_seconds,
        )
        self.worker_pool = WorkerPool(
            self.job_queue,
            self.pipeline,
            concurrency=config.max_concurrent_orders,
            rate_limiter=self.rate_limiter,
            latency_monitor=self.latency_monitor,
        )

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False
        self.start_time: Optional[datetime] = None
        self.total_orders_submitted = 0

    async def start(self) -> None:
        """Start the workers and housekeeping"""
        if self.running:
            return

        if self.config.recover_on_start:
            await self.recover_orders()
        self.worker_pool.start()

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._housekeeping,
            IntervalTrigger(seconds=self.config.housekeeping_interval_seconds),
            id="housekeeping",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

        self.running = True
        self.start_time = utc_now()
        logger.info(f"Execution Engine started with providers: {', '.join(self.router.provider_names)}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop gracefully

        Args:
            timeout: Deadline for in-flight attempts; defaults to
                ``shutdown_timeout_seconds``
        """
        logger.info("Stopping Execution Engine...")
        if timeout is None:
            timeout = self.config.shutdown_timeout_seconds

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        await self.worker_pool.close(timeout)
        self.job_queue.close()
        self.event_bus.close()
        self.repository.close()

        self.running = False
        if self.start_time:
            uptime = (utc_now() - self.start_time).total_seconds()
            status = self.worker_pool.get_status()
            logger.info(f"Final stats: {self.total_orders_submitted} orders submitted, "
                        f"{status['jobs_completed']} completed, {status['jobs_failed']} failed, "
                        f"{uptime / 60:.1f}min uptime")
        logger.info("Execution Engine stopped")

    async def submit_order(self, payload: Any) -> Order:
        """
        Validate, persist and queue a new order

        Returns:
            The PENDING order

        Raises:
            ValidationError: malformed request, nothing is created
            QueueFullOrDuplicateError: the client-supplied id is already
                known, the queue is at capacity, or the engine is stopped
        """
        if self.job_queue.closed:
            raise QueueFullOrDuplicateError("Engine is not accepting orders")

        request = CreateOrderRequest.from_payload(payload, default_slippage=self.config.default_slippage)

        if request.order_id is not None:
            if self.job_queue.is_in_flight(request.order_id):
                raise QueueFullOrDuplicateError(f"Order {request.order_id} is already in flight")
            if await self.store.exists(request.order_id):
                raise QueueFullOrDuplicateError(f"Order {request.order_id} already exists")

        max_pending = self.config.max_pending_jobs
        if max_pending is not None and self.job_queue.pending_count() >= max_pending:
            raise QueueFullOrDuplicateError(f"Queue is full ({max_pending} pending jobs)")

        order = await self.store.create_order(request)
        try:
            self.job_queue.enqueue(order.id, order)
        except QueueFullOrDuplicateError as e:
            # Never leave a PENDING order that no worker will pick up
            await self.store.update_status(order.id, OrderStatus.FAILED,
                                           fields={'error_message': f"Not queued: {e}"})
            raise
        self.total_orders_submitted += 1
        return order

    async def resubmit_order(self, order_id: str) -> Order:
        """
        Queue a fresh job for a terminally failed order

        The new job starts from routing with a full attempt budget; the
        order keeps its accumulated retry_count.

        Raises:
            NotFoundError: unknown order id
            QueueFullOrDuplicateError: the order already has a job in flight
            InvalidTransitionError: the order is not FAILED
        """
        order = await self.store.get_order(order_id)
        if self.job_queue.is_in_flight(order_id):
            raise QueueFullOrDuplicateError(f"Order {order_id} is already in flight")
        if order.status != OrderStatus.FAILED:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value}; only failed orders can be resubmitted"
            )

        self.job_queue.enqueue(order.id, order)
        logger.info(f"[{order.short_id}] Resubmitted after {order.retry_count} failed attempt(s)")
        return order

    async def recover_orders(self) -> Dict[str, int]:
        """
        Requeue orders a previous run left unfinished

        Jobs live only in memory, so after a restart the stored lifecycle is
        the source of truth:
        - PENDING orders get a fresh job
        - ROUTING/BUILDING orders never reached the provider; they are
          failed with the interruption recorded, then get a fresh job
        - SUBMITTED orders may have executed; they are failed without a
          new job and can be resubmitted once checked

        Returns:
            Counts of orders requeued and failed
        """
        unfinished = await self.store.list_by_status(
            OrderStatus.PENDING, OrderStatus.ROUTING, OrderStatus.BUILDING, OrderStatus.SUBMITTED,
        )
        requeued = failed = 0

        for order in unfinished:
            if self.job_queue.is_in_flight(order.id):
                continue

            if order.status != OrderStatus.PENDING:
                was = order.status.value
                order = await self.store.update_status(
                    order.id, OrderStatus.FAILED,
                    fields={
                        'error_message': f"Interrupted by restart while {was}",
                        'retry_count': order.retry_count + 1,
                    },
                )
                if was == OrderStatus.SUBMITTED.value:
                    failed += 1
                    logger.warning(f"[{order.short_id}] Was submitted before restart - "
                                   f"outcome unknown, left FAILED")
                    continue

            self.job_queue.enqueue(order.id, order, delay_seconds=0)
            requeued += 1

        if unfinished:
            logger.info(f"Recovered {len(unfinished)} unfinished order(s): "
                        f"{requeued} requeued, {failed} left failed")
        return {'requeued': requeued, 'failed': failed}

    async def get_order(self, order_id: str) -> Order:
        """Current order snapshot; raises NotFoundError"""
        return await self.store.get_order(order_id)

    def get_job(self, order_id: str) -> Optional[Job]:
        return self.job_queue.get_job(order_id)

    async def wait_for_job(self, order_id: str, timeout: float = 30.0,
                           poll_interval: float = 0.01) -> Job:
        """Poll until the order's job is completed or terminally failed"""
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            job = self.job_queue.get_job(order_id)
            if job is not None and job.state in (JobState.COMPLETED, JobState.FAILED):
                return job
            if asyncio.get_running_loop().time() >= deadline:
                raise asyncio.TimeoutError(f"Job {order_id} did not finish within {timeout}s")
            await asyncio.sleep(poll_interval)

    async def get_metrics(self) -> Dict[str, Any]:
        """Queue counts, order status counts, stage latency and worker status"""
        return {
            'queue': self.job_queue.metrics(),
            'orders': await self.store.status_counts(),
            'latency': self.latency_monitor.get_summary(),
            'workers': self.worker_pool.get_status(),
        }

    def get_status(self) -> Dict[str, Any]:
        uptime = (utc_now() - self.start_time).total_seconds() if self.start_time else 0
        return {
            'running': self.running,
            'uptime_seconds': uptime,
            'providers': self.router.provider_names,
            'subscribers': self.event_bus.subscriber_count(),
            'total_orders_submitted': self.total_orders_submitted,
        }

    async def _housekeeping(self) -> None:
        """Prune finished jobs, purge expired cache entries and log queue metrics"""
        pruned = self.job_queue.prune_finished(self.config.job_retention_seconds)
        purged = self.cache.purge_expired()
        metrics = self.job_queue.metrics()
        logger.info(f"Queue: {metrics['waiting']} waiting, {metrics['active']} active, "
                    f"{metrics['delayed']} delayed, {metrics['completed']} completed, "
                    f"{metrics['failed']} failed (pruned {pruned} jobs, {purged} cache entries)")


def create_execution_engine(database_url: str = "sqlite:///:memory:",
                            max_concurrent_orders: int = 10,
                            max_orders_per_minute: int = 100,
                            max_retry_attempts: int = 3) -> ExecutionEngine:
    """
    Factory function to create a configured execution engine

    Args:
        database_url: SQLAlchemy URL of the order database
        max_concurrent_orders: Worker slots
        max_orders_per_minute: Attempt starts per minute across all workers
        max_retry_attempts: Attempts per order before it stays FAILED

    Returns:
        Configured ExecutionEngine instance (not started)
    """
    config = ExecutionConfig(
        database_url=database_url,
        max_concurrent_orders=max_concurrent_orders,
        max_orders_per_minute=max_orders_per_minute,
        max_retry_attempts=max_retry_attempts,
    )
    return ExecutionEngine(config)
