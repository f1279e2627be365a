"""
Worker Pool - Bounded concurrent consumers of the job queue

Each worker waits for an eligible job and for rate-limit budget, then takes
the highest-priority job, runs the execution pipeline and reports the
outcome back to the queue.
Concurrency is bounded by the number of workers; throughput by the shared
sliding-window limiter.
"""

import asyncio
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import NotFoundError
from .execution_pipeline import ExecutionPipeline
from .job_queue import Job, JobQueue, JobState
from .latency_monitor import LatencyMonitor
from .rate_limiter import SlidingWindowRateLimiter


class WorkerPool:
    """
    Fixed-size pool of asyncio workers

    Shutdown stops pulling new jobs, gives in-flight attempts until the
    deadline to finish, then cancels the rest and returns their jobs to
    the queue.
    """

    def __init__(self, queue: JobQueue, pipeline: ExecutionPipeline,
                 concurrency: int = 10,
                 rate_limiter: Optional[SlidingWindowRateLimiter] = None,
                 latency_monitor: Optional[LatencyMonitor] = None):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(100, 60.0)
        self.latency_monitor = latency_monitor

        self._tasks: List[asyncio.Task] = []
        self._busy: Dict[asyncio.Task, Job] = {}
        self._stopping = False
        self._running = False

        # Counters
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.attempts_failed = 0
        self.jobs_abandoned = 0
        self.peak_in_flight = 0

    @property
    def running(self) -> bool:
        return self._running

    def in_flight(self) -> int:
        return len(self._busy)

    def start(self) -> None:
        """Spawn the workers on the running event loop"""
        if self._running:
            return
        self._stopping = False
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"order-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Worker pool started ({self.concurrency} workers, "
                    f"{self.rate_limiter.max_events} starts per {self.rate_limiter.window_seconds:.0f}s)")

    async def close(self, timeout: Optional[float] = 30.0) -> None:
        """
        Graceful shutdown

        Args:
            timeout: Seconds to let in-flight attempts finish; None waits
                indefinitely, 0 abandons them immediately
        """
        if not self._running:
            return
        self._stopping = True

        # Idle workers are parked in wait_ready or the limiter and hold no job
        idle = [task for task in self._tasks if task not in self._busy]
        for task in idle:
            task.cancel()

        busy = list(self._busy)
        if busy:
            logger.info(f"Waiting for {len(busy)} in-flight attempt(s) to finish")
            done, pending = await asyncio.wait(busy, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Abandoning {len(pending)} in-flight attempt(s) at shutdown")

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._busy.clear()
        self._running = False
        logger.info("Worker pool stopped")

    async def _worker_loop(self, index: int) -> None:
        task = asyncio.current_task()
        while not self._stopping:
            if not await self.queue.wait_ready():
                break

            # A job is picked only once start budget is held
            await self.rate_limiter.acquire()
            job = self.queue.pop_ready()
            if job is None:
                # Another worker took it, or the queue closed, while this one waited
                self.rate_limiter.release()
                continue

            self._busy[task] = job
            self.peak_in_flight = max(self.peak_in_flight, len(self._busy))
            try:
                await self._process(job)
            finally:
                self._busy.pop(task, None)

    async def _process(self, job: Job) -> None:
        if self.latency_monitor and job.attempts_made == 1:
            self.latency_monitor.record("queue_wait", (self.queue.now() - job.enqueued_at) * 1000.0)

        try:
            logger.info(f"Worker processing job {job.job_id[:8]} "
                        f"(attempt {job.attempts_made}/{job.max_attempts})")
            result = await self.pipeline.run(job.order)
        except asyncio.CancelledError:
            self.jobs_abandoned += 1
            self.queue.requeue(job.job_id)
            raise
        except NotFoundError as e:
            logger.error(f"Job {job.job_id[:8]} refers to a missing order: {e}")
            self._record_failure(job, e)
        except Exception as e:
            self._record_failure(job, e)
        else:
            self.queue.complete(job.job_id, result)
            self.jobs_completed += 1
            logger.info(f"Job {job.job_id[:8]} completed")

    def _record_failure(self, job: Job, error: Exception) -> None:
        self.attempts_failed += 1
        if self.queue.fail(job.job_id, error) == JobState.FAILED:
            self.jobs_failed += 1

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'concurrency': self.concurrency,
            'in_flight': self.in_flight(),
            'peak_in_flight': self.peak_in_flight,
            'jobs_completed': self.jobs_completed,
            'jobs_failed': self.jobs_failed,
            'attempts_failed': self.attempts_failed,
            'jobs_abandoned': self.jobs_abandoned,
            'rate_limit_in_window': self.rate_limiter.in_window(),
        }
