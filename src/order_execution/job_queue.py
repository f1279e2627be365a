"""
Job Queue - Priority work queue driving order attempts

Handles:
- One job per order id; a second enqueue while the first is waiting,
  delayed or active is rejected
- Two-tier priority (market orders first), FIFO within a tier
- Bounded attempts with exponential backoff between them
- Job counts per state for metrics

All mutations happen on the event loop thread; waiters are woken through
an asyncio.Event whenever the queue changes.
"""

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .errors import QueueFullOrDuplicateError
from .order_schemas import Order, OrderType, utc_now

MARKET_PRIORITY = 1
DEFAULT_PRIORITY = 2


class JobState(Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


IN_FLIGHT_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


def priority_for(order_type: OrderType) -> int:
    """Market orders are served before every other kind"""
    return MARKET_PRIORITY if order_type == OrderType.MARKET else DEFAULT_PRIORITY


@dataclass
class Job:
    """Queue record wrapping one order"""

    job_id: str                       # Order id, doubles as dedup key
    order: Order                      # Snapshot at enqueue time
    priority: int
    max_attempts: int
    backoff_base_seconds: float
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    available_at: float = 0.0         # Queue clock time the job becomes eligible
    enqueued_at: float = 0.0
    created_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    result: Any = None
    backoff_history: List[float] = field(default_factory=list)

    @property
    def order_id(self) -> str:
        return self.job_id

    def next_backoff(self) -> float:
        """Delay before the next attempt: base, 2x base, 4x base..."""
        return self.backoff_base_seconds * (2 ** max(self.attempts_made - 1, 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'priority': self.priority,
            'state': self.state.value,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'failed_reason': self.failed_reason,
            'backoff_history': list(self.backoff_history),
            'created_at': self.created_at.isoformat(),
        }


class JobQueue:
    """
    In-process priority queue with per-order dedup and delayed retries

    Args:
        max_attempts: Attempts per job before it is terminally failed
        backoff_base_seconds: First retry delay; doubles per attempt
        enqueue_delay_seconds: Delay before a new job becomes eligible
        max_pending: Optional cap on waiting + delayed + active jobs
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, max_attempts: int = 3, backoff_base_seconds: float = 2.0,
                 enqueue_delay_seconds: float = 0.0, max_pending: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.enqueue_delay_seconds = enqueue_delay_seconds
        self.max_pending = max_pending
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        self._waiting: List[Tuple[int, int, str]] = []      # (priority, seq, job_id)
        self._delayed: List[Tuple[float, int, str]] = []    # (available_at, seq, job_id)
        self._sequence = itertools.count()
        self._changed = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> float:
        return self._clock()

    def enqueue(self, order_id: str, order: Order, priority: Optional[int] = None,
                delay_seconds: Optional[float] = None) -> Job:
        """
        Add a job for ``order_id``

        Raises:
            QueueFullOrDuplicateError: a job for this order is already in
                flight, or the queue is at capacity
        """
        if self._closed:
            raise QueueFullOrDuplicateError("Queue is closed")

        existing = self._jobs.get(order_id)
        if existing is not None and existing.state in IN_FLIGHT_STATES:
            raise QueueFullOrDuplicateError(
                f"Order {order_id} already has a {existing.state.value} job"
            )
        if self.max_pending is not None and self.pending_count() >= self.max_pending:
            raise QueueFullOrDuplicateError(f"Queue is full ({self.max_pending} pending jobs)")

        now = self._clock()
        delay = self.enqueue_delay_seconds if delay_seconds is None else delay_seconds
        job = Job(
            job_id=order_id,
            order=order,
            priority=priority_for(order.order_type) if priority is None else priority,
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            enqueued_at=now,
        )
        # A finished job for the same order is replaced by the fresh one
        self._jobs[order_id] = job
        self._schedule(job, now + delay if delay > 0 else None)

        logger.debug(f"Enqueued job {order_id[:8]} (priority {job.priority}, delay {delay:.2f}s)")
        return job

    async def get_next(self, timeout: Optional[float] = None) -> Optional[Job]:
        """
        Wait for the next eligible job and mark it active

        Returns None when the queue is closed or ``timeout`` elapses.
        """
        while True:
            if not await self.wait_ready(timeout):
                return None
            job = self.pop_ready()
            if job is not None:
                return job

    def pop_ready(self) -> Optional[Job]:
        """Take the highest-priority eligible job without waiting; None if there is none"""
        if self._closed:
            return None
        self._promote_delayed()
        job = self._pop_waiting()
        if job is not None:
            job.state = JobState.ACTIVE
            job.attempts_made += 1
        return job

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until at least one job is eligible, without taking it

        Returns False when the queue is closed or ``timeout`` elapses.
        """
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            if self._closed:
                return False

            self._promote_delayed()
            if self._peek_waiting() is not None:
                return True

            wait_for = self._seconds_until_next_delayed()
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait_for = remaining if wait_for is None else min(wait_for, remaining)

            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), wait_for)
            except asyncio.TimeoutError:
                pass

    def complete(self, job_id: str, result: Any = None) -> Job:
        job = self._active_job(job_id)
        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = self._clock()
        self._notify()
        return job

    def fail(self, job_id: str, error: BaseException) -> JobState:
        """
        Record a failed attempt

        Retryable errors are re-scheduled after the backoff delay while
        attempts remain; otherwise the job is terminally failed.

        Returns:
            DELAYED if another attempt is scheduled, FAILED otherwise
        """
        job = self._active_job(job_id)
        job.failed_reason = str(error) or error.__class__.__name__

        retryable = getattr(error, 'retryable', True)
        if retryable and job.attempts_made < job.max_attempts:
            backoff = job.next_backoff()
            job.backoff_history.append(backoff)
            self._schedule(job, self._clock() + backoff)
            logger.warning(f"Job {job_id[:8]} attempt {job.attempts_made}/{job.max_attempts} failed, "
                           f"retrying in {backoff:.2f}s: {job.failed_reason}")
            return JobState.DELAYED

        job.state = JobState.FAILED
        job.finished_at = self._clock()
        self._notify()
        logger.error(f"Job {job_id[:8]} failed after {job.attempts_made} attempt(s): {job.failed_reason}")
        return JobState.FAILED

    def requeue(self, job_id: str) -> Job:
        """Return an abandoned active job to waiting without consuming its attempt"""
        job = self._active_job(job_id)
        job.attempts_made -= 1
        self._schedule(job, None)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def is_in_flight(self, order_id: str) -> bool:
        job = self._jobs.get(order_id)
        return job is not None and job.state in IN_FLIGHT_STATES

    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state in IN_FLIGHT_STATES)

    def metrics(self) -> Dict[str, int]:
        """Job counts per state"""
        self._promote_delayed()
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts

    def prune_finished(self, older_than_seconds: float) -> int:
        """Drop completed and failed jobs finished more than ``older_than_seconds`` ago"""
        cutoff = self._clock() - older_than_seconds
        stale = [job_id for job_id, job in self._jobs.items()
                 if job.finished_at is not None and job.finished_at <= cutoff]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    def close(self) -> None:
        """Wake every waiter; get_next returns None from now on"""
        self._closed = True
        self._notify()

    def _schedule(self, job: Job, available_at: Optional[float]) -> None:
        sequence = next(self._sequence)
        if available_at is None:
            job.state = JobState.WAITING
            job.available_at = self._clock()
            heapq.heappush(self._waiting, (job.priority, sequence, job.job_id))
        else:
            job.state = JobState.DELAYED
            job.available_at = available_at
            heapq.heappush(self._delayed, (available_at, sequence, job.job_id))
        self._notify()

    def _promote_delayed(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.DELAYED or job.available_at > now:
                continue
            job.state = JobState.WAITING
            heapq.heappush(self._waiting, (job.priority, next(self._sequence), job_id))

    def _peek_waiting(self) -> Optional[Job]:
        while self._waiting:
            job = self._jobs.get(self._waiting[0][2])
            # Entries can outlive their job (replaced or pruned)
            if job is not None and job.state == JobState.WAITING:
                return job
            heapq.heappop(self._waiting)
        return None

    def _pop_waiting(self) -> Optional[Job]:
        job = self._peek_waiting()
        if job is not None:
            heapq.heappop(self._waiting)
        return job

    def _seconds_until_next_delayed(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(self._delayed[0][0] - self._clock(), 0.0)

    def _active_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE:
            raise KeyError(f"No active job {job_id}")
        return job

    def _notify(self) -> None:
        self._changed.set()
