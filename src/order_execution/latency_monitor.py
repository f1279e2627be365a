"""
Latency Monitor - Stage timing for the execution pipeline

Tracks how long each order spends in each pipeline stage:
- routing: quote fan-out and selection
- execution: provider submission until result
- end_to_end: one full attempt
- queue_wait: enqueue until a worker picks the job up

Keeps a bounded history per stage and derives rolling statistics.
Only touched from the event loop thread, so no locking.
"""

import statistics
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Tuple


@dataclass
class LatencyStats:
    """Statistical summary of one stage"""

    stage: str
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    max_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'mean_ms': round(self.mean, 3),
            'median_ms': round(self.median, 3),
            'p95_ms': round(self.p95, 3),
            'max_ms': round(self.max_value, 3),
        }


class LatencyTimer:
    """perf_counter stopwatch reporting milliseconds; usable as a context manager"""

    def __init__(self, label: str = ""):
        self.label = label
        self._started: Optional[float] = None
        self._elapsed = 0.0

    @property
    def is_running(self) -> bool:
        return self._started is not None

    def start(self) -> 'LatencyTimer':
        self._started = time.perf_counter()
        return self

    def stop(self) -> float:
        if self._started is not None:
            self._elapsed = time.perf_counter() - self._started
            self._started = None
        return self.elapsed_ms()

    def elapsed_ms(self) -> float:
        if self._started is not None:
            return (time.perf_counter() - self._started) * 1000.0
        return self._elapsed * 1000.0

    def __enter__(self) -> 'LatencyTimer':
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class LatencyMonitor:
    """Per-stage latency history for order attempts"""

    def __init__(self, history_size: int = 1000):
        self.history_size = history_size
        self._running: Dict[Tuple[str, str], LatencyTimer] = {}
        self._samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self.history_size))

    def start_timer(self, order_id: str, stage: str) -> LatencyTimer:
        timer = LatencyTimer(f"{order_id[:8]}:{stage}").start()
        self._running[(order_id, stage)] = timer
        return timer

    def stop_timer(self, order_id: str, stage: str) -> float:
        """Stop and record a running timer; 0.0 when none was started"""
        timer = self._running.pop((order_id, stage), None)
        if timer is None:
            return 0.0
        elapsed = timer.stop()
        self._samples[stage].append(elapsed)
        return elapsed

    def record(self, stage: str, latency_ms: float) -> None:
        self._samples[stage].append(latency_ms)

    def active_timers(self) -> int:
        return len(self._running)

    def get_stats(self, stage: str) -> Optional[LatencyStats]:
        samples = sorted(self._samples.get(stage, ()))
        if not samples:
            return None

        # Nearest-rank p95 over the retained window
        rank = min(int(0.95 * len(samples)), len(samples) - 1)
        return LatencyStats(
            stage=stage,
            count=len(samples),
            mean=statistics.mean(samples),
            median=statistics.median(samples),
            p95=samples[rank],
            max_value=samples[-1],
        )

    def get_summary(self) -> Dict[str, Any]:
        """Stats for every stage with at least one sample, keyed by stage"""
        summary = {}
        for stage in list(self._samples):
            stats = self.get_stats(stage)
            if stats is not None:
                summary[stage] = stats.to_dict()
        return summary
