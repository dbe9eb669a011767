"""Scheduling helpers for the batch queue — rate limiting, resource admission, ETA."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable

import psutil

from blockflow import config
from blockflow.models import ResourceMetrics

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
CPU_SAMPLE_WINDOW = 60
TREND_THRESHOLD = 0.1

COMPLEXITY_WEIGHTS = {"low": 1, "medium": 2, "high": 4}
SECONDS_PER_COMPLEXITY_UNIT = 15.0
FALLBACK_SECONDS_PER_ITEM = 30.0
PREDICTOR_WEIGHTS = (0.3, 0.3, 0.2, 0.2)
PREDICTOR_HISTORY = 100


# ---------------------------------------------------------------------------
# Rate Limiter
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    requests_per_minute: int = config.REQUESTS_PER_MINUTE
    requests_per_second: float = config.REQUESTS_PER_SECOND
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0  # seconds


class RateLimiter:
    """Sliding one-minute window plus a minimum gap between requests."""

    def __init__(self, limits: RateLimitConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.limits = limits or RateLimitConfig()
        self._clock = clock
        self._requests: deque[float] = deque()
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    def compute_wait(self, now: float | None = None) -> float:
        """Seconds to wait before the next request may go out."""
        now = self._clock() if now is None else now
        self._prune(now)

        wait = 0.0
        if len(self._requests) >= self.limits.requests_per_minute:
            wait = max(wait, WINDOW_SECONDS - (now - self._requests[0]))

        if self._last_request is not None and self.limits.requests_per_second > 0:
            min_interval = 1.0 / self.limits.requests_per_second
            since_last = now - self._last_request
            if since_last < min_interval:
                wait = max(wait, min_interval - since_last)
        return wait

    async def acquire(self) -> float:
        """Wait out the limit, then record the request. Returns the time waited."""
        async with self._lock:
            wait = self.compute_wait()
            if wait > 0:
                logger.debug(f"Rate limited, waiting {wait:.2f}s")
                await asyncio.sleep(wait)
            self.record()
            return wait

    def record(self, now: float | None = None):
        now = self._clock() if now is None else now
        self._requests.append(now)
        self._last_request = now

    def usage(self) -> dict:
        now = self._clock()
        self._prune(now)
        last_second = sum(1 for t in self._requests if now - t < 1.0)
        return {
            "requests_last_minute": len(self._requests),
            "requests_last_second": last_second,
            "utilization_percent": len(self._requests) / self.limits.requests_per_minute * 100,
        }

    def backoff(self, retry_count: int, base_delay: float) -> float:
        """Exponential backoff for the nth retry, capped at max_backoff."""
        delay = base_delay * (self.limits.backoff_multiplier ** max(0, retry_count - 1))
        return min(delay, self.limits.max_backoff)

    def _prune(self, now: float):
        while self._requests and now - self._requests[0] >= WINDOW_SECONDS:
            self._requests.popleft()


# ---------------------------------------------------------------------------
# Resource Monitor
# ---------------------------------------------------------------------------


@dataclass
class ResourceThresholds:
    memory_mb: float = 2048.0
    cpu_percent: float = 90.0
    connections: int = 10


class ResourceMonitor:
    """Samples this process's memory and CPU with psutil and counts in-flight requests."""

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._process = psutil.Process()
        self._cpu_samples: deque[float] = deque(maxlen=CPU_SAMPLE_WINDOW)
        self._active = 0
        self._task: asyncio.Task | None = None
        # First call primes psutil's counter and always returns 0.0
        self._process.cpu_percent(interval=None)

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_monitoring:
            return
        self._task = asyncio.create_task(self._sample_loop())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sample_loop(self):
        while True:
            self.sample()
            await asyncio.sleep(self.interval)

    def sample(self):
        try:
            self._cpu_samples.append(self._process.cpu_percent(interval=None))
        except psutil.Error as e:
            logger.debug(f"CPU sample failed: {e}")

    @contextmanager
    def track(self):
        """Count one in-flight connection for the duration of the block."""
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1

    @property
    def active_connections(self) -> int:
        return self._active

    def memory_mb(self) -> float:
        try:
            return self._process.memory_info().rss / 1024 / 1024
        except psutil.Error:
            return 0.0

    def cpu_percent(self) -> float:
        if not self._cpu_samples:
            return 0.0
        return sum(self._cpu_samples) / len(self._cpu_samples)

    def metrics(self) -> ResourceMetrics:
        return ResourceMetrics(
            memory_mb=self.memory_mb(),
            cpu_percent=self.cpu_percent(),
            active_connections=self._active,
        )

    def is_constrained(self, thresholds: ResourceThresholds) -> bool:
        m = self.metrics()
        return (
            m.memory_mb > thresholds.memory_mb
            or m.cpu_percent > thresholds.cpu_percent
            or m.active_connections > thresholds.connections
        )

    def recommended_workers(self, max_workers: int, thresholds: ResourceThresholds) -> int:
        m = self.metrics()
        if m.memory_mb > thresholds.memory_mb * 0.8:
            return max(1, int(max_workers * 0.5))
        if m.cpu_percent > 80:
            return max(1, int(max_workers * 0.7))
        return max_workers


# ---------------------------------------------------------------------------
# Performance Metrics
# ---------------------------------------------------------------------------


@dataclass
class MetricSample:
    throughput: float
    error_rate: float
    average_response_time: float
    timestamp: float = field(default_factory=time.time)


class PerformanceMetrics:
    """Rolling window of progress samples, used to spot trends."""

    def __init__(self, max_samples: int = 1000):
        self._samples: deque[MetricSample] = deque(maxlen=max_samples)

    def record(self, throughput: float, error_rate: float, average_response_time: float):
        self._samples.append(MetricSample(throughput, error_rate, average_response_time))

    def trends(self, window: float = 300.0) -> dict[str, str]:
        cutoff = time.time() - window
        recent = [s for s in self._samples if s.timestamp > cutoff]
        if len(recent) < 2:
            return {"throughput": "stable", "error_rate": "stable", "performance": "stable"}

        half = len(recent) // 2
        first, second = recent[:half], recent[half:]

        def avg(samples: list[MetricSample], attr: str) -> float:
            return sum(getattr(s, attr) for s in samples) / len(samples)

        # Falling response time means improving performance
        performance = _trend(avg(second, "average_response_time"), avg(first, "average_response_time"))
        return {
            "throughput": _trend(avg(first, "throughput"), avg(second, "throughput")),
            "error_rate": _trend(avg(first, "error_rate"), avg(second, "error_rate")),
            "performance": {"increasing": "improving", "decreasing": "degrading"}.get(performance, "stable"),
        }


def _trend(first: float, second: float) -> str:
    if first == 0:
        return "increasing" if second > 0 else "stable"
    change = (second - first) / first
    if change > TREND_THRESHOLD:
        return "increasing"
    if change < -TREND_THRESHOLD:
        return "decreasing"
    return "stable"


# ---------------------------------------------------------------------------
# Completion Time Predictor
# ---------------------------------------------------------------------------


@dataclass
class RunRecord:
    item_count: int
    processing_time: float  # seconds for the whole run
    worker_count: int
    complexity: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class RemainingItem:
    """What the predictor needs to know about an unfinished job."""
    complexity: str = "medium"
    expected_duration: float | None = None


class CompletionTimePredictor:
    """Blends four estimators of remaining batch time, in seconds."""

    def __init__(self, max_history: int = PREDICTOR_HISTORY):
        self._history: deque[RunRecord] = deque(maxlen=max_history)

    @property
    def history(self) -> list[RunRecord]:
        return list(self._history)

    def record_completion(self, item_count: int, processing_time: float, worker_count: int, complexity: str = "medium"):
        if item_count <= 0:
            return
        self._history.append(RunRecord(item_count, processing_time, worker_count, complexity))

    def predict(
        self,
        remaining: Iterable[RemainingItem],
        average_processing_time: float,
        throughput_per_minute: float,
        workers: int,
    ) -> float:
        items = list(remaining)
        if not items:
            return 0.0

        estimates = [
            (weight, value)
            for weight, value in zip(PREDICTOR_WEIGHTS, (
                self.by_average_time(items, average_processing_time, workers),
                self.by_throughput(items, throughput_per_minute),
                self.by_history(items, workers),
                self.by_complexity(items, workers),
            ))
            if value > 0
        ]
        if not estimates:
            return len(items) * FALLBACK_SECONDS_PER_ITEM

        total_weight = sum(w for w, _ in estimates)
        return sum(w * v for w, v in estimates) / total_weight

    def by_average_time(self, items: list[RemainingItem], average: float, workers: int) -> float:
        if average <= 0:
            return 0.0
        total = sum(i.expected_duration or average for i in items)
        return total / max(workers, 1)

    def by_throughput(self, items: list[RemainingItem], per_minute: float) -> float:
        if per_minute <= 0:
            return 0.0
        return len(items) / per_minute * 60.0

    def by_history(self, items: list[RemainingItem], workers: int) -> float:
        if len(self._history) < 3:
            return 0.0
        n = len(items)
        similar = [
            r for r in self._history
            if abs(r.item_count - n) <= n * 0.3 and abs(r.worker_count - workers) <= 2
        ]
        if not similar:
            return 0.0
        per_item = sum(r.processing_time / r.item_count for r in similar) / len(similar)
        return per_item * n

    def by_complexity(self, items: list[RemainingItem], workers: int) -> float:
        units = sum(COMPLEXITY_WEIGHTS.get(i.complexity, 2) for i in items)
        return units * SECONDS_PER_COMPLEXITY_UNIT / max(workers, 1)
