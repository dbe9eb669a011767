"""Test rate limiting, resource monitoring and completion-time prediction."""

import pytest

from blockflow.scheduling import (
    CompletionTimePredictor,
    PerformanceMetrics,
    RateLimitConfig,
    RateLimiter,
    RemainingItem,
    ResourceMonitor,
    ResourceThresholds,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_per_second_gap():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=100, requests_per_second=2), clock=clock)
    assert limiter.compute_wait() == 0
    limiter.record()
    assert limiter.compute_wait() == pytest.approx(0.5)
    clock.now += 0.2
    assert limiter.compute_wait() == pytest.approx(0.3)
    clock.now += 0.5
    assert limiter.compute_wait() == 0


def test_per_minute_window():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=3, requests_per_second=0), clock=clock)
    for _ in range(3):
        limiter.record()
        clock.now += 1
    # Oldest request was 3s ago; the window frees up 57s from now
    assert limiter.compute_wait() == pytest.approx(57)
    clock.now += 57
    assert limiter.compute_wait() == 0
    assert limiter.usage()["requests_last_minute"] == 2


@pytest.mark.asyncio
async def test_acquire_records_request():
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=100, requests_per_second=1000))
    await limiter.acquire()
    await limiter.acquire()
    assert limiter.usage()["requests_last_minute"] == 2


def test_backoff_is_exponential_and_capped():
    limiter = RateLimiter(RateLimitConfig(backoff_multiplier=2.0, max_backoff=30.0))
    assert limiter.backoff(1, 5.0) == 5.0
    assert limiter.backoff(2, 5.0) == 10.0
    assert limiter.backoff(3, 5.0) == 20.0
    assert limiter.backoff(4, 5.0) == 30.0
    assert limiter.backoff(1, 0) == 0


def test_resource_monitor_tracks_connections():
    monitor = ResourceMonitor()
    with monitor.track():
        with monitor.track():
            assert monitor.active_connections == 2
    assert monitor.active_connections == 0
    assert monitor.memory_mb() > 0


def test_resource_monitor_constraints():
    monitor = ResourceMonitor()
    assert monitor.is_constrained(ResourceThresholds(memory_mb=0.001))
    assert not monitor.is_constrained(ResourceThresholds(memory_mb=1_000_000, cpu_percent=101))
    assert monitor.recommended_workers(4, ResourceThresholds(memory_mb=0.001)) == 2
    assert monitor.recommended_workers(1, ResourceThresholds(memory_mb=0.001)) == 1


@pytest.mark.asyncio
async def test_resource_monitor_start_stop():
    monitor = ResourceMonitor(interval=0.01)
    monitor.start()
    assert monitor.is_monitoring
    await monitor.stop()
    assert not monitor.is_monitoring


def test_trends():
    metrics = PerformanceMetrics()
    assert metrics.trends()["throughput"] == "stable"
    for throughput, response in [(1, 10), (1, 10), (5, 4), (5, 4)]:
        metrics.record(throughput, 0.0, response)
    trends = metrics.trends()
    assert trends["throughput"] == "increasing"
    assert trends["error_rate"] == "stable"
    assert trends["performance"] == "improving"


def test_predictor_empty():
    assert CompletionTimePredictor().predict([], 10, 5, 2) == 0.0


def test_predictor_by_complexity_only():
    predictor = CompletionTimePredictor()
    items = [RemainingItem("low"), RemainingItem("high")]
    # No averages, no throughput, no history: (1 + 4) * 15s / 1 worker
    assert predictor.predict(items, 0, 0, 1) == pytest.approx(75.0)


def test_predictor_weighted_average():
    predictor = CompletionTimePredictor()
    items = [RemainingItem("medium", 20.0), RemainingItem("medium", 20.0)]
    # average: 40s / 2 workers = 20; throughput: 2 / 6 per minute = 20;
    # complexity: 4 units * 15s / 2 = 30
    expected = (0.3 * 20 + 0.3 * 20 + 0.2 * 30) / 0.8
    assert predictor.predict(items, 10.0, 6.0, 2) == pytest.approx(expected)


def test_predictor_uses_similar_history():
    predictor = CompletionTimePredictor()
    for _ in range(3):
        predictor.record_completion(item_count=10, processing_time=100.0, worker_count=3)
    items = [RemainingItem() for _ in range(10)]
    assert predictor.by_history(items, 3) == pytest.approx(100.0)
    assert predictor.by_history(items, 10) == 0.0
    assert predictor.by_history(items[:2], 3) == 0.0


def test_predictor_ignores_empty_runs():
    predictor = CompletionTimePredictor()
    predictor.record_completion(item_count=0, processing_time=5.0, worker_count=1)
    assert predictor.history == []
