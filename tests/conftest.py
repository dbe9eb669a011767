import asyncio

from blockflow.batch import BatchConfig
from blockflow.scheduling import RateLimitConfig, ResourceThresholds


def fast_batch_config(**overrides) -> BatchConfig:
    """Batch settings that never throttle, so tests run in milliseconds."""
    values = dict(
        workers=2,
        max_retries=3,
        retry_delay=0,
        admission_delay=0.01,
        rate_limit=RateLimitConfig(requests_per_minute=100_000, requests_per_second=100_000),
        thresholds=ResourceThresholds(memory_mb=1_000_000, cpu_percent=100_000, connections=1000),
    )
    values.update(overrides)
    return BatchConfig(**values)


async def wait_until(predicate, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
