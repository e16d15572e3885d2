"""Tests for runtime wiring and lifecycle."""

import pytest

from fakes import FakeNotifier, FakePagePool
from pricewatch.config import Settings
from pricewatch.ingest.errors import PoolUnavailableError
from pricewatch.worker.runtime import build_runtime


@pytest.fixture
def config():
    return Settings(scheduler_enabled=False, queue_concurrency=1, render_api_enabled=False)


@pytest.mark.asyncio
async def test_runtime_starts_and_stops(session_factory, config):
    pool = FakePagePool()
    notifier = FakeNotifier()
    runtime = build_runtime(session_factory, config=config, pool=pool, notifier=notifier)

    assert await runtime.start() is True
    assert runtime.running
    assert pool.started

    await runtime.stop()

    assert not runtime.running
    assert pool.closed
    assert notifier.closed


@pytest.mark.asyncio
async def test_runtime_stays_stopped_when_pool_unavailable(session_factory, config):
    pool = FakePagePool()
    pool.start_error = PoolUnavailableError("chromium missing")
    runtime = build_runtime(session_factory, config=config, pool=pool, notifier=FakeNotifier())

    assert await runtime.start() is False
    assert runtime.running is False
    assert runtime.last_error == "chromium missing"

    await runtime.stop()


@pytest.mark.asyncio
async def test_runtime_stats(session_factory, config, make_item):
    await make_item(last_scraped_at=None)
    runtime = build_runtime(session_factory, config=config, pool=FakePagePool(size=3), notifier=FakeNotifier())

    stats = await runtime.stats()

    assert stats["scheduler"]["total_items"] == 1
    assert stats["scheduler"]["due_items"] == 1
    assert stats["queue"]["waiting"] == 0
    assert stats["pool"] == {"size": 3, "leased": 0}


def test_runtime_wires_configured_limits():
    config = Settings(rate_limits={"amazon": 30}, default_rate_limit=12, max_attempts=5)
    runtime = build_runtime(lambda: None, config=config, pool=FakePagePool(), notifier=FakeNotifier())

    assert runtime.queue.max_attempts == 5
    assert runtime.queue.rate_limiter.delay_ms_for("amazon") == 2000
    assert runtime.queue.rate_limiter.delay_ms_for("otto") == 5000
    assert runtime.executor.pool is runtime.pool
