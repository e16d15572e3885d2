"""Tests for the priority scheduler."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from fakes import hours_ago
from pricewatch.db.models import AlertRule, ItemWatcher, PriceHistoryPoint, TrackedItem
from pricewatch.ingest.errors import NotFoundError
from pricewatch.worker.scheduler import (
    PriorityScheduler,
    compute_priority,
    compute_refetch_interval,
    compute_volatility,
)


class RecordingQueue:
    def __init__(self):
        self.batches: list[list] = []
        self.single: list[tuple] = []

    def enqueue_batch(self, jobs):
        jobs = list(jobs)
        self.batches.append(jobs)
        return len(jobs)

    def enqueue(self, job, delay_ms=None):
        self.single.append((job, delay_ms))


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def scheduler(session_factory, queue):
    return PriorityScheduler(session_factory, queue, batch_size=500)


async def add_rows(session_factory, *rows):
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


@pytest.mark.asyncio
async def test_due_check_uses_each_items_interval(scheduler, make_item):
    now = datetime(2024, 5, 1, 12, 0)
    await make_item(last_scraped_at=None)
    await make_item(last_scraped_at=now - timedelta(hours=24), refetch_interval_hours=24)
    await make_item(last_scraped_at=now - timedelta(hours=23, minutes=59), refetch_interval_hours=24)
    await make_item(last_scraped_at=now - timedelta(hours=5), refetch_interval_hours=4)
    await make_item(last_scraped_at=now - timedelta(hours=5), refetch_interval_hours=8)

    stats = await scheduler.stats(now)

    assert stats.total_items == 5
    assert stats.due_items == 3


def test_compute_volatility():
    assert compute_volatility([]) == 0.0
    assert compute_volatility([Decimal("10")]) == 0.0
    assert compute_volatility([0, 0]) == 0.0
    assert compute_volatility([75, 100, 125]) == pytest.approx(25.0)


def test_compute_priority_components():
    assert compute_priority(5) == 5
    assert compute_priority(5, active_alerts=3) == 7
    assert compute_priority(5, watchers=6) == 6
    assert compute_priority(5, volatility=12) == 6
    assert compute_priority(9, active_alerts=4, watchers=10, volatility=50) == 10
    assert compute_priority(5, error_count=3) == 2
    assert compute_priority(5, error_count=9) == 1
    assert compute_priority(0) == 0


@pytest.mark.parametrize("alerts", range(0, 8))
def test_priority_monotonic_in_active_alerts(alerts):
    assert compute_priority(4, active_alerts=alerts + 1) >= compute_priority(4, active_alerts=alerts)


def test_compute_refetch_interval_bands():
    assert compute_refetch_interval(25) == 4
    assert compute_refetch_interval(15) == 8
    assert compute_refetch_interval(7) == 12
    assert compute_refetch_interval(2) == 24
    assert compute_refetch_interval(2, active_alerts=1) == 6
    assert compute_refetch_interval(2, watchers=11) == 8
    assert compute_refetch_interval(25, active_alerts=1) == 4


@pytest.mark.asyncio
async def test_tick_selects_due_items_in_order(scheduler, queue, make_item):
    now = datetime.utcnow()
    fresh = await make_item(last_scraped_at=hours_ago(1, now))
    old_low = await make_item(last_scraped_at=hours_ago(48, now), base_priority=3)
    old_high = await make_item(last_scraped_at=hours_ago(30, now), base_priority=8)
    never = await make_item(last_scraped_at=None, base_priority=1)

    enqueued = await scheduler.run_tick(now)

    assert enqueued == 3
    ids = [job.item_id for job in queue.batches[0]]
    assert fresh not in ids
    # Jobs go out by computed priority
    assert ids == [old_high, old_low, never]
    assert queue.batches[0][0].name == f"scrape-amazon:{old_high}"


@pytest.mark.asyncio
async def test_circuit_breaker_excludes_failing_items(scheduler, queue, make_item):
    broken = await make_item(last_scraped_at=None, consecutive_error_count=10)
    healthy = await make_item(last_scraped_at=None, consecutive_error_count=9)

    await scheduler.run_tick()

    ids = [job.item_id for job in queue.batches[0]]
    assert broken not in ids
    assert healthy in ids


@pytest.mark.asyncio
async def test_batch_size_caps_selection(session_factory, queue, make_item):
    for _ in range(5):
        await make_item(last_scraped_at=None)
    scheduler = PriorityScheduler(session_factory, queue, batch_size=3)

    assert await scheduler.run_tick() == 3


@pytest.mark.asyncio
async def test_recently_scraped_items_do_not_fill_the_batch(session_factory, queue, make_item):
    now = datetime.utcnow()
    for _ in range(4):
        await make_item(last_scraped_at=hours_ago(2, now), base_priority=9)
    due = await make_item(last_scraped_at=hours_ago(30, now), base_priority=1)
    scheduler = PriorityScheduler(session_factory, queue, batch_size=2)

    assert await scheduler.run_tick(now) == 1
    assert [job.item_id for job in queue.batches[0]] == [due]


@pytest.mark.asyncio
async def test_tick_scores_alerts_and_watchers(scheduler, queue, session_factory, make_item):
    item_id = await make_item(last_scraped_at=None, base_priority=5)
    await add_rows(
        session_factory,
        AlertRule(item_id=item_id, user_id=1, kind="any_change"),
        AlertRule(item_id=item_id, user_id=2, kind="any_change"),
        AlertRule(item_id=item_id, user_id=3, kind="any_change", is_active=False),
        *[ItemWatcher(item_id=item_id, user_id=u) for u in range(6)],
    )

    await scheduler.run_tick()

    job = queue.batches[0][0]
    # 5 + ceil(2 / 2) for alerts + 1 for watchers
    assert job.priority == 7
    async with session_factory() as session:
        item = await session.get(TrackedItem, item_id)
    assert item.priority_score == 7
    assert item.refetch_interval_hours == 6


@pytest.mark.asyncio
async def test_volatile_item_gets_shorter_interval(scheduler, session_factory, make_item):
    now = datetime.utcnow()
    item_id = await make_item(last_scraped_at=hours_ago(25, now), refetch_interval_hours=24)
    await add_rows(
        session_factory,
        *[
            PriceHistoryPoint(item_id=item_id, price=Decimal(price), recorded_at=hours_ago(h, now))
            for price, h in (("75.00", 72), ("100.00", 48), ("125.00", 26))
        ],
        # Outside the 7-day window
        PriceHistoryPoint(item_id=item_id, price=Decimal("1000.00"), recorded_at=now - timedelta(days=9)),
    )

    await scheduler.run_tick(now)

    async with session_factory() as session:
        item = await session.get(TrackedItem, item_id)
    assert item.refetch_interval_hours == 4


@pytest.mark.asyncio
async def test_small_interval_change_is_not_persisted(scheduler, session_factory, make_item):
    item_id = await make_item(last_scraped_at=None, refetch_interval_hours=7)
    await add_rows(session_factory, AlertRule(item_id=item_id, user_id=1, kind="any_change"))

    await scheduler.run_tick()

    async with session_factory() as session:
        item = await session.get(TrackedItem, item_id)
    # Would become 6h, but a 1h change is below the hysteresis threshold
    assert item.refetch_interval_hours == 7


@pytest.mark.asyncio
async def test_tick_with_nothing_due(scheduler, queue, make_item):
    await make_item(last_scraped_at=datetime.utcnow())
    assert await scheduler.run_tick() == 0


@pytest.mark.asyncio
async def test_tick_never_raises(queue):
    def broken_factory():
        raise RuntimeError("database down")

    scheduler = PriorityScheduler(broken_factory, queue)
    assert await scheduler.run_tick() == 0
    assert queue.batches == []


@pytest.mark.asyncio
async def test_scrape_now_bypasses_due_check(scheduler, queue, make_item):
    item_id = await make_item(last_scraped_at=datetime.utcnow())

    job = await scheduler.scrape_now(item_id)

    assert job.priority == 10
    assert queue.single == [(job, 0)]


@pytest.mark.asyncio
async def test_scrape_now_unknown_item(scheduler):
    with pytest.raises(NotFoundError):
        await scheduler.scrape_now(12345)


@pytest.mark.asyncio
async def test_stats(scheduler, make_item):
    now = datetime.utcnow()
    await make_item(last_scraped_at=None, priority_score=9, refetch_interval_hours=4)
    await make_item(last_scraped_at=hours_ago(1, now), priority_score=5, refetch_interval_hours=24)
    await make_item(last_scraped_at=None, consecutive_error_count=10, refetch_interval_hours=8)

    stats = await scheduler.stats(now)

    assert stats.total_items == 3
    assert stats.due_items == 1
    assert stats.high_priority_items == 1
    assert stats.average_refetch_hours == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_stats_defaults_without_items(scheduler):
    stats = await scheduler.stats()
    assert stats.total_items == 0
    assert stats.average_refetch_hours == 24.0


@pytest.mark.asyncio
async def test_start_registers_single_tick_job(scheduler):
    scheduler.start(interval_minutes=5)
    try:
        jobs = scheduler._scheduler.get_jobs()
        assert [job.id for job in jobs] == ["priority_scheduler_tick"]
        assert jobs[0].max_instances == 1

        scheduler.start()
        assert len(scheduler._scheduler.get_jobs()) == 1
    finally:
        scheduler.stop()

    assert scheduler._scheduler is None
