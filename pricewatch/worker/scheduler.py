"""Priority scheduler: decides which tracked items to scrape and how often."""

import logging
import math
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import AlertRule, ItemWatcher, PriceHistoryPoint, TrackedItem
from pricewatch.ingest.base import ScrapeJob
from pricewatch.ingest.errors import NotFoundError
from pricewatch.metrics import record_scheduler_run, refetch_interval_changes_total
from pricewatch.worker.queue import JobQueue

logger = logging.getLogger(__name__)

MAX_PRIORITY = 10
SCRAPE_NOW_PRIORITY = 10


@dataclass
class SchedulerStats:
    total_items: int
    due_items: int
    high_priority_items: int
    average_refetch_hours: float


def compute_volatility(prices: Iterable[Decimal | float]) -> float:
    """
    Coefficient of variation of a price series, in percent.

    Uses the sample standard deviation. Returns 0 with fewer than two
    prices or a zero mean.
    """
    values = [float(p) for p in prices]
    if len(values) < 2:
        return 0.0
    mean = statistics.mean(values)
    if mean == 0:
        return 0.0
    return statistics.stdev(values) / mean * 100


def compute_priority(
    base_priority: int,
    active_alerts: int = 0,
    watchers: int = 0,
    volatility: float = 0.0,
    error_count: int = 0,
) -> int:
    """
    Score how urgently an item should be scraped (0-10).

    Active alerts add ceil(alerts / 2), more than five watchers add one,
    more than 10% volatility adds one. Consecutive errors subtract their
    count, but never below one.
    """
    score = base_priority

    if active_alerts > 0:
        score = min(score + math.ceil(active_alerts / 2), MAX_PRIORITY)
    if watchers > 5:
        score = min(score + 1, MAX_PRIORITY)
    if volatility > 10:
        score = min(score + 1, MAX_PRIORITY)
    if error_count > 0:
        score = max(score - error_count, 1)

    return max(0, min(score, MAX_PRIORITY))


def compute_refetch_interval(volatility: float, active_alerts: int = 0, watchers: int = 0) -> int:
    """Refetch interval in hours from volatility, tightened for alerts and popular items."""
    if volatility > 20:
        hours = 4
    elif volatility > 10:
        hours = 8
    elif volatility > 5:
        hours = 12
    else:
        hours = 24

    if active_alerts > 0:
        hours = min(hours, 6)
    if watchers > 10:
        hours = min(hours, 8)
    return hours


class PriorityScheduler:
    """
    Periodically selects due items, re-scores them and enqueues scrape jobs.

    One tick loads due candidates (never-scraped first, then configured
    priority, then oldest scrape), refreshes each candidate's priority score
    and refetch interval, and enqueues the batch highest priority first.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        queue: JobQueue,
        batch_size: Optional[int] = None,
        circuit_breaker_threshold: Optional[int] = None,
        volatility_window_days: Optional[int] = None,
        hysteresis_hours: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.circuit_breaker_threshold = circuit_breaker_threshold or settings.circuit_breaker_threshold
        self.volatility_window_days = volatility_window_days or settings.volatility_window_days
        self.hysteresis_hours = hysteresis_hours or settings.refetch_hysteresis_hours
        self._scheduler: Optional[AsyncIOScheduler] = None

    async def run_tick(self, now: Optional[datetime] = None) -> int:
        """
        Run one scheduling pass.

        Never raises; errors are logged and the tick ends early.

        Returns:
            Number of jobs enqueued
        """
        now = now or datetime.utcnow()
        try:
            jobs = await self._plan(now)
            enqueued = self.queue.enqueue_batch(jobs)
        except Exception as e:
            record_scheduler_run(False)
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            return 0

        record_scheduler_run(True, enqueued)
        logger.info(f"Scheduler tick enqueued {enqueued} scrape jobs")
        return enqueued

    async def _plan(self, now: datetime) -> list[ScrapeJob]:
        async with self.session_factory() as session:
            items = await self._select_due(session, now)
            if not items:
                return []

            ids = [item.id for item in items]
            alert_counts = await self._count_by_item(
                session, AlertRule.item_id, ids, AlertRule.is_active == True  # noqa: E712
            )
            watcher_counts = await self._count_by_item(session, ItemWatcher.item_id, ids)
            volatility = await self._volatility_by_item(session, ids, now)

            jobs: list[ScrapeJob] = []
            for item in items:
                alerts = alert_counts.get(item.id, 0)
                watchers = watcher_counts.get(item.id, 0)
                vol = volatility.get(item.id, 0.0)

                score = compute_priority(
                    item.base_priority,
                    active_alerts=alerts,
                    watchers=watchers,
                    volatility=vol,
                    error_count=item.consecutive_error_count,
                )
                if score != item.priority_score:
                    item.priority_score = score

                interval = compute_refetch_interval(vol, active_alerts=alerts, watchers=watchers)
                if abs(interval - item.refetch_interval_hours) >= self.hysteresis_hours:
                    logger.debug(
                        f"Item {item.id}: refetch interval {item.refetch_interval_hours}h -> {interval}h "
                        f"(volatility {vol:.1f}%)"
                    )
                    item.refetch_interval_hours = interval
                    refetch_interval_changes_total.inc()

                jobs.append(
                    ScrapeJob(
                        item_id=item.id,
                        url=item.url,
                        marketplace=item.marketplace,
                        priority=score,
                    )
                )

            await session.commit()

        # Stable sort keeps selection order within equal priorities
        jobs.sort(key=lambda job: job.priority, reverse=True)
        return jobs

    async def _due_clause(self, session: AsyncSession, now: datetime):
        """
        SQL criteria matching exactly the due, non-tripped items.

        Intervals are whole hours and take few distinct values, so the
        elapsed-time check becomes one cutoff comparison per interval.
        """
        healthy = TrackedItem.consecutive_error_count < self.circuit_breaker_threshold
        result = await session.execute(
            select(TrackedItem.refetch_interval_hours).where(healthy).distinct()
        )
        elapsed = [
            and_(
                TrackedItem.refetch_interval_hours == hours,
                TrackedItem.last_scraped_at <= now - timedelta(hours=hours),
            )
            for hours in result.scalars().all()
        ]
        return and_(healthy, or_(TrackedItem.last_scraped_at.is_(None), *elapsed))

    async def _select_due(self, session: AsyncSession, now: datetime) -> list[TrackedItem]:
        """Load up to batch_size due items in scheduling order."""
        result = await session.execute(
            select(TrackedItem)
            .where(await self._due_clause(session, now))
            .order_by(
                case((TrackedItem.last_scraped_at.is_(None), 0), else_=1),
                TrackedItem.base_priority.desc(),
                TrackedItem.last_scraped_at.asc(),
                TrackedItem.id.asc(),
            )
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _count_by_item(session: AsyncSession, column, ids: list[int], *criteria) -> dict[int, int]:
        result = await session.execute(
            select(column, func.count()).where(column.in_(ids), *criteria).group_by(column)
        )
        return {item_id: count for item_id, count in result.all()}

    async def _volatility_by_item(
        self,
        session: AsyncSession,
        ids: list[int],
        now: datetime,
    ) -> dict[int, float]:
        since = now - timedelta(days=self.volatility_window_days)
        result = await session.execute(
            select(PriceHistoryPoint.item_id, PriceHistoryPoint.price).where(
                PriceHistoryPoint.item_id.in_(ids),
                PriceHistoryPoint.recorded_at >= since,
            )
        )
        prices: dict[int, list[Decimal]] = defaultdict(list)
        for item_id, price in result.all():
            prices[item_id].append(price)
        return {item_id: compute_volatility(values) for item_id, values in prices.items()}

    async def scrape_now(self, item_id: int) -> ScrapeJob:
        """
        Enqueue an item immediately with top priority and no spacing delay.

        Raises:
            NotFoundError: If the item does not exist
        """
        async with self.session_factory() as session:
            item = await session.get(TrackedItem, item_id)
            if item is None:
                raise NotFoundError(item_id)
            job = ScrapeJob(
                item_id=item.id,
                url=item.url,
                marketplace=item.marketplace,
                priority=SCRAPE_NOW_PRIORITY,
            )

        self.queue.enqueue(job, delay_ms=0)
        logger.info(f"Manual scrape requested for item {item_id}")
        return job

    async def stats(self, now: Optional[datetime] = None) -> SchedulerStats:
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(TrackedItem))
            high = await session.scalar(
                select(func.count())
                .select_from(TrackedItem)
                .where(TrackedItem.priority_score >= settings.high_priority_threshold)
            )
            average = await session.scalar(select(func.avg(TrackedItem.refetch_interval_hours)))

            due = await session.scalar(
                select(func.count())
                .select_from(TrackedItem)
                .where(await self._due_clause(session, now))
            )

        return SchedulerStats(
            total_items=total or 0,
            due_items=due or 0,
            high_priority_items=high or 0,
            average_refetch_hours=float(average) if average is not None else float(settings.default_refetch_hours),
        )

    def start(self, interval_minutes: Optional[int] = None) -> None:
        """Run ticks on an interval, starting immediately."""
        if self._scheduler is not None:
            return

        minutes = max(1, int(interval_minutes or settings.scheduler_interval_minutes))
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_tick,
            IntervalTrigger(minutes=minutes),
            id="priority_scheduler_tick",
            name="Select due items and enqueue scrape jobs",
            max_instances=1,  # Prevent overlapping ticks
            coalesce=True,
            next_run_time=datetime.now(),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Priority scheduler started (every {minutes} min)")

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Priority scheduler stopped")
