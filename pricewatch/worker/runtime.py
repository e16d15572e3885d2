"""Wiring and lifecycle for the scrape engine components."""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import Settings, settings as default_settings
from pricewatch.detect.engine import AlertEngine
from pricewatch.ingest.browser_pool import BrowserPagePool, PagePool
from pricewatch.ingest.errors import PoolUnavailableError
from pricewatch.ingest.executor import ScrapeExecutor
from pricewatch.ingest.rate_limiter import RateLimiter
from pricewatch.ingest.render_api import RenderApiClient
from pricewatch.ingest.strategies import StrategyRegistry
from pricewatch.notify.publisher import ScrapeNotifier
from pricewatch.worker.pipeline import ScrapePipeline
from pricewatch.worker.queue import JobQueue
from pricewatch.worker.scheduler import PriorityScheduler

logger = logging.getLogger(__name__)


class ScrapeRuntime:
    """
    Owns the scheduler, queue, page pool and their collaborators.

    Shutdown runs in dependency order: scheduler, then queue (which drains
    in-flight jobs and closes the page pool), then outbound clients.
    """

    def __init__(
        self,
        pool: PagePool,
        executor: ScrapeExecutor,
        pipeline: ScrapePipeline,
        queue: JobQueue,
        scheduler: PriorityScheduler,
        notifier: Optional[ScrapeNotifier] = None,
        render_api: Optional[RenderApiClient] = None,
        config: Settings = default_settings,
    ):
        self.pool = pool
        self.executor = executor
        self.pipeline = pipeline
        self.queue = queue
        self.scheduler = scheduler
        self.notifier = notifier
        self.render_api = render_api
        self.config = config
        self.running = False
        self.last_error: Optional[str] = None

    async def start(self) -> bool:
        """
        Start the queue workers and the periodic scheduler.

        A page pool that cannot start leaves the engine stopped; the error
        is logged and kept in ``last_error``.

        Returns:
            True if the engine is running
        """
        if self.running:
            return True

        try:
            await self.queue.start(self.config.queue_concurrency)
        except PoolUnavailableError as e:
            self.last_error = str(e)
            logger.error(f"Scrape engine not started, page pool unavailable: {e}")
            return False

        if self.config.scheduler_enabled:
            self.scheduler.start(self.config.scheduler_interval_minutes)
        else:
            logger.warning("Scheduler disabled by configuration; only manual scrapes will run")

        self.running = True
        logger.info("Scrape engine started")
        return True

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.queue.stop()

        if self.notifier is not None:
            await self.notifier.close()
        if self.render_api is not None:
            await self.render_api.close()

        self.running = False
        logger.info("Scrape engine stopped")

    async def stats(self) -> dict[str, Any]:
        scheduler_stats = await self.scheduler.stats()
        queue_stats = self.queue.stats()
        return {
            "running": self.running,
            "scheduler": {
                "total_items": scheduler_stats.total_items,
                "due_items": scheduler_stats.due_items,
                "high_priority_items": scheduler_stats.high_priority_items,
                "average_refetch_hours": round(scheduler_stats.average_refetch_hours, 2),
            },
            "queue": {
                "waiting": queue_stats.waiting,
                "delayed": queue_stats.delayed,
                "active": queue_stats.active,
                "completed": queue_stats.completed,
                "failed": queue_stats.failed,
                "retried": queue_stats.retried,
            },
            "pool": {
                "size": self.pool.size,
                "leased": getattr(self.pool, "leased", 0),
            },
        }


def build_runtime(
    session_factory: Callable[[], AsyncSession],
    config: Settings = default_settings,
    pool: Optional[PagePool] = None,
    notifier: Optional[ScrapeNotifier] = None,
    render_api: Optional[RenderApiClient] = None,
) -> ScrapeRuntime:
    """Construct every engine component from settings."""
    if config.render_api_enabled and not config.render_api_key:
        logger.warning("Render API enabled but no API key configured; using browser only")

    pool = pool or BrowserPagePool(
        size=config.page_pool_size,
        max_uses=config.page_max_uses,
        headless=config.headless,
        proxy_urls=config.proxy_urls,
        proxy_failure_threshold=config.proxy_failure_threshold,
        block_resources=config.block_tracking_resources,
    )
    render_api = render_api or RenderApiClient(
        api_key=config.render_api_key,
        base_url=config.render_api_url,
        timeout=config.render_api_timeout_seconds,
        marketplaces=config.render_api_marketplaces,
        enabled=config.render_api_enabled,
    )
    notifier = notifier or ScrapeNotifier(config.redis_url, config.scrape_completed_channel)

    executor = ScrapeExecutor(
        pool,
        registry=StrategyRegistry(),
        render_api=render_api,
        navigation_timeout_ms=config.navigation_timeout_ms,
        settle_seconds=config.content_settle_seconds,
    )
    pipeline = ScrapePipeline(session_factory, AlertEngine(session_factory), notifier)
    queue = JobQueue(
        executor,
        pipeline,
        pool=pool,
        rate_limiter=RateLimiter(config.rate_limits, config.default_rate_limit),
        concurrency=config.queue_concurrency,
        max_attempts=config.max_attempts,
        backoff_base_seconds=config.backoff_base_seconds,
    )
    scheduler = PriorityScheduler(
        session_factory,
        queue,
        batch_size=config.scheduler_batch_size,
        circuit_breaker_threshold=config.circuit_breaker_threshold,
        volatility_window_days=config.volatility_window_days,
        hysteresis_hours=config.refetch_hysteresis_hours,
    )

    return ScrapeRuntime(
        pool=pool,
        executor=executor,
        pipeline=pipeline,
        queue=queue,
        scheduler=scheduler,
        notifier=notifier,
        render_api=render_api,
        config=config,
    )
