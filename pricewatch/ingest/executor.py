"""Single scrape attempt: render API first, pooled browser as fallback."""

import logging
import time
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.config import settings
from pricewatch.ingest.base import ProductSnapshot, ScrapeOutcome
from pricewatch.ingest.browser_pool import PagePool
from pricewatch.ingest.errors import BlockDetected, NavigationTimeout, NoStrategyAvailable, ScrapeError
from pricewatch.ingest.render_api import RenderApiClient
from pricewatch.ingest.strategies import ExtractionStrategy, StrategyRegistry
from pricewatch.logging_config import get_logger
from pricewatch.metrics import record_scrape_error, record_scrape_success, render_api_fallbacks_total

logger = logging.getLogger(__name__)

# Substrings (lowercase) that mark an anti-bot or rate-limit page
BLOCK_INDICATORS = (
    "captcha",
    "blocked",
    "unusual traffic",
    "access denied",
    "too many requests",
)


def find_block_indicator(
    content: str,
    page_url: str,
    extra: tuple[str, ...] = (),
) -> Optional[str]:
    """Return the first block indicator found in page content or URL."""
    haystacks = (content.lower(), page_url.lower())
    for indicator in BLOCK_INDICATORS + tuple(i.lower() for i in extra):
        for haystack in haystacks:
            if indicator in haystack:
                return indicator
    return None


class ScrapeExecutor:
    """
    Runs one scrape attempt for a URL.

    ``execute`` never raises: every failure is turned into a
    ``ScrapeOutcome`` carrying the error type and whether a retry can help.
    """

    def __init__(
        self,
        pool: PagePool,
        registry: Optional[StrategyRegistry] = None,
        render_api: Optional[RenderApiClient] = None,
        navigation_timeout_ms: Optional[int] = None,
        settle_seconds: Optional[float] = None,
    ):
        self.pool = pool
        self.registry = registry or StrategyRegistry()
        self.render_api = render_api
        self.navigation_timeout_ms = navigation_timeout_ms or settings.navigation_timeout_ms
        self.settle_seconds = (
            settings.content_settle_seconds if settle_seconds is None else settle_seconds
        )

    async def execute(self, url: str, marketplace: str) -> ScrapeOutcome:
        """
        Scrape a product page.

        Args:
            url: Product page URL
            marketplace: Marketplace key used for routing and metrics

        Returns:
            ScrapeOutcome with a snapshot on success, error details otherwise
        """
        started = time.monotonic()
        log = get_logger(__name__, marketplace=marketplace, url=url)

        strategy = self.registry.for_url(url)
        if strategy is None:
            error = NoStrategyAvailable(url)
            log.warning(str(error))
            return self._failure(error, marketplace, started, path="browser")

        if self.render_api is not None and self.render_api.is_enabled_for(marketplace):
            try:
                snapshot = await self._via_render_api(strategy, url)
                self.pool.mark_success()
                return self._success(snapshot, marketplace, started, path="render_api")
            except Exception as e:
                render_api_fallbacks_total.labels(marketplace=marketplace).inc()
                log.warning(f"Render API path failed, falling back to browser: {e}")

        try:
            snapshot = await self._via_browser(strategy, url)
        except (BlockDetected, NavigationTimeout) as e:
            self.pool.mark_failure()
            log.warning(f"Scrape failed: {e}")
            return self._failure(e, marketplace, started, path="browser")
        except ScrapeError as e:
            log.warning(f"Scrape failed: {e}")
            return self._failure(e, marketplace, started, path="browser")
        except Exception as e:
            log.error(f"Unexpected scrape error: {e}", exc_info=True)
            return self._failure(e, marketplace, started, path="browser")

        self.pool.mark_success()
        return self._success(snapshot, marketplace, started, path="browser")

    async def _via_render_api(self, strategy: ExtractionStrategy, url: str) -> ProductSnapshot:
        html = await self.render_api.fetch(url, strategy.country_for(url))
        indicator = find_block_indicator(html, url, strategy.block_indicators)
        if indicator:
            raise BlockDetected(url, indicator)

        async with self.pool.lease() as page:
            await page.set_content(html)
            return await strategy.extract(page, url)

    async def _via_browser(self, strategy: ExtractionStrategy, url: str) -> ProductSnapshot:
        async with self.pool.lease() as page:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            except PlaywrightTimeoutError as e:
                raise NavigationTimeout(url, self.navigation_timeout_ms) from e

            await strategy.wait_for_content(page, self.settle_seconds)

            content = await page.content()
            indicator = find_block_indicator(content, page.url, strategy.block_indicators)
            if indicator is None and strategy.is_blocked_url(page.url):
                indicator = "captcha"
            if indicator:
                raise BlockDetected(url, indicator)

            return await strategy.extract(page, url)

    @staticmethod
    def _success(
        snapshot: ProductSnapshot,
        marketplace: str,
        started: float,
        path: str,
    ) -> ScrapeOutcome:
        duration = time.monotonic() - started
        record_scrape_success(marketplace, path, duration)
        logger.info(f"Scraped {snapshot.marketplace_id} ({marketplace}) via {path} in {duration:.2f}s")
        return ScrapeOutcome(
            success=True,
            snapshot=snapshot,
            duration_ms=duration * 1000,
            path=path,
        )

    @staticmethod
    def _failure(
        error: Exception,
        marketplace: str,
        started: float,
        path: str,
    ) -> ScrapeOutcome:
        duration = time.monotonic() - started
        if isinstance(error, ScrapeError):
            error_type = error.error_type
            retryable = error.retryable
        else:
            error_type = type(error).__name__
            retryable = True
        record_scrape_error(marketplace, error_type, path, duration)
        return ScrapeOutcome.failed(
            str(error),
            error_type=error_type,
            retryable=retryable,
            duration_ms=duration * 1000,
            path=path,
        )
