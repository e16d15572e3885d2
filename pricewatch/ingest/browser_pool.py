"""Bounded pool of reusable headless browser pages."""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, BrowserContext, Page, Route, async_playwright

from pricewatch.config import settings
from pricewatch.ingest.errors import PoolUnavailableError
from pricewatch.metrics import page_pool_leased, proxy_rotations_total

logger = logging.getLogger(__name__)


USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
]

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
Object.defineProperty(navigator, 'languages', { get: () => ['de-DE', 'de', 'en-US', 'en'] });
window.chrome = { runtime: {} };
"""

BLOCKED_RESOURCE_TYPES = {"image", "media", "font"}

TRACKING_DOMAINS = (
    "google-analytics.com",
    "googletagmanager.com",
    "doubleclick.net",
    "facebook.net",
    "hotjar.com",
    "criteo.com",
    "amazon-adsystem.com",
)


class PagePool(ABC):
    """
    Lease interface over reusable pages.

    At most ``size`` pages are leased at once; ``acquire`` waits until one
    is free. Callers release every page they acquire, also on failure.
    """

    size: int = 0

    @abstractmethod
    async def start(self) -> None:
        """Bring the pool up. Raises PoolUnavailableError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Close all pages and the underlying browser."""

    @abstractmethod
    async def acquire(self) -> Any:
        """Wait for and return a free page."""

    @abstractmethod
    async def release(self, page: Any) -> None:
        """Return a page to the pool."""

    def mark_success(self) -> None:
        """Report a successful navigation through the current proxy."""

    def mark_failure(self) -> None:
        """Report a failed navigation through the current proxy."""

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[Any]:
        """Acquire a page and release it when the block exits."""
        page = await self.acquire()
        try:
            yield page
        finally:
            await self.release(page)


class BrowserPagePool(PagePool):
    """
    Playwright-backed page pool.

    Pages are created lazily up to ``size``, navigated to about:blank on
    release and recycled after ``max_uses`` leases. When proxies are
    configured, repeated failures schedule a rotation that is applied once
    no pages are leased.
    """

    def __init__(
        self,
        size: Optional[int] = None,
        max_uses: Optional[int] = None,
        headless: Optional[bool] = None,
        proxy_urls: Optional[list[str]] = None,
        proxy_failure_threshold: Optional[int] = None,
        block_resources: Optional[bool] = None,
    ):
        self.size = size or settings.page_pool_size
        self.max_uses = max_uses or settings.page_max_uses
        self.headless = settings.headless if headless is None else headless
        self.proxy_urls = list(settings.proxy_urls if proxy_urls is None else proxy_urls)
        self.proxy_failure_threshold = proxy_failure_threshold or settings.proxy_failure_threshold
        self.block_resources = (
            settings.block_tracking_resources if block_resources is None else block_resources
        )

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._idle: list[Page] = []
        self._uses: dict[int, int] = {}
        self._leased = 0
        self._semaphore = asyncio.Semaphore(self.size)
        self._lock = asyncio.Lock()
        self._proxy_index = 0
        self._proxy_failures = 0
        self._rotation_pending = False

    @property
    def leased(self) -> int:
        return self._leased

    @property
    def current_proxy(self) -> Optional[str]:
        if not self.proxy_urls:
            return None
        return self.proxy_urls[self._proxy_index % len(self.proxy_urls)]

    async def start(self) -> None:
        if self._browser is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=LAUNCH_ARGS,
            )
            self._context = await self._new_context()
        except Exception as e:
            logger.error(f"Failed to start browser page pool: {e}")
            await self.close()
            raise PoolUnavailableError(str(e)) from e
        logger.info(f"Browser page pool started (size={self.size}, proxy={'yes' if self.proxy_urls else 'no'})")

    async def _new_context(self) -> BrowserContext:
        context_options: dict[str, Any] = {
            "viewport": random.choice(VIEWPORTS),
            "user_agent": random.choice(USER_AGENTS),
            "locale": "de-DE",
            "ignore_https_errors": True,
        }
        proxy = self.current_proxy
        if proxy:
            context_options["proxy"] = {"server": proxy}

        context = await self._browser.new_context(**context_options)
        await context.add_init_script(STEALTH_SCRIPT)
        if self.block_resources:
            await context.route("**/*", self._route_handler)
        return context

    @staticmethod
    async def _route_handler(route: Route) -> None:
        request = route.request
        if request.resource_type in BLOCKED_RESOURCE_TYPES or any(
            domain in request.url for domain in TRACKING_DOMAINS
        ):
            await route.abort()
        else:
            await route.continue_()

    async def close(self) -> None:
        for page in self._idle:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"Error closing page: {e}")
        self._idle.clear()
        self._uses.clear()

        if self._context:
            try:
                await self._context.close()
            except Exception as e:
                logger.error(f"Error closing browser context: {e}")
            self._context = None

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.error(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def acquire(self) -> Page:
        if self._context is None:
            raise PoolUnavailableError("Page pool is not started")

        await self._semaphore.acquire()
        try:
            async with self._lock:
                page = None
                while self._idle and page is None:
                    candidate = self._idle.pop()
                    if not candidate.is_closed():
                        page = candidate
                if page is None:
                    page = await self._context.new_page()
                    self._uses[id(page)] = 0
                self._uses[id(page)] = self._uses.get(id(page), 0) + 1
                self._leased += 1
                page_pool_leased.set(self._leased)
                return page
        except Exception:
            self._semaphore.release()
            raise

    async def release(self, page: Page) -> None:
        try:
            async with self._lock:
                self._leased -= 1
                page_pool_leased.set(self._leased)

                recycle = page.is_closed() or self._uses.get(id(page), 0) >= self.max_uses
                if not recycle:
                    try:
                        await page.goto("about:blank")
                    except Exception as e:
                        logger.debug(f"Failed to reset page, recycling: {e}")
                        recycle = True

                if recycle:
                    self._uses.pop(id(page), None)
                    if not page.is_closed():
                        try:
                            await page.close()
                        except Exception as e:
                            logger.debug(f"Error closing recycled page: {e}")
                else:
                    self._idle.append(page)

                if self._rotation_pending and self._leased == 0:
                    await self._rotate_proxy()
        finally:
            self._semaphore.release()

    def mark_success(self) -> None:
        self._proxy_failures = 0

    def mark_failure(self) -> None:
        self._proxy_failures += 1
        if len(self.proxy_urls) > 1 and self._proxy_failures >= self.proxy_failure_threshold:
            self._rotation_pending = True

    async def _rotate_proxy(self) -> None:
        """Switch to the next proxy. Caller holds the lock with no pages leased."""
        previous_index = self._proxy_index
        self._proxy_index = (self._proxy_index + 1) % len(self.proxy_urls)
        try:
            context = await self._new_context()
        except Exception as e:
            # Stay on the working context; the next release retries.
            self._proxy_index = previous_index
            logger.error(f"Proxy rotation failed, keeping current proxy: {e}")
            return

        old_context = self._context
        self._context = context
        self._proxy_failures = 0
        self._rotation_pending = False

        for page in self._idle:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"Error closing page during rotation: {e}")
        self._idle.clear()
        self._uses.clear()

        if old_context:
            try:
                await old_context.close()
            except Exception as e:
                logger.error(f"Error closing previous browser context: {e}")
        proxy_rotations_total.inc()
        logger.info(f"Rotated proxy to index {self._proxy_index}")
