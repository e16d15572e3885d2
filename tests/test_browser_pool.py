"""Tests for page pool leasing and proxy health tracking."""

import asyncio

import pytest

from fakes import FakePagePool
from pricewatch.ingest.browser_pool import BrowserPagePool
from pricewatch.ingest.errors import PoolUnavailableError


@pytest.mark.asyncio
async def test_lease_releases_page_on_error():
    pool = FakePagePool()

    with pytest.raises(ValueError):
        async with pool.lease() as page:
            assert page is pool.page
            raise ValueError("extraction blew up")

    assert pool.acquired == pool.released == 1


@pytest.mark.asyncio
async def test_acquire_before_start_fails():
    pool = BrowserPagePool(size=1)
    with pytest.raises(PoolUnavailableError):
        await pool.acquire()


def test_failure_streak_schedules_rotation_with_multiple_proxies():
    pool = BrowserPagePool(
        size=2,
        proxy_urls=["http://proxy-a:8080", "http://proxy-b:8080"],
        proxy_failure_threshold=3,
    )
    assert pool.current_proxy == "http://proxy-a:8080"

    pool.mark_failure()
    pool.mark_failure()
    pool.mark_success()
    pool.mark_failure()
    assert pool._rotation_pending is False

    pool.mark_failure()
    pool.mark_failure()
    assert pool._rotation_pending is True


def test_no_rotation_without_alternative_proxy():
    pool = BrowserPagePool(size=2, proxy_urls=["http://proxy-a:8080"], proxy_failure_threshold=1)
    pool.mark_failure()
    pool.mark_failure()
    assert pool._rotation_pending is False

    assert BrowserPagePool(size=2, proxy_urls=[]).current_proxy is None


class StubPage:
    def __init__(self):
        self.closed = False
        self.visited: list[str] = []

    async def goto(self, url, **kwargs):
        self.visited.append(url)

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True


class StubContext:
    def __init__(self, proxy=None):
        self.proxy = proxy
        self.closed = False
        self.pages: list[StubPage] = []

    async def add_init_script(self, script):
        pass

    async def route(self, pattern, handler):
        pass

    async def new_page(self):
        if self.closed:
            raise RuntimeError("Target page, context or browser has been closed")
        page = StubPage()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class StubBrowser:
    def __init__(self):
        self.contexts: list[StubContext] = []
        self.fail_new_context = False

    async def new_context(self, **options):
        if self.fail_new_context:
            raise RuntimeError("proxy context creation failed")
        context = StubContext(proxy=options.get("proxy", {}).get("server"))
        self.contexts.append(context)
        return context


async def started_pool(**kwargs) -> BrowserPagePool:
    kwargs.setdefault("proxy_urls", [])
    pool = BrowserPagePool(block_resources=False, **kwargs)
    pool._browser = StubBrowser()
    pool._context = await pool._new_context()
    return pool


@pytest.mark.asyncio
async def test_acquire_waits_when_all_pages_leased():
    pool = await started_pool(size=2)
    first = await pool.acquire()
    await pool.acquire()
    assert pool.leased == 2

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(pool.acquire(), timeout=0.05)
    assert pool.leased == 2

    await pool.release(first)
    third = await asyncio.wait_for(pool.acquire(), timeout=1)
    assert third is first
    assert pool.leased == 2


@pytest.mark.asyncio
async def test_released_page_is_reset_and_reused():
    pool = await started_pool(size=1, max_uses=5)

    page = await pool.acquire()
    await pool.release(page)

    assert page.visited == ["about:blank"]
    assert await pool.acquire() is page
    assert len(pool._context.pages) == 1


@pytest.mark.asyncio
async def test_page_recycled_after_max_uses():
    pool = await started_pool(size=1, max_uses=2)

    page = await pool.acquire()
    await pool.release(page)
    assert await pool.acquire() is page
    await pool.release(page)

    assert page.closed
    replacement = await pool.acquire()
    assert replacement is not page
    assert len(pool._context.pages) == 2


@pytest.mark.asyncio
async def test_rotation_applied_on_release_when_idle():
    pool = await started_pool(
        size=1,
        proxy_urls=["http://proxy-a:8080", "http://proxy-b:8080"],
        proxy_failure_threshold=1,
    )
    old_context = pool._context

    page = await pool.acquire()
    pool.mark_failure()
    await pool.release(page)

    assert pool.current_proxy == "http://proxy-b:8080"
    assert pool._context.proxy == "http://proxy-b:8080"
    assert old_context.closed
    assert page.closed
    assert pool._rotation_pending is False


@pytest.mark.asyncio
async def test_failed_rotation_keeps_pool_usable_and_retries():
    pool = await started_pool(
        size=1,
        proxy_urls=["http://proxy-a:8080", "http://proxy-b:8080"],
        proxy_failure_threshold=1,
    )
    original_context = pool._context

    page = await pool.acquire()
    pool.mark_failure()
    pool._browser.fail_new_context = True
    await pool.release(page)

    assert pool._context is original_context
    assert not original_context.closed
    assert pool.current_proxy == "http://proxy-a:8080"
    assert pool._rotation_pending is True

    page = await pool.acquire()
    pool._browser.fail_new_context = False
    await pool.release(page)

    assert pool.current_proxy == "http://proxy-b:8080"
    assert original_context.closed
    assert pool._rotation_pending is False
