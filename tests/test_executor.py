"""Tests for the scrape executor."""

from decimal import Decimal

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fakes import FakePage, FakePagePool, product_html
from pricewatch.ingest.executor import ScrapeExecutor, find_block_indicator
from pricewatch.ingest.render_api import RenderApiClient

AMAZON_URL = "https://www.amazon.de/dp/B08N5WRWNW"


def make_executor(page: FakePage, render_api=None):
    pool = FakePagePool(page)
    executor = ScrapeExecutor(pool, render_api=render_api, navigation_timeout_ms=1000, settle_seconds=0)
    return executor, pool


def render_client(handler) -> RenderApiClient:
    return RenderApiClient(
        api_key="test-key",
        base_url="https://render.test/",
        marketplaces=["amazon"],
        enabled=True,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_browser_path_success():
    page = FakePage(html=product_html(price="24.90"))
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.success
    assert outcome.path == "browser"
    assert outcome.snapshot.price == Decimal("24.90")
    assert page.visited == [AMAZON_URL]
    assert pool.successes == 1
    assert pool.acquired == pool.released == 1


@pytest.mark.asyncio
async def test_unknown_url_is_not_retryable():
    executor, pool = make_executor(FakePage())

    outcome = await executor.execute("https://shop.example.com/item/1", "amazon")

    assert not outcome.success
    assert outcome.error_type == "NoStrategyAvailable"
    assert outcome.retryable is False
    assert pool.acquired == 0


@pytest.mark.asyncio
async def test_block_page_is_retryable_and_marks_failure():
    page = FakePage(html="<html><body>Please solve this CAPTCHA to continue</body></html>")
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert not outcome.success
    assert outcome.error_type == "BlockDetected"
    assert outcome.retryable is True
    assert pool.failures == 1
    assert pool.released == 1


@pytest.mark.asyncio
async def test_block_detected_from_redirect_url():
    page = FakePage(
        html=product_html(),
        final_url="https://www.amazon.de/errors/validateCaptcha?x=1",
    )
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.error_type == "BlockDetected"


@pytest.mark.asyncio
async def test_navigation_timeout():
    page = FakePage(goto_error=PlaywrightTimeoutError("Timeout 1000ms exceeded"))
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.error_type == "NavigationTimeout"
    assert outcome.retryable is True
    assert pool.failures == 1
    assert pool.released == 1


@pytest.mark.asyncio
async def test_missing_price_is_extraction_failure():
    page = FakePage(html="<html><head><title>Product</title></head></html>")
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.error_type == "ExtractionFailed"
    assert outcome.retryable is False
    assert pool.failures == 0


@pytest.mark.asyncio
async def test_unexpected_error_becomes_outcome():
    page = FakePage(goto_error=RuntimeError("browser crashed"))
    executor, pool = make_executor(page)

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert not outcome.success
    assert outcome.error_type == "RuntimeError"
    assert outcome.retryable is True
    assert pool.released == 1


@pytest.mark.asyncio
async def test_render_api_path_used_first():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=product_html(price="15.00"))

    page = FakePage()
    executor, pool = make_executor(page, render_api=render_client(handler))

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.success
    assert outcome.path == "render_api"
    assert outcome.snapshot.price == Decimal("15.00")
    assert page.set_content_calls == 1
    assert page.visited == []
    assert pool.successes == 1
    params = requests[0].url.params
    assert params["render"] == "true"
    assert params["country_code"] == "de"
    assert params["url"] == AMAZON_URL


@pytest.mark.asyncio
async def test_render_api_failure_falls_back_to_browser():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream error")

    page = FakePage(html=product_html(price="16.00"))
    executor, pool = make_executor(page, render_api=render_client(handler))

    outcome = await executor.execute(AMAZON_URL, "amazon")

    assert outcome.success
    assert outcome.path == "browser"
    assert page.visited == [AMAZON_URL]


@pytest.mark.asyncio
async def test_render_api_skipped_for_unconfigured_marketplace():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("render API should not be called")

    page = FakePage(html=product_html())
    executor, pool = make_executor(page, render_api=render_client(handler))

    outcome = await executor.execute("https://www.etsy.com/listing/123456789/mug", "etsy")

    assert outcome.success
    assert outcome.path == "browser"


def test_find_block_indicator():
    assert find_block_indicator("Too Many Requests", "https://x") == "too many requests"
    assert find_block_indicator("fine", "https://x/captcha") == "captcha"
    assert find_block_indicator("Zugriff verweigert", "https://x", ("zugriff verweigert",)) == "zugriff verweigert"
    assert find_block_indicator("all good", "https://x") is None
