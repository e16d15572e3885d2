"""Exception types raised while scraping and scheduling."""


class ScrapeError(Exception):
    """Base class for failures of one scrape attempt.

    ``retryable`` tells the queue whether another attempt can help.
    """

    retryable: bool = True

    @property
    def error_type(self) -> str:
        return type(self).__name__


class NoStrategyAvailable(ScrapeError):
    """URL matches no known marketplace pattern."""

    retryable = False

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"No scraper available for URL: {url}")


class NavigationTimeout(ScrapeError):
    """Page did not load within the navigation timeout."""

    def __init__(self, url: str, timeout_ms: int):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(f"Navigation to {url} timed out after {timeout_ms}ms")


class BlockDetected(ScrapeError):
    """Page looks like a CAPTCHA or rate-limit page."""

    def __init__(self, url: str, indicator: str):
        self.url = url
        self.indicator = indicator
        super().__init__(f"Access blocked - possible CAPTCHA or rate limit ('{indicator}')")


class ExtractionFailed(ScrapeError):
    """Strategy could not find the expected product fields."""

    retryable = False

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to extract product from {url}: {reason}")


class UpstreamApiFailed(ScrapeError):
    """Render API request failed or returned no content."""

    def __init__(self, reason: str, status_code: int | None = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Render API failed: {reason}")


class NotFoundError(Exception):
    """Requested tracked item does not exist."""

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Tracked item {item_id} not found")


class PoolUnavailableError(Exception):
    """Browser page pool could not be started."""
