"""Client for the third-party page rendering API."""

import logging
from typing import Optional

import httpx

from pricewatch.config import settings
from pricewatch.ingest.errors import UpstreamApiFailed

logger = logging.getLogger(__name__)


class RenderApiClient:
    """
    Fetches fully rendered HTML through a hosted rendering service.

    The service is asked to render JavaScript and to route the request
    through the given country.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        marketplaces: Optional[list[str]] = None,
        enabled: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.render_api_key if api_key is None else api_key
        self.base_url = base_url or settings.render_api_url
        self.timeout = timeout or settings.render_api_timeout_seconds
        self.marketplaces = set(settings.render_api_marketplaces if marketplaces is None else marketplaces)
        self.enabled = (settings.render_api_enabled if enabled is None else enabled) and bool(self.api_key)
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def is_enabled_for(self, marketplace: str) -> bool:
        return self.enabled and marketplace in self.marketplaces

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch(self, url: str, country: str) -> str:
        """
        Fetch rendered HTML for a product page.

        Args:
            url: Product page URL
            country: Two-letter country code for geo-targeting

        Returns:
            Rendered HTML

        Raises:
            UpstreamApiFailed: On transport errors, non-200 responses or empty bodies
        """
        client = await self._get_client()
        params = {
            "api_key": self.api_key,
            "url": url,
            "render": "true",
            "country_code": country,
        }
        try:
            response = await client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            raise UpstreamApiFailed(f"{type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise UpstreamApiFailed(f"HTTP {response.status_code}", status_code=response.status_code)

        html = response.text
        if not html or not html.strip():
            raise UpstreamApiFailed("empty response body", status_code=response.status_code)

        logger.debug(f"Render API returned {len(html)} bytes for {url}")
        return html
