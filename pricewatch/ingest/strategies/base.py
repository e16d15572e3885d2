"""Marketplace extraction strategy base class."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

from pricewatch.ingest.base import Availability, ListingRef, Marketplace, ProductSnapshot
from pricewatch.ingest.errors import ExtractionFailed
from pricewatch.ingest.json_extractor import detect_currency, extract_product_fields

logger = logging.getLogger(__name__)


class ExtractionStrategy(ABC):
    """
    Per-marketplace extraction contract.

    Subclasses declare which URLs they own and how to resolve the
    marketplace-native id. Product fields are read from the page's
    structured data, so there are no marketplace-specific selectors here.
    """

    marketplace: Marketplace
    url_patterns: tuple[re.Pattern, ...] = ()
    block_indicators: tuple[str, ...] = ()
    default_currency: str = "EUR"
    default_country: str = "us"

    def matches(self, url: str) -> bool:
        """Check if this strategy can handle the URL."""
        return any(pattern.search(url) for pattern in self.url_patterns)

    @abstractmethod
    def resolve_id(self, url: str) -> Optional[ListingRef]:
        """Resolve the marketplace-native id (and region) from a URL."""

    def country_for(self, url: str) -> str:
        """Country code used for geo-targeted rendering requests."""
        ref = self.resolve_id(url)
        if ref and ref.region:
            return ref.region
        return self.default_country

    async def wait_for_content(self, page: Any, settle_seconds: float) -> None:
        """Give client-side scripts time to render after navigation."""
        if settle_seconds > 0:
            await asyncio.sleep(settle_seconds)

    def is_blocked_url(self, url: str) -> bool:
        """Check the final page URL for a challenge redirect."""
        return "captcha" in url.lower()

    def classify_seller(self, seller_name: Optional[str]) -> Optional[str]:
        """Map a seller name onto marketplace / third_party_new."""
        if not seller_name:
            return None
        return "third_party_new"

    async def extract(self, page: Any, url: str) -> ProductSnapshot:
        """
        Extract a normalized snapshot from a loaded page.

        Raises:
            ExtractionFailed: If the URL has no id or the page has no price
        """
        html = await page.content()
        return self.parse_html(html, url)

    def parse_html(self, html: str, url: str) -> ProductSnapshot:
        """Build a snapshot from page markup."""
        ref = self.resolve_id(url)
        if ref is None:
            raise ExtractionFailed(url, f"could not parse {self.marketplace.value} id from URL")

        fields = extract_product_fields(html)
        price: Optional[Decimal] = fields["price"]
        if price is None:
            raise ExtractionFailed(url, "no price found on page")
        if price < 0:
            raise ExtractionFailed(url, f"negative price {price}")

        currency = fields["currency"] or detect_currency(fields["price_text"], self.default_currency)
        availability = Availability(fields["availability"] or Availability.UNKNOWN.value)

        snapshot = ProductSnapshot(
            marketplace=self.marketplace,
            marketplace_id=ref.marketplace_id,
            region=ref.region,
            url=url,
            price=price,
            currency=currency.upper()[:3],
            availability=availability,
            title=fields["title"],
            description=(fields["description"] or "")[:1000] or None,
            image_url=fields["image_url"],
            brand=fields["brand"],
            category=fields["category"],
            seller_name=fields["seller_name"],
            seller_type=self.classify_seller(fields["seller_name"]),
            shipping_cost=fields["shipping_cost"],
            rating=fields["rating"],
            review_count=fields["review_count"],
        )
        logger.debug(
            f"[{self.marketplace.value}] Extracted: {snapshot.title}, {snapshot.price} {snapshot.currency}"
        )
        return snapshot
