"""Amazon extraction strategy."""

from __future__ import annotations

import re
from typing import Optional

from pricewatch.ingest.base import ListingRef, Marketplace
from pricewatch.ingest.strategies.base import ExtractionStrategy

_DOMAINS = r"amazon\.(com|de|co\.uk|fr|it|es|nl|ca)"

REGIONS = {
    "amazon.com": "us",
    "amazon.de": "de",
    "amazon.co.uk": "uk",
    "amazon.fr": "fr",
    "amazon.it": "it",
    "amazon.es": "es",
    "amazon.nl": "nl",
    "amazon.ca": "ca",
}


class AmazonStrategy(ExtractionStrategy):
    marketplace = Marketplace.AMAZON
    url_patterns = (
        re.compile(_DOMAINS + r"/.*/dp/[A-Z0-9]{10}", re.IGNORECASE),
        re.compile(_DOMAINS + r"/dp/[A-Z0-9]{10}", re.IGNORECASE),
        re.compile(_DOMAINS + r"/gp/product/[A-Z0-9]{10}", re.IGNORECASE),
        re.compile(_DOMAINS + r"/gp/aw/d/[A-Z0-9]{10}", re.IGNORECASE),
    )
    block_indicators = (
        "enter the characters you see below",
        "sorry, we just need to make sure",
        "automated access",
    )

    _asin_re = re.compile(r"/(?:dp|gp/product|gp/aw/d)/([A-Z0-9]{10})", re.IGNORECASE)
    _domain_re = re.compile(_DOMAINS, re.IGNORECASE)

    def resolve_id(self, url: str) -> Optional[ListingRef]:
        asin = self._asin_re.search(url)
        if not asin:
            return None

        domain_match = self._domain_re.search(url)
        domain = f"amazon.{domain_match.group(1)}" if domain_match else "amazon.com"
        return ListingRef(
            marketplace=self.marketplace,
            marketplace_id=asin.group(1).upper(),
            region=REGIONS.get(domain.lower(), "us"),
        )

    def is_blocked_url(self, url: str) -> bool:
        lower = url.lower()
        return "captcha" in lower or "validatecaptcha" in lower

    def classify_seller(self, seller_name: Optional[str]) -> Optional[str]:
        if not seller_name:
            return "marketplace"
        if "amazon" in seller_name.lower():
            return "marketplace"
        return "third_party_new"
