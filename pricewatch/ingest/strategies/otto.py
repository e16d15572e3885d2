"""Otto.de extraction strategy."""

from __future__ import annotations

import re
from typing import Optional

from pricewatch.ingest.base import ListingRef, Marketplace
from pricewatch.ingest.strategies.base import ExtractionStrategy


class OttoStrategy(ExtractionStrategy):
    marketplace = Marketplace.OTTO
    url_patterns = (
        re.compile(r"otto\.de/p/([^/?#]+)", re.IGNORECASE),
        re.compile(r"otto\.de/[^/]+/p/([^/?#]+)", re.IGNORECASE),
        re.compile(r"otto\.de/p/share/w/([A-Z0-9]+)", re.IGNORECASE),
    )
    block_indicators = (
        "zugriff verweigert",
        "ungewöhnlichen datenverkehr",
    )
    default_country = "de"

    _share_re = re.compile(r"/p/share/w/([A-Z0-9]+)")
    _slug_re = re.compile(r"/p/([^/?#]+)")
    _article_re = re.compile(r"(\d{9,})$")

    def resolve_id(self, url: str) -> Optional[ListingRef]:
        share = self._share_re.search(url)
        if share:
            return ListingRef(marketplace=self.marketplace, marketplace_id=share.group(1), region="de")

        match = self._slug_re.search(url)
        if not match:
            return None

        # Article number sits at the end of the slug
        slug = match.group(1)
        article = self._article_re.search(slug)
        return ListingRef(
            marketplace=self.marketplace,
            marketplace_id=article.group(1) if article else slug,
            region="de",
        )

    def classify_seller(self, seller_name: Optional[str]) -> Optional[str]:
        if not seller_name or "otto" in seller_name.lower():
            return "marketplace"
        return "third_party_new"
