"""Etsy extraction strategy."""

from __future__ import annotations

import re
from typing import Optional

from pricewatch.ingest.base import ListingRef, Marketplace
from pricewatch.ingest.strategies.base import ExtractionStrategy


class EtsyStrategy(ExtractionStrategy):
    marketplace = Marketplace.ETSY
    url_patterns = (
        re.compile(r"etsy\.com/listing/(\d+)", re.IGNORECASE),
        re.compile(r"etsy\.com/[a-z]{2}(?:-[a-z]{2})?/listing/(\d+)", re.IGNORECASE),
    )
    block_indicators = (
        "verify you are a human",
        "please confirm you are not a robot",
        "automated access",
    )
    default_currency = "USD"

    _listing_re = re.compile(r"/listing/(\d+)")
    _locale_re = re.compile(r"etsy\.com/([a-z]{2})(?:-[a-z]{2})?/listing/", re.IGNORECASE)

    def resolve_id(self, url: str) -> Optional[ListingRef]:
        match = self._listing_re.search(url)
        if not match:
            return None
        locale = self._locale_re.search(url)
        return ListingRef(
            marketplace=self.marketplace,
            marketplace_id=match.group(1),
            region=locale.group(1).lower() if locale else None,
        )

    def classify_seller(self, seller_name: Optional[str]) -> Optional[str]:
        # Every Etsy listing is sold by an independent shop
        return "third_party_new" if seller_name else None
