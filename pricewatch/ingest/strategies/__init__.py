"""Extraction strategy registry."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from pricewatch.ingest.base import ListingRef, Marketplace
from pricewatch.ingest.strategies.amazon import AmazonStrategy
from pricewatch.ingest.strategies.base import ExtractionStrategy
from pricewatch.ingest.strategies.etsy import EtsyStrategy
from pricewatch.ingest.strategies.otto import OttoStrategy

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Maps marketplaces to extraction strategies and picks one per URL."""

    def __init__(self, strategies: Optional[Iterable[ExtractionStrategy]] = None):
        if strategies is None:
            strategies = (AmazonStrategy(), EtsyStrategy(), OttoStrategy())
        self._strategies: dict[Marketplace, ExtractionStrategy] = {
            strategy.marketplace: strategy for strategy in strategies
        }
        logger.debug(f"Initialized {len(self._strategies)} extraction strategies")

    def for_url(self, url: str) -> Optional[ExtractionStrategy]:
        """Return the strategy whose URL patterns match, if any."""
        for strategy in self._strategies.values():
            if strategy.matches(url):
                return strategy
        return None

    def for_marketplace(self, marketplace: Marketplace | str) -> Optional[ExtractionStrategy]:
        try:
            return self._strategies.get(Marketplace(marketplace))
        except ValueError:
            return None

    def resolve(self, url: str) -> Optional[ListingRef]:
        """Resolve marketplace, id and region for a product URL."""
        strategy = self.for_url(url)
        if strategy is None:
            return None
        return strategy.resolve_id(url)

    def marketplaces(self) -> list[Marketplace]:
        return list(self._strategies)


__all__ = [
    "ExtractionStrategy",
    "StrategyRegistry",
    "AmazonStrategy",
    "EtsyStrategy",
    "OttoStrategy",
]
