"""Per-marketplace rate limiting for scrape dispatch."""

import asyncio
import logging
import math
import time
from collections import defaultdict
from typing import Optional

from pricewatch.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Minimum-interval limiter keyed by marketplace.

    Each marketplace is allowed ``rpm`` requests per minute, spaced evenly:
    a request waits until ``60 / rpm`` seconds have passed since the
    previous request for the same marketplace.
    """

    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        default_rpm: Optional[int] = None,
    ):
        self.limits = dict(settings.rate_limits if limits is None else limits)
        self.default_rpm = default_rpm or settings.default_rate_limit
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}

    def rpm_for(self, marketplace: str) -> int:
        rpm = self.limits.get(marketplace, self.default_rpm)
        return max(int(rpm), 1)

    def interval_for(self, marketplace: str) -> float:
        """Minimum seconds between two requests to the marketplace."""
        return 60.0 / self.rpm_for(marketplace)

    def delay_ms_for(self, marketplace: str) -> int:
        """Enqueue delay in milliseconds, ceil(60000 / rpm)."""
        return math.ceil(60000 / self.rpm_for(marketplace))

    async def acquire(self, marketplace: str) -> float:
        """
        Wait until a request to the marketplace is allowed.

        Args:
            marketplace: Marketplace key

        Returns:
            Seconds spent waiting
        """
        async with self.locks[marketplace]:
            now = time.monotonic()
            last_time = self.last_request.get(marketplace)
            waited = 0.0
            if last_time is not None:
                wait_needed = self.interval_for(marketplace) - (now - last_time)
                if wait_needed > 0:
                    logger.debug(f"Rate limit for {marketplace}: waiting {wait_needed:.2f}s")
                    await asyncio.sleep(wait_needed)
                    waited = wait_needed

            self.last_request[marketplace] = time.monotonic()
            return waited

    def reset(self, marketplace: Optional[str] = None) -> None:
        if marketplace is None:
            self.last_request.clear()
        else:
            self.last_request.pop(marketplace, None)
