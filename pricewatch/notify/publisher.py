"""Scrape completion notifications over Redis pub/sub."""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import redis.asyncio as redis

from pricewatch.config import settings
from pricewatch.metrics import record_notification

logger = logging.getLogger(__name__)


def completion_message(
    item_id: int,
    price: Decimal,
    title: Optional[str],
    timestamp: datetime,
) -> str:
    """Serialize a completion event for web-tier subscribers."""
    return json.dumps(
        {
            "itemId": item_id,
            "price": float(price),
            "title": title,
            "timestamp": timestamp.isoformat(),
        }
    )


class ScrapeNotifier:
    """Publishes scrape-completed events. Delivery is best-effort."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.scrape_completed_channel
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish_completed(
        self,
        item_id: int,
        price: Decimal,
        title: Optional[str],
        timestamp: datetime,
    ) -> bool:
        """
        Publish a scrape-completed event.

        Errors are logged and swallowed; persistence never depends on
        notification delivery.

        Returns:
            True if the message was handed to Redis
        """
        try:
            client = await self._get_redis()
            await client.publish(self.channel, completion_message(item_id, price, title, timestamp))
        except Exception as e:
            record_notification(False)
            logger.warning(f"Failed to publish completion for item {item_id}: {e}")
            return False

        record_notification(True)
        return True
