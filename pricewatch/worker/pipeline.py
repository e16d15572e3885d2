"""Persist scrape outcomes, evaluate alerts and publish completions."""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PriceHistoryPoint, TrackedItem
from pricewatch.detect.engine import AlertEngine
from pricewatch.detect.rules import PriceObservation
from pricewatch.ingest.base import ProductSnapshot
from pricewatch.notify.publisher import ScrapeNotifier

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

# Descriptive fields copied from a snapshot only when it carries a value
DESCRIPTIVE_FIELDS = ("title", "description", "image_url", "brand", "category", "region")


class ScrapePipeline:
    """
    Applies scrape results to the tracked item.

    Success writes the item update and one price history point in a single
    transaction, then runs alert evaluation and the completion notification.
    Failure bumps the item's error counter.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        alert_engine: Optional[AlertEngine] = None,
        notifier: Optional[ScrapeNotifier] = None,
    ):
        self.session_factory = session_factory
        self.alert_engine = alert_engine or AlertEngine(session_factory)
        self.notifier = notifier

    async def record_success(self, item_id: int, snapshot: ProductSnapshot) -> bool:
        """
        Apply a successful scrape.

        Args:
            item_id: Tracked item id
            snapshot: Extracted product data

        Returns:
            False if the item no longer exists, True otherwise
        """
        now = snapshot.scraped_at or datetime.utcnow()
        price = snapshot.price
        availability = snapshot.availability.value if snapshot.availability else None

        async with self.session_factory() as session:
            item = await session.get(TrackedItem, item_id)
            if item is None:
                logger.warning(f"Tracked item {item_id} disappeared before its result was saved")
                return False

            observation = PriceObservation(
                price=price,
                availability=availability,
                previous_price=item.current_price,
                previous_availability=item.availability,
                lowest_price=item.lowest_price,
            )

            for field_name in DESCRIPTIVE_FIELDS:
                value = getattr(snapshot, field_name)
                if value is not None:
                    setattr(item, field_name, value)

            item.current_price = price
            item.currency = snapshot.currency or item.currency
            item.availability = availability

            if item.lowest_price is None or price < item.lowest_price:
                item.lowest_price = price
                item.lowest_price_at = now
            if item.highest_price is None or price > item.highest_price:
                item.highest_price = price
                item.highest_price_at = now

            item.consecutive_error_count = 0
            item.last_error = None
            item.last_scraped_at = now

            session.add(
                PriceHistoryPoint(
                    item_id=item.id,
                    recorded_at=now,
                    price=price,
                    currency=snapshot.currency,
                    availability=availability,
                    seller_type=snapshot.seller_type,
                    seller_name=snapshot.seller_name,
                    shipping_cost=snapshot.shipping_cost,
                )
            )
            await session.commit()

        logger.info(f"Saved price {price} {snapshot.currency} for item {item_id}")

        # The item update is committed; later steps must not turn it into a failure.
        try:
            await self.alert_engine.evaluate(item_id, observation, now=now)
        except Exception as e:
            logger.error(f"Alert evaluation failed for item {item_id}: {e}", exc_info=True)

        if self.notifier is not None:
            try:
                await self.notifier.publish_completed(item_id, price, snapshot.title, now)
            except Exception as e:
                logger.error(f"Completion notification failed for item {item_id}: {e}", exc_info=True)

        return True

    async def record_failure(self, item_id: int, error: str) -> bool:
        """
        Record a terminal scrape failure.

        Args:
            item_id: Tracked item id
            error: Error message (truncated for storage)

        Returns:
            False if the item no longer exists, True otherwise
        """
        async with self.session_factory() as session:
            item = await session.get(TrackedItem, item_id)
            if item is None:
                logger.warning(f"Tracked item {item_id} disappeared before its failure was saved")
                return False

            item.consecutive_error_count = (item.consecutive_error_count or 0) + 1
            item.last_error = (error or "")[:MAX_ERROR_LENGTH]
            item.last_scraped_at = datetime.utcnow()
            await session.commit()

            logger.info(
                f"Recorded failure for item {item_id} "
                f"({item.consecutive_error_count} consecutive): {item.last_error}"
            )
        return True
