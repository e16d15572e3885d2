"""Shared scrape data types."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Marketplace(str, Enum):
    """Supported marketplaces."""

    AMAZON = "amazon"
    ETSY = "etsy"
    OTTO = "otto"


class Availability(str, Enum):
    """Normalized availability states."""

    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    LIMITED = "limited"
    UNKNOWN = "unknown"


@dataclass
class ListingRef:
    """Canonical identity resolved from a product URL."""

    marketplace: Marketplace
    marketplace_id: str
    region: Optional[str] = None


@dataclass
class ProductSnapshot:
    """Normalized product data from one successful scrape."""

    marketplace: Marketplace
    marketplace_id: str
    url: str
    price: Decimal
    currency: str = "EUR"
    availability: Availability = Availability.UNKNOWN
    region: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    seller_type: Optional[str] = None  # marketplace, third_party_new, third_party_used
    seller_name: Optional[str] = None
    shipping_cost: Optional[Decimal] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    scraped_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ScrapeOutcome:
    """Result of one executor attempt."""

    success: bool
    snapshot: Optional[ProductSnapshot] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    duration_ms: float = 0.0
    path: str = "browser"  # "render_api" or "browser"

    @classmethod
    def failed(
        cls,
        error: str,
        error_type: str = "Exception",
        retryable: bool = True,
        duration_ms: float = 0.0,
        path: str = "browser",
    ) -> "ScrapeOutcome":
        return cls(
            success=False,
            error=error,
            error_type=error_type,
            retryable=retryable,
            duration_ms=duration_ms,
            path=path,
        )


@dataclass
class ScrapeJob:
    """Ephemeral unit of work for the queue."""

    item_id: int
    url: str
    marketplace: str
    priority: int = 5  # 0-10, higher = sooner
    attempt: int = 0  # Attempts already made

    @property
    def name(self) -> str:
        return f"scrape-{self.marketplace}:{self.item_id}"
