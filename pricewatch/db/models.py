"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pricewatch.detect.rules import target_error


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TrackedItem(Base):
    """Marketplace product under continuous price observation."""

    __tablename__ = "tracked_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    marketplace: Mapped[str] = mapped_column(String(32), nullable=False)
    marketplace_id: Mapped[str] = mapped_column(String(255), nullable=False)  # ASIN, listing id, article no.
    region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # de, us, uk, ...
    url: Mapped[str] = mapped_column(Text, nullable=False)

    # Descriptive fields (refreshed on every successful scrape)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Price-derived fields (written by the pipeline only)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    availability: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    lowest_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    lowest_price_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    highest_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    highest_price_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Scrape control fields (written by the scheduler and pipeline)
    refetch_interval_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    base_priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # 1-10, configured
    priority_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # 0-10, last computed
    consecutive_error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    price_history: Mapped[list["PriceHistoryPoint"]] = relationship(
        "PriceHistoryPoint", back_populates="item", cascade="all, delete-orphan"
    )
    alert_rules: Mapped[list["AlertRule"]] = relationship(
        "AlertRule", back_populates="item", cascade="all, delete-orphan"
    )
    watchers: Mapped[list["ItemWatcher"]] = relationship(
        "ItemWatcher", back_populates="item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("marketplace", "marketplace_id", name="uq_item_marketplace_id"),
        CheckConstraint("priority_score >= 0 AND priority_score <= 10", name="ck_item_priority_score"),
    )


class ItemWatcher(Base):
    """A user tracking an item (maintained by the web tier)."""

    __tablename__ = "item_watchers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="watchers")

    __table_args__ = (UniqueConstraint("item_id", "user_id", name="uq_watcher_item_user"),)


class PriceHistoryPoint(Base):
    """Append-only price observation."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id"), nullable=False
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    availability: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    seller_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # marketplace, third_party_new, ...
    seller_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="price_history")

    __table_args__ = (Index("ix_price_history_item_time", "item_id", "recorded_at"),)


class AlertRule(Base):
    """User alert attached to one tracked item."""

    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    target_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)

    # Trigger state
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_triggered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_triggered_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    notify_once: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="alert_rules")
    history: Mapped[list["AlertHistory"]] = relationship(
        "AlertHistory", back_populates="alert", cascade="all, delete-orphan"
    )

    def target_error(self) -> Optional[str]:
        """Return why the target is inconsistent with the kind, or None."""
        return target_error(self.kind, self.target_price, self.target_percentage)


class AlertHistory(Base):
    """Immutable record of one alert firing."""

    __tablename__ = "alert_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alert_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alert_rules.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id"), nullable=False
    )
    old_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    new_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    alert: Mapped["AlertRule"] = relationship("AlertRule", back_populates="history")
