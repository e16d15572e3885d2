"""Alert rule definitions and trigger predicates."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class AlertKind(str, Enum):
    """Types of user alert rules."""

    PRICE_BELOW = "price_below"  # current <= target price
    PRICE_ABOVE = "price_above"  # current >= target price
    PRICE_DROP_PCT = "price_drop_pct"  # dropped by >= target % since last observation
    PRICE_RISE_PCT = "price_rise_pct"  # rose by >= target % since last observation
    ANY_CHANGE = "any_change"
    BACK_IN_STOCK = "back_in_stock"
    ALL_TIME_LOW = "all_time_low"  # below the pre-update lowest price


PRICE_TARGET_KINDS = frozenset({AlertKind.PRICE_BELOW, AlertKind.PRICE_ABOVE})
PERCENT_TARGET_KINDS = frozenset({AlertKind.PRICE_DROP_PCT, AlertKind.PRICE_RISE_PCT})

IN_STOCK_STATES = frozenset({"in_stock", "limited"})


def target_error(
    kind: str,
    target_price: Optional[Decimal],
    target_percentage: Optional[Decimal],
) -> Optional[str]:
    """
    Check that a rule's target matches its kind.

    Absolute-price kinds need a price target, percentage kinds need a
    percentage target, the remaining kinds take neither.

    Returns:
        Description of the problem, or None if the rule is consistent
    """
    try:
        alert_kind = AlertKind(kind)
    except ValueError:
        return f"Unknown alert kind: {kind}"

    if alert_kind in PRICE_TARGET_KINDS:
        if target_price is None:
            return f"{alert_kind.value} requires a target price"
        if target_percentage is not None:
            return f"{alert_kind.value} does not take a target percentage"
    elif alert_kind in PERCENT_TARGET_KINDS:
        if target_percentage is None:
            return f"{alert_kind.value} requires a target percentage"
        if target_price is not None:
            return f"{alert_kind.value} does not take a target price"
    elif target_price is not None or target_percentage is not None:
        return f"{alert_kind.value} does not take a target"

    return None


@dataclass
class PriceObservation:
    """What the pipeline knows about an item when a new price arrives.

    ``previous_*`` and ``lowest_price`` are the values stored on the item
    before this observation was written.
    """

    price: Decimal
    availability: Optional[str] = None
    previous_price: Optional[Decimal] = None
    previous_availability: Optional[str] = None
    lowest_price: Optional[Decimal] = None


def _percent_change(previous: Decimal, current: Decimal) -> Decimal:
    return (current - previous) / previous * 100


def check_rule(
    kind: str,
    observation: PriceObservation,
    target_price: Optional[Decimal] = None,
    target_percentage: Optional[Decimal] = None,
) -> tuple[bool, str]:
    """
    Check if an observation fires a rule.

    Args:
        kind: Alert kind value
        observation: New price plus pre-update item state
        target_price: Absolute target for price_below / price_above
        target_percentage: Percentage target for price_drop_pct / price_rise_pct

    Returns:
        Tuple of (triggered: bool, reason: str)
    """
    kind = AlertKind(kind)
    price = observation.price
    previous = observation.previous_price

    if kind == AlertKind.PRICE_BELOW:
        if target_price is not None and price <= target_price:
            return True, f"Price {price:.2f} <= target {target_price:.2f}"

    elif kind == AlertKind.PRICE_ABOVE:
        if target_price is not None and price >= target_price:
            return True, f"Price {price:.2f} >= target {target_price:.2f}"

    elif kind == AlertKind.PRICE_DROP_PCT:
        if target_percentage is None or previous is None or previous <= 0:
            return False, "No previous price to compare"
        dropped = -_percent_change(previous, price)
        if dropped >= target_percentage:
            return True, f"Dropped {dropped:.1f}% from {previous:.2f}"

    elif kind == AlertKind.PRICE_RISE_PCT:
        if target_percentage is None or previous is None or previous <= 0:
            return False, "No previous price to compare"
        rose = _percent_change(previous, price)
        if rose >= target_percentage:
            return True, f"Rose {rose:.1f}% from {previous:.2f}"

    elif kind == AlertKind.ANY_CHANGE:
        if previous is not None and price != previous:
            return True, f"Changed from {previous:.2f} to {price:.2f}"

    elif kind == AlertKind.BACK_IN_STOCK:
        if (
            observation.previous_availability == "out_of_stock"
            and observation.availability in IN_STOCK_STATES
        ):
            return True, "Back in stock"

    elif kind == AlertKind.ALL_TIME_LOW:
        lowest = observation.lowest_price
        if lowest is None:
            return True, "First observed price"
        if price < lowest:
            return True, f"New all-time low {price:.2f} (was {lowest:.2f})"

    return False, "Rule not triggered"
