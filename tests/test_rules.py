"""Tests for alert rule predicates."""

from decimal import Decimal

import pytest

from pricewatch.detect.rules import AlertKind, PriceObservation, check_rule, target_error


def obs(price, previous=None, availability="in_stock", previous_availability=None, lowest=None):
    return PriceObservation(
        price=Decimal(price),
        availability=availability,
        previous_price=Decimal(previous) if previous is not None else None,
        previous_availability=previous_availability,
        lowest_price=Decimal(lowest) if lowest is not None else None,
    )


def test_price_below_fires_at_or_under_target():
    assert check_rule("price_below", obs("85.00"), target_price=Decimal("90.00"))[0]
    assert check_rule("price_below", obs("90.00"), target_price=Decimal("90.00"))[0]
    assert not check_rule("price_below", obs("90.01"), target_price=Decimal("90.00"))[0]


def test_price_above_fires_at_or_over_target():
    assert check_rule("price_above", obs("110"), target_price=Decimal("100"))[0]
    assert not check_rule("price_above", obs("99.99"), target_price=Decimal("100"))[0]


def test_price_drop_pct():
    triggered, reason = check_rule("price_drop_pct", obs("80", previous="100"), target_percentage=Decimal("20"))
    assert triggered
    assert "20.0%" in reason
    assert not check_rule("price_drop_pct", obs("81", previous="100"), target_percentage=Decimal("20"))[0]


def test_price_rise_pct():
    assert check_rule("price_rise_pct", obs("115", previous="100"), target_percentage=Decimal("15"))[0]
    assert not check_rule("price_rise_pct", obs("110", previous="100"), target_percentage=Decimal("15"))[0]


@pytest.mark.parametrize("previous", [None, "0"])
def test_percentage_kinds_need_positive_previous_price(previous):
    observation = obs("50", previous=previous)
    assert not check_rule("price_drop_pct", observation, target_percentage=Decimal("1"))[0]
    assert not check_rule("price_rise_pct", observation, target_percentage=Decimal("1"))[0]


def test_any_change_needs_known_previous_price():
    assert check_rule("any_change", obs("10", previous="11"))[0]
    assert not check_rule("any_change", obs("10", previous="10"))[0]
    assert not check_rule("any_change", obs("10"))[0]


@pytest.mark.parametrize(
    "previous_availability,availability,expected",
    [
        ("out_of_stock", "in_stock", True),
        ("out_of_stock", "limited", True),
        ("out_of_stock", "out_of_stock", False),
        ("in_stock", "in_stock", False),
        (None, "in_stock", False),
    ],
)
def test_back_in_stock(previous_availability, availability, expected):
    observation = obs("10", availability=availability, previous_availability=previous_availability)
    assert check_rule("back_in_stock", observation)[0] is expected


def test_all_time_low_uses_pre_update_lowest():
    assert check_rule("all_time_low", obs("49.99", lowest="50.00"))[0]
    assert not check_rule("all_time_low", obs("50.00", lowest="50.00"))[0]
    assert check_rule("all_time_low", obs("50.00"))[0]


def test_target_error_matches_kind():
    assert target_error("price_below", Decimal("10"), None) is None
    assert target_error("price_drop_pct", None, Decimal("10")) is None
    assert target_error("any_change", None, None) is None

    assert "requires a target price" in target_error("price_below", None, None)
    assert "does not take a target percentage" in target_error("price_above", Decimal("1"), Decimal("1"))
    assert "requires a target percentage" in target_error("price_rise_pct", None, None)
    assert "does not take a target" in target_error("all_time_low", Decimal("1"), None)
    assert "Unknown alert kind" in target_error("bogus", None, None)


def test_alert_kind_values():
    assert {kind.value for kind in AlertKind} == {
        "price_below",
        "price_above",
        "price_drop_pct",
        "price_rise_pct",
        "any_change",
        "back_in_stock",
        "all_time_low",
    }
