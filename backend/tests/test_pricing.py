"""
Tiered seat pricing: band boundaries, half-up rounding and input validation.
"""
import pytest

from services.billing_errors import InvalidPlanType, InvalidSeatCount
from services.pricing import calculate_price, get_discount_rate, get_parent_plan


@pytest.mark.parametrize(
    "seats,rate",
    [
        (1, 0.0),
        (499, 0.0),
        (500, 0.05),
        (999, 0.05),
        (1000, 0.07),
        (1999, 0.07),
        (2000, 0.09),
        (2999, 0.09),
        (3000, 0.13),
        (4999, 0.13),
        (5000, 0.15),
        (250000, 0.15),
    ],
)
def test_discount_band_boundaries(seats, rate):
    assert get_discount_rate(seats) == rate


def test_single_basic_seat_is_undiscounted():
    quote = calculate_price(1, "basic")
    assert quote.per_seat_price == 4990
    assert quote.total_amount == 4990
    assert quote.discount_rate == 0.0
    assert quote.discount_text == "Standard pricing"


def test_premium_1500_seats():
    quote = calculate_price(1500, "premium")
    assert quote.discount_rate == 0.07
    assert quote.per_seat_price == 5571  # 599 * 0.93 * 10 = 5570.7
    assert quote.total_amount == 8356500


def test_half_cent_rounds_up():
    # 499 * 0.95 * 10 = 4740.5 exactly
    quote = calculate_price(500, "basic")
    assert quote.per_seat_price == 4741
    assert quote.total_amount == 4741 * 500


def test_top_band():
    quote = calculate_price(5000, "premium")
    assert quote.per_seat_price == 5092  # 5091.5
    assert quote.total_amount == 5092 * 5000
    assert quote.discount_text == "15% OFF"


def test_total_is_per_seat_times_count():
    for seats in (7, 640, 1234, 2500, 4000):
        quote = calculate_price(seats, "basic")
        assert quote.total_amount == quote.per_seat_price * seats


@pytest.mark.parametrize("seats", [0, -1, -500])
def test_non_positive_seat_count_rejected(seats):
    with pytest.raises(InvalidSeatCount):
        calculate_price(seats, "basic")


@pytest.mark.parametrize("seats", [1.5, "10", None, True])
def test_non_integer_seat_count_rejected(seats):
    with pytest.raises(InvalidSeatCount):
        calculate_price(seats, "basic")


def test_unknown_plan_rejected():
    with pytest.raises(InvalidPlanType):
        calculate_price(10, "gold")


def test_parent_plan_lookup():
    plan = get_parent_plan("singleYearly")
    assert plan["plan_type"] == "singleYearly"
    assert plan["amount"] == 9500
    assert plan["interval"] == "year"

    with pytest.raises(InvalidPlanType):
        get_parent_plan("basic")
