"""Pricing - tiered seat pricing for school licences and the parent plan table.

Single source of truth for amounts sent to the payment provider. All amounts
are integer cents.

Seat pricing:
    per_seat_price = round(base_price(plan) * (1 - discount) * MONTHS_PER_YEAR)
    total_amount   = per_seat_price * seat_count

Rounding is half-up on the exact decimal product so that e.g. 4740.5 becomes
4741 regardless of binary float representation.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any

from models import SeatPlanType, ParentPlanType
from services.billing_errors import InvalidSeatCount, InvalidPlanType

# Monthly base price per seat, in cents
BASE_PRICES = {
    SeatPlanType.BASIC: 499,
    SeatPlanType.PREMIUM: 599,
}

# A school licence covers the 10-month academic year
MONTHS_PER_YEAR = 10

# (min_seats, max_seats or None, discount) - inclusive bands
DISCOUNT_BANDS = [
    (1, 499, Decimal("0")),
    (500, 999, Decimal("0.05")),
    (1000, 1999, Decimal("0.07")),
    (2000, 2999, Decimal("0.09")),
    (3000, 4999, Decimal("0.13")),
    (5000, None, Decimal("0.15")),
]

PARENT_PLANS: Dict[ParentPlanType, Dict[str, Any]] = {
    ParentPlanType.SINGLE_MONTHLY: {
        "name": "Monthly Plan",
        "amount": 999,
        "interval": "month",
        "description": "Monthly Plan - Complete access to all cyber safety missions",
    },
    ParentPlanType.SINGLE_YEARLY: {
        "name": "Yearly Plan",
        "amount": 9500,
        "interval": "year",
        "description": "Yearly Plan - Complete access with two months free (20% savings)",
    },
    ParentPlanType.MULTIPLE_MONTHLY: {
        "name": "Family Monthly Plan",
        "amount": 1299,
        "interval": "month",
        "description": "Family Plan - Access for up to 3 family members",
    },
    ParentPlanType.MULTIPLE_YEARLY: {
        "name": "Family Yearly Plan",
        "amount": 12500,
        "interval": "year",
        "description": "Family Plan - Access for up to 3 family members",
    },
}


@dataclass(frozen=True)
class PriceQuote:
    seat_count: int
    plan_type: str
    discount_rate: float  # fraction, 0.07 == 7%
    per_seat_price: int  # cents for the whole academic year
    total_amount: int  # cents

    @property
    def discount_text(self) -> str:
        if self.discount_rate > 0:
            return f"{round(self.discount_rate * 100)}% OFF"
        return "Standard pricing"


def _validate_seat_count(seat_count) -> int:
    # bool is an int subclass; True must not pass as one seat
    if isinstance(seat_count, bool) or not isinstance(seat_count, int):
        raise InvalidSeatCount(f"Seat count must be a positive integer, got {seat_count!r}")
    if seat_count <= 0:
        raise InvalidSeatCount(f"Seat count must be greater than zero, got {seat_count}")
    return seat_count


def _resolve_seat_plan(plan_type) -> SeatPlanType:
    try:
        return SeatPlanType(plan_type)
    except ValueError:
        raise InvalidPlanType(f"Invalid plan type: {plan_type!r}. Expected one of: basic, premium")


def _discount_for(seat_count: int) -> Decimal:
    for low, high, discount in DISCOUNT_BANDS:
        if seat_count >= low and (high is None or seat_count <= high):
            return discount
    raise InvalidSeatCount(f"No discount band for seat count {seat_count}")


def get_discount_rate(seat_count: int) -> float:
    """Discount fraction for a seat count (0.0 - 0.15)."""
    return float(_discount_for(_validate_seat_count(seat_count)))


def calculate_price(seat_count: int, plan_type: str) -> PriceQuote:
    """Compute the tiered price for a seat purchase. Pure and deterministic."""
    seat_count = _validate_seat_count(seat_count)
    plan = _resolve_seat_plan(plan_type)
    discount = _discount_for(seat_count)

    exact = Decimal(BASE_PRICES[plan]) * (Decimal(1) - discount) * MONTHS_PER_YEAR
    per_seat_price = int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return PriceQuote(
        seat_count=seat_count,
        plan_type=plan.value,
        discount_rate=float(discount),
        per_seat_price=per_seat_price,
        total_amount=per_seat_price * seat_count,
    )


def get_parent_plan(plan_type: str) -> Dict[str, Any]:
    """Plan definition for a parent subscription; raises InvalidPlanType."""
    try:
        plan = ParentPlanType(plan_type)
    except ValueError:
        valid = ", ".join(p.value for p in ParentPlanType)
        raise InvalidPlanType(f"Invalid plan type: {plan_type!r}. Expected one of: {valid}")
    return {"plan_type": plan.value, **PARENT_PLANS[plan]}
