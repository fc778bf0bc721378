"""
pricing.py
Membership pricing from a plan definition.

Prices are recomputed for every new period; plans may be repriced between
periods, so nothing here is cached.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from errors import InvalidPlanData
from models import ZERO, LineItem, Plan
from utils import add_days, to_decimal

MEMBERSHIP_FEE_LABEL = "Membership Fee"
ADMISSION_FEE_LABEL = "Admission Fee"


@dataclass(frozen=True)
class Price:
    amount_due: Decimal
    admission_fee_included: bool


def plan_money(plan: Plan, name: str) -> Decimal:
    """Read one money field of `plan`; raises InvalidPlanData unless it is a non-negative amount."""
    raw = getattr(plan, name)
    try:
        value = to_decimal(raw)
    except ValueError as exc:
        raise InvalidPlanData(f"Plan {plan.id}: {name} is not a valid amount ({exc}).") from exc
    if value < ZERO:
        raise InvalidPlanData(f"Plan {plan.id}: {name} must not be negative ({value}).")
    return value


def compute_membership_price(plan: Plan) -> Price:
    """
    Billable total for one period of `plan`.

    The discounted price wins whenever it is positive, otherwise the base
    price applies. The admission fee is added on top for every new period.
    """
    base = plan_money(plan, "base_price")
    discounted = plan_money(plan, "discounted_price")
    admission = plan_money(plan, "admission_fee")

    price = discounted if discounted > ZERO else base
    return Price(amount_due=price + admission, admission_fee_included=True)


def period_end(start_date: date, plan: Plan) -> date:
    if not isinstance(plan.duration_days, int) or isinstance(plan.duration_days, bool) or plan.duration_days <= 0:
        raise InvalidPlanData(f"Plan {plan.id}: duration_days must be a positive integer.")
    return add_days(start_date, plan.duration_days)


def split_line_items(amount: Decimal, plan: Plan) -> tuple[LineItem, ...]:
    """
    Itemise a payment that opens a new period.
    The admission fee is covered first; whatever is left is membership fee.
    """
    admission = min(plan_money(plan, "admission_fee"), amount)
    membership = amount - admission

    items = []
    if membership > ZERO:
        items.append(LineItem(amount=membership, label=MEMBERSHIP_FEE_LABEL))
    if admission > ZERO:
        items.append(LineItem(amount=admission, label=ADMISSION_FEE_LABEL))
    return tuple(items)
