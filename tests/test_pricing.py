from datetime import date
from decimal import Decimal

import pytest

from errors import InvalidPlanData
from models import LineItem, Plan
from pricing import compute_membership_price, period_end, split_line_items


def make_plan(base="1000", discounted="800", admission="200", duration=30):
    return Plan(
        id=1,
        name="Monthly",
        duration_days=duration,
        base_price=base,
        discounted_price=discounted,
        admission_fee=admission,
    )


def test_discounted_price_plus_admission():
    price = compute_membership_price(make_plan())
    assert price.amount_due == Decimal("1000.00")
    assert price.admission_fee_included is True


def test_base_price_when_no_discount():
    price = compute_membership_price(make_plan(discounted="0"))
    assert price.amount_due == Decimal("1200.00")


def test_same_plan_same_price():
    plan = make_plan(base="999.99", discounted="0", admission="0.01")
    assert compute_membership_price(plan) == compute_membership_price(plan)
    assert compute_membership_price(plan).amount_due == Decimal("1000.00")


@pytest.mark.parametrize(
    "field, value",
    [
        ("base", "-1"),
        ("discounted", "-5"),
        ("admission", "-0.01"),
        ("base", "abc"),
        ("admission", None),
    ],
)
def test_bad_prices_are_rejected(field, value):
    with pytest.raises(InvalidPlanData):
        compute_membership_price(make_plan(**{field: value}))


def test_period_end_adds_duration_days():
    assert period_end(date(2024, 1, 31), make_plan(duration=30)) == date(2024, 3, 1)


def test_period_end_rejects_zero_duration():
    with pytest.raises(InvalidPlanData):
        period_end(date(2024, 1, 1), make_plan(duration=0))


def test_split_covers_admission_fee_first():
    items = split_line_items(Decimal("1000.00"), make_plan())
    assert items == (
        LineItem(amount=Decimal("800.00"), label="Membership Fee"),
        LineItem(amount=Decimal("200.00"), label="Admission Fee"),
    )


def test_split_small_payment_is_all_admission():
    items = split_line_items(Decimal("150.00"), make_plan())
    assert items == (LineItem(amount=Decimal("150.00"), label="Admission Fee"),)


def test_split_without_admission_fee():
    items = split_line_items(Decimal("500.00"), make_plan(admission="0"))
    assert items == (LineItem(amount=Decimal("500.00"), label="Membership Fee"),)
