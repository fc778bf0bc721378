"""
lifecycle.py
Membership state machine: pending -> active -> expired -> (renewed) pending/active.

Transitions are pure: they validate the source state and return a new
Membership value. Persisting the result is the caller's job, so a rejected
transition never leaves anything half-written.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal

from errors import InvalidAmount, InvalidStateTransition, SamePlan
from models import ZERO, Membership, MembershipStatus, Plan
from pricing import compute_membership_price, period_end
from utils import to_decimal

logger = logging.getLogger(__name__)


def _amount(value, allow_zero: bool) -> Decimal:
    try:
        amount = to_decimal(value if value is not None else 0)
    except ValueError as exc:
        raise InvalidAmount(str(exc)) from exc
    if amount < ZERO or (amount == ZERO and not allow_zero):
        raise InvalidAmount(f"Payment amount must be greater than zero, got {amount}.")
    return amount


def status_for(amount_paid: Decimal, amount_due: Decimal) -> MembershipStatus:
    return MembershipStatus.ACTIVE if amount_paid >= amount_due else MembershipStatus.PENDING


def _require(membership: Membership, expected: MembershipStatus, action: str) -> None:
    if membership.status != expected:
        raise InvalidStateTransition(action, membership.status.value)


def create(
    member_id: int | None,
    plan: Plan,
    start_date: date,
    pay_now=None,
    notes: str | None = None,
    created_by: str | None = None,
) -> Membership:
    """Open a first period for a member. `pay_now` may be zero/None."""
    paid = _amount(pay_now, allow_zero=True)
    price = compute_membership_price(plan)
    return Membership(
        id=None,
        member_id=member_id,
        plan_id=plan.id,
        start_date=start_date,
        end_date=period_end(start_date, plan),
        amount_due=price.amount_due,
        amount_paid=paid,
        admission_fee_included=price.admission_fee_included,
        status=status_for(paid, price.amount_due),
        notes=notes,
        created_by=created_by,
    )


def renew_from_expired(membership: Membership, plan: Plan, payment_amount) -> Membership:
    """
    Roll an expired membership into its next period.
    The new period starts exactly where the old one ended and is repriced.
    """
    _require(membership, MembershipStatus.EXPIRED, "renew")
    paid = _amount(payment_amount, allow_zero=False)
    price = compute_membership_price(plan)
    start = membership.end_date
    return replace(
        membership,
        start_date=start,
        end_date=period_end(start, plan),
        amount_due=price.amount_due,
        amount_paid=paid,
        admission_fee_included=price.admission_fee_included,
        status=status_for(paid, price.amount_due),
    )


def apply_payment_to_pending(membership: Membership, payment_amount) -> Membership:
    _require(membership, MembershipStatus.PENDING, "top up")
    paid = membership.amount_paid + _amount(payment_amount, allow_zero=False)
    return replace(membership, amount_paid=paid, status=status_for(paid, membership.amount_due))


def change_plan(
    membership: Membership,
    new_plan: Plan,
    new_start_date: date,
    pay_now=None,
    created_by: str | None = None,
) -> Membership:
    """
    Start a separate period on a different plan.
    The current record is not touched; it stays behind as history.
    """
    if membership.plan_id == new_plan.id:
        raise SamePlan(new_plan.id)
    if membership.status == MembershipStatus.CANCELLED:
        raise InvalidStateTransition("change the plan of", membership.status.value)
    return create(
        membership.member_id,
        new_plan,
        new_start_date,
        pay_now=pay_now,
        notes=membership.notes,
        created_by=created_by or membership.created_by,
    )


def sweep_expirations(memberships, now: date, reset_paid: bool = True, conn=None) -> int:
    """
    Expire every membership whose end date has passed.
    `memberships` is a MembershipRepository. Re-running it changes nothing.
    """
    count = memberships.expire_overdue(now, reset_paid=reset_paid, conn=conn)
    if count:
        logger.info("Expired %d membership(s) ending before %s", count, now.isoformat())
    return count
