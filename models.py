"""
models.py
Domain records (plans, members, memberships, payments) and their enums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

ZERO = Decimal("0")


class MembershipStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PARTIALLY_PAID = "partially-paid"
    UNPAID = "unpaid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online"
    OTHER = "other"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class PaymentType(str, Enum):
    MEMBERSHIP = "membership"
    PRODUCT = "product"
    SERVICE = "service"
    SALARY = "salary"
    DONATION = "donation"
    OTHER = "other"


@dataclass(frozen=True)
class Plan:
    id: int | None
    name: str
    duration_days: int
    base_price: Decimal
    discounted_price: Decimal
    admission_fee: Decimal
    active: bool = True
    description: str | None = None


@dataclass(frozen=True)
class Member:
    id: int | None
    member_code: str
    full_name: str
    phone: str
    email: str | None
    join_date: date
    membership_id: int | None = None
    status: str = "active"  # 'active' or 'inactive'


@dataclass(frozen=True)
class Membership:
    id: int | None
    member_id: int | None
    plan_id: int
    start_date: date
    end_date: date
    amount_due: Decimal
    amount_paid: Decimal
    admission_fee_included: bool
    status: MembershipStatus
    notes: str | None = None
    created_by: str | None = None
    payment_id: int | None = None
    version: int = 0

    @property
    def remaining(self) -> Decimal:
        return max(self.amount_due - self.amount_paid, ZERO)


@dataclass(frozen=True)
class LineItem:
    amount: Decimal
    label: str


@dataclass(frozen=True)
class Payment:
    id: int | None
    member_id: int | None
    membership_id: int | None
    amount: Decimal
    method: PaymentMethod
    invoice_number: str
    transaction_type: TransactionType
    status: PaymentStatus
    created_at: datetime
    payment_type: PaymentType = PaymentType.MEMBERSHIP
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)
    notes: str | None = None
    created_by: str | None = None


@dataclass(frozen=True)
class Balance:
    membership_id: int
    amount_due: Decimal
    amount_paid: Decimal
    remaining: Decimal
    credit: Decimal  # overpayment kept on the period, never carried forward
    status: MembershipStatus
