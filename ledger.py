"""
ledger.py
Append-only payment ledger and invoice numbering (INV-YYYYMM-NNNN).

The ledger only writes payments. Applying a payment to a membership balance
is done by the reconciliation service. Entries that are not tied to a
membership (shop sales, salaries, donations) are written here directly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from errors import InvalidAmount, InvalidEntryType, InvalidPaymentMethod, InvoiceSequenceExhausted
from models import ZERO, LineItem, Payment, PaymentMethod, PaymentStatus, PaymentType, TransactionType
from pricing import MEMBERSHIP_FEE_LABEL
from repositories import PaymentRepository
from utils import to_decimal, year_month

logger = logging.getLogger(__name__)

MAX_INVOICES_PER_MONTH = 9999


def format_invoice_number(now: datetime, sequence: int) -> str:
    if not 1 <= sequence <= MAX_INVOICES_PER_MONTH:
        raise InvoiceSequenceExhausted(
            f"Invoice sequence {sequence} for {year_month(now)} is outside 1-{MAX_INVOICES_PER_MONTH}."
        )
    return f"INV-{year_month(now)}-{sequence:04d}"


def parse_amount(value) -> Decimal:
    try:
        amount = to_decimal(value)
    except ValueError as exc:
        raise InvalidAmount(str(exc)) from exc
    if amount <= ZERO:
        raise InvalidAmount(f"Payment amount must be greater than zero, got {amount}.")
    return amount


def parse_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise InvalidPaymentMethod(f"Unknown payment method {value!r} (expected one of: {allowed}).") from exc


def parse_payment_type(value) -> PaymentType:
    try:
        return PaymentType(value)
    except ValueError as exc:
        allowed = ", ".join(t.value for t in PaymentType)
        raise InvalidEntryType(f"Unknown payment type {value!r} (expected one of: {allowed}).") from exc


def parse_transaction_type(value) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidEntryType(f"Unknown transaction type {value!r} (expected credit or debit).") from exc


def _line_items(amount: Decimal, line_items) -> tuple[LineItem, ...]:
    if not line_items:
        return (LineItem(amount=amount, label=MEMBERSHIP_FEE_LABEL),)

    items = []
    for item in line_items:
        if isinstance(item, LineItem):
            label, raw = item.label, item.amount
        else:
            label, raw = item["label"], item["amount"]
        try:
            items.append(LineItem(amount=to_decimal(raw), label=str(label)))
        except ValueError as exc:
            raise InvalidAmount(f"Line item {label!r}: {exc}") from exc

    total = sum((i.amount for i in items), ZERO)
    if total != amount:
        raise InvalidAmount(f"Line items add up to {total}, payment amount is {amount}.")
    return tuple(items)


class PaymentLedger:
    def __init__(self, payments: PaymentRepository):
        self.payments = payments

    def _next_invoice_number(self, now: datetime, conn) -> str:
        # Numbers typed in by hand (imports, corrections) may already hold a slot.
        while True:
            number = format_invoice_number(now, self.payments.next_invoice_sequence(year_month(now), conn=conn))
            if not self.payments.invoice_exists(number, conn=conn):
                return number
            logger.warning("Invoice number %s already on file, skipping", number)

    def _append(self, conn, now: datetime | None, **fields) -> Payment:
        now = now or datetime.now()
        return self.payments.create(
            Payment(
                id=None,
                invoice_number=self._next_invoice_number(now, conn),
                status=PaymentStatus.PAID,
                created_at=now,
                **fields,
            ),
            conn=conn,
        )

    def record_payment(
        self,
        member_id: int | None,
        membership_id: int | None,
        amount,
        method,
        line_items=None,
        notes: str | None = None,
        now: datetime | None = None,
        created_by: str | None = None,
        conn=None,
    ) -> Payment:
        """
        Validate and append one membership credit entry.

        Pass the connection of the surrounding transaction so the invoice
        counter bump and the insert commit with the balance update. A clash on
        the invoice number raises DuplicateInvoice; retry with a fresh
        transaction.
        """
        amount = parse_amount(amount)
        method = parse_method(method)
        items = _line_items(amount, line_items)

        payment = self._append(
            conn,
            now,
            member_id=member_id,
            membership_id=membership_id,
            amount=amount,
            method=method,
            transaction_type=TransactionType.CREDIT,
            payment_type=PaymentType.MEMBERSHIP,
            line_items=items,
            notes=(notes or "").strip() or None,
            created_by=created_by,
        )
        logger.info(
            "Recorded payment %s: %s via %s for membership %s",
            payment.invoice_number,
            payment.amount,
            payment.method.value,
            membership_id,
        )
        return payment

    def record_entry(
        self,
        amount,
        method,
        transaction_type,
        payment_type,
        label: str | None = None,
        member_id: int | None = None,
        notes: str | None = None,
        now: datetime | None = None,
        created_by: str | None = None,
        conn=None,
    ) -> Payment:
        """
        Append income (credit) or an expense (debit) that belongs to no membership.
        Membership money goes through record_payment so the balance moves with it.
        """
        amount = parse_amount(amount)
        method = parse_method(method)
        transaction_type = parse_transaction_type(transaction_type)
        payment_type = parse_payment_type(payment_type)
        if payment_type == PaymentType.MEMBERSHIP:
            raise InvalidEntryType("Membership payments must be collected against a membership.")
        label = (label or "").strip() or payment_type.value.capitalize()

        payment = self._append(
            conn,
            now,
            member_id=member_id,
            membership_id=None,
            amount=amount,
            method=method,
            transaction_type=transaction_type,
            payment_type=payment_type,
            line_items=(LineItem(amount=amount, label=label),),
            notes=(notes or "").strip() or None,
            created_by=created_by,
        )
        logger.info(
            "Recorded %s entry %s: %s %s via %s",
            payment.payment_type.value,
            payment.invoice_number,
            payment.transaction_type.value,
            payment.amount,
            payment.method.value,
        )
        return payment
