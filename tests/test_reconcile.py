import threading
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from config import Settings
from errors import (
    ConcurrentModification,
    InvalidAmount,
    InvalidEntryType,
    InvalidPaymentMethod,
    MemberNotFound,
    MembershipCancelled,
    MembershipNotFound,
    NoBalanceDue,
    PersistenceError,
    PlanInactive,
    PlanNotFound,
    SamePlan,
    ValidationError,
)
from models import LineItem, MembershipStatus, PaymentMethod, PaymentType, TransactionType
from notify import Notifier
from reconcile import MembershipService

START = date(2024, 6, 1)


def _membership_count(database):
    return database.fetch_one("SELECT COUNT(*) AS c FROM memberships")["c"]


def _payment_count(database):
    return database.fetch_one("SELECT COUNT(*) AS c FROM payments")["c"]


# ---------- enrolment ----------

def test_full_payment_on_enrolment(service, member, monthly_plan):
    result = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")

    m = result.membership
    assert m.amount_due == Decimal("1000.00")
    assert m.amount_paid == Decimal("1000.00")
    assert m.status == MembershipStatus.ACTIVE
    assert m.end_date == START + timedelta(days=30)
    assert m.payment_id == result.payment.id

    assert result.payment.invoice_number == "INV-202406-0001"
    assert result.payment.membership_id == m.id
    assert result.payment.line_items == (
        LineItem(Decimal("800.00"), "Membership Fee"),
        LineItem(Decimal("200.00"), "Admission Fee"),
    )
    assert service.members.get(member.id).membership_id == m.id


def test_partial_payment_on_enrolment(service, member, monthly_plan):
    result = service.create_membership(member.id, monthly_plan.id, START, 500, "online")

    assert result.membership.status == MembershipStatus.PENDING
    balance = service.get_membership_balance(result.membership.id)
    assert balance.amount_paid == Decimal("500.00")
    assert balance.remaining == Decimal("500.00")
    assert balance.credit == Decimal("0")


def test_enrolment_without_payment_records_nothing(service, database, member, monthly_plan):
    result = service.create_membership(member.id, monthly_plan.id, START)
    assert result.payment is None
    assert result.membership.status == MembershipStatus.PENDING
    assert _payment_count(database) == 0


def test_enrolment_needs_existing_plan_and_member(service, member):
    with pytest.raises(PlanNotFound):
        service.create_membership(member.id, 999, START, 100, "cash")
    with pytest.raises(MemberNotFound):
        service.create_membership(999, 1, START, 100, "cash")


def test_inactive_plan_not_sold(service, plans, member, monthly_plan):
    plans.update_plan(replace(monthly_plan, active=False))
    with pytest.raises(PlanInactive):
        service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")


def test_failed_enrolment_leaves_stores_unchanged(service, database, member, monthly_plan):
    with pytest.raises(InvalidPaymentMethod):
        service.create_membership(member.id, monthly_plan.id, START, 1000, "card")
    assert _membership_count(database) == 0
    assert _payment_count(database) == 0
    assert service.members.get(member.id).membership_id is None


def test_register_member_assigns_codes(service, monthly_plan):
    first, result = service.register_member("Mona Ali", "0100", None, monthly_plan.id, START, 1000, "cash")
    second, _ = service.register_member("Omar Samy", "0101", None, monthly_plan.id, START)

    assert first.member_code == "1000"
    assert second.member_code == "1001"
    assert first.membership_id == result.membership.id
    assert result.membership.member_id == first.id


def test_register_member_validates_inputs(service, database, monthly_plan):
    with pytest.raises(ValidationError):
        service.register_member("  ", "0100", None, monthly_plan.id, START)
    assert database.fetch_one("SELECT COUNT(*) AS c FROM members")["c"] == 0


# ---------- collecting payments ----------

def test_top_up_activates_pending(service, member, monthly_plan):
    pending = service.create_membership(member.id, monthly_plan.id, START, 500, "cash").membership

    result = service.collect_payment(pending.id, 500, "cash", notes="rest")

    assert result.membership.status == MembershipStatus.ACTIVE
    assert result.membership.amount_paid == Decimal("1000.00")
    assert result.membership.payment_id == result.payment.id
    assert result.payment.line_items == (LineItem(Decimal("500.00"), "Membership Fee"),)
    assert result.payment.invoice_number == "INV-202406-0002"


def test_paid_up_membership_refuses_money(service, database, member, monthly_plan):
    active = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership
    with pytest.raises(NoBalanceDue):
        service.collect_payment(active.id, 100, "cash")
    assert _payment_count(database) == 1


def test_cancelled_membership_refuses_money(service, database, member, monthly_plan):
    pending = service.create_membership(member.id, monthly_plan.id, START, 100, "cash").membership
    database.execute("UPDATE memberships SET status='cancelled' WHERE id = ?", (pending.id,))
    with pytest.raises(MembershipCancelled):
        service.collect_payment(pending.id, 100, "cash")


def test_unknown_membership(service):
    with pytest.raises(MembershipNotFound):
        service.collect_payment(42, 100, "cash")


@pytest.mark.parametrize("amount", [0, "-1", "ten", "1e30", "10.005"])
def test_bad_amount_changes_nothing(service, member, monthly_plan, amount):
    pending = service.create_membership(member.id, monthly_plan.id, START, 100, "cash").membership
    with pytest.raises(InvalidAmount):
        service.collect_payment(pending.id, amount, "cash")
    assert service.memberships.get(pending.id) == pending


def test_renewal_after_expiry(service, plans, clock, member, monthly_plan):
    original = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership
    old_end = original.end_date

    clock.now = datetime(2024, 7, 10, 9, 0)
    assert service.sweep_expirations() == 1
    expired = service.memberships.get(original.id)
    assert expired.status == MembershipStatus.EXPIRED
    assert expired.amount_paid == Decimal("0")

    plans.update_plan(
        replace(monthly_plan, base_price=Decimal("900"), discounted_price=Decimal("0"), admission_fee=Decimal("0"))
    )
    result = service.collect_payment(original.id, 1000, "cash")

    m = result.membership
    assert m.id == original.id
    assert m.start_date == old_end
    assert m.end_date == old_end + timedelta(days=30)
    assert m.amount_due == Decimal("900.00")
    assert m.amount_paid == Decimal("1000.00")
    assert m.status == MembershipStatus.ACTIVE
    assert result.payment.invoice_number == "INV-202407-0001"

    balance = service.get_membership_balance(m.id)
    assert balance.remaining == Decimal("0")
    assert balance.credit == Decimal("100.00")


def test_paid_amount_never_drops_between_payments(service, member, monthly_plan):
    m = service.create_membership(member.id, monthly_plan.id, START, 100, "cash").membership
    seen = [m.amount_paid]
    for amount in (100, 250, 50):
        m = service.collect_payment(m.id, amount, "other").membership
        seen.append(m.amount_paid)
    assert seen == sorted(seen)
    assert m.amount_paid == Decimal("500.00")


# ---------- sweep ----------

def test_sweep_is_idempotent(service, member, monthly_plan):
    m = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership
    later = m.end_date + timedelta(days=1)

    assert service.sweep_expirations(later) == 1
    after_first = service.memberships.get(m.id)
    assert service.sweep_expirations(later) == 0
    assert service.memberships.get(m.id) == after_first


def test_sweep_leaves_current_and_cancelled_alone(service, database, member, monthly_plan):
    running = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership
    cancelled = service.create_membership(member.id, monthly_plan.id, date(2024, 1, 1), 100, "cash").membership
    database.execute("UPDATE memberships SET status='cancelled' WHERE id = ?", (cancelled.id,))

    assert service.sweep_expirations(running.end_date) == 0
    assert service.memberships.get(running.id).status == MembershipStatus.ACTIVE
    assert service.memberships.get(cancelled.id).status == MembershipStatus.CANCELLED


def test_sweep_can_keep_paid_history(database, notifier, clock, member, monthly_plan):
    settings = Settings(db_path=database.path, reset_paid_on_expiry=False)
    keep = MembershipService.from_database(database, notifier=notifier, settings=settings, clock=clock)
    m = keep.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership

    keep.sweep_expirations(m.end_date + timedelta(days=1))

    assert keep.memberships.get(m.id).amount_paid == Decimal("1000.00")


# ---------- plan changes ----------

def test_change_plan_keeps_old_period(service, member, monthly_plan, quarterly_plan):
    old = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership

    result = service.change_plan(member.id, quarterly_plan.id, date(2024, 6, 20), 2700, "cash")

    assert result.membership.id != old.id
    assert result.membership.plan_id == quarterly_plan.id
    assert result.membership.amount_due == Decimal("2700.00")
    assert result.membership.status == MembershipStatus.ACTIVE
    assert service.memberships.get(old.id) == old
    assert service.members.get(member.id).membership_id == result.membership.id
    assert [m.id for m in service.memberships.history_for_member(member.id)] == [result.membership.id, old.id]


def test_change_to_current_plan_rejected(service, member, monthly_plan):
    service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")
    with pytest.raises(SamePlan):
        service.change_plan(member.id, monthly_plan.id, date(2024, 6, 20))


def test_change_plan_needs_a_current_membership(service, member, quarterly_plan):
    with pytest.raises(MembershipNotFound):
        service.change_plan(member.id, quarterly_plan.id, START)


# ---------- receipts ----------

def test_receipt_sent_after_payment(service, notifier, member, monthly_plan):
    result = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")
    service.wait_for_receipts()

    [(email, receipt)] = notifier.sent
    assert email == "ahmed@example.com"
    assert receipt.receipt_id == result.payment.invoice_number
    assert receipt.amount == Decimal("1000.00")
    assert receipt.membership_name == "Monthly"
    assert receipt.valid_from == START
    assert receipt.valid_to == result.membership.end_date


def test_no_receipt_without_email(service, notifier, monthly_plan):
    service.register_member("Mona Ali", "0100", None, monthly_plan.id, START, 1000, "cash")
    assert notifier.sent == []


class GatedNotifier(Notifier):
    def __init__(self):
        self.release = threading.Event()
        self.sent = []

    def send_receipt(self, member_email, receipt):
        self.release.wait(timeout=5)
        self.sent.append(receipt.receipt_id)
        return True


def test_payment_returns_before_receipt_is_delivered(database, settings, clock, member, monthly_plan):
    notifier = GatedNotifier()
    service = MembershipService.from_database(database, notifier=notifier, settings=settings, clock=clock)

    result = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")

    assert notifier.sent == []
    assert service.payments.get(result.payment.id) is not None
    notifier.release.set()
    service.close()
    assert notifier.sent == [result.payment.invoice_number]


class BrokenNotifier(Notifier):
    def send_receipt(self, member_email, receipt):
        raise OSError("mail server down")


def test_receipt_failure_does_not_undo_payment(database, settings, clock, member, monthly_plan, caplog):
    service = MembershipService.from_database(database, notifier=BrokenNotifier(), settings=settings, clock=clock)
    result = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")
    service.close()

    assert f"Receipt {result.payment.invoice_number} for member {member.id} was not delivered" in caplog.text
    assert service.payments.get(result.payment.id) is not None
    assert service.memberships.get(result.membership.id).status == MembershipStatus.ACTIVE


# ---------- concurrency / retries ----------

def test_concurrent_top_ups_both_land(service, member, monthly_plan):
    pending = service.create_membership(member.id, monthly_plan.id, START).membership
    barrier = threading.Barrier(2)
    errors = []

    def pay():
        barrier.wait()
        try:
            service.collect_payment(pending.id, 300, "cash")
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=pay) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    m = service.memberships.get(pending.id)
    assert m.amount_paid == Decimal("600.00")
    assert m.status == MembershipStatus.PENDING
    invoices = {p.invoice_number for p in service.payments.list_for_membership(pending.id)}
    assert invoices == {"INV-202406-0001", "INV-202406-0002"}


def test_conflict_is_retried_from_fresh_read(service, database, member, monthly_plan, monkeypatch):
    pending = service.create_membership(member.id, monthly_plan.id, START, 500, "cash").membership
    real_save = service.memberships.save
    calls = []

    def flaky_save(membership, conn=None):
        calls.append(membership.version)
        if len(calls) == 1:
            raise ConcurrentModification("someone else got there first")
        return real_save(membership, conn=conn)

    monkeypatch.setattr(service.memberships, "save", flaky_save)
    result = service.collect_payment(pending.id, 500, "cash")

    assert len(calls) == 2
    assert result.membership.amount_paid == Decimal("1000.00")
    assert _payment_count(database) == 2
    assert result.payment.invoice_number == "INV-202406-0002"


def test_retries_are_bounded(service, database, member, monthly_plan, monkeypatch):
    pending = service.create_membership(member.id, monthly_plan.id, START, 500, "cash").membership
    calls = []

    def broken_save(membership, conn=None):
        calls.append(1)
        raise PersistenceError("disk full")

    monkeypatch.setattr(service.memberships, "save", broken_save)
    with pytest.raises(PersistenceError):
        service.collect_payment(pending.id, 500, "cash")

    assert len(calls) == 3
    assert _payment_count(database) == 1
    assert service.memberships.get(pending.id) == pending


def test_payment_methods(service, member, monthly_plan):
    m = service.create_membership(member.id, monthly_plan.id, START, 100, "online").membership
    result = service.collect_payment(m.id, 100, PaymentMethod.OTHER)
    assert result.payment.method == PaymentMethod.OTHER


# ---------- member edits ----------

def test_update_member_details(service, member):
    updated = service.update_member(member.id, " Ahmed H. Hassan ", "01000000009", "", status="inactive")

    assert updated.full_name == "Ahmed H. Hassan"
    assert updated.phone == "01000000009"
    assert updated.email is None
    assert updated.status == "inactive"
    assert updated.member_code == member.member_code
    assert service.members.get(member.id) == updated


def test_update_member_keeps_current_membership(service, member, monthly_plan):
    m = service.create_membership(member.id, monthly_plan.id, START, 1000, "cash").membership
    updated = service.update_member(member.id, "Ahmed Hassan", "0100", "ahmed@example.com")
    assert updated.membership_id == m.id


@pytest.mark.parametrize(
    "name, phone, email, status",
    [("", "0100", None, "active"), ("Ahmed", "0100", "nope", "active"), ("Ahmed", "0100", None, "frozen")],
)
def test_update_member_validates(service, member, name, phone, email, status):
    with pytest.raises(ValidationError):
        service.update_member(member.id, name, phone, email, status)
    assert service.members.get(member.id) == member


def test_update_unknown_member(service):
    with pytest.raises(MemberNotFound):
        service.update_member(404, "Ghost", "0100", None)


# ---------- standalone ledger entries ----------

def test_expense_is_a_debit_without_membership(service):
    entry = service.record_entry("4500", "cash", "debit", "salary", label="Trainer salary", notes="June")

    assert entry.transaction_type == TransactionType.DEBIT
    assert entry.payment_type == PaymentType.SALARY
    assert entry.membership_id is None
    assert entry.member_id is None
    assert entry.line_items == (LineItem(Decimal("4500.00"), "Trainer salary"),)
    assert service.payments.get(entry.id) == entry


def test_income_shares_the_invoice_sequence(service, member, monthly_plan):
    service.create_membership(member.id, monthly_plan.id, START, 1000, "cash")

    sale = service.record_entry(150, "online", "credit", "product", member_id=member.id)

    assert sale.invoice_number == "INV-202406-0002"
    assert sale.member_id == member.id
    assert sale.line_items == (LineItem(Decimal("150.00"), "Product"),)
    assert [p.id for p in service.payments.list_payments(transaction_type=TransactionType.CREDIT)] == [sale.id, 1]
    assert service.payments.list_payments(transaction_type=TransactionType.DEBIT) == []


def test_membership_money_not_booked_as_entry(service, database):
    with pytest.raises(InvalidEntryType):
        service.record_entry(100, "cash", "credit", "membership")
    assert _payment_count(database) == 0


@pytest.mark.parametrize(
    "amount, method, transaction_type, payment_type, error",
    [
        ("0", "cash", "credit", "product", InvalidAmount),
        ("10.005", "cash", "credit", "product", InvalidAmount),
        ("10", "card", "credit", "product", InvalidPaymentMethod),
        ("10", "cash", "refund", "product", InvalidEntryType),
        ("10", "cash", "credit", "merch", InvalidEntryType),
    ],
)
def test_bad_entries_write_nothing(service, database, amount, method, transaction_type, payment_type, error):
    with pytest.raises(error):
        service.record_entry(amount, method, transaction_type, payment_type)
    assert _payment_count(database) == 0


def test_entry_for_unknown_member(service, database):
    with pytest.raises(MemberNotFound):
        service.record_entry(100, "cash", "credit", "service", member_id=404)
    assert _payment_count(database) == 0
