"""
reconcile.py
Membership service: the entry points the dashboard calls when members enrol,
pay, switch plans, or when statuses need refreshing.

Every operation runs in one write transaction: the payment row, the invoice
counter bump and the membership update commit together or not at all.
Storage conflicts are retried a few times from a fresh read.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import date, datetime

import lifecycle
from catalog import PlanRepository
from config import Settings
from db import Database
from errors import (
    ConcurrentModification,
    DuplicateInvoice,
    MembershipCancelled,
    MembershipNotFound,
    NoBalanceDue,
    PersistenceError,
    PlanInactive,
    ValidationError,
)
from ledger import PaymentLedger, parse_amount, parse_method
from models import ZERO, Balance, Member, Membership, MembershipStatus, Payment, Plan
from notify import Notifier, NullNotifier, Receipt
from pricing import split_line_items
from repositories import MemberRepository, MembershipRepository, PaymentRepository
from utils import as_date, validate_member_inputs

logger = logging.getLogger(__name__)

RETRYABLE = (PersistenceError, ConcurrentModification, DuplicateInvoice)
RECEIPT_WORKERS = 2
MEMBER_STATUSES = ("active", "inactive")


@dataclass(frozen=True)
class Reconciliation:
    membership: Membership
    payment: Payment | None


@dataclass(frozen=True)
class _Outcome:
    result: object
    member: Member
    plan: Plan
    membership: Membership
    payment: Payment | None


class MembershipService:
    def __init__(
        self,
        database: Database,
        plans: PlanRepository,
        members: MemberRepository,
        memberships: MembershipRepository,
        payments: PaymentRepository,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock=datetime.now,
    ):
        self.db = database
        self.plans = plans
        self.members = members
        self.memberships = memberships
        self.payments = payments
        self.ledger = PaymentLedger(payments)
        self.notifier = notifier or NullNotifier()
        self.settings = settings or Settings(db_path=database.path)
        self.clock = clock
        self._mailer = ThreadPoolExecutor(max_workers=RECEIPT_WORKERS, thread_name_prefix="receipts")
        self._receipts: set[Future] = set()
        self._receipts_lock = threading.Lock()

    @classmethod
    def from_database(cls, database: Database, notifier: Notifier | None = None, settings: Settings | None = None, clock=datetime.now):
        return cls(
            database,
            PlanRepository(database),
            MemberRepository(database),
            MembershipRepository(database),
            PaymentRepository(database),
            notifier=notifier,
            settings=settings,
            clock=clock,
        )

    # ---------- plumbing ----------

    def _run(self, action: str, work):
        """Run `work(conn)` in a write transaction, retrying storage conflicts."""
        attempts = self.settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                with self.db.transaction() as conn:
                    return work(conn)
            except RETRYABLE as exc:
                if attempt == attempts:
                    logger.error("%s failed after %d attempt(s): %s", action, attempt, exc)
                    raise
                logger.warning("%s hit %s (%s), retrying %d/%d", action, type(exc).__name__, exc, attempt + 1, attempts)

    def _send_receipt(self, outcome: _Outcome) -> Future | None:
        """Hand the receipt to the mail pool; the caller does not wait for delivery."""
        payment, member = outcome.payment, outcome.member
        if payment is None or not member.email:
            return None
        receipt = Receipt(
            member_name=member.full_name,
            amount=payment.amount,
            paid_on=payment.created_at.date(),
            receipt_id=payment.invoice_number,
            membership_name=outcome.plan.name,
            valid_from=outcome.membership.start_date,
            valid_to=outcome.membership.end_date,
        )
        future = self._mailer.submit(self._deliver, member.email, receipt, member.id)
        with self._receipts_lock:
            self._receipts.add(future)
        future.add_done_callback(self._receipt_done)
        return future

    def _deliver(self, email: str, receipt: Receipt, member_id: int) -> bool:
        try:
            return self.notifier.send_receipt(email, receipt)
        except Exception:
            # Payment is already committed; a lost receipt must not undo it.
            logger.warning("Receipt %s for member %s was not delivered", receipt.receipt_id, member_id, exc_info=True)
            return False

    def _receipt_done(self, future: Future) -> None:
        with self._receipts_lock:
            self._receipts.discard(future)

    def wait_for_receipts(self, timeout: float | None = None) -> None:
        """Block until every receipt handed out so far has been attempted."""
        with self._receipts_lock:
            pending = list(self._receipts)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        self._mailer.shutdown(wait=True)

    def _open_period(self, conn, member: Member, plan: Plan, draft: Membership, method, notes, created_by) -> _Outcome:
        membership = self.memberships.insert(draft, conn=conn)
        payment = None
        if draft.amount_paid > ZERO:
            payment = self.ledger.record_payment(
                member.id,
                membership.id,
                draft.amount_paid,
                method,
                line_items=split_line_items(draft.amount_paid, plan),
                notes=notes,
                now=self.clock(),
                created_by=created_by,
                conn=conn,
            )
            membership = self.memberships.save(replace(membership, payment_id=payment.id), conn=conn)
        self.members.set_membership(member.id, membership.id, conn=conn)
        logger.info(
            "Opened membership %s for member %s on plan %s: due %s, paid %s, %s",
            membership.id,
            member.id,
            plan.id,
            membership.amount_due,
            membership.amount_paid,
            membership.status.value,
        )
        return _Outcome(Reconciliation(membership, payment), member, plan, membership, payment)

    def _active_plan(self, plan_id: int, conn) -> Plan:
        plan = self.plans.get_plan(plan_id, conn=conn)
        if not plan.active:
            raise PlanInactive(f"Plan {plan.id} ({plan.name}) is not offered any more.")
        return plan

    # ---------- operations ----------

    def create_membership(
        self,
        member_id: int,
        plan_id: int,
        start_date,
        initial_payment=None,
        method="cash",
        notes: str | None = None,
        created_by: str | None = None,
    ) -> Reconciliation:
        """Enrol an existing member on a plan, optionally taking a first payment."""
        start = as_date(start_date)

        def work(conn):
            member = self.members.get(member_id, conn=conn)
            plan = self._active_plan(plan_id, conn)
            draft = lifecycle.create(member.id, plan, start, initial_payment, notes, created_by)
            return self._open_period(conn, member, plan, draft, method, notes, created_by)

        outcome = self._run("create_membership", work)
        self._send_receipt(outcome)
        return outcome.result

    def register_member(
        self,
        full_name: str,
        phone: str,
        email: str | None,
        plan_id: int,
        start_date,
        initial_payment=None,
        method="cash",
        notes: str | None = None,
        created_by: str | None = None,
    ) -> tuple[Member, Reconciliation]:
        """New member + first membership period (+ payment) in a single commit."""
        errors = validate_member_inputs(full_name, phone, email)
        if errors:
            raise ValidationError(" ".join(errors))
        start = as_date(start_date)

        def work(conn):
            plan = self._active_plan(plan_id, conn)
            member = self.members.create(full_name, phone, email, self.clock().date(), conn=conn)
            draft = lifecycle.create(member.id, plan, start, initial_payment, notes, created_by)
            outcome = self._open_period(conn, member, plan, draft, method, notes, created_by)
            member = self.members.get(member.id, conn=conn)
            return replace(outcome, result=(member, outcome.result), member=member)

        outcome = self._run("register_member", work)
        self._send_receipt(outcome)
        return outcome.result

    def collect_payment(
        self,
        membership_id: int,
        amount,
        method,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> Reconciliation:
        """
        Take money against a membership.

        expired   -> renewed into the next period (repriced, admission fee again)
        pending   -> balance topped up, activated once fully paid
        active    -> NoBalanceDue
        cancelled -> MembershipCancelled
        """
        amount = parse_amount(amount)
        parse_method(method)

        def work(conn):
            current = self.memberships.get(membership_id, conn=conn)
            plan = self.plans.get_plan(current.plan_id, conn=conn)

            if current.status == MembershipStatus.EXPIRED:
                updated = lifecycle.renew_from_expired(current, plan, amount)
                items = split_line_items(amount, plan)
            elif current.status == MembershipStatus.PENDING:
                updated = lifecycle.apply_payment_to_pending(current, amount)
                items = None
            elif current.status == MembershipStatus.ACTIVE:
                raise NoBalanceDue(f"Membership {current.id} is active and fully paid.")
            else:
                raise MembershipCancelled(f"Membership {current.id} is cancelled.")

            payment = self.ledger.record_payment(
                current.member_id,
                current.id,
                amount,
                method,
                line_items=items,
                notes=notes,
                now=self.clock(),
                created_by=created_by,
                conn=conn,
            )
            saved = self.memberships.save(replace(updated, payment_id=payment.id), conn=conn)
            member = self.members.get(current.member_id, conn=conn)
            logger.info(
                "Membership %s: %s -> %s, paid %s of %s",
                saved.id,
                current.status.value,
                saved.status.value,
                saved.amount_paid,
                saved.amount_due,
            )
            return _Outcome(Reconciliation(saved, payment), member, plan, saved, payment)

        outcome = self._run("collect_payment", work)
        self._send_receipt(outcome)
        return outcome.result

    def change_plan(
        self,
        member_id: int,
        plan_id: int,
        start_date,
        initial_payment=None,
        method="cash",
        notes: str | None = None,
        created_by: str | None = None,
    ) -> Reconciliation:
        """
        Move a member to another plan by opening a new period.
        The previous period stays on file untouched.
        """
        start = as_date(start_date)

        def work(conn):
            member = self.members.get(member_id, conn=conn)
            if member.membership_id is None:
                raise MembershipNotFound(None)
            current = self.memberships.get(member.membership_id, conn=conn)
            plan = self._active_plan(plan_id, conn)
            draft = lifecycle.change_plan(current, plan, start, initial_payment, created_by)
            return self._open_period(conn, member, plan, draft, method, notes or current.notes, created_by)

        outcome = self._run("change_plan", work)
        self._send_receipt(outcome)
        return outcome.result

    def sweep_expirations(self, now: date | None = None) -> int:
        today = as_date(now) if now is not None else self.clock().date()
        return self._run(
            "sweep_expirations",
            lambda conn: lifecycle.sweep_expirations(
                self.memberships, today, reset_paid=self.settings.reset_paid_on_expiry, conn=conn
            ),
        )

    def get_membership_balance(self, membership_id: int) -> Balance:
        m = self.memberships.get(membership_id)
        return Balance(
            membership_id=m.id,
            amount_due=m.amount_due,
            amount_paid=m.amount_paid,
            remaining=m.remaining,
            credit=max(m.amount_paid - m.amount_due, ZERO),
            status=m.status,
        )

    def update_member(self, member_id: int, full_name: str, phone: str, email: str | None, status: str = "active") -> Member:
        """Edit a member's contact details or mark them inactive."""
        errors = validate_member_inputs(full_name, phone, email)
        if status not in MEMBER_STATUSES:
            errors.append(f"Status must be one of: {', '.join(MEMBER_STATUSES)}.")
        if errors:
            raise ValidationError(" ".join(errors))
        member = self._run(
            "update_member",
            lambda conn: self.members.update(member_id, full_name, phone, email, status, conn=conn),
        )
        logger.info("Updated member %s (code %s, %s)", member.id, member.member_code, member.status)
        return member

    def record_entry(
        self,
        amount,
        method,
        transaction_type,
        payment_type,
        label: str | None = None,
        member_id: int | None = None,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> Payment:
        """
        Book income or an expense that is not a membership fee, such as a
        shop sale or a salary. Numbered from the same invoice sequence as
        membership payments.
        """

        def work(conn):
            if member_id is not None:
                self.members.get(member_id, conn=conn)
            return self.ledger.record_entry(
                amount,
                method,
                transaction_type,
                payment_type,
                label=label,
                member_id=member_id,
                notes=notes,
                now=self.clock(),
                created_by=created_by,
                conn=conn,
            )

        return self._run("record_entry", work)
