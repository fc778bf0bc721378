"""
repositories.py
SQLite-backed stores for members, memberships and payments.

Every method takes an optional `conn`; pass the connection of an open
Database.transaction() to make several calls commit together.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime
from decimal import InvalidOperation

from db import Database
from errors import (
    ConcurrentModification,
    DuplicateInvoice,
    MemberNotFound,
    MembershipNotFound,
    PersistenceError,
)
from models import (
    LineItem,
    Member,
    Membership,
    MembershipStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    TransactionType,
)
from utils import parse_iso, to_decimal

logger = logging.getLogger(__name__)

FIRST_MEMBER_CODE = 1000


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


# ---------- Members ----------

def member_from_row(row: sqlite3.Row) -> Member:
    return Member(
        id=row["id"],
        member_code=row["member_code"],
        full_name=row["full_name"],
        phone=row["phone"],
        email=row["email"],
        join_date=parse_iso(row["join_date"]),
        membership_id=row["membership_id"],
        status=row["status"],
    )


class MemberRepository:
    def __init__(self, database: Database):
        self.db = database

    def get(self, member_id: int, conn=None) -> Member:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        if row is None:
            raise MemberNotFound(member_id)
        return member_from_row(row)

    def next_member_code(self, conn=None) -> str:
        with self.db.use(conn) as c:
            row = c.execute("SELECT MAX(CAST(member_code AS INTEGER)) AS last FROM members").fetchone()
        last = row["last"] if row and row["last"] is not None else FIRST_MEMBER_CODE - 1
        return str(max(int(last) + 1, FIRST_MEMBER_CODE))

    def create(self, full_name: str, phone: str, email: str | None, join_date: date, conn=None) -> Member:
        with self.db.use(conn) as c:
            code = self.next_member_code(conn=c)
            member_id = c.execute(
                """
                INSERT INTO members(member_code, full_name, phone, email, join_date, status)
                VALUES(?,?,?,?,?, 'active')
                """,
                (code, full_name.strip(), phone.strip(), (email or "").strip() or None, join_date.isoformat()),
            ).lastrowid
            logger.info("Registered member %s (code %s)", member_id, code)
            return self.get(member_id, conn=c)

    def update(self, member_id: int, full_name: str, phone: str, email: str | None, status: str, conn=None) -> Member:
        """Edit contact details and the active/inactive flag. Codes and memberships are left alone."""
        with self.db.use(conn) as c:
            cur = c.execute(
                "UPDATE members SET full_name = ?, phone = ?, email = ?, status = ? WHERE id = ?",
                (full_name.strip(), phone.strip(), (email or "").strip() or None, status, member_id),
            )
            if cur.rowcount == 0:
                raise MemberNotFound(member_id)
            return self.get(member_id, conn=c)

    def set_membership(self, member_id: int, membership_id: int, conn=None) -> None:
        with self.db.use(conn) as c:
            cur = c.execute("UPDATE members SET membership_id = ? WHERE id = ?", (membership_id, member_id))
            if cur.rowcount == 0:
                raise MemberNotFound(member_id)

    def list_members(self, search: str = "") -> list[Member]:
        sql = "SELECT * FROM members WHERE 1=1"
        params = []
        if search.strip():
            sql += " AND (full_name LIKE ? OR phone LIKE ? OR member_code LIKE ?)"
            like = f"%{search.strip()}%"
            params.extend([like, like, like])
        sql += " ORDER BY id DESC"
        return [member_from_row(r) for r in self.db.fetch_all(sql, tuple(params))]


# ---------- Memberships ----------

def membership_from_row(row: sqlite3.Row) -> Membership:
    try:
        return Membership(
            id=row["id"],
            member_id=row["member_id"],
            plan_id=row["plan_id"],
            start_date=parse_iso(row["start_date"]),
            end_date=parse_iso(row["end_date"]),
            amount_due=to_decimal(row["amount_due"]),
            amount_paid=to_decimal(row["amount_paid"]),
            admission_fee_included=bool(row["admission_fee_included"]),
            status=MembershipStatus(row["status"]),
            notes=row["notes"],
            created_by=row["created_by"],
            payment_id=row["payment_id"],
            version=row["version"],
        )
    except (ValueError, InvalidOperation) as exc:
        raise PersistenceError(f"Corrupt membership row {row['id']}: {exc}") from exc


class MembershipRepository:
    def __init__(self, database: Database):
        self.db = database

    def get(self, membership_id: int, conn=None) -> Membership:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM memberships WHERE id = ?", (membership_id,)).fetchone()
        if row is None:
            raise MembershipNotFound(membership_id)
        return membership_from_row(row)

    def insert(self, membership: Membership, conn=None) -> Membership:
        now = _now_iso()
        with self.db.use(conn) as c:
            membership_id = c.execute(
                """
                INSERT INTO memberships(member_id, plan_id, start_date, end_date, amount_due, amount_paid,
                    admission_fee_included, status, notes, created_by, payment_id, version,
                    created_at, updated_at)
                VALUES(?,?,?,?,?,?,?,?,?,?,?,0,?,?)
                """,
                (
                    membership.member_id,
                    membership.plan_id,
                    membership.start_date.isoformat(),
                    membership.end_date.isoformat(),
                    str(membership.amount_due),
                    str(membership.amount_paid),
                    int(membership.admission_fee_included),
                    membership.status.value,
                    membership.notes,
                    membership.created_by,
                    membership.payment_id,
                    now,
                    now,
                ),
            ).lastrowid
            return self.get(membership_id, conn=c)

    def save(self, membership: Membership, conn=None) -> Membership:
        """
        Conditional update keyed on the version that was read.
        Raises ConcurrentModification if someone else wrote the row in between.
        """
        with self.db.use(conn) as c:
            cur = c.execute(
                """
                UPDATE memberships SET start_date=?, end_date=?, amount_due=?, amount_paid=?,
                    admission_fee_included=?, status=?, notes=?, payment_id=?,
                    version = version + 1, updated_at=?
                WHERE id=? AND version=?
                """,
                (
                    membership.start_date.isoformat(),
                    membership.end_date.isoformat(),
                    str(membership.amount_due),
                    str(membership.amount_paid),
                    int(membership.admission_fee_included),
                    membership.status.value,
                    membership.notes,
                    membership.payment_id,
                    _now_iso(),
                    membership.id,
                    membership.version,
                ),
            )
            if cur.rowcount == 0:
                raise ConcurrentModification(
                    f"Membership {membership.id} changed since version {membership.version} was read."
                )
            return self.get(membership.id, conn=c)

    def expire_overdue(self, now: date, reset_paid: bool = True, conn=None) -> int:
        """Expire every non-terminal membership whose end date is before `now`."""
        with self.db.use(conn) as c:
            cur = c.execute(
                """
                UPDATE memberships
                SET status='expired',
                    amount_paid = CASE WHEN ? THEN '0.00' ELSE amount_paid END,
                    version = version + 1,
                    updated_at = ?
                WHERE status NOT IN ('expired','cancelled') AND end_date < ?
                """,
                (int(reset_paid), _now_iso(), now.isoformat()),
            )
            return cur.rowcount

    def list_memberships(self, status: MembershipStatus | None = None) -> list[Membership]:
        sql = "SELECT * FROM memberships"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status.value,)
        sql += " ORDER BY end_date ASC"
        return [membership_from_row(r) for r in self.db.fetch_all(sql, params)]

    def history_for_member(self, member_id: int) -> list[Membership]:
        rows = self.db.fetch_all(
            "SELECT * FROM memberships WHERE member_id = ? ORDER BY start_date DESC, id DESC",
            (member_id,),
        )
        return [membership_from_row(r) for r in rows]


# ---------- Payments ----------

def payment_from_row(row: sqlite3.Row) -> Payment:
    try:
        items = tuple(
            LineItem(amount=to_decimal(i["amount"]), label=i["label"]) for i in json.loads(row["line_items"])
        )
        return Payment(
            id=row["id"],
            member_id=row["member_id"],
            membership_id=row["membership_id"],
            amount=to_decimal(row["amount"]),
            method=PaymentMethod(row["method"]),
            invoice_number=row["invoice_number"],
            transaction_type=TransactionType(row["transaction_type"]),
            payment_type=PaymentType(row["payment_type"]),
            status=PaymentStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            line_items=items,
            notes=row["notes"],
            created_by=row["created_by"],
        )
    except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
        raise PersistenceError(f"Corrupt payment row {row['id']}: {exc}") from exc


class PaymentRepository:
    def __init__(self, database: Database):
        self.db = database

    def get(self, payment_id: int, conn=None) -> Payment | None:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return payment_from_row(row) if row else None

    def create(self, payment: Payment, conn=None) -> Payment:
        items = json.dumps([{"amount": str(i.amount), "label": i.label} for i in payment.line_items])
        with self.db.use(conn) as c:
            try:
                payment_id = c.execute(
                    """
                    INSERT INTO payments(member_id, membership_id, amount, method, invoice_number,
                        transaction_type, payment_type, status, line_items, notes, created_by, created_at)
                    VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        payment.member_id,
                        payment.membership_id,
                        str(payment.amount),
                        payment.method.value,
                        payment.invoice_number,
                        payment.transaction_type.value,
                        payment.payment_type.value,
                        payment.status.value,
                        items,
                        payment.notes,
                        payment.created_by,
                        payment.created_at.isoformat(timespec="seconds"),
                    ),
                ).lastrowid
            except sqlite3.IntegrityError as exc:
                if "invoice_number" in str(exc):
                    raise DuplicateInvoice(f"Invoice {payment.invoice_number} already exists.") from exc
                raise PersistenceError(str(exc)) from exc
            return self.get(payment_id, conn=c)

    def count_for_month(self, year_month: str, conn=None) -> int:
        with self.db.use(conn) as c:
            row = c.execute(
                "SELECT COUNT(*) AS c FROM payments WHERE invoice_number LIKE ?",
                (f"INV-{year_month}-%",),
            ).fetchone()
        return int(row["c"])

    def invoice_exists(self, invoice_number: str, conn=None) -> bool:
        with self.db.use(conn) as c:
            row = c.execute("SELECT 1 FROM payments WHERE invoice_number = ?", (invoice_number,)).fetchone()
        return row is not None

    def next_invoice_sequence(self, year_month: str, conn=None) -> int:
        """
        Bump and return the invoice counter for `year_month`.
        A month with no counter row yet starts after the invoices already on file.
        """
        with self.db.use(conn) as c:
            seed = self.count_for_month(year_month, conn=c) + 1
            c.execute(
                """
                INSERT INTO invoice_sequences(year_month, last_value) VALUES(?, ?)
                ON CONFLICT(year_month) DO UPDATE SET last_value = last_value + 1
                """,
                (year_month, seed),
            )
            row = c.execute(
                "SELECT last_value FROM invoice_sequences WHERE year_month = ?", (year_month,)
            ).fetchone()
        return int(row["last_value"])

    def list_for_membership(self, membership_id: int) -> list[Payment]:
        rows = self.db.fetch_all(
            "SELECT * FROM payments WHERE membership_id = ? ORDER BY created_at DESC, id DESC",
            (membership_id,),
        )
        return [payment_from_row(r) for r in rows]

    def list_payments(
        self,
        search: str = "",
        transaction_type: TransactionType | None = None,
        limit: int = 200,
    ) -> list[Payment]:
        sql = "SELECT * FROM payments WHERE 1=1"
        params: list = []
        if search.strip():
            sql += " AND invoice_number LIKE ?"
            params.append(f"%{search.strip()}%")
        if transaction_type is not None:
            sql += " AND transaction_type = ?"
            params.append(transaction_type.value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [payment_from_row(r) for r in self.db.fetch_all(sql, tuple(params))]
