"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)

A Database object is built once by the application bootstrap and handed to
the repositories; nothing here keeps a module-level connection.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    # Small settings table (used to force password change on first login)
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        duration_days INTEGER NOT NULL,
        base_price TEXT NOT NULL,
        discounted_price TEXT NOT NULL DEFAULT '0',
        admission_fee TEXT NOT NULL DEFAULT '0',
        active INTEGER NOT NULL DEFAULT 1,
        description TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_code TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        phone TEXT NOT NULL,
        email TEXT,
        join_date TEXT NOT NULL,
        membership_id INTEGER,
        status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','inactive'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL,
        plan_id INTEGER NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        amount_due TEXT NOT NULL,
        amount_paid TEXT NOT NULL,
        admission_fee_included INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL CHECK(status IN ('pending','active','expired','cancelled')),
        notes TEXT,
        created_by TEXT,
        payment_id INTEGER,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY(plan_id) REFERENCES plans(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER,
        membership_id INTEGER,
        amount TEXT NOT NULL,
        method TEXT NOT NULL CHECK(method IN ('cash','online','other')),
        invoice_number TEXT NOT NULL UNIQUE,
        transaction_type TEXT NOT NULL CHECK(transaction_type IN ('credit','debit')),
        payment_type TEXT NOT NULL DEFAULT 'membership'
            CHECK(payment_type IN ('membership','product','service','salary','donation','other')),
        status TEXT NOT NULL CHECK(status IN ('paid','partially-paid','unpaid')),
        line_items TEXT NOT NULL,
        notes TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY(membership_id) REFERENCES memberships(id)
    )
    """,
    # One row per YYYYMM; last_value is bumped inside the payment's write transaction
    """
    CREATE TABLE IF NOT EXISTS invoice_sequences (
        year_month TEXT PRIMARY KEY,
        last_value INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memberships_status_end ON memberships(status, end_date)",
    "CREATE INDEX IF NOT EXISTS idx_payments_membership ON payments(membership_id)",
)


class Database:
    def __init__(self, path: Path | str, timeout: float = 5.0):
        self.path = Path(path)
        self.timeout = timeout

    def _open(self, isolation_level="DEFERRED") -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=isolation_level,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self):
        try:
            conn = self._open()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self.path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        Write transaction that takes the database write lock up front.
        Everything done on the yielded connection commits together or not at all.
        """
        try:
            conn = self._open(isolation_level=None)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self.path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise PersistenceError(f"Cannot start transaction: {exc}") from exc
        logger.debug("BEGIN IMMEDIATE on %s", self.path)
        try:
            yield conn
        except BaseException as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()
            logger.debug("ROLLBACK on %s", self.path)
            if isinstance(exc, sqlite3.Error):
                raise PersistenceError(str(exc)) from exc
            raise
        try:
            conn.execute("COMMIT")
            logger.debug("COMMIT on %s", self.path)
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(f"Commit failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def use(self, conn: sqlite3.Connection | None = None):
        """Reuse the caller's connection, or open a short-lived one."""
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own

    # ---------- small helpers (same shape as before, now bound to a Database) ----------

    def execute(self, sql: str, params: tuple = ()) -> int:
        with self.connect() as conn:
            cur = conn.execute(sql, params)
            return cur.lastrowid

    def fetch_one(self, sql: str, params: tuple = ()):
        with self.connect() as conn:
            cur = conn.execute(sql, params)
            return cur.fetchone()

    def fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.connect() as conn:
            cur = conn.execute(sql, params)
            return cur.fetchall()

    def _create_tables(self) -> None:
        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        row = self.fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
        if row:
            return str(row["value"])
        return default

    def set_setting(self, key: str, value: str) -> None:
        self.execute(
            """
            INSERT INTO app_settings(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )

    def init_db(self, default_admin_hash: str) -> None:
        """
        Initialize the database.
        - Create tables
        - Insert default admin (admin/admin123) if no admin exists
        - Force password change on first login
        """
        self._create_tables()

        admin = self.fetch_one("SELECT id FROM admin_users LIMIT 1")
        if not admin:
            now = datetime.now().isoformat(timespec="seconds")
            self.execute(
                "INSERT INTO admin_users(username, password_hash, created_at) VALUES(?,?,?)",
                ("admin", default_admin_hash, now),
            )
            self.set_setting("force_password_change", "1")
            logger.info("Created default admin user in %s", self.path)
        elif self.get_setting("force_password_change") is None:
            self.set_setting("force_password_change", "0")

    def is_force_password_change(self) -> bool:
        return self.get_setting("force_password_change") == "1"

    def clear_force_password_change(self) -> None:
        self.set_setting("force_password_change", "0")
