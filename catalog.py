"""
catalog.py
Plan catalog: plan definitions, validated as they come out of storage.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from db import Database
from errors import InvalidPlanData, PlanNotFound
from models import Plan
from pricing import plan_money

logger = logging.getLogger(__name__)


def validate_plan(plan: Plan) -> Plan:
    """Return `plan` with normalised money fields, or raise InvalidPlanData."""
    if not str(plan.name or "").strip():
        raise InvalidPlanData(f"Plan {plan.id}: name is required.")
    duration = plan.duration_days
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise InvalidPlanData(f"Plan {plan.id}: duration_days must be a positive integer ({duration!r}).")

    base = plan_money(plan, "base_price")
    discounted = plan_money(plan, "discounted_price")
    admission = plan_money(plan, "admission_fee")
    if discounted > base:
        raise InvalidPlanData(f"Plan {plan.id}: discounted_price {discounted} exceeds base_price {base}.")

    return Plan(
        id=plan.id,
        name=plan.name.strip(),
        duration_days=duration,
        base_price=base,
        discounted_price=discounted,
        admission_fee=admission,
        active=bool(plan.active),
        description=plan.description,
    )


def plan_from_row(row: sqlite3.Row) -> Plan:
    duration = row["duration_days"]
    if isinstance(duration, str) and duration.strip().isdigit():
        duration = int(duration)
    return validate_plan(
        Plan(
            id=row["id"],
            name=row["name"],
            duration_days=duration,
            base_price=row["base_price"],
            discounted_price=row["discounted_price"],
            admission_fee=row["admission_fee"],
            active=bool(row["active"]),
            description=row["description"],
        )
    )


class PlanRepository:
    def __init__(self, database: Database):
        self.db = database

    def get_plan(self, plan_id: int, conn=None) -> Plan:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        if row is None:
            raise PlanNotFound(plan_id)
        return plan_from_row(row)

    def list_plans(self, active_only: bool = False) -> list[Plan]:
        sql = "SELECT * FROM plans"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY duration_days ASC, id ASC"
        return [plan_from_row(r) for r in self.db.fetch_all(sql)]

    def create_plan(self, plan: Plan) -> Plan:
        plan = validate_plan(plan)
        plan_id = self.db.execute(
            """
            INSERT INTO plans(name, duration_days, base_price, discounted_price, admission_fee,
                active, description, created_at)
            VALUES(?,?,?,?,?,?,?,?)
            """,
            (
                plan.name,
                plan.duration_days,
                str(plan.base_price),
                str(plan.discounted_price),
                str(plan.admission_fee),
                int(plan.active),
                plan.description,
                datetime.now().isoformat(timespec="seconds"),
            ),
        )
        logger.info("Created plan %s (%s)", plan_id, plan.name)
        return self.get_plan(plan_id)

    def update_plan(self, plan: Plan) -> Plan:
        if plan.id is None:
            raise PlanNotFound(None)
        self.get_plan(plan.id)
        plan = validate_plan(plan)
        self.db.execute(
            """
            UPDATE plans SET name=?, duration_days=?, base_price=?, discounted_price=?,
                admission_fee=?, active=?, description=?
            WHERE id=?
            """,
            (
                plan.name,
                plan.duration_days,
                str(plan.base_price),
                str(plan.discounted_price),
                str(plan.admission_fee),
                int(plan.active),
                plan.description,
                plan.id,
            ),
        )
        logger.info("Updated plan %s (%s)", plan.id, plan.name)
        return plan
