"""
utils.py
Validation, dates, money parsing, table helpers.
"""

from __future__ import annotations

import dataclasses
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum

import pandas as pd

CENT = Decimal("0.01")


def parse_iso(d: str) -> date:
    return date.fromisoformat(d)


def as_date(value) -> date:
    """Accept a date, a datetime or an ISO string and return a plain date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_iso(str(value))


def add_days(start: date, days: int) -> date:
    return start + timedelta(days=days)


def year_month(moment: date | datetime) -> str:
    """'202406' for any moment in June 2024."""
    return f"{moment.year:04d}{moment.month:02d}"


def to_decimal(value) -> Decimal:
    """
    Parse a money value into a 2-place Decimal.
    Raises ValueError for anything non-numeric (bool, NaN, garbage strings),
    for fractions of a cent and for values too large to hold in cents.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a numeric amount: {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a numeric amount: {value!r}")
    try:
        cents = amount.quantize(CENT)
    except InvalidOperation as exc:
        raise ValueError(f"Amount out of range: {value!r}") from exc
    if cents != amount:
        raise ValueError(f"Amount has fractions of a cent: {value!r}")
    return cents


def validate_member_inputs(full_name: str, phone: str, email: str | None = None) -> list[str]:
    errors: list[str] = []
    if not full_name.strip():
        errors.append("Full name is required.")
    if not phone.strip():
        errors.append("Phone is required.")
    if email and "@" not in email:
        errors.append("Email must be a valid address.")
    return errors


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, tuple):
        return ", ".join(f"{item.label}: {item.amount}" for item in value)
    return value


def records_to_frame(records, columns: list[str] | None = None) -> pd.DataFrame:
    """Turn a list of dataclass records into a DataFrame for display."""
    rows = [
        {f.name: _plain(getattr(r, f.name)) for f in dataclasses.fields(r)} if dataclasses.is_dataclass(r) else dict(r)
        for r in records
    ]
    if not rows:
        return pd.DataFrame(columns=columns or [])
    df = pd.DataFrame(rows)
    if columns:
        df = df[[c for c in columns if c in df.columns]]
    return df
