from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

import auth
from catalog import PlanRepository
from config import Settings
from db import Database
from models import Plan
from notify import Notifier
from reconcile import MembershipService


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send_receipt(self, member_email, receipt):
        self.sent.append((member_email, receipt))
        return True


@pytest.fixture
def database(tmp_path):
    database = Database(tmp_path / "gym.db", timeout=5.0)
    database.init_db(auth.hash_password("admin123", rounds=4))
    return database


@pytest.fixture
def clock():
    return Clock(datetime(2024, 6, 15, 10, 30, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings(database):
    return Settings(db_path=database.path, max_retries=3)


@pytest.fixture
def service(database, notifier, settings, clock):
    service = MembershipService.from_database(database, notifier=notifier, settings=settings, clock=clock)
    yield service
    service.close()


@pytest.fixture
def plans(database):
    return PlanRepository(database)


@pytest.fixture
def monthly_plan(plans):
    # due = 800 discounted + 200 admission = 1000
    return plans.create_plan(
        Plan(
            id=None,
            name="Monthly",
            duration_days=30,
            base_price=Decimal("1000"),
            discounted_price=Decimal("800"),
            admission_fee=Decimal("200"),
        )
    )


@pytest.fixture
def quarterly_plan(plans):
    return plans.create_plan(
        Plan(
            id=None,
            name="Quarterly",
            duration_days=90,
            base_price=Decimal("2500"),
            discounted_price=Decimal("0"),
            admission_fee=Decimal("200"),
        )
    )


@pytest.fixture
def member(service):
    return service.members.create("Ahmed Hassan", "01000000001", "ahmed@example.com", date(2024, 6, 1))
