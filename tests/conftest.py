"""
Pytest fixtures for the billing core.

Every test gets a fresh in-memory SQLite database, a fixed clock, a transport
that records what would have been sent, and a small catalogue:

- students ``student-1`` and ``student-2``, teacher ``teacher-1``
- ``course-monthly``: MONTHLY, 3 months at 100
- ``course-once``: ONE_TIME, 500
- ``course-free``: ONE_TIME, price 0
"""
from datetime import datetime
from decimal import Decimal

import pytest

from course_billing import database
from course_billing.clock import FixedClock
from course_billing.config import load_settings
from course_billing.models import (
    Course, Enrollment, EnrollmentStatus, Notification, PaymentType, User, UserRole,
)
from course_billing.notifications import NotificationTransport
from course_billing.services import build_services

START = datetime(2024, 1, 10, 9, 0, 0)


class RecordingTransport(NotificationTransport):
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append((notification.user_id, notification.type, notification.related_entity_id))


@pytest.fixture
def db():
    database.reset_db()
    database.init_db("sqlite://")
    session = database.SessionLocal()
    yield session
    session.close()
    database.reset_db()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def settings(monkeypatch):
    for name in ("INITIAL_PAYMENT_GRACE_DAYS", "REMINDER_WINDOW_DAYS", "NOTIFICATION_DEDUP_HOURS",
                 "NOTIFICATION_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    return load_settings()


@pytest.fixture
def catalogue(db):
    db.add_all([
        User(id="student-1", name="Anna", email="anna@example.com", role=UserRole.STUDENT),
        User(id="student-2", name="Boris", email="boris@example.com", role=UserRole.STUDENT),
        User(id="teacher-1", name="Vera", email="vera@example.com", role=UserRole.TEACHER),
        Course(id="course-monthly", title="Python Basics", payment_type=PaymentType.MONTHLY,
               monthly_price=Decimal("100"), total_price=Decimal("300"), duration=3, currency="RUB"),
        Course(id="course-once", title="SQL Workshop", payment_type=PaymentType.ONE_TIME,
               total_price=Decimal("500"), currency="RUB"),
        Course(id="course-free", title="Intro Webinar", payment_type=PaymentType.ONE_TIME,
               total_price=Decimal("0"), currency="RUB"),
    ])
    db.commit()
    return db


@pytest.fixture
def services(catalogue, transport, clock, settings):
    return build_services(catalogue, transport, clock, settings)


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def access(services):
    return services.access


@pytest.fixture
def recurring(services):
    return services.recurring


def notifications_of(db, type):
    return db.query(Notification).filter(Notification.type == type).all()


def assert_access_invariants(db):
    for enrollment in db.query(Enrollment).all():
        if enrollment.status == EnrollmentStatus.SUSPENDED:
            assert enrollment.payment_status.value == "OVERDUE", enrollment.id
        if enrollment.status == EnrollmentStatus.ACTIVE:
            assert enrollment.payment_status.value != "OVERDUE", enrollment.id
