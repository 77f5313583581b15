from datetime import datetime

import pytest

from conftest import RecordingTransport
from course_billing.models import Notification, NotificationType
from course_billing.notifications import NotificationDispatcher, render_message
from course_billing.repository import BillingRepository


class ExplodingTransport(RecordingTransport):
    def send(self, notification):
        raise ConnectionError("broker down")


@pytest.fixture
def dispatcher(catalogue, clock, transport):
    return NotificationDispatcher(BillingRepository(catalogue), transport, clock, dedup_hours=24)


def test_sends_and_records(dispatcher, transport, catalogue):
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)

    [stored] = catalogue.query(Notification).all()
    assert stored.related_entity_id == "7"
    assert stored.message == "pay up"
    assert transport.sent == [("student-1", NotificationType.PAYMENT_DUE, "7")]


def test_duplicate_within_window_is_suppressed(dispatcher, transport, clock):
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)
    clock.advance(hours=23)
    assert not dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)
    assert len(transport.sent) == 1

    clock.advance(hours=2)
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)
    assert len(transport.sent) == 2


def test_different_entity_or_type_is_not_a_duplicate(dispatcher, transport):
    dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "a", 7)
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "b", 8)
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_OVERDUE, "c", 7)
    assert dispatcher.notify("student-2", NotificationType.PAYMENT_DUE, "d", 7)
    assert len(transport.sent) == 4


def test_concurrent_duplicate_loses_on_dedup_key(dispatcher, transport, catalogue, monkeypatch):
    dispatcher.notify("student-1", NotificationType.PAYMENT_OVERDUE, "first", 3)
    # the other sweep checked before our row was visible
    monkeypatch.setattr(dispatcher, "already_sent", lambda *args: False)

    assert not dispatcher.notify("student-1", NotificationType.PAYMENT_OVERDUE, "second", 3)
    assert catalogue.query(Notification).count() == 1
    assert len(transport.sent) == 1


def test_transport_failure_is_logged_not_raised(catalogue, clock, caplog):
    dispatcher = NotificationDispatcher(BillingRepository(catalogue), ExplodingTransport(), clock)

    assert dispatcher.notify("student-1", NotificationType.PAYMENT_SUCCESSFUL, "thanks", 1)

    assert catalogue.query(Notification).count() == 1
    assert "Transport failed" in caplog.text


def test_transport_failure_does_not_undo_payment(services, catalogue, monkeypatch):
    monkeypatch.setattr(services.notifier, "transport", ExplodingTransport())
    payment = services.ledger.create_payment("student-1", "course-once", 500, "ONE_TIME")

    result = services.ledger.mark_paid(payment.id)

    assert result.changed
    catalogue.expire_all()
    assert services.ledger.get_payment(payment.id).status.value == "PAID"


def test_render_message():
    message = render_message(NotificationType.NEXT_PAYMENT_CREATED, course="Python Basics", month=2,
                             duration=3, due_date=datetime(2024, 2, 10, 9, 0))
    assert message == 'Next monthly payment (2/3) for course "Python Basics" is due on 2024-02-10'


def test_short_window_allows_a_second_notification_the_same_day(catalogue, clock, transport):
    dispatcher = NotificationDispatcher(BillingRepository(catalogue), transport, clock, dedup_hours=1)

    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)
    clock.advance(minutes=30)
    assert not dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)
    clock.advance(hours=2)
    assert dispatcher.notify("student-1", NotificationType.PAYMENT_DUE, "pay up", 7)

    assert catalogue.query(Notification).count() == 2
    assert len(transport.sent) == 2


def test_dedup_key_buckets_by_window(catalogue, clock, transport):
    daily = NotificationDispatcher(BillingRepository(catalogue), transport, clock, dedup_hours=24)
    hourly = NotificationDispatcher(BillingRepository(catalogue), transport, clock, dedup_hours=1)
    morning, evening = datetime(2024, 1, 10, 1, 0), datetime(2024, 1, 10, 23, 0)

    assert daily.dedup_key("student-1", NotificationType.PAYMENT_DUE, "7", morning) == \
        daily.dedup_key("student-1", NotificationType.PAYMENT_DUE, "7", evening)
    assert hourly.dedup_key("student-1", NotificationType.PAYMENT_DUE, "7", morning) != \
        hourly.dedup_key("student-1", NotificationType.PAYMENT_DUE, "7", evening)


def test_window_below_one_hour_is_rejected(catalogue, clock, transport):
    with pytest.raises(ValueError):
        NotificationDispatcher(BillingRepository(catalogue), transport, clock, dedup_hours=0)
