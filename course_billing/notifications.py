"""Notification dispatch contract.

``NotificationPort.notify(user_id, notification_type, message, related_entity_id)``
is the only way the billing core talks to students. The dispatcher records each
notification before handing it to the transport, and refuses to send one that
duplicates a notification recorded for the same user, type and entity within
the dedup window. Transports are assumed at-least-once; deduplication is done
here, against the notifications table, never by the transport.

Dispatch always happens after the core transition has committed. A failure
to record is reported as ``False`` and a transport failure is logged. Neither
undoes the transition that triggered it.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from course_billing.models import Notification, NotificationType

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)

MESSAGES = {
    NotificationType.PAYMENT_DUE: 'Reminder: payment for course "{course}" is due on {due_date}',
    NotificationType.PAYMENT_OVERDUE: 'Access to course "{course}" is suspended because a payment is overdue',
    NotificationType.PAYMENT_SUCCESSFUL: 'Payment for course "{course}" received. Access to the course is active',
    NotificationType.NEXT_PAYMENT_CREATED: 'Next monthly payment ({month}/{duration}) for course "{course}" is due on {due_date}',
}


def render_message(notification_type: NotificationType, **context) -> str:
    due_date = context.get("due_date")
    if due_date is not None and hasattr(due_date, "strftime"):
        context["due_date"] = due_date.strftime("%Y-%m-%d")
    return MESSAGES[notification_type].format(**context)


class NotificationTransport(ABC):
    @abstractmethod
    def send(self, notification: Notification) -> None:
        ...


class LoggingTransport(NotificationTransport):
    def send(self, notification: Notification) -> None:
        logger.info(
            "Notification %s to user=%s about %s: %s",
            notification.type.value, notification.user_id, notification.related_entity_id, notification.message,
        )


class NotificationPort(ABC):
    @abstractmethod
    def notify(self, user_id: str, notification_type: NotificationType, message: str, related_entity_id) -> bool:
        ...


class NotificationDispatcher(NotificationPort):
    def __init__(self, repo, transport: NotificationTransport, clock, dedup_hours: int = 24):
        self.repo = repo
        self.transport = transport
        self.clock = clock
        if dedup_hours < 1:
            raise ValueError(f"dedup window must be at least one hour, got {dedup_hours}")
        self.dedup_window = timedelta(hours=dedup_hours)

    def already_sent(self, user_id: str, notification_type: NotificationType, related_entity_id) -> bool:
        since = self.clock.now() - self.dedup_window
        return self.repo.has_notification_since(user_id, notification_type, str(related_entity_id), since)

    def dedup_key(self, user_id: str, notification_type: NotificationType, related_entity_id, now: datetime) -> str:
        """Key shared by every notification of one window-sized bucket.

        Buckets are aligned to the epoch, so a 24 hour window buckets by UTC
        day. Two racing inserts in the same bucket collide on the unique key.
        """
        bucket = int((now - _EPOCH) / self.dedup_window)
        return f"{notification_type.value}:{related_entity_id}:{user_id}:{bucket}"

    def notify(self, user_id: str, notification_type: NotificationType, message: str, related_entity_id) -> bool:
        related = str(related_entity_id)
        now = self.clock.now()
        try:
            if self.already_sent(user_id, notification_type, related):
                logger.debug("Skipping duplicate %s for user=%s entity=%s", notification_type.value, user_id, related)
                return False
            notification = Notification(
                user_id=user_id,
                type=notification_type,
                related_entity_id=related,
                message=message,
                dedup_key=self.dedup_key(user_id, notification_type, related, now),
                created_at=now,
            )
            self.repo.add_notification(notification)
            self.repo.commit()
        except IntegrityError:
            self.repo.rollback()
            logger.debug("Concurrent duplicate %s for user=%s entity=%s", notification_type.value, user_id, related)
            return False
        except SQLAlchemyError:
            self.repo.rollback()
            logger.exception("Could not record %s notification for user=%s", notification_type.value, user_id)
            return False

        try:
            self.transport.send(notification)
        except Exception:
            logger.exception("Transport failed for notification id=%s", notification.id)
        logger.info("Dispatched %s to user=%s entity=%s", notification_type.value, user_id, related)
        return True
