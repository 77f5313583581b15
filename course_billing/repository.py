"""Per-entity reads and conditional writes over one SQLAlchemy session.

Nothing here caches Enrollment or Payment state: every call goes to the
database, and every status write is an ``UPDATE ... WHERE status IN (...)``
whose rowcount tells the caller whether its transition actually happened.
Commits are left to the services.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from course_billing.models import (
    Course, Enrollment, EnrollmentStatus, Notification, NotificationType, Payment, PaymentStatus, User,
)


class BillingRepository:
    def __init__(self, db: Session):
        self.db = db

    # -- transactions -------------------------------------------------------

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def refresh(self, obj):
        self.db.refresh(obj)
        return obj

    # -- content domain (read only) -----------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_course(self, course_id: str) -> Optional[Course]:
        return self.db.query(Course).filter(Course.id == course_id).first()

    # -- enrollments --------------------------------------------------------

    def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        return (
            self.db.query(Enrollment)
            .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .first()
        )

    def add_enrollment(self, enrollment: Enrollment) -> Enrollment:
        self.db.add(enrollment)
        self.db.flush()
        return enrollment

    def update_enrollment(self, enrollment_id: int, where_status: Iterable[EnrollmentStatus] = None, **values) -> int:
        q = self.db.query(Enrollment).filter(Enrollment.id == enrollment_id)
        if where_status is not None:
            q = q.filter(Enrollment.status.in_(list(where_status)))
        return q.update(values, synchronize_session="fetch")

    def suspended_paid_enrollments(self) -> List[Enrollment]:
        return (
            self.db.query(Enrollment)
            .filter(
                Enrollment.status == EnrollmentStatus.SUSPENDED,
                Enrollment.payment_status == PaymentStatus.PAID,
            )
            .order_by(Enrollment.id)
            .all()
        )

    # -- payments -----------------------------------------------------------

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def add_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def find_open_month_payment(self, user_id: str, course_id: str, month_number: int) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.user_id == user_id,
                Payment.course_id == course_id,
                Payment.month_number == month_number,
                Payment.status != PaymentStatus.CANCELLED,
            )
            .first()
        )

    def payments_for(self, user_id: str, course_id: str) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.user_id == user_id, Payment.course_id == course_id)
            .order_by(Payment.id)
            .all()
        )

    def transition_payment(self, payment_id: int, from_statuses: Iterable[PaymentStatus], **values) -> int:
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status.in_(list(from_statuses)))
            .update(values, synchronize_session="fetch")
        )

    def delete_pending_payment(self, payment_id: int) -> int:
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .delete(synchronize_session="fetch")
        )

    def pending_payments_due_before(self, moment: datetime) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.status == PaymentStatus.PENDING, Payment.due_date < moment)
            .order_by(Payment.due_date, Payment.id)
            .all()
        )

    def overdue_payments_due_before(self, moment: datetime) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.status == PaymentStatus.OVERDUE, Payment.due_date < moment)
            .order_by(Payment.due_date, Payment.id)
            .all()
        )

    def pending_payments_due_between(self, start: datetime, end: datetime) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING,
                Payment.due_date >= start,
                Payment.due_date <= end,
            )
            .order_by(Payment.due_date, Payment.id)
            .all()
        )

    def latest_paid_payment(self, user_id: str, course_id: str, since: datetime = None) -> Optional[Payment]:
        q = self.db.query(Payment).filter(
            Payment.user_id == user_id,
            Payment.course_id == course_id,
            Payment.status == PaymentStatus.PAID,
        )
        if since is not None:
            q = q.filter(Payment.paid_at >= since)
        return q.order_by(Payment.paid_at.desc(), Payment.id.desc()).first()

    def _filtered_payments(self, status=None, payment_type=None, user_id=None, course_id=None):
        q = self.db.query(Payment)
        if status is not None:
            q = q.filter(Payment.status == status)
        if payment_type is not None:
            q = q.filter(Payment.payment_type == payment_type)
        if user_id:
            q = q.filter(Payment.user_id == user_id)
        if course_id:
            q = q.filter(Payment.course_id == course_id)
        return q

    def list_payments(self, offset: int, limit: int, **filters) -> Tuple[List[Payment], int]:
        q = self._filtered_payments(**filters)
        total = q.count()
        items = q.order_by(Payment.created_at.desc(), Payment.id.desc()).offset(offset).limit(limit).all()
        return items, total

    def status_totals(self) -> List[Tuple[PaymentStatus, int, object]]:
        return (
            self.db.query(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .group_by(Payment.status)
            .all()
        )

    def type_counts(self) -> List[Tuple[object, int]]:
        return (
            self.db.query(Payment.payment_type, func.count(Payment.id))
            .group_by(Payment.payment_type)
            .all()
        )

    # -- notifications ------------------------------------------------------

    def has_notification_since(self, user_id: str, notification_type: NotificationType, related_entity_id: str,
                               since: datetime) -> bool:
        return (
            self.db.query(Notification.id)
            .filter(
                Notification.user_id == user_id,
                Notification.type == notification_type,
                Notification.related_entity_id == related_entity_id,
                Notification.created_at >= since,
            )
            .first()
            is not None
        )

    def add_notification(self, notification: Notification) -> Notification:
        self.db.add(notification)
        self.db.flush()
        return notification

    def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        return (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .all()
        )
