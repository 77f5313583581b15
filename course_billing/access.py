"""Enrollment Access Controller.

Owns ``Enrollment.status`` and ``Enrollment.payment_status``. Reconciliation
derives the enrollment's payment state from the pair's payments:

    any OVERDUE payment  -> OVERDUE (ACTIVE enrollments are suspended)
    else any PAID        -> PAID    (SUSPENDED enrollments are restored)
    else any PENDING     -> PENDING (SUSPENDED enrollments are restored)
    else                 -> unchanged

The three sweeps (``check_overdue_payments``, ``restore_access_after_payment``,
``send_payment_reminders``) re-read current state for every item and only
write through conditional updates, so they can be run repeatedly and
concurrently. A failing item is rolled back and reported in the summary.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from course_billing.errors import (
    BillingError, ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError,
)
from course_billing.models import (
    Enrollment, EnrollmentStatus, NotificationType, Payment, PaymentStatus, PaymentType,
)
from course_billing.notifications import render_message

logger = logging.getLogger(__name__)


class AccessChange(str, enum.Enum):
    SUSPENDED = "suspended"
    RESTORED = "restored"


class SweepAction(str, enum.Enum):
    CHECK_OVERDUE_PAYMENTS = "check_overdue_payments"
    RESTORE_ACCESS_AFTER_PAYMENT = "restore_access_after_payment"
    SEND_PAYMENT_REMINDERS = "send_payment_reminders"


@dataclass
class SweepSummary:
    action: SweepAction
    processed: int = 0
    changed: int = 0
    affected: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)

    def record(self, user_id: str, course_id: str, **extra):
        self.changed += 1
        self.affected.append({"userId": user_id, "courseId": course_id, **extra})

    def fail(self, error: Exception, **ids):
        code = getattr(error, "code", type(error).__name__)
        self.errors.append({**ids, "error": code, "detail": str(error)})

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "processed": self.processed,
            "changed": self.changed,
            "affected": self.affected,
            "errors": self.errors,
        }


def derive_payment_status(payments: List[Payment]) -> Optional[PaymentStatus]:
    statuses = {p.status for p in payments}
    for candidate in (PaymentStatus.OVERDUE, PaymentStatus.PAID, PaymentStatus.PENDING):
        if candidate in statuses:
            return candidate
    return None


class EnrollmentAccessController:
    # wired by services.build_services; the ledger is the only writer of Payment.status
    ledger = None

    def __init__(self, repo, notifier, clock, settings):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock
        self.settings = settings

    # -- enrollment ---------------------------------------------------------

    def enroll(self, user_id: str, course_id: str) -> Enrollment:
        user = self.repo.get_user(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        course = self.repo.get_course(course_id)
        if course is None:
            raise NotFoundError("course", course_id)
        if self.repo.get_enrollment(user_id, course_id) is not None:
            raise ConflictError(f"user {user_id} is already enrolled in course {course_id}")

        now = self.clock.now()
        price = course.price
        try:
            enrollment = self.repo.add_enrollment(Enrollment(
                user_id=user_id,
                course_id=course_id,
                status=EnrollmentStatus.ACTIVE,
                payment_status=PaymentStatus.PENDING if price > 0 else PaymentStatus.PAID,
                enrolled_at=now,
            ))
            if price > 0:
                due_date = now + timedelta(days=self.settings.INITIAL_PAYMENT_GRACE_DAYS)
                if course.payment_type == PaymentType.MONTHLY:
                    self.ledger.stage_payment(
                        user_id, course, price, PaymentType.MONTHLY, month_number=1, due_date=due_date,
                        notes=f"Monthly payment 1/{course.duration or 1}",
                    )
                else:
                    self.ledger.stage_payment(
                        user_id, course, price, PaymentType.ONE_TIME, due_date=due_date,
                        notes="One-time payment for the whole course",
                    )
                enrollment.next_payment_due = due_date
            self.repo.commit()
        except IntegrityError:
            self.repo.rollback()
            raise ConflictError(f"user {user_id} is already enrolled in course {course_id}")
        except Exception:
            self.repo.rollback()
            raise
        logger.info("Enrolled user=%s in course=%s paymentRequired=%s", user_id, course_id, price > 0)
        return self.repo.refresh(enrollment)

    def check_access(self, user_id: str, course_id: str) -> dict:
        enrollment = self.repo.get_enrollment(user_id, course_id)
        if enrollment is None:
            return {
                "hasAccess": False,
                "enrollmentStatus": None,
                "paymentStatus": None,
                "nextPaymentDue": None,
            }
        return {
            "hasAccess": enrollment.status == EnrollmentStatus.ACTIVE,
            "enrollmentStatus": enrollment.status.value,
            "paymentStatus": enrollment.payment_status.value,
            "nextPaymentDue": enrollment.next_payment_due,
        }

    # -- reconciliation -----------------------------------------------------

    def reconcile(self, user_id: str, course_id: str) -> Optional[AccessChange]:
        """Bring the pair's enrollment in line with its payments. Does not commit."""
        enrollment = self.repo.get_enrollment(user_id, course_id)
        if enrollment is None:
            logger.warning("No enrollment to reconcile for user=%s course=%s", user_id, course_id)
            return None

        payments = self.repo.payments_for(user_id, course_id)
        open_due = [p.due_date for p in payments
                    if p.status in (PaymentStatus.PENDING, PaymentStatus.OVERDUE) and p.due_date is not None]
        next_due = min(open_due) if open_due else None
        if enrollment.next_payment_due != next_due:
            self.repo.update_enrollment(enrollment.id, next_payment_due=next_due)

        target = derive_payment_status(payments)
        if target is None:
            return None

        status = enrollment.status
        if target == PaymentStatus.OVERDUE:
            if status == EnrollmentStatus.ACTIVE:
                rows = self.repo.update_enrollment(
                    enrollment.id, where_status=[EnrollmentStatus.ACTIVE],
                    status=EnrollmentStatus.SUSPENDED, payment_status=PaymentStatus.OVERDUE,
                    suspended_at=self.clock.now(),
                )
                if rows:
                    logger.info("Suspended enrollment id=%s user=%s course=%s", enrollment.id, user_id, course_id)
                    return AccessChange.SUSPENDED
                return None
            if status in (EnrollmentStatus.SUSPENDED, EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED):
                self._set_payment_status(enrollment, target)
                return None
        else:
            if status == EnrollmentStatus.SUSPENDED:
                rows = self.repo.update_enrollment(
                    enrollment.id, where_status=[EnrollmentStatus.SUSPENDED],
                    status=EnrollmentStatus.ACTIVE, payment_status=target, suspended_at=None,
                )
                if rows:
                    logger.info("Restored enrollment id=%s user=%s course=%s", enrollment.id, user_id, course_id)
                    return AccessChange.RESTORED
                return None
            if status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED):
                self._set_payment_status(enrollment, target)
                return None
        raise InvalidStateError(f"enrollment id={enrollment.id} has unknown status {status!r}", status)

    def _set_payment_status(self, enrollment: Enrollment, target: PaymentStatus):
        if enrollment.payment_status != target:
            self.repo.update_enrollment(enrollment.id, payment_status=target)

    def announce(self, change: Optional[AccessChange], payment: Payment):
        """Tell the student about an access change. Call after commit."""
        if change is None:
            return
        course = self.repo.get_course(payment.course_id)
        title = course.title if course is not None else payment.course_id
        if change == AccessChange.SUSPENDED:
            notification_type = NotificationType.PAYMENT_OVERDUE
        elif change == AccessChange.RESTORED:
            notification_type = NotificationType.PAYMENT_SUCCESSFUL
        else:
            raise InvalidStateError(f"unknown access change {change!r}")
        self.notifier.notify(
            payment.user_id, notification_type, render_message(notification_type, course=title), payment.id)

    # -- sweeps -------------------------------------------------------------

    def run(self, action) -> SweepSummary:
        try:
            action = SweepAction(action)
        except ValueError:
            raise InvalidArgumentError(f"unknown access control action {action!r}")
        if action == SweepAction.CHECK_OVERDUE_PAYMENTS:
            return self.check_overdue_payments()
        if action == SweepAction.RESTORE_ACCESS_AFTER_PAYMENT:
            return self.restore_access_after_payment()
        if action == SweepAction.SEND_PAYMENT_REMINDERS:
            return self.send_payment_reminders()
        raise InvalidArgumentError(f"unknown access control action {action!r}")

    def check_overdue_payments(self) -> SweepSummary:
        summary = SweepSummary(SweepAction.CHECK_OVERDUE_PAYMENTS)
        now = self.clock.now()

        # pending payments whose due date has passed become overdue first
        for payment in self.repo.pending_payments_due_before(now):
            try:
                result = self.ledger.mark_overdue(payment.id)
            except (BillingError, SQLAlchemyError) as exc:
                self.repo.rollback()
                logger.warning("Could not mark payment id=%s overdue: %s", payment.id, exc)
                summary.fail(exc, paymentId=payment.id)
                continue
            if result.access_change == AccessChange.SUSPENDED:
                summary.record(payment.user_id, payment.course_id, paymentId=payment.id)

        for payment in self.repo.overdue_payments_due_before(now):
            summary.processed += 1
            try:
                change = self.reconcile(payment.user_id, payment.course_id)
                self.repo.commit()
            except (BillingError, SQLAlchemyError) as exc:
                self.repo.rollback()
                logger.warning("Overdue check failed for payment id=%s: %s", payment.id, exc)
                summary.fail(exc, paymentId=payment.id)
                continue
            if change == AccessChange.SUSPENDED:
                summary.record(payment.user_id, payment.course_id, paymentId=payment.id)
                self.announce(change, payment)

        logger.info("check_overdue_payments: processed=%s suspended=%s", summary.processed, summary.changed)
        return summary

    def restore_access_after_payment(self) -> SweepSummary:
        summary = SweepSummary(SweepAction.RESTORE_ACCESS_AFTER_PAYMENT)

        for enrollment in self.repo.suspended_paid_enrollments():
            summary.processed += 1
            user_id, course_id = enrollment.user_id, enrollment.course_id
            try:
                payments = self.repo.payments_for(user_id, course_id)
                if any(p.status == PaymentStatus.OVERDUE for p in payments):
                    logger.warning("Enrollment id=%s still has overdue payments, not restoring", enrollment.id)
                    continue
                paid = self.repo.latest_paid_payment(user_id, course_id, since=enrollment.suspended_at)
                if paid is None:
                    continue
                rows = self.repo.update_enrollment(
                    enrollment.id, where_status=[EnrollmentStatus.SUSPENDED],
                    status=EnrollmentStatus.ACTIVE, payment_status=PaymentStatus.PAID, suspended_at=None,
                )
                self.repo.commit()
            except (BillingError, SQLAlchemyError) as exc:
                self.repo.rollback()
                logger.warning("Restore failed for enrollment id=%s: %s", enrollment.id, exc)
                summary.fail(exc, enrollmentId=enrollment.id)
                continue
            if rows:
                logger.info("Restored enrollment id=%s user=%s course=%s", enrollment.id, user_id, course_id)
                summary.record(user_id, course_id, paymentId=paid.id)
                self.announce(AccessChange.RESTORED, paid)

        logger.info("restore_access_after_payment: processed=%s restored=%s", summary.processed, summary.changed)
        return summary

    def send_payment_reminders(self) -> SweepSummary:
        summary = SweepSummary(SweepAction.SEND_PAYMENT_REMINDERS)
        now = self.clock.now()
        window_end = now + timedelta(days=self.settings.REMINDER_WINDOW_DAYS)

        for payment in self.repo.pending_payments_due_between(now, window_end):
            summary.processed += 1
            try:
                if self.repo.get_user(payment.user_id) is None:
                    raise NotFoundError("user", payment.user_id)
                course = self.repo.get_course(payment.course_id)
                if course is None:
                    raise NotFoundError("course", payment.course_id)
            except (BillingError, SQLAlchemyError) as exc:
                logger.warning("Skipping reminder for payment id=%s: %s", payment.id, exc)
                summary.fail(exc, paymentId=payment.id)
                continue
            message = render_message(NotificationType.PAYMENT_DUE, course=course.title, due_date=payment.due_date)
            if self.notifier.notify(payment.user_id, NotificationType.PAYMENT_DUE, message, payment.id):
                summary.record(payment.user_id, payment.course_id, paymentId=payment.id, dueDate=payment.due_date)

        logger.info("send_payment_reminders: processed=%s sent=%s", summary.processed, summary.changed)
        return summary
