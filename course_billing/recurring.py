"""Recurring Billing Generator for MONTHLY courses."""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError

from course_billing.errors import InvalidArgumentError, NotFoundError
from course_billing.models import NotificationType, Payment, PaymentStatus, PaymentType
from course_billing.notifications import render_message

logger = logging.getLogger(__name__)


class NextPaymentOutcome(str, enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    COURSE_COMPLETE = "course_complete"


@dataclass
class NextPaymentResult:
    outcome: NextPaymentOutcome
    month_number: int
    payment: Optional[Payment] = None

    @property
    def created(self) -> bool:
        return self.outcome == NextPaymentOutcome.CREATED


class RecurringBillingGenerator:
    def __init__(self, repo, notifier, clock):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock

    def create_next_monthly_payment(self, user_id: str, course_id: str, current_month_number: int) -> NextPaymentResult:
        course = self.repo.get_course(course_id)
        if course is None:
            raise NotFoundError("course", course_id)
        if course.payment_type != PaymentType.MONTHLY:
            raise InvalidArgumentError(f"course {course_id} is not billed monthly")
        if current_month_number is None or current_month_number < 1:
            raise InvalidArgumentError("current month number must start at 1")

        next_month = current_month_number + 1
        duration = course.duration or 1
        if next_month > duration:
            logger.info("Course=%s complete for user=%s after month %s", course_id, user_id, current_month_number)
            return NextPaymentResult(NextPaymentOutcome.COURSE_COMPLETE, next_month)

        existing = self.repo.find_open_month_payment(user_id, course_id, next_month)
        if existing is not None:
            return NextPaymentResult(NextPaymentOutcome.ALREADY_EXISTS, next_month, existing)

        now = self.clock.now()
        due_date = now + relativedelta(months=1)
        try:
            payment = self.repo.add_payment(Payment(
                user_id=user_id,
                course_id=course_id,
                amount=course.monthly_price or course.total_price,
                currency=course.currency,
                status=PaymentStatus.PENDING,
                payment_type=PaymentType.MONTHLY,
                month_number=next_month,
                due_date=due_date,
                notes=f"Monthly payment {next_month}/{duration}",
                created_at=now,
            ))
            enrollment = self.repo.get_enrollment(user_id, course_id)
            if enrollment is not None:
                self.repo.update_enrollment(enrollment.id, next_payment_due=due_date)
            self.repo.commit()
        except IntegrityError:
            # a concurrent call created the same month first
            self.repo.rollback()
            existing = self.repo.find_open_month_payment(user_id, course_id, next_month)
            if existing is None:
                raise
            return NextPaymentResult(NextPaymentOutcome.ALREADY_EXISTS, next_month, existing)
        except Exception:
            self.repo.rollback()
            raise

        logger.info("Created monthly payment id=%s month=%s/%s user=%s course=%s due=%s",
                    payment.id, next_month, duration, user_id, course_id, due_date)
        message = render_message(
            NotificationType.NEXT_PAYMENT_CREATED,
            course=course.title, month=next_month, duration=duration, due_date=due_date,
        )
        self.notifier.notify(user_id, NotificationType.NEXT_PAYMENT_CREATED, message, payment.id)
        return NextPaymentResult(NextPaymentOutcome.CREATED, next_month, self.repo.refresh(payment))
