"""Payment Ledger: the only writer of ``Payment.status``.

Allowed transitions::

    PENDING  -> PAID | OVERDUE | CANCELLED
    OVERDUE  -> PAID | CANCELLED | PENDING (reopen)
    PAID     -> (terminal, immutable, never deleted)
    CANCELLED-> (terminal)

Each transition is a conditional update committed together with the
enrollment reconciliation for the same (user, course) pair. Notifications
and the next monthly payment are produced after that commit.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from math import ceil
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from course_billing.access import AccessChange
from course_billing.errors import (
    BillingError, ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError,
)
from course_billing.models import (
    Course, NotificationType, Payment, PaymentStatus, PaymentType, UserRole,
)
from course_billing.notifications import render_message

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

BULK_ACTIONS = ("markAsPaid", "markAsOverdue", "cancel")

# fields that freeze once a payment is PAID
_FROZEN_WHEN_PAID = ("amount", "currency", "due_date", "paid_at", "payment_method", "transaction_id")

# statuses each target may be reached from
_SOURCES = {
    PaymentStatus.PAID: (PaymentStatus.PENDING, PaymentStatus.OVERDUE),
    PaymentStatus.OVERDUE: (PaymentStatus.PENDING,),
    PaymentStatus.CANCELLED: (PaymentStatus.PENDING, PaymentStatus.OVERDUE),
    PaymentStatus.PENDING: (PaymentStatus.OVERDUE,),
}


@dataclass
class TransitionResult:
    payment: Payment
    changed: bool
    access_change: Optional[AccessChange] = None


def _parse_enum(enum_cls, value, name):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise InvalidArgumentError(f"invalid {name}: {value!r}")


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise InvalidArgumentError(f"invalid amount: {value!r}")
    if amount <= 0:
        raise InvalidArgumentError("amount must be positive")
    return amount


class PaymentLedger:
    def __init__(self, repo, notifier, access, recurring, clock):
        self.repo = repo
        self.notifier = notifier
        self.access = access
        self.recurring = recurring
        self.clock = clock

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.repo.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    # -- creation -----------------------------------------------------------

    def stage_payment(self, user_id: str, course: Course, amount, payment_type: PaymentType,
                      month_number: int = None, due_date=None, notes: str = None, currency: str = None) -> Payment:
        """Add a PENDING payment to the current transaction without committing."""
        if payment_type == PaymentType.MONTHLY:
            if month_number is None or month_number < 1:
                raise InvalidArgumentError("monthly payments need a month number starting at 1")
            if self.repo.find_open_month_payment(user_id, course.id, month_number) is not None:
                raise ConflictError(f"month {month_number} is already billed for user {user_id} course {course.id}")
        elif month_number is not None:
            raise InvalidArgumentError("one-time payments have no month number")

        return self.repo.add_payment(Payment(
            user_id=user_id,
            course_id=course.id,
            amount=amount,
            currency=currency or course.currency,
            status=PaymentStatus.PENDING,
            payment_type=payment_type,
            month_number=month_number,
            due_date=due_date,
            notes=notes,
            created_at=self.clock.now(),
        ))

    def create_payment(self, user_id: str, course_id: str, amount, payment_type, month_number: int = None,
                       due_date=None, notes: str = None, currency: str = None) -> Payment:
        if not user_id or not course_id or amount is None or payment_type is None:
            raise InvalidArgumentError("userId, courseId, amount and paymentType are required")
        payment_type = _parse_enum(PaymentType, payment_type, "paymentType")
        amount = _parse_amount(amount)

        user = self.repo.get_user(user_id)
        if user is None or user.role != UserRole.STUDENT:
            raise NotFoundError("student", user_id)
        course = self.repo.get_course(course_id)
        if course is None:
            raise NotFoundError("course", course_id)

        try:
            payment = self.stage_payment(user_id, course, amount, payment_type, month_number, due_date, notes, currency)
            self.access.reconcile(user_id, course_id)
            self.repo.commit()
        except IntegrityError:
            self.repo.rollback()
            raise ConflictError(f"month {month_number} is already billed for user {user_id} course {course_id}")
        except Exception:
            self.repo.rollback()
            raise
        logger.info("Created payment id=%s user=%s course=%s amount=%s type=%s month=%s",
                    payment.id, user_id, course_id, amount, payment_type.value, month_number)
        return self.repo.refresh(payment)

    # -- transitions --------------------------------------------------------

    def _transition(self, payment_id: int, to_status: PaymentStatus, fields: dict = None, **values):
        """Conditional status update plus reconciliation in one commit.

        ``fields`` ride along in the same UPDATE, so they are only written
        when the transition itself wins.
        """
        payment = self.get_payment(payment_id)
        try:
            rows = self.repo.transition_payment(
                payment_id, _SOURCES[to_status], status=to_status, **(fields or {}), **values)
            change = self.access.reconcile(payment.user_id, payment.course_id) if rows else None
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        return self.repo.refresh(payment), bool(rows), change

    def mark_paid(self, payment_id: int, payment_method: str = None, transaction_id: str = None,
                  paid_at=None, fields: dict = None) -> TransitionResult:
        payment = self.get_payment(payment_id)
        if payment.status == PaymentStatus.PAID:
            return self._already_paid(payment, transaction_id)
        if payment.status == PaymentStatus.CANCELLED:
            raise InvalidStateError(f"payment {payment_id} is cancelled and cannot be paid", payment.status)

        payment, changed, change = self._transition(
            payment_id, PaymentStatus.PAID, fields,
            paid_at=paid_at or self.clock.now(), payment_method=payment_method, transaction_id=transaction_id,
        )
        if not changed:
            # lost a race: whoever won decides the outcome
            if payment.status == PaymentStatus.PAID:
                return self._already_paid(payment, transaction_id)
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)

        logger.info("Payment id=%s marked PAID user=%s course=%s txn=%s",
                    payment.id, payment.user_id, payment.course_id, transaction_id)
        course = self.repo.get_course(payment.course_id)
        title = course.title if course is not None else payment.course_id
        self.notifier.notify(
            payment.user_id, NotificationType.PAYMENT_SUCCESSFUL,
            render_message(NotificationType.PAYMENT_SUCCESSFUL, course=title), payment.id,
        )
        self._bill_next_month(payment, course)
        return TransitionResult(payment, True, change)

    def _already_paid(self, payment: Payment, transaction_id: str) -> TransitionResult:
        if transaction_id and payment.transaction_id and transaction_id != payment.transaction_id:
            raise InvalidStateError(
                f"payment {payment.id} is already paid with transaction {payment.transaction_id}", payment.status)
        return TransitionResult(payment, False)

    def _bill_next_month(self, payment: Payment, course: Optional[Course]):
        if course is None or course.payment_type != PaymentType.MONTHLY:
            return
        if payment.month_number is None:
            logger.warning("Monthly course=%s payment id=%s has no month number", course.id, payment.id)
            return
        try:
            self.recurring.create_next_monthly_payment(payment.user_id, payment.course_id, payment.month_number)
        except (BillingError, SQLAlchemyError) as exc:
            self.repo.rollback()
            logger.warning("Next monthly payment after id=%s not created: %s", payment.id, exc)

    def mark_overdue(self, payment_id: int, fields: dict = None) -> TransitionResult:
        payment = self.get_payment(payment_id)
        if payment.status == PaymentStatus.OVERDUE:
            return TransitionResult(payment, False)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)

        payment, changed, change = self._transition(payment_id, PaymentStatus.OVERDUE, fields)
        if not changed:
            if payment.status == PaymentStatus.OVERDUE:
                return TransitionResult(payment, False)
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)
        logger.info("Payment id=%s marked OVERDUE user=%s course=%s", payment.id, payment.user_id, payment.course_id)
        self.access.announce(change, payment)
        return TransitionResult(payment, True, change)

    def cancel(self, payment_id: int, fields: dict = None) -> TransitionResult:
        payment = self.get_payment(payment_id)
        if payment.status == PaymentStatus.CANCELLED:
            return TransitionResult(payment, False)
        if payment.status == PaymentStatus.PAID:
            raise InvalidStateError(f"payment {payment_id} is paid and cannot be cancelled", payment.status)

        payment, changed, change = self._transition(payment_id, PaymentStatus.CANCELLED, fields)
        if not changed:
            if payment.status == PaymentStatus.CANCELLED:
                return TransitionResult(payment, False)
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)
        logger.info("Payment id=%s cancelled user=%s course=%s", payment.id, payment.user_id, payment.course_id)
        return TransitionResult(payment, True, change)

    def reopen(self, payment_id: int, fields: dict = None) -> TransitionResult:
        payment = self.get_payment(payment_id)
        if payment.status == PaymentStatus.PENDING:
            return TransitionResult(payment, False)
        if payment.status != PaymentStatus.OVERDUE:
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)

        payment, changed, change = self._transition(payment_id, PaymentStatus.PENDING, fields)
        if not changed and payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(f"payment {payment_id} is {payment.status.value}", payment.status)
        logger.info("Payment id=%s reopened user=%s course=%s", payment.id, payment.user_id, payment.course_id)
        return TransitionResult(payment, changed, change)

    def update_payment(self, payment_id: int, status=None, **fields) -> Payment:
        """Apply field changes and the requested status transition atomically.

        The transition is checked against the current status before anything
        is written. When a status change is requested the fields go out in the
        same conditional update, so a rejected or lost transition leaves the
        payment untouched.
        """
        payment = self.get_payment(payment_id)
        status = _parse_enum(PaymentStatus, status, "status")
        values = {k: v for k, v in fields.items() if v is not None}
        if "amount" in values:
            values["amount"] = _parse_amount(values["amount"])

        if payment.status == PaymentStatus.PAID:
            frozen = [k for k in values if k in _FROZEN_WHEN_PAID and values[k] != getattr(payment, k)]
            if frozen or status not in (None, PaymentStatus.PAID):
                raise InvalidStateError(f"payment {payment_id} is paid and cannot be modified", payment.status)

        if status is None or status == payment.status:
            return self._update_fields(payment, values)
        if payment.status not in _SOURCES[status]:
            raise InvalidStateError(
                f"payment {payment_id} cannot go from {payment.status.value} to {status.value}", payment.status)

        if status == PaymentStatus.PAID:
            paid_fields = {k: values.pop(k, None) for k in ("paid_at", "payment_method", "transaction_id")}
            result = self.mark_paid(payment_id, fields=values, **paid_fields)
        elif status == PaymentStatus.OVERDUE:
            result = self.mark_overdue(payment_id, fields=values)
        elif status == PaymentStatus.CANCELLED:
            result = self.cancel(payment_id, fields=values)
        else:
            result = self.reopen(payment_id, fields=values)
        if values and not result.changed:
            raise ConflictError(f"payment {payment_id} was changed concurrently, fields not applied")
        if values:
            logger.info("Updated payment id=%s fields=%s", payment_id, sorted(values))
        return result.payment

    def _update_fields(self, payment: Payment, values: dict) -> Payment:
        if not values:
            return payment
        try:
            rows = self.repo.transition_payment(payment.id, [payment.status], **values)
            if rows:
                self.access.reconcile(payment.user_id, payment.course_id)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        if not rows:
            raise ConflictError(f"payment {payment.id} was changed concurrently, fields not applied")
        logger.info("Updated payment id=%s fields=%s", payment.id, sorted(values))
        return self.repo.refresh(payment)

    def bulk_transition(self, action: str, payment_ids) -> dict:
        handlers = {
            "markAsPaid": self.mark_paid,
            "markAsOverdue": self.mark_overdue,
            "cancel": self.cancel,
        }
        if action not in handlers:
            raise InvalidArgumentError(f"unknown bulk action {action!r}, expected one of {', '.join(BULK_ACTIONS)}")
        if not payment_ids:
            raise InvalidArgumentError("no payment ids given")

        updated, failed = 0, []
        for payment_id in payment_ids:
            try:
                if handlers[action](payment_id).changed:
                    updated += 1
            except (BillingError, SQLAlchemyError) as exc:
                self.repo.rollback()
                logger.warning("Bulk %s failed for payment id=%s: %s", action, payment_id, exc)
                failed.append({"paymentId": payment_id, "error": getattr(exc, "code", type(exc).__name__),
                               "detail": str(exc)})
        logger.info("Bulk %s: updated=%s failed=%s", action, updated, len(failed))
        return {"updatedCount": updated, "failed": failed}

    def delete_payment(self, payment_id: int) -> None:
        payment = self.get_payment(payment_id)
        if payment.status == PaymentStatus.PAID:
            raise ConflictError(f"payment {payment_id} is paid and cannot be deleted")
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(f"only pending payments can be deleted, payment {payment_id} is "
                                    f"{payment.status.value}", payment.status)
        user_id, course_id = payment.user_id, payment.course_id
        try:
            rows = self.repo.delete_pending_payment(payment_id)
            if rows:
                self.access.reconcile(user_id, course_id)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        if not rows:
            current = self.repo.get_payment(payment_id)
            if current is not None and current.status == PaymentStatus.PAID:
                raise ConflictError(f"payment {payment_id} is paid and cannot be deleted")
            if current is not None:
                raise InvalidStateError(f"payment {payment_id} is {current.status.value}", current.status)
        logger.info("Deleted payment id=%s user=%s course=%s", payment_id, user_id, course_id)

    # -- read paths ---------------------------------------------------------

    def list_payments(self, status=None, payment_type=None, user_id=None, course_id=None,
                      page: int = 1, limit: int = 20) -> dict:
        status = _parse_enum(PaymentStatus, status, "status")
        payment_type = _parse_enum(PaymentType, payment_type, "paymentType")
        if page < 1 or limit < 1:
            raise InvalidArgumentError("page and limit must be positive")
        limit = min(limit, MAX_PAGE_SIZE)

        payments, total = self.repo.list_payments(
            (page - 1) * limit, limit,
            status=status, payment_type=payment_type, user_id=user_id, course_id=course_id,
        )
        return {
            "payments": payments,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": ceil(total / limit) if total else 0,
            },
            "statusCounts": self._status_counts(),
        }

    def _status_counts(self) -> dict:
        return {
            status.value: {"count": count, "amount": Decimal(str(amount))}
            for status, count, amount in self.repo.status_totals()
        }

    def stats(self) -> dict:
        by_status = self._status_counts()
        by_type = {payment_type.value: count for payment_type, count in self.repo.type_counts()}
        zero = {"count": 0, "amount": Decimal("0")}
        outstanding = sum(
            by_status.get(s.value, zero)["amount"] for s in (PaymentStatus.PENDING, PaymentStatus.OVERDUE))
        return {
            "byStatus": by_status,
            "byType": by_type,
            "totalCount": sum(v["count"] for v in by_status.values()),
            "paidAmount": by_status.get(PaymentStatus.PAID.value, zero)["amount"],
            "outstandingAmount": Decimal(outstanding),
        }
