from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import START
from course_billing.errors import ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
from course_billing.models import Payment, PaymentStatus, PaymentType


@pytest.fixture
def pending(ledger):
    return ledger.create_payment("student-1", "course-once", "500", "ONE_TIME", due_date=START + timedelta(days=7))


class TestCreatePayment:
    def test_creates_pending_payment(self, ledger):
        payment = ledger.create_payment("student-1", "course-once", Decimal("500"), PaymentType.ONE_TIME,
                                        notes="manual invoice")
        assert payment.id is not None
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("500")
        assert payment.currency == "RUB"
        assert payment.month_number is None
        assert payment.notes == "manual invoice"

    def test_accepts_payment_type_as_string(self, ledger):
        payment = ledger.create_payment("student-1", "course-monthly", 100, "monthly", month_number=1)
        assert payment.payment_type == PaymentType.MONTHLY
        assert payment.month_number == 1

    def test_missing_user(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.create_payment("nobody", "course-once", 500, "ONE_TIME")

    def test_missing_course(self, ledger):
        with pytest.raises(NotFoundError) as exc:
            ledger.create_payment("student-1", "no-course", 500, "ONE_TIME")
        assert exc.value.entity == "course"

    def test_non_student_is_rejected(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.create_payment("teacher-1", "course-once", 500, "ONE_TIME")

    def test_invalid_payment_type(self, ledger):
        with pytest.raises(InvalidArgumentError):
            ledger.create_payment("student-1", "course-once", 500, "WEEKLY")

    def test_non_positive_amount(self, ledger):
        with pytest.raises(InvalidArgumentError):
            ledger.create_payment("student-1", "course-once", 0, "ONE_TIME")

    def test_monthly_needs_month_number(self, ledger):
        with pytest.raises(InvalidArgumentError):
            ledger.create_payment("student-1", "course-monthly", 100, "MONTHLY")

    def test_duplicate_month_is_a_conflict(self, ledger, catalogue):
        ledger.create_payment("student-1", "course-monthly", 100, "MONTHLY", month_number=2)
        with pytest.raises(ConflictError):
            ledger.create_payment("student-1", "course-monthly", 100, "MONTHLY", month_number=2)
        assert catalogue.query(Payment).filter(Payment.month_number == 2).count() == 1

    def test_cancelled_month_can_be_billed_again(self, ledger):
        first = ledger.create_payment("student-1", "course-monthly", 100, "MONTHLY", month_number=2)
        ledger.cancel(first.id)
        second = ledger.create_payment("student-1", "course-monthly", 100, "MONTHLY", month_number=2)
        assert second.id != first.id


class TestMarkPaid:
    def test_marks_paid_and_stamps_time(self, ledger, pending):
        result = ledger.mark_paid(pending.id, payment_method="CARD", transaction_id="txn-1")
        assert result.changed
        assert result.payment.status == PaymentStatus.PAID
        assert result.payment.paid_at == START
        assert result.payment.transaction_id == "txn-1"
        assert result.payment.payment_method == "CARD"

    def test_repeat_with_same_transaction_is_a_no_op(self, ledger, pending):
        ledger.mark_paid(pending.id, transaction_id="txn-1")
        again = ledger.mark_paid(pending.id, transaction_id="txn-1")
        assert not again.changed
        assert again.payment.status == PaymentStatus.PAID

    def test_repeat_with_other_transaction_is_rejected(self, ledger, pending):
        ledger.mark_paid(pending.id, transaction_id="txn-1")
        with pytest.raises(InvalidStateError):
            ledger.mark_paid(pending.id, transaction_id="txn-2")

    def test_cancelled_payment_cannot_be_paid(self, ledger, pending):
        ledger.cancel(pending.id)
        with pytest.raises(InvalidStateError):
            ledger.mark_paid(pending.id)

    def test_overdue_payment_can_be_paid(self, ledger, pending):
        ledger.mark_overdue(pending.id)
        assert ledger.mark_paid(pending.id).payment.status == PaymentStatus.PAID

    def test_unknown_payment(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.mark_paid(12345)


class TestPaidIsImmutable:
    @pytest.fixture
    def paid(self, ledger, pending):
        return ledger.mark_paid(pending.id, transaction_id="txn-1").payment

    def test_cannot_mark_overdue(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            ledger.mark_overdue(paid.id)

    def test_cannot_cancel(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            ledger.cancel(paid.id)

    def test_cannot_delete(self, ledger, paid):
        with pytest.raises(ConflictError):
            ledger.delete_payment(paid.id)
        assert ledger.get_payment(paid.id).status == PaymentStatus.PAID

    def test_cannot_change_amount(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            ledger.update_payment(paid.id, amount=Decimal("1"))

    def test_cannot_change_status_through_update(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            ledger.update_payment(paid.id, status="PENDING")

    def test_notes_can_still_be_edited(self, ledger, paid):
        payment = ledger.update_payment(paid.id, notes="receipt sent")
        assert payment.notes == "receipt sent"
        assert payment.status == PaymentStatus.PAID


class TestOtherTransitions:
    def test_mark_overdue_twice(self, ledger, pending):
        assert ledger.mark_overdue(pending.id).changed
        assert not ledger.mark_overdue(pending.id).changed

    def test_cancel_twice(self, ledger, pending):
        assert ledger.cancel(pending.id).changed
        assert not ledger.cancel(pending.id).changed

    def test_cancelled_cannot_go_overdue(self, ledger, pending):
        ledger.cancel(pending.id)
        with pytest.raises(InvalidStateError):
            ledger.mark_overdue(pending.id)

    def test_reopen_overdue(self, ledger, pending):
        ledger.mark_overdue(pending.id)
        new_due = START + timedelta(days=30)
        payment = ledger.update_payment(pending.id, status="PENDING", due_date=new_due)
        assert payment.status == PaymentStatus.PENDING
        assert payment.due_date == new_due

    def test_update_to_paid_stamps_paid_at(self, ledger, pending):
        payment = ledger.update_payment(pending.id, status="PAID", payment_method="CASH")
        assert payment.status == PaymentStatus.PAID
        assert payment.paid_at == START
        assert payment.payment_method == "CASH"

    def test_rejected_update_leaves_fields_untouched(self, ledger, pending, catalogue):
        ledger.cancel(pending.id)

        with pytest.raises(InvalidStateError):
            ledger.update_payment(pending.id, status="PAID", amount=999, notes="late")

        catalogue.expire_all()
        payment = ledger.get_payment(pending.id)
        assert payment.amount == Decimal("500")
        assert payment.notes is None
        assert payment.status == PaymentStatus.CANCELLED

    def test_rejected_overdue_update_leaves_fields_untouched(self, ledger, pending, catalogue):
        ledger.cancel(pending.id)

        with pytest.raises(InvalidStateError):
            ledger.update_payment(pending.id, status="OVERDUE", due_date=START + timedelta(days=60))

        catalogue.expire_all()
        assert ledger.get_payment(pending.id).due_date == START + timedelta(days=7)

    def test_fields_and_transition_land_together(self, ledger, pending):
        payment = ledger.update_payment(pending.id, status="CANCELLED", notes="student withdrew")
        assert payment.status == PaymentStatus.CANCELLED
        assert payment.notes == "student withdrew"

    def test_update_invalid_status(self, ledger, pending):
        with pytest.raises(InvalidArgumentError):
            ledger.update_payment(pending.id, status="REFUNDED")


class TestDelete:
    def test_deletes_pending(self, ledger, pending, catalogue):
        ledger.delete_payment(pending.id)
        assert catalogue.query(Payment).count() == 0

    def test_overdue_is_not_deletable(self, ledger, pending):
        ledger.mark_overdue(pending.id)
        with pytest.raises(InvalidStateError):
            ledger.delete_payment(pending.id)

    def test_missing(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.delete_payment(999)


class TestBulk:
    def test_best_effort_batch(self, ledger):
        a = ledger.create_payment("student-1", "course-once", 500, "ONE_TIME")
        b = ledger.create_payment("student-2", "course-once", 500, "ONE_TIME")
        c = ledger.create_payment("student-2", "course-monthly", 100, "MONTHLY", month_number=1)
        ledger.cancel(c.id)

        result = ledger.bulk_transition("markAsPaid", [a.id, b.id, c.id, 999])

        assert result["updatedCount"] == 2
        assert [f["paymentId"] for f in result["failed"]] == [c.id, 999]
        assert [f["error"] for f in result["failed"]] == ["INVALID_STATE", "NOT_FOUND"]
        assert ledger.get_payment(a.id).status == PaymentStatus.PAID
        assert ledger.get_payment(b.id).status == PaymentStatus.PAID

    def test_already_applied_items_are_not_counted(self, ledger, pending):
        ledger.cancel(pending.id)
        assert ledger.bulk_transition("cancel", [pending.id])["updatedCount"] == 0

    def test_unknown_action(self, ledger, pending):
        with pytest.raises(InvalidArgumentError):
            ledger.bulk_transition("refund", [pending.id])


class TestReadPaths:
    @pytest.fixture
    def payments(self, ledger, clock):
        created = []
        for user in ("student-1", "student-2"):
            created.append(ledger.create_payment(user, "course-once", 500, "ONE_TIME"))
            clock.advance(minutes=1)
            created.append(ledger.create_payment(user, "course-monthly", 100, "MONTHLY", month_number=1))
            clock.advance(minutes=1)
        ledger.mark_paid(created[0].id)
        ledger.mark_overdue(created[1].id)
        return created

    def test_pagination_newest_first(self, ledger, payments):
        page = ledger.list_payments(page=1, limit=3)
        assert [p.id for p in page["payments"]] == [payments[3].id, payments[2].id, payments[1].id]
        assert page["pagination"] == {"page": 1, "limit": 3, "total": 4, "totalPages": 2}
        second = ledger.list_payments(page=2, limit=3)
        assert [p.id for p in second["payments"]] == [payments[0].id]

    def test_filters(self, ledger, payments):
        result = ledger.list_payments(status="pending", user_id="student-2")
        assert {p.id for p in result["payments"]} == {payments[2].id, payments[3].id}
        monthly = ledger.list_payments(payment_type="MONTHLY", course_id="course-monthly")
        assert monthly["pagination"]["total"] == 2

    def test_status_counts(self, ledger, payments):
        counts = ledger.list_payments()["statusCounts"]
        assert counts["PAID"] == {"count": 1, "amount": Decimal("500")}
        assert counts["OVERDUE"] == {"count": 1, "amount": Decimal("100")}
        assert counts["PENDING"] == {"count": 2, "amount": Decimal("600")}

    def test_limit_is_capped(self, ledger, payments):
        assert ledger.list_payments(limit=1000)["pagination"]["limit"] == 100

    def test_stats(self, ledger, payments):
        stats = ledger.stats()
        assert stats["totalCount"] == 4
        assert stats["byType"] == {"ONE_TIME": 2, "MONTHLY": 2}
        assert stats["paidAmount"] == Decimal("500")
        assert stats["outstandingAmount"] == Decimal("700")
