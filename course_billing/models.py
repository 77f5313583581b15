import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, ForeignKey, Index, UniqueConstraint, Enum, text,
)
from course_billing.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class PaymentType(str, enum.Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class NotificationType(str, enum.Enum):
    PAYMENT_DUE = "payment_due"
    PAYMENT_SUCCESSFUL = "payment_successful"
    PAYMENT_OVERDUE = "payment_overdue"
    NEXT_PAYMENT_CREATED = "next_payment_created"


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e])


class User(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(_enum(UserRole), nullable=False, default=UserRole.STUDENT)


class Course(Base):
    __tablename__ = "courses"
    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    payment_type = Column(_enum(PaymentType), nullable=False, default=PaymentType.ONE_TIME)
    monthly_price = Column(Numeric(12, 2), nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    # months, only meaningful for MONTHLY courses
    duration = Column(Integer, nullable=True)
    currency = Column(String(8), nullable=False, default="RUB")

    @property
    def price(self):
        if self.payment_type == PaymentType.MONTHLY:
            return self.monthly_price or self.total_price or 0
        return self.total_price or 0


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False, index=True)
    status = Column(_enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.ACTIVE)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    next_payment_due = Column(DateTime, nullable=True)
    suspended_at = Column(DateTime, nullable=True)
    enrolled_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # at most one non-cancelled payment per (user, course, month)
        Index(
            "uq_payments_open_month", "user_id", "course_id", "month_number", unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="RUB")
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_type = Column(_enum(PaymentType), nullable=False)
    month_number = Column(Integer, nullable=True)
    due_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(64), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(_enum(NotificationType), nullable=False)
    related_entity_id = Column(String(64), nullable=True, index=True)
    message = Column(Text, nullable=False)
    dedup_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
