from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from course_billing.models import EnrollmentStatus, NotificationType, PaymentStatus, PaymentType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PaymentCreate(CamelModel):
    user_id: str
    course_id: str
    amount: Decimal = Field(gt=0)
    payment_type: PaymentType
    currency: Optional[str] = None
    month_number: Optional[int] = Field(default=None, ge=1)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class PaymentUpdate(CamelModel):
    status: Optional[PaymentStatus] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[str] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class MarkPaid(CamelModel):
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class PaymentOut(CamelModel):
    id: int
    user_id: str
    course_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_type: PaymentType
    month_number: Optional[int] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class StatusCount(BaseModel):
    count: int
    amount: Decimal


class PaymentList(BaseModel):
    payments: List[PaymentOut]
    pagination: Pagination
    statusCounts: Dict[str, StatusCount]


class PaymentStats(BaseModel):
    byStatus: Dict[str, StatusCount]
    byType: Dict[str, int]
    totalCount: int
    paidAmount: Decimal
    outstandingAmount: Decimal


class BulkPaymentAction(BaseModel):
    action: Literal["markAsPaid", "markAsOverdue", "cancel"]
    paymentIds: List[int] = Field(min_length=1)


class BulkPaymentResult(BaseModel):
    updatedCount: int
    failed: List[dict] = []


class AccessControlAction(BaseModel):
    action: Literal["check_overdue_payments", "restore_access_after_payment", "send_payment_reminders"]


class SweepSummaryOut(BaseModel):
    action: str
    processed: int
    changed: int
    affected: List[dict]
    errors: List[dict]


class NextMonthlyPayment(CamelModel):
    user_id: str
    course_id: str
    current_month_number: int = Field(ge=1)


class NextMonthlyPaymentOut(CamelModel):
    outcome: str
    month_number: int
    payment: Optional[PaymentOut] = None


class EnrollmentCreate(CamelModel):
    user_id: str
    course_id: str


class EnrollmentOut(CamelModel):
    id: int
    user_id: str
    course_id: str
    status: EnrollmentStatus
    payment_status: PaymentStatus
    next_payment_due: Optional[datetime] = None
    enrolled_at: Optional[datetime] = None


class AccessOut(BaseModel):
    hasAccess: bool
    enrollmentStatus: Optional[EnrollmentStatus] = None
    paymentStatus: Optional[PaymentStatus] = None
    nextPaymentDue: Optional[datetime] = None


class NotificationOut(CamelModel):
    id: int
    user_id: str
    type: NotificationType
    related_entity_id: Optional[str] = None
    message: str
    created_at: datetime
