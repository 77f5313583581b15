# course_billing/main.py
from typing import List, Optional
import logging

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from course_billing import database, events, schemas
from course_billing.clock import SystemClock
from course_billing.config import load_settings
from course_billing.errors import BillingError, ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
from course_billing.notifications import LoggingTransport
from course_billing.services import build_services

# config / env
settings = load_settings()

# logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("course-billing")

app = FastAPI(title="Course Billing Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    NotFoundError: 404,
    InvalidArgumentError: 400,
    ConflictError: 409,
    InvalidStateError: 409,
}


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=ERROR_STATUS.get(type(exc), 400), content=exc.to_dict())


def build_transport(cfg):
    if cfg.NOTIFICATION_TRANSPORT == "rabbitmq":
        return events.RabbitMQTransport(cfg.RABBITMQ_URL)
    return LoggingTransport()


# Startup: initialize DB and optionally start the consumer that listens to enrollment events
@app.on_event("startup")
def startup():
    logger.info("Initializing DB (transport=%s)...", settings.NOTIFICATION_TRANSPORT)
    database.init_db(settings.DATABASE_URL)
    app.state.transport = build_transport(settings)
    if settings.START_ENROLLMENT_CONSUMER:
        events.start_consumer(settings, app.state.transport)
    logger.info("Startup complete.")


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings():
    return settings


def get_transport():
    transport = getattr(app.state, "transport", None)
    if transport is None:
        transport = app.state.transport = build_transport(settings)
    return transport


def get_clock():
    return SystemClock()


def get_services(db: Session = Depends(get_db), transport=Depends(get_transport), clock=Depends(get_clock),
                 cfg=Depends(get_settings)):
    return build_services(db, transport, clock, cfg)


# Root and health endpoints
@app.get("/")
def root():
    return {"service": "Course Billing Service", "status": "running",
            "endpoints": ["/payments", "/enrollments", "/notifications", "/docs"]}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


# Payments
@app.post("/payments", response_model=schemas.PaymentOut, status_code=201)
def create_payment(payment_in: schemas.PaymentCreate, services=Depends(get_services)):
    payment = services.ledger.create_payment(
        payment_in.user_id, payment_in.course_id, payment_in.amount, payment_in.payment_type,
        month_number=payment_in.month_number, due_date=payment_in.due_date,
        notes=payment_in.notes, currency=payment_in.currency,
    )
    return schemas.PaymentOut.model_validate(payment)


# List payments with optional filters and per-status totals
@app.get("/payments", response_model=schemas.PaymentList)
def list_payments(status: Optional[str] = Query(None),
                  payment_type: Optional[str] = Query(None, alias="paymentType"),
                  user_id: Optional[str] = Query(None, alias="userId"),
                  course_id: Optional[str] = Query(None, alias="courseId"),
                  page: int = Query(1, ge=1),
                  limit: int = Query(20, ge=1),
                  services=Depends(get_services)):
    result = services.ledger.list_payments(status, payment_type, user_id, course_id, page, limit)
    result["payments"] = [schemas.PaymentOut.model_validate(p) for p in result["payments"]]
    return result


@app.get("/payments/stats", response_model=schemas.PaymentStats)
def payment_stats(services=Depends(get_services)):
    return services.ledger.stats()


@app.get("/payments/{payment_id}", response_model=schemas.PaymentOut)
def get_payment(payment_id: int, services=Depends(get_services)):
    return schemas.PaymentOut.model_validate(services.ledger.get_payment(payment_id))


@app.patch("/payments/{payment_id}", response_model=schemas.PaymentOut)
def update_payment(payment_id: int, payment_in: schemas.PaymentUpdate, services=Depends(get_services)):
    fields = payment_in.model_dump(exclude={"status"}, exclude_unset=True)
    payment = services.ledger.update_payment(payment_id, status=payment_in.status, **fields)
    return schemas.PaymentOut.model_validate(payment)


@app.delete("/payments/{payment_id}", status_code=204)
def delete_payment(payment_id: int, services=Depends(get_services)):
    services.ledger.delete_payment(payment_id)


# Operator/simulated confirmation: mark PAID, reconcile access and bill the next month
@app.post("/payments/{payment_id}/mark-paid", response_model=schemas.PaymentOut)
def mark_paid(payment_id: int, body: Optional[schemas.MarkPaid] = None, services=Depends(get_services)):
    body = body or schemas.MarkPaid()
    result = services.ledger.mark_paid(payment_id, body.payment_method, body.transaction_id)
    return schemas.PaymentOut.model_validate(result.payment)


@app.post("/payments/bulk", response_model=schemas.BulkPaymentResult)
def bulk_payment_action(body: schemas.BulkPaymentAction, services=Depends(get_services)):
    return services.ledger.bulk_transition(body.action, body.paymentIds)


@app.post("/payments/access-control", response_model=schemas.SweepSummaryOut)
def access_control_action(body: schemas.AccessControlAction, services=Depends(get_services)):
    summary = services.access.run(body.action)
    return summary.to_dict()


@app.post("/payments/next-monthly", response_model=schemas.NextMonthlyPaymentOut)
def create_next_monthly_payment(body: schemas.NextMonthlyPayment, services=Depends(get_services)):
    result = services.recurring.create_next_monthly_payment(body.user_id, body.course_id, body.current_month_number)
    return schemas.NextMonthlyPaymentOut(
        outcome=result.outcome.value,
        month_number=result.month_number,
        payment=schemas.PaymentOut.model_validate(result.payment) if result.payment is not None else None,
    )


# Enrollments
@app.post("/enrollments", response_model=schemas.EnrollmentOut, status_code=201)
def enroll(body: schemas.EnrollmentCreate, services=Depends(get_services)):
    enrollment = services.access.enroll(body.user_id, body.course_id)
    return schemas.EnrollmentOut.model_validate(enrollment)


@app.get("/enrollments/{user_id}/{course_id}/access", response_model=schemas.AccessOut)
def check_access(user_id: str, course_id: str, services=Depends(get_services)):
    return services.access.check_access(user_id, course_id)


# Notifications recorded for a user, newest first
@app.get("/notifications", response_model=List[schemas.NotificationOut])
def list_notifications(user_id: str = Query(..., alias="userId"), services=Depends(get_services)):
    return [schemas.NotificationOut.model_validate(n) for n in services.repo.list_notifications(user_id)]
