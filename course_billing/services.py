from dataclasses import dataclass

from course_billing.access import EnrollmentAccessController
from course_billing.clock import SystemClock
from course_billing.config import load_settings
from course_billing.ledger import PaymentLedger
from course_billing.notifications import NotificationDispatcher
from course_billing.recurring import RecurringBillingGenerator
from course_billing.repository import BillingRepository


@dataclass
class BillingServices:
    repo: BillingRepository
    notifier: NotificationDispatcher
    ledger: PaymentLedger
    recurring: RecurringBillingGenerator
    access: EnrollmentAccessController


def build_services(db, transport, clock=None, settings=None) -> BillingServices:
    """Wire the billing core around one database session."""
    clock = clock or SystemClock()
    settings = settings or load_settings()
    repo = BillingRepository(db)
    notifier = NotificationDispatcher(repo, transport, clock, settings.NOTIFICATION_DEDUP_HOURS)
    recurring = RecurringBillingGenerator(repo, notifier, clock)
    access = EnrollmentAccessController(repo, notifier, clock, settings)
    ledger = PaymentLedger(repo, notifier, access, recurring, clock)
    access.ledger = ledger
    return BillingServices(repo, notifier, ledger, recurring, access)
