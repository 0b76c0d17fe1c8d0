"""Default monitor: failed-payment thresholds, overdue debits, stuck mandates"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from trustrail.config import settings
from trustrail.domain.models import ApplicationStatus
from trustrail.infrastructure.clients.notifier import APPLICATION_DEFAULTED, BusinessNotifier
from trustrail.infrastructure.database.repositories import (
    ApplicationRepository,
    BusinessRepository,
    PaymentRepository,
)
from trustrail.services.state_machine import ApplicationStateMachine
from trustrail.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class MonitorReport:
    defaulted: List[str] = field(default_factory=list)
    overdue_payments: List[str] = field(default_factory=list)
    stuck_mandates: List[str] = field(default_factory=list)


class DefaultMonitor:
    """Re-runnable every tick; only ACTIVE applications can be defaulted"""

    def __init__(
        self,
        db: Session,
        notifier: BusinessNotifier,
        failed_threshold: Optional[int] = None,
        stuck_mandate_hours: Optional[int] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.failed_threshold = failed_threshold or settings.default_failed_payment_threshold
        self.stuck_mandate_hours = stuck_mandate_hours or settings.stuck_mandate_hours
        self.applications = ApplicationRepository(db)
        self.payments = PaymentRepository(db)
        self.businesses = BusinessRepository(db)
        self.machine = ApplicationStateMachine(db)

    async def run_cycle(self) -> MonitorReport:
        report = MonitorReport()
        await self.check_defaults(report)
        self.check_overdue_payments(report)
        self.check_stuck_mandates(report)
        return report

    async def check_defaults(self, report: MonitorReport) -> None:
        active_ids = [a.application_id for a in self.applications.list_by_status(ApplicationStatus.ACTIVE)]
        for application_id in active_ids:
            try:
                failed = self.payments.count_failed(application_id)
                if failed < self.failed_threshold:
                    continue
                application = self.applications.get(application_id)
                moved = self.machine.transition(
                    application,
                    ApplicationStatus.DEFAULTED,
                    details={"failed_payments": failed},
                )
                if not moved:
                    continue
                report.defaulted.append(application_id)
                logger.warning(
                    "Application defaulted",
                    extra={"application_id": application_id, "failed_payments": failed},
                )
                application = self.applications.get(application_id)
                business = self.businesses.get(application.business_id)
                if business is not None:
                    await self.notifier.notify(
                        self.db,
                        business,
                        APPLICATION_DEFAULTED,
                        {
                            "application_id": application_id,
                            "failed_payments": failed,
                            "payments_completed": application.payments_completed,
                            "outstanding_balance": application.outstanding_balance,
                            "customer_name": application.customer_name,
                        },
                    )
            except Exception as e:
                self.db.rollback()
                logger.error(
                    f"Default check failed for {application_id}: {e}",
                    extra={"application_id": application_id},
                    exc_info=True,
                )

    def check_overdue_payments(self, report: MonitorReport) -> None:
        for payment in self.payments.list_overdue_scheduled(utcnow()):
            report.overdue_payments.append(payment.transaction_id)
            logger.warning(
                "Scheduled payment is overdue",
                extra={
                    "application_id": payment.application_id,
                    "transaction_id": payment.transaction_id,
                    "payment_number": payment.payment_number,
                    "scheduled_date": str(payment.scheduled_date),
                },
            )

    def check_stuck_mandates(self, report: MonitorReport) -> None:
        cutoff = utcnow() - timedelta(hours=self.stuck_mandate_hours)
        for application in self.applications.list_stuck_mandates(cutoff):
            report.stuck_mandates.append(application.application_id)
            logger.warning(
                "Mandate awaiting activation for too long, needs operator attention",
                extra={
                    "application_id": application.application_id,
                    "mandate_ref": application.mandate_ref,
                    "mandate_created_at": str(application.mandate_created_at),
                },
            )
