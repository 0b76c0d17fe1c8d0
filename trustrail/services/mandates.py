"""Mandate creation and invoice issuance shared by the job, manual review and webhooks"""

import logging
from datetime import datetime, time, timezone
from typing import Optional

from sqlalchemy.orm import Session

from trustrail.domain.exceptions import BusinessRuleViolation, EntityNotFoundError, PaymentProviderError
from trustrail.domain.installments import generate_payment_schedule
from trustrail.domain.models import ApplicationStatus
from trustrail.infrastructure.clients.notifier import APPLICATION_APPROVED, BusinessNotifier
from trustrail.infrastructure.clients.payment_provider import MandateCustomer, PaymentProvider
from trustrail.infrastructure.crypto import decrypt_at_rest
from trustrail.infrastructure.database.models import Application, Business
from trustrail.infrastructure.database.repositories import (
    ApplicationRepository,
    BusinessRepository,
    PaymentRepository,
)
from trustrail.services.state_machine import ApplicationStateMachine
from trustrail.utils.date_utils import next_payment_date, utcnow

logger = logging.getLogger(__name__)


class MandateService:
    """
    Drives APPROVED -> MANDATE_CREATED -> MANDATE_ACTIVE.

    Each provider call is followed by its own commit, so a failure leaves the
    application at the last step that succeeded and a later caller resumes from there.
    """

    def __init__(self, db: Session, provider: PaymentProvider, notifier: BusinessNotifier):
        self.db = db
        self.provider = provider
        self.notifier = notifier
        self.applications = ApplicationRepository(db)
        self.businesses = BusinessRepository(db)
        self.payments = PaymentRepository(db)
        self.machine = ApplicationStateMachine(db)

    def _business(self, application: Application) -> Business:
        business = self.businesses.get(application.business_id)
        if business is None:
            raise EntityNotFoundError(f"Business {application.business_id} not found")
        return business

    async def ensure_biller_code(self, business: Business) -> str:
        """Onboard the business with the provider the first time it needs one"""
        if business.biller_code:
            return business.biller_code
        merchant = await self.provider.create_merchant(business.business_name, business.email)
        business.biller_code = merchant.biller_code
        self.db.commit()
        logger.info(
            "Business onboarded with provider",
            extra={"business_id": business.business_id, "biller_code": merchant.biller_code},
        )
        return merchant.biller_code

    async def create_mandate(self, application: Application) -> bool:
        """
        APPROVED -> MANDATE_CREATED.

        Raises:
            PaymentProviderError: the provider refused or was unreachable; status stays APPROVED
        """
        if ApplicationStatus(application.status) != ApplicationStatus.APPROVED:
            raise BusinessRuleViolation(
                f"Mandate can only be created for APPROVED applications, not {application.status}"
            )
        biller_code = await self.ensure_biller_code(self._business(application))
        customer = MandateCustomer(
            customer_ref=application.application_id,
            first_name=application.first_name,
            last_name=application.last_name,
            email=application.email,
            phone_number=application.phone_number,
            account_number=decrypt_at_rest(application.account_number_encrypted),
            bank_code=application.bank_code,
            bvn=decrypt_at_rest(application.bvn_encrypted),
        )
        mandate_ref = await self.provider.create_mandate(customer, biller_code, application.total_amount)
        return self.machine.transition(
            application,
            ApplicationStatus.MANDATE_CREATED,
            fields={"mandate_ref": mandate_ref},
            details={"mandate_ref": mandate_ref},
        )

    async def issue_invoice(self, application: Application) -> Optional[str]:
        """
        Ask for the virtual account and schedule the installments.

        Returns the account number, or None if another caller is issuing it right now.
        Safe to call again: an application that already has an account is returned as is.

        Raises:
            PaymentProviderError: issuance failed; the claim is released for a later retry
        """
        application_id = application.application_id
        if application.virtual_account_number:
            return application.virtual_account_number
        status = ApplicationStatus(application.status)
        if status not in (ApplicationStatus.MANDATE_CREATED, ApplicationStatus.MANDATE_ACTIVE):
            raise BusinessRuleViolation(f"Invoice cannot be issued while application is {status.value}")

        if not self.applications.claim_invoice_issuance(application_id, utcnow()):
            self.db.rollback()
            logger.info("Invoice issuance already in progress", extra={"application_id": application_id})
            return None
        self.db.commit()

        business = self._business(application)
        today = utcnow().date()
        # Down payment is due on issuance, installments start one period later
        first_due = next_payment_date(today, 2, application.frequency)
        try:
            biller_code = await self.ensure_biller_code(business)
            account = await self.provider.send_invoice(
                biller_code=biller_code,
                down_payment=application.down_payment_required,
                installment_count=application.installment_count,
                frequency=application.frequency,
                start_date=datetime.combine(first_due, time.min, tzinfo=timezone.utc),
            )
        except PaymentProviderError:
            self.applications.release_invoice_claim(application_id)
            self.db.commit()
            raise

        if not self.applications.assign_virtual_account(application_id, account):
            self.db.rollback()
            logger.error(
                "Virtual account already assigned, discarding duplicate",
                extra={"application_id": application_id, "virtual_account_number": account},
            )
            return self.applications.get(application_id).virtual_account_number

        if not self.payments.list_for_application(application_id):
            schedule = generate_payment_schedule(
                application.installment_amount,
                application.installment_count,
                application.frequency,
                first_due,
                financed_amount=application.total_amount - application.down_payment_required,
            )
            self.payments.create_schedule(application, schedule)

        # Account, schedule and MANDATE_ACTIVE land in one commit so a credit never
        # sees an account on a MANDATE_CREATED application
        application = self.applications.get(application_id)
        moved = False
        if ApplicationStatus(application.status) == ApplicationStatus.MANDATE_CREATED:
            moved = self.machine.transition(
                application,
                ApplicationStatus.MANDATE_ACTIVE,
                details={"virtual_account_number": account},
            )
        if not moved:
            self.db.commit()
        logger.info(
            "Invoice issued",
            extra={"application_id": application_id, "virtual_account_number": account},
        )
        return account

    async def run_approval_pipeline(self, application: Application) -> Application:
        """
        Take an APPROVED application as far as MANDATE_ACTIVE and tell the business.

        Resumes from MANDATE_CREATED when a previous run stopped there.
        """
        application_id = application.application_id
        if ApplicationStatus(application.status) == ApplicationStatus.APPROVED:
            await self.create_mandate(application)
            application = self.applications.get(application_id)

        account = await self.issue_invoice(application)
        application = self.applications.get(application_id)

        await self.notifier.notify(
            self.db,
            self._business(application),
            APPLICATION_APPROVED,
            {
                "application_id": application_id,
                "status": application.status,
                "customer_name": application.customer_name,
                "mandate_ref": application.mandate_ref,
                "virtual_account_number": account,
                "down_payment_required": application.down_payment_required,
                "installment_amount": application.installment_amount,
                "next_step": (
                    f"Customer should pay the down payment of {application.down_payment_required:,.2f} "
                    f"to account {account}"
                    if account
                    else "Awaiting virtual account issuance"
                ),
            },
        )
        return application
