"""Customer applications: submission and manual review"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from trustrail.domain.exceptions import (
    BusinessRuleViolation,
    EntityNotFoundError,
    PaymentProviderError,
    StatementParseError,
)
from trustrail.domain.installments import compute_installment_terms
from trustrail.domain.models import ActorType, ApplicationStatus, InstallmentPlan
from trustrail.domain.statement_parser import validate_csv_content
from trustrail.infrastructure.clients.notifier import APPLICATION_DECLINED, BusinessNotifier
from trustrail.infrastructure.crypto import encrypt_at_rest
from trustrail.infrastructure.database.models import Application, Business
from trustrail.infrastructure.database.repositories import ApplicationRepository, TrustWalletRepository
from trustrail.services.audit import AuditService
from trustrail.services.mandates import MandateService
from trustrail.services.state_machine import ApplicationStateMachine

logger = logging.getLogger(__name__)


@dataclass
class CustomerDetails:
    first_name: str
    last_name: str
    email: str
    phone_number: str
    account_number: str
    bank_code: str
    bvn: str


def submit_application(
    db: Session,
    trust_wallet_id: str,
    customer: CustomerDetails,
    statement_csv: Optional[str] = None,
    statement_file_id: Optional[str] = None,
) -> Application:
    """
    Create a PENDING_ANALYSIS application under a TrustWallet.

    Raises:
        EntityNotFoundError: unknown TrustWallet
        BusinessRuleViolation: TrustWallet is inactive
        StatementParseError: no statement given, or the CSV is empty or header-only
    """
    trust_wallet = TrustWalletRepository(db).get(trust_wallet_id)
    if trust_wallet is None:
        raise EntityNotFoundError(f"TrustWallet {trust_wallet_id} not found")
    if not trust_wallet.is_active:
        raise BusinessRuleViolation("TrustWallet is not accepting applications")

    if statement_csv is None and not statement_file_id:
        raise StatementParseError("A bank statement is required")
    if statement_csv is not None:
        validate_csv_content(statement_csv)

    terms = compute_installment_terms(
        InstallmentPlan(
            total_amount=trust_wallet.total_amount,
            down_payment_percentage=trust_wallet.down_payment_percentage,
            installment_count=trust_wallet.installment_count,
            frequency=trust_wallet.frequency,
            interest_rate=trust_wallet.interest_rate,
        )
    )

    application = ApplicationRepository(db).add(
        Application(
            trust_wallet_id=trust_wallet.trust_wallet_id,
            business_id=trust_wallet.business_id,
            first_name=customer.first_name,
            last_name=customer.last_name,
            email=customer.email,
            phone_number=customer.phone_number,
            bank_code=customer.bank_code,
            account_number_encrypted=encrypt_at_rest(customer.account_number),
            bvn_encrypted=encrypt_at_rest(customer.bvn),
            statement_csv=statement_csv,
            statement_file_id=statement_file_id,
            status=ApplicationStatus.PENDING_ANALYSIS.value,
            total_amount=terms.total_amount,
            down_payment_required=terms.down_payment_required,
            installment_amount=terms.installment_amount,
            installment_count=terms.installment_count,
            frequency=terms.frequency,
            payments_completed=0,
            total_paid=0.0,
            outstanding_balance=terms.total_amount,
            down_payment_received=False,
        )
    )
    AuditService(db).record(
        action="application.submitted",
        actor_type=ActorType.SYSTEM,
        resource_type="application",
        resource_id=application.application_id,
        changes={"status": {"before": None, "after": ApplicationStatus.PENDING_ANALYSIS.value}},
        details={"trust_wallet_id": trust_wallet_id},
    )
    db.commit()
    logger.info(
        "Application submitted",
        extra={"application_id": application.application_id, "trust_wallet_id": trust_wallet_id},
    )
    return application


def get_application(db: Session, application_id: str, business: Business) -> Application:
    application = ApplicationRepository(db).get_for_business(application_id, business.business_id)
    if application is None:
        raise EntityNotFoundError(f"Application {application_id} not found")
    return application


def list_applications(
    db: Session,
    business: Business,
    trust_wallet_id: Optional[str] = None,
    status: Optional[ApplicationStatus] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Application], int]:
    return ApplicationRepository(db).list_for_business(
        business.business_id,
        trust_wallet_id=trust_wallet_id,
        status=status,
        search=search,
        page=page,
        limit=limit,
    )


def _require_flagged(application: Application) -> None:
    if ApplicationStatus(application.status) != ApplicationStatus.FLAGGED_FOR_REVIEW:
        raise BusinessRuleViolation(
            f"Only applications flagged for review can be decided manually; this one is {application.status}"
        )


async def manually_approve(
    db: Session,
    application_id: str,
    business: Business,
    mandates: MandateService,
    reason: Optional[str] = None,
) -> Application:
    """
    FLAGGED_FOR_REVIEW -> APPROVED, then the same mandate steps the job runs.

    A provider failure after approval is logged; the application keeps whatever
    status it reached and can be resumed.
    """
    application = get_application(db, application_id, business)
    _require_flagged(application)

    moved = ApplicationStateMachine(db).transition(
        application,
        ApplicationStatus.APPROVED,
        actor_type=ActorType.BUSINESS,
        actor_id=business.business_id,
        manual=True,
        details={"reason": reason},
    )
    if not moved:
        raise BusinessRuleViolation("Application changed while it was being approved")

    application = ApplicationRepository(db).get(application_id)
    try:
        application = await mandates.run_approval_pipeline(application)
    except PaymentProviderError as e:
        db.rollback()
        logger.error(
            f"Mandate setup failed after manual approval: {e}",
            extra={"application_id": application_id},
        )
        application = ApplicationRepository(db).get(application_id)
    return application


async def manually_decline(
    db: Session,
    application_id: str,
    business: Business,
    notifier: BusinessNotifier,
    reason: Optional[str] = None,
) -> Application:
    application = get_application(db, application_id, business)
    _require_flagged(application)

    moved = ApplicationStateMachine(db).transition(
        application,
        ApplicationStatus.DECLINED,
        actor_type=ActorType.BUSINESS,
        actor_id=business.business_id,
        manual=True,
        details={"reason": reason},
    )
    if not moved:
        raise BusinessRuleViolation("Application changed while it was being declined")

    application = ApplicationRepository(db).get(application_id)
    await notifier.notify(
        db,
        business,
        APPLICATION_DECLINED,
        {
            "application_id": application_id,
            "status": application.status,
            "customer_name": application.customer_name,
            "reason": reason,
        },
    )
    return application
