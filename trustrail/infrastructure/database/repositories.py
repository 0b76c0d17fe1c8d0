"""Data access layer for TrustRail entities"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Query, Session

from trustrail.domain.lifecycle import TERMINAL_STATES
from trustrail.domain.models import ApplicationStatus, Installment, PaymentStatus, TrustEngineResult
from trustrail.infrastructure.database.models import (
    Application,
    AuditLog,
    Business,
    BusinessWebhookLog,
    PaymentTransaction,
    ProviderWebhookLog,
    TrustEngineOutput,
    TrustWallet,
    generate_id,
)

OPEN_PAYMENT_STATUSES = (PaymentStatus.SCHEDULED.value, PaymentStatus.PENDING.value)

# Applications still moving through origination or repayment
OPEN_APPLICATION_STATUSES = tuple(
    s.value for s in ApplicationStatus if s not in TERMINAL_STATES and s != ApplicationStatus.FLAGGED_FOR_REVIEW
)

# Anything under half a kobo left on a balance is float noise
BALANCE_TOLERANCE = 0.005


def paginate(query: Query, page: int, limit: int) -> Tuple[List[Any], int]:
    """Return one page of rows and the total row count"""
    total = query.order_by(None).count()
    return query.offset((page - 1) * limit).limit(limit).all(), total


def reduced_balance(amount: float):
    """SQL expression for outstanding_balance after paying amount, never below zero"""
    remaining = Application.outstanding_balance - amount
    return case((remaining < BALANCE_TOLERANCE, 0.0), else_=remaining)


class BusinessRepository:
    """Repository for businesses"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, business_id: str) -> Optional[Business]:
        return self.db.get(Business, business_id)

    def get_by_biller_code(self, biller_code: str) -> Optional[Business]:
        return self.db.query(Business).filter(Business.biller_code == biller_code).first()


class TrustWalletRepository:
    """Repository for TrustWallet configurations"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, trust_wallet_id: str) -> Optional[TrustWallet]:
        return self.db.get(TrustWallet, trust_wallet_id)

    def get_by_name(self, business_id: str, name: str) -> Optional[TrustWallet]:
        return (
            self.db.query(TrustWallet)
            .filter(TrustWallet.business_id == business_id, TrustWallet.name == name)
            .first()
        )

    def add(self, trust_wallet: TrustWallet) -> TrustWallet:
        self.db.add(trust_wallet)
        self.db.flush()
        return trust_wallet

    def list_for_business(
        self, business_id: str, is_active: Optional[bool] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[TrustWallet], int]:
        query = self.db.query(TrustWallet).filter(TrustWallet.business_id == business_id)
        if is_active is not None:
            query = query.filter(TrustWallet.is_active == is_active)
        return paginate(query.order_by(TrustWallet.created_at.desc(), TrustWallet.trust_wallet_id.asc()), page, limit)

    def application_counts(self, trust_wallet_ids: List[str]) -> Dict[str, int]:
        if not trust_wallet_ids:
            return {}
        rows = (
            self.db.query(Application.trust_wallet_id, func.count(Application.application_id))
            .filter(Application.trust_wallet_id.in_(trust_wallet_ids))
            .group_by(Application.trust_wallet_id)
            .all()
        )
        return dict(rows)


class ApplicationRepository:
    """
    Repository for applications.

    Status changes go through compare_and_set_status so that two writers racing on
    the same row cannot both move it.
    """

    def __init__(self, db: Session):
        self.db = db

    def add(self, application: Application) -> Application:
        self.db.add(application)
        self.db.flush()
        return application

    def get(self, application_id: str) -> Optional[Application]:
        return self.db.get(Application, application_id, populate_existing=True)

    def get_for_business(self, application_id: str, business_id: str) -> Optional[Application]:
        return (
            self.db.query(Application)
            .filter(Application.application_id == application_id, Application.business_id == business_id)
            .first()
        )

    def list_for_business(
        self,
        business_id: str,
        trust_wallet_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Application], int]:
        """Newest submissions first; search matches name, email or phone, case-insensitively"""
        query = self.db.query(Application).filter(Application.business_id == business_id)
        if trust_wallet_id:
            query = query.filter(Application.trust_wallet_id == trust_wallet_id)
        if status is not None:
            query = query.filter(Application.status == ApplicationStatus(status).value)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Application.first_name.ilike(pattern),
                    Application.last_name.ilike(pattern),
                    Application.email.ilike(pattern),
                    Application.phone_number.ilike(pattern),
                )
            )
        query = query.order_by(Application.submitted_at.desc(), Application.application_id.asc())
        return paginate(query, page, limit)

    def has_open_for_trust_wallet(self, trust_wallet_id: str) -> bool:
        return (
            self.db.query(Application.application_id)
            .filter(
                Application.trust_wallet_id == trust_wallet_id,
                Application.status.in_(OPEN_APPLICATION_STATUSES),
            )
            .first()
            is not None
        )

    def list_pending_analysis(self, limit: int) -> List[Application]:
        """Oldest submissions first so nothing starves"""
        return (
            self.db.query(Application)
            .filter(Application.status == ApplicationStatus.PENDING_ANALYSIS.value)
            .order_by(Application.submitted_at.asc(), Application.application_id.asc())
            .limit(limit)
            .all()
        )

    def list_by_status(self, status: ApplicationStatus) -> List[Application]:
        return self.db.query(Application).filter(Application.status == status.value).all()

    def list_stuck_mandates(self, created_before: datetime) -> List[Application]:
        return (
            self.db.query(Application)
            .filter(
                Application.status == ApplicationStatus.MANDATE_CREATED.value,
                Application.mandate_created_at < created_before,
            )
            .all()
        )

    def find_by_virtual_account(self, virtual_account_number: str) -> Optional[Application]:
        return (
            self.db.query(Application)
            .filter(Application.virtual_account_number == virtual_account_number)
            .first()
        )

    def find_by_mandate_ref(self, mandate_ref: str) -> Optional[Application]:
        return self.db.query(Application).filter(Application.mandate_ref == mandate_ref).first()

    def find_active_by_installment(self, business_id: str, installment_amount: float) -> List[Application]:
        return (
            self.db.query(Application)
            .filter(
                Application.business_id == business_id,
                Application.status == ApplicationStatus.ACTIVE.value,
                func.abs(Application.installment_amount - installment_amount) < 0.01,
            )
            .all()
        )

    def compare_and_set_status(
        self,
        application_id: str,
        expected: ApplicationStatus,
        target: ApplicationStatus,
        **values: Any,
    ) -> bool:
        """Move status only if it still equals expected; returns whether the row moved"""
        result = self.db.execute(
            update(Application)
            .where(
                Application.application_id == application_id,
                Application.status == ApplicationStatus(expected).value,
            )
            .values(status=ApplicationStatus(target).value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def assign_virtual_account(self, application_id: str, virtual_account_number: str) -> bool:
        """Set the virtual account once; later callers lose"""
        result = self.db.execute(
            update(Application)
            .where(
                Application.application_id == application_id,
                Application.virtual_account_number.is_(None),
            )
            .values(virtual_account_number=virtual_account_number)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_mandate_id(self, application_id: str, mandate_id: int) -> bool:
        result = self.db.execute(
            update(Application)
            .where(Application.application_id == application_id, Application.mandate_id.is_(None))
            .values(mandate_id=mandate_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_invoice_issuance(self, application_id: str, now: datetime) -> bool:
        """Only one caller at a time may ask the provider for an invoice"""
        result = self.db.execute(
            update(Application)
            .where(
                Application.application_id == application_id,
                Application.invoice_requested_at.is_(None),
                Application.virtual_account_number.is_(None),
            )
            .values(invoice_requested_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_invoice_claim(self, application_id: str) -> None:
        self.db.execute(
            update(Application)
            .where(Application.application_id == application_id)
            .values(invoice_requested_at=None)
            .execution_options(synchronize_session=False)
        )

    def record_installment_paid(self, application_id: str, amount: float) -> bool:
        """
        Apply one successful installment atomically.

        Refused once every installment is counted or the application is terminal.
        """
        result = self.db.execute(
            update(Application)
            .where(
                Application.application_id == application_id,
                Application.payments_completed < Application.installment_count,
                Application.status.notin_([s.value for s in TERMINAL_STATES]),
            )
            .values(
                payments_completed=Application.payments_completed + 1,
                total_paid=Application.total_paid + amount,
                outstanding_balance=reduced_balance(amount),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TrustEngineOutputRepository:
    """Repository for scoring results; rows are written once and never updated"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, output_id: str) -> Optional[TrustEngineOutput]:
        return self.db.get(TrustEngineOutput, output_id)

    def get_by_application(self, application_id: str) -> Optional[TrustEngineOutput]:
        return (
            self.db.query(TrustEngineOutput)
            .filter(TrustEngineOutput.application_id == application_id)
            .first()
        )

    def create(self, application: Application, result: TrustEngineResult, source: str) -> TrustEngineOutput:
        output = TrustEngineOutput(
            application_id=application.application_id,
            trust_wallet_id=application.trust_wallet_id,
            business_id=application.business_id,
            decision=result.decision.value,
            trust_score=result.trust_score,
            is_valid_statement=result.is_valid_statement,
            invalid_statement_reason=result.invalid_statement_reason,
            analysis_source=source,
            statement_analysis=result.statement_analysis(),
        )
        self.db.add(output)
        self.db.flush()
        return output


class PaymentRepository:
    """Repository for installment debits"""

    def __init__(self, db: Session):
        self.db = db

    def list_for_business(
        self,
        business_id: str,
        trust_wallet_id: Optional[str] = None,
        application_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[PaymentTransaction], int]:
        query = self.db.query(PaymentTransaction).filter(PaymentTransaction.business_id == business_id)
        if trust_wallet_id:
            query = query.filter(PaymentTransaction.trust_wallet_id == trust_wallet_id)
        if application_id:
            query = query.filter(PaymentTransaction.application_id == application_id)
        if status is not None:
            query = query.filter(PaymentTransaction.status == PaymentStatus(status).value)
        query = query.order_by(
            PaymentTransaction.scheduled_date.desc(),
            PaymentTransaction.application_id.asc(),
            PaymentTransaction.payment_number.desc(),
        )
        return paginate(query, page, limit)

    def get_by_reference(self, provider_transaction_ref: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.provider_transaction_ref == provider_transaction_ref)
            .populate_existing()
            .first()
        )

    def list_for_application(self, application_id: str) -> List[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.application_id == application_id)
            .order_by(PaymentTransaction.payment_number.asc())
            .all()
        )

    def create_schedule(self, application: Application, installments: List[Installment]) -> List[PaymentTransaction]:
        """Create one SCHEDULED debit per installment"""
        payments = []
        for inst in installments:
            transaction_id = generate_id("TXN")
            payment = PaymentTransaction(
                transaction_id=transaction_id,
                application_id=application.application_id,
                trust_wallet_id=application.trust_wallet_id,
                business_id=application.business_id,
                amount=inst.amount,
                status=PaymentStatus.SCHEDULED.value,
                payment_number=inst.payment_number,
                total_payments=application.installment_count,
                scheduled_date=datetime.combine(inst.due_date, datetime.min.time(), tzinfo=timezone.utc),
                provider_transaction_ref=transaction_id,
            )
            self.db.add(payment)
            payments.append(payment)
        self.db.flush()
        return payments

    def next_open_payment(self, application_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.application_id == application_id,
                PaymentTransaction.status.in_(OPEN_PAYMENT_STATUSES),
            )
            .order_by(PaymentTransaction.payment_number.asc())
            .first()
        )

    def next_payment_number(self, application_id: str) -> int:
        current = self.db.execute(
            select(func.max(PaymentTransaction.payment_number)).where(
                PaymentTransaction.application_id == application_id
            )
        ).scalar()
        return (current or 0) + 1

    def create(self, **fields: Any) -> PaymentTransaction:
        payment = PaymentTransaction(**fields)
        self.db.add(payment)
        self.db.flush()
        return payment

    def rebind_reference(self, transaction_id: str, provider_transaction_ref: str) -> bool:
        """Attach a provider-chosen reference to an open scheduled debit"""
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status.in_(OPEN_PAYMENT_STATUSES),
            )
            .values(provider_transaction_ref=provider_transaction_ref)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_terminal(
        self,
        transaction_id: str,
        status: PaymentStatus,
        paid_date: Optional[datetime] = None,
        provider_payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """One-way SCHEDULED/PENDING -> SUCCESSFUL/FAILED; False if already terminal"""
        values: Dict[str, Any] = {"status": PaymentStatus(status).value}
        if paid_date is not None:
            values["paid_date"] = paid_date
        if provider_payment_id:
            values["provider_payment_id"] = provider_payment_id
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status.in_(OPEN_PAYMENT_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_failed(self, application_id: str) -> int:
        return (
            self.db.query(func.count(PaymentTransaction.transaction_id))
            .filter(
                PaymentTransaction.application_id == application_id,
                PaymentTransaction.status == PaymentStatus.FAILED.value,
            )
            .scalar()
        )

    def list_overdue_scheduled(self, now: datetime) -> List[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.status == PaymentStatus.SCHEDULED.value,
                PaymentTransaction.scheduled_date < now,
            )
            .all()
        )


class WebhookLogRepository:
    """Repository for inbound provider and outbound business webhook logs"""

    def __init__(self, db: Session):
        self.db = db

    def add_provider_log(self, **fields: Any) -> ProviderWebhookLog:
        log = ProviderWebhookLog(**fields)
        self.db.add(log)
        self.db.flush()
        return log

    def get_provider_log(self, log_id: str) -> Optional[ProviderWebhookLog]:
        return self.db.get(ProviderWebhookLog, log_id)

    def add_business_log(self, **fields: Any) -> BusinessWebhookLog:
        log = BusinessWebhookLog(**fields)
        self.db.add(log)
        self.db.flush()
        return log

    def list_retryable_business_logs(self, max_attempts: int, limit: int) -> List[BusinessWebhookLog]:
        return (
            self.db.query(BusinessWebhookLog)
            .filter(BusinessWebhookLog.status == "failed", BusinessWebhookLog.attempts < max_attempts)
            .order_by(BusinessWebhookLog.created_at.asc())
            .limit(limit)
            .all()
        )


class AuditLogRepository:
    """Repository for audit entries"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, **fields: Any) -> AuditLog:
        entry = AuditLog(**fields)
        self.db.add(entry)
        return entry

    def list_for_resource(self, resource_id: str) -> List[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.resource_id == resource_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )
