"""Provider webhook reconciliation: debits, down-payment credits and mandate activation"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from trustrail.domain.events import (
    CreditEvent,
    DebitEvent,
    MandateActivationEvent,
    ProviderEvent,
    classify_event,
    decode_event,
    parse_envelope,
)
from trustrail.domain.exceptions import AmbiguousPaymentMatchError, BusinessRuleViolation, EntityNotFoundError
from trustrail.domain.lifecycle import is_terminal
from trustrail.domain.models import ApplicationStatus, PaymentStatus
from trustrail.infrastructure.clients.notifier import (
    APPLICATION_COMPLETED,
    DOWN_PAYMENT_RECEIVED,
    MANDATE_ACTIVATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESSFUL,
    BusinessNotifier,
)
from trustrail.infrastructure.clients.payment_provider import PaymentProvider
from trustrail.infrastructure.database.models import Application, Business, PaymentTransaction, generate_id
from trustrail.infrastructure.database.repositories import (
    ApplicationRepository,
    BusinessRepository,
    PaymentRepository,
    WebhookLogRepository,
    reduced_balance,
)
from trustrail.infrastructure.observability.logging import log_webhook_event
from trustrail.infrastructure.observability.metrics import record_webhook
from trustrail.services.mandates import MandateService
from trustrail.services.state_machine import ApplicationStateMachine
from trustrail.utils.date_utils import utcnow
from trustrail.utils.signatures import verify_provider_signature

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
REJECTED = "rejected"
FAILED = "failed"


@dataclass
class WebhookResult:
    """Internal outcome; the provider is always answered with 200 regardless"""

    success: bool
    outcome: str
    message: str


class PaymentEventReconciler:
    """
    Applies provider notifications to applications and payments.

    Every delivery is logged before anything else happens. Handlers re-read state and
    use compare-and-set writes, so duplicate and out-of-order deliveries are no-ops.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        notifier: BusinessNotifier,
        api_key: Optional[str] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.api_key = api_key
        self.applications = ApplicationRepository(db)
        self.businesses = BusinessRepository(db)
        self.payments = PaymentRepository(db)
        self.logs = WebhookLogRepository(db)
        self.machine = ApplicationStateMachine(db)
        self.mandates = MandateService(db, provider, notifier)

    async def handle(self, payload: Any) -> WebhookResult:
        if not isinstance(payload, dict):
            payload = {"raw": payload}

        envelope = parse_envelope(payload)
        event_type = classify_event(payload)
        signature_valid = verify_provider_signature(envelope.request_ref, envelope.signature_hash, self.api_key)

        log = self.logs.add_provider_log(
            event_type=event_type,
            request_type=envelope.request_type,
            request_ref=envelope.request_ref,
            raw_payload=payload,
            biller_code=envelope.biller_code,
            signature_valid=signature_valid,
        )
        self.db.commit()
        log_id = log.id

        if not signature_valid:
            result = WebhookResult(False, REJECTED, "Invalid signature")
        else:
            try:
                event = decode_event(payload)
                result = await self._dispatch(event)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    f"Webhook processing failed: {e}",
                    extra={"event_type": event_type, "request_ref": envelope.request_ref},
                    exc_info=True,
                )
                result = WebhookResult(False, FAILED, str(e))

        self._finish_log(log_id, result)
        record_webhook(event_type, result.outcome)
        log_webhook_event(
            event_type,
            envelope.request_ref,
            result.outcome,
            signature_valid,
            error=None if result.success else result.message,
        )
        return result

    def _finish_log(self, log_id: str, result: WebhookResult) -> None:
        log = self.logs.get_provider_log(log_id)
        log.processed_successfully = result.success
        log.outcome = result.outcome
        log.error_message = None if result.success else result.message
        log.processed_at = utcnow()
        self.db.commit()

    async def _dispatch(self, event: ProviderEvent) -> WebhookResult:
        if isinstance(event, MandateActivationEvent):
            return await self.handle_mandate_activation(event)
        if isinstance(event, CreditEvent):
            return await self.handle_credit(event)
        return await self.handle_debit(event)

    def _bind_unscheduled_debit(self, event: DebitEvent) -> PaymentTransaction:
        """
        Tie a provider-initiated debit to a local payment.

        Matches on business (via biller code), ACTIVE status and installment amount.
        More than one candidate is refused rather than guessed.
        """
        business = self.businesses.get_by_biller_code(event.envelope.biller_code)
        if business is None:
            raise EntityNotFoundError(f"Business not found for biller code {event.envelope.biller_code!r}")

        candidates = self.applications.find_active_by_installment(business.business_id, event.amount)
        if not candidates:
            raise EntityNotFoundError(f"No active application with installment amount {event.amount}")
        if len(candidates) > 1:
            raise AmbiguousPaymentMatchError(
                f"{len(candidates)} active applications share installment amount {event.amount}; "
                f"cannot bind debit {event.transaction_ref}"
            )
        application = candidates[0]

        logger.warning(
            "Debit not found locally, binding by amount",
            extra={"transaction_ref": event.transaction_ref, "application_id": application.application_id},
        )
        open_payment = self.payments.next_open_payment(application.application_id)
        if open_payment is not None and self.payments.rebind_reference(
            open_payment.transaction_id, event.transaction_ref
        ):
            return self.payments.get_by_reference(event.transaction_ref)

        return self.payments.create(
            transaction_id=generate_id("TXN"),
            application_id=application.application_id,
            trust_wallet_id=application.trust_wallet_id,
            business_id=application.business_id,
            amount=application.installment_amount,
            status=PaymentStatus.PENDING.value,
            payment_number=self.payments.next_payment_number(application.application_id),
            total_payments=application.installment_count,
            scheduled_date=utcnow(),
            provider_transaction_ref=event.transaction_ref,
            provider_payment_id=event.payment_id or None,
        )

    def _complete_if_paid(self, application: Application) -> bool:
        """ACTIVE -> COMPLETED once every installment is counted"""
        if application.payments_completed < application.installment_count:
            return False
        if ApplicationStatus(application.status) != ApplicationStatus.ACTIVE:
            return False
        return self.machine.transition(
            application,
            ApplicationStatus.COMPLETED,
            details={"payments_completed": application.payments_completed},
        )

    async def _notify_completed(self, business: Business, application: Application) -> None:
        await self.notifier.notify(
            self.db,
            business,
            APPLICATION_COMPLETED,
            {
                "application_id": application.application_id,
                "total_paid": application.total_paid,
                "outstanding_balance": application.outstanding_balance,
                "customer_name": application.customer_name,
            },
        )

    async def handle_debit(self, event: DebitEvent) -> WebhookResult:
        payment = self.payments.get_by_reference(event.transaction_ref)
        if payment is None:
            payment = self._bind_unscheduled_debit(event)

        if PaymentStatus(payment.status) in (PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED):
            message = f"Payment {payment.transaction_id} already {payment.status}"
            self.db.rollback()
            return WebhookResult(True, DUPLICATE, message)

        transaction_id = payment.transaction_id
        application_id = payment.application_id
        status = PaymentStatus.SUCCESSFUL if event.successful else PaymentStatus.FAILED
        moved = self.payments.mark_terminal(
            transaction_id,
            status,
            paid_date=utcnow() if event.successful else None,
            provider_payment_id=event.payment_id,
            failure_reason=event.failure_reason,
        )
        if not moved:
            self.db.rollback()
            return WebhookResult(True, DUPLICATE, f"Payment {transaction_id} already terminal")

        counted = False
        if event.successful:
            counted = self.applications.record_installment_paid(application_id, payment.amount)
            if not counted:
                logger.warning(
                    "Successful debit not counted, application closed or fully paid",
                    extra={"application_id": application_id, "transaction_id": transaction_id},
                )
        self.db.commit()

        application = self.applications.get(application_id)
        payment = self.payments.get_by_reference(event.transaction_ref)
        completed = counted and self._complete_if_paid(application)
        if completed:
            application = self.applications.get(application_id)

        business = self.businesses.get(application.business_id)
        if business is not None:
            await self.notifier.notify(
                self.db,
                business,
                PAYMENT_SUCCESSFUL if event.successful else PAYMENT_FAILED,
                {
                    "application_id": application_id,
                    "transaction_id": transaction_id,
                    "amount": payment.amount,
                    "payment_number": payment.payment_number,
                    "total_payments": payment.total_payments,
                    "paid_date": payment.paid_date,
                    "failure_reason": payment.failure_reason,
                    "customer_name": application.customer_name,
                    "payments_completed": application.payments_completed,
                    "outstanding_balance": application.outstanding_balance,
                },
            )
            if completed:
                await self._notify_completed(business, application)
        return WebhookResult(True, PROCESSED, f"Payment {transaction_id} marked {status.value}")

    async def handle_credit(self, event: CreditEvent) -> WebhookResult:
        application = self.applications.find_by_virtual_account(event.virtual_account)
        if application is None:
            raise EntityNotFoundError(f"No application for virtual account {event.virtual_account}")
        application_id = application.application_id

        if application.down_payment_received:
            return WebhookResult(True, DUPLICATE, f"Down payment already recorded for {application_id}")

        if abs(event.amount - application.down_payment_required) > 0.01:
            logger.warning(
                "Down payment amount mismatch",
                extra={
                    "application_id": application_id,
                    "expected": application.down_payment_required,
                    "received": event.amount,
                },
            )

        moved = self.machine.transition(
            application,
            ApplicationStatus.ACTIVE,
            fields={
                "down_payment_received": True,
                "down_payment_amount": event.amount,
                "down_payment_received_at": utcnow(),
                "total_paid": Application.total_paid + event.amount,
                "outstanding_balance": reduced_balance(event.amount),
            },
            details={"down_payment_amount": event.amount, "virtual_account_number": event.virtual_account},
        )
        if not moved:
            return WebhookResult(True, DUPLICATE, f"Application {application_id} already moved on")

        # Installments debited before the down payment arrived may already cover the plan
        application = self.applications.get(application_id)
        completed = self._complete_if_paid(application)
        if completed:
            application = self.applications.get(application_id)

        business = self.businesses.get(application.business_id)
        if business is not None:
            await self.notifier.notify(
                self.db,
                business,
                DOWN_PAYMENT_RECEIVED,
                {
                    "application_id": application_id,
                    "amount": event.amount,
                    "expected_amount": application.down_payment_required,
                    "outstanding_balance": application.outstanding_balance,
                    "customer_name": application.customer_name,
                    "next_step": f"{application.installment_count} {application.frequency} installments "
                    f"of {application.installment_amount:,.2f} will be debited automatically",
                },
            )
            if completed:
                await self._notify_completed(business, application)
        return WebhookResult(True, PROCESSED, f"Down payment recorded for {application_id}")

    async def handle_mandate_activation(self, event: MandateActivationEvent) -> WebhookResult:
        application = self.applications.find_by_mandate_ref(event.mandate_ref)
        if application is None:
            raise EntityNotFoundError(f"No application for mandate {event.mandate_ref}")
        application_id = application.application_id
        status = ApplicationStatus(application.status)

        if status == ApplicationStatus.MANDATE_ACTIVE and application.virtual_account_number:
            return WebhookResult(True, DUPLICATE, f"Mandate already active for {application_id}")
        if status == ApplicationStatus.ACTIVE or is_terminal(status):
            return WebhookResult(True, DUPLICATE, f"Application {application_id} is already {status.value}")
        if status not in (ApplicationStatus.MANDATE_CREATED, ApplicationStatus.MANDATE_ACTIVE):
            raise BusinessRuleViolation(f"Mandate activation received while application is {status.value}")

        if event.mandate_id is not None and application.mandate_id is None:
            self.applications.set_mandate_id(application_id, event.mandate_id)
            self.db.commit()

        if status == ApplicationStatus.MANDATE_CREATED:
            self.machine.transition(
                application,
                ApplicationStatus.MANDATE_ACTIVE,
                details={"mandate_id": event.mandate_id, "source": "provider_webhook"},
            )

        application = self.applications.get(application_id)
        account = await self.mandates.issue_invoice(application)
        if account is None:
            return WebhookResult(True, PROCESSED, f"Mandate active for {application_id}, invoice in progress")

        application = self.applications.get(application_id)
        business = self.businesses.get(application.business_id)
        if business is not None:
            await self.notifier.notify(
                self.db,
                business,
                MANDATE_ACTIVATED,
                {
                    "application_id": application_id,
                    "mandate_ref": application.mandate_ref,
                    "mandate_id": application.mandate_id,
                    "virtual_account_number": account,
                    "down_payment_required": application.down_payment_required,
                    "next_step": f"Customer should pay the down payment of "
                    f"{application.down_payment_required:,.2f} to account {account}",
                },
            )
        return WebhookResult(True, PROCESSED, f"Mandate activated for {application_id}")


def webhook_ack(result: WebhookResult) -> Dict[str, Any]:
    return {"success": result.success, "message": result.message}
