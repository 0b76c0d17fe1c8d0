"""Integration tests for provider webhook reconciliation"""

import pytest

from trustrail.domain.models import ApplicationStatus, PaymentStatus
from trustrail.infrastructure.clients.notifier import (
    APPLICATION_COMPLETED,
    DOWN_PAYMENT_RECEIVED,
    MANDATE_ACTIVATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESSFUL,
)
from trustrail.infrastructure.database.models import BusinessWebhookLog, PaymentTransaction, ProviderWebhookLog
from trustrail.infrastructure.database.repositories import ApplicationRepository, PaymentRepository
from trustrail.services.reconciler import DUPLICATE, FAILED, PROCESSED, REJECTED, webhook_ack
from trustrail.utils.date_utils import utcnow


def events_sent(db):
    return [log.event for log in db.query(BusinessWebhookLog).all()]


def totals(db, application_id):
    application = ApplicationRepository(db).get(application_id)
    return application.payments_completed, application.total_paid, application.outstanding_balance


def schedule(db, application_id):
    return PaymentRepository(db).list_for_application(application_id)


# Down payment (credit)


async def test_credit_activates_application(db, approved_application, reconciler, payloads):
    application = await approved_application()

    result = await reconciler.handle(payloads.credit(application.virtual_account_number, 24_000))

    assert result.success and result.outcome == PROCESSED
    db.refresh(application)
    assert application.status == ApplicationStatus.ACTIVE.value
    assert application.down_payment_received is True
    assert application.down_payment_amount == 24_000
    assert application.activated_at is not None
    assert totals(db, application.application_id) == (0, 24_000, 96_000)
    assert DOWN_PAYMENT_RECEIVED in events_sent(db)


async def test_credit_replay_is_noop(db, approved_application, reconciler, payloads):
    application = await approved_application()
    await reconciler.handle(payloads.credit(application.virtual_account_number, 24_000))

    result = await reconciler.handle(payloads.credit(application.virtual_account_number, 24_000))

    assert result.success and result.outcome == DUPLICATE
    assert totals(db, application.application_id) == (0, 24_000, 96_000)
    assert events_sent(db).count(DOWN_PAYMENT_RECEIVED) == 1


async def test_credit_amount_mismatch_is_tolerated(db, approved_application, reconciler, payloads):
    application = await approved_application()

    result = await reconciler.handle(payloads.credit(application.virtual_account_number, 20_000))

    assert result.outcome == PROCESSED
    db.refresh(application)
    assert application.status == ApplicationStatus.ACTIVE.value
    assert totals(db, application.application_id) == (0, 20_000, 100_000)


async def test_credit_to_unknown_account_fails_quietly(db, reconciler, payloads):
    result = await reconciler.handle(payloads.credit("9900000000", 24_000))

    assert not result.success
    assert result.outcome == FAILED
    log = db.query(ProviderWebhookLog).one()
    assert log.signature_valid is True
    assert log.processed_successfully is False
    assert "9900000000" in log.error_message


# Installment debits


async def test_successful_debit_updates_totals(db, active_application, reconciler, payloads):
    application = await active_application()
    first = schedule(db, application.application_id)[0]

    result = await reconciler.handle(payloads.debit(first.provider_transaction_ref, 9_600))

    assert result.outcome == PROCESSED
    db.refresh(first)
    assert first.status == PaymentStatus.SUCCESSFUL.value
    assert first.paid_date is not None
    assert first.provider_payment_id.startswith("PAY-")
    assert totals(db, application.application_id) == (1, 33_600, 86_400)
    assert PAYMENT_SUCCESSFUL in events_sent(db)


async def test_debit_replay_is_idempotent(db, active_application, reconciler, payloads):
    application = await active_application()
    first = schedule(db, application.application_id)[0]
    payload = payloads.debit(first.provider_transaction_ref, 9_600)

    await reconciler.handle(payload)
    after_first = totals(db, application.application_id)
    result = await reconciler.handle(payload)

    assert result.success and result.outcome == DUPLICATE
    assert totals(db, application.application_id) == after_first
    assert events_sent(db).count(PAYMENT_SUCCESSFUL) == 1


async def test_failed_debit_records_reason_only(db, active_application, reconciler, payloads):
    application = await active_application()
    first = schedule(db, application.application_id)[0]

    await reconciler.handle(payloads.debit(first.provider_transaction_ref, 9_600, status="Failed"))

    db.refresh(first)
    assert first.status == PaymentStatus.FAILED.value
    assert first.failure_reason == "Insufficient funds"
    assert first.paid_date is None
    assert totals(db, application.application_id) == (0, 24_000, 96_000)
    db.refresh(application)
    assert application.status == ApplicationStatus.ACTIVE.value
    assert PAYMENT_FAILED in events_sent(db)


async def test_terminal_payment_cannot_flip(db, active_application, reconciler, payloads):
    application = await active_application()
    first = schedule(db, application.application_id)[0]

    await reconciler.handle(payloads.debit(first.provider_transaction_ref, 9_600, status="Failed"))
    result = await reconciler.handle(payloads.debit(first.provider_transaction_ref, 9_600))

    assert result.outcome == DUPLICATE
    db.refresh(first)
    assert first.status == PaymentStatus.FAILED.value
    assert totals(db, application.application_id)[0] == 0


async def test_completion_exactly_at_last_installment(
    db, make_trust_wallet, active_application, reconciler, payloads, business
):
    wallet = make_trust_wallet(total_amount=50_000, down_payment_percentage=20, installment_count=5)
    application = await active_application(wallet)
    payments = schedule(db, application.application_id)
    assert len(payments) == 5

    for payment in payments[:4]:
        await reconciler.handle(payloads.debit(payment.provider_transaction_ref, 8_000))
    db.refresh(application)
    assert application.status == ApplicationStatus.ACTIVE.value
    assert application.payments_completed == 4

    fifth = payloads.debit(payments[4].provider_transaction_ref, 8_000)
    await reconciler.handle(fifth)
    db.refresh(application)
    assert application.status == ApplicationStatus.COMPLETED.value
    assert application.completed_at is not None
    assert totals(db, application.application_id) == (5, 50_000, 0)

    # Duplicate of the fifth, then a stray extra debit
    assert (await reconciler.handle(fifth)).outcome == DUPLICATE
    db.refresh(business)
    stray = await reconciler.handle(payloads.debit("PROV-EXTRA", 8_000, biller_code=business.biller_code))
    assert stray.outcome == FAILED

    db.refresh(application)
    assert application.status == ApplicationStatus.COMPLETED.value
    assert totals(db, application.application_id) == (5, 50_000, 0)
    assert events_sent(db).count(APPLICATION_COMPLETED) == 1


async def test_counters_use_scheduled_amount(db, make_trust_wallet, active_application, reconciler, payloads):
    wallet = make_trust_wallet(total_amount=10_000, down_payment_percentage=50, installment_count=1)
    application = await active_application(wallet)
    [only] = schedule(db, application.application_id)

    # Provider reports more than the 5,000 installment
    await reconciler.handle(payloads.debit(only.provider_transaction_ref, 9_000))

    assert totals(db, application.application_id) == (1, 10_000, 0)


async def test_uneven_plan_completes_with_nothing_outstanding(
    db, make_trust_wallet, active_application, reconciler, payloads
):
    wallet = make_trust_wallet(total_amount=100_000, down_payment_percentage=0, installment_count=3)
    application = await active_application(wallet)
    payments = schedule(db, application.application_id)
    assert [p.amount for p in payments] == [33_333.33, 33_333.33, 33_333.34]

    for payment in payments:
        await reconciler.handle(payloads.debit(payment.provider_transaction_ref, payment.amount))

    db.refresh(application)
    assert application.status == ApplicationStatus.COMPLETED.value
    assert application.total_paid == pytest.approx(100_000)
    assert application.outstanding_balance == 0


async def test_installments_paid_before_down_payment_complete_on_credit(
    db, make_trust_wallet, approved_application, reconciler, payloads
):
    wallet = make_trust_wallet(total_amount=10_000, down_payment_percentage=50, installment_count=1, frequency="weekly")
    application = await approved_application(wallet)
    [only] = schedule(db, application.application_id)

    debit = await reconciler.handle(payloads.debit(only.provider_transaction_ref, 5_000))
    assert debit.outcome == PROCESSED
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value
    assert totals(db, application.application_id) == (1, 5_000, 5_000)

    credit = await reconciler.handle(payloads.credit(application.virtual_account_number, 5_000))

    assert credit.outcome == PROCESSED
    db.refresh(application)
    assert application.status == ApplicationStatus.COMPLETED.value
    assert application.completed_at is not None
    assert totals(db, application.application_id) == (1, 10_000, 0)
    assert events_sent(db).count(APPLICATION_COMPLETED) == 1


# Debits the provider initiated without a local record


async def test_unscheduled_debit_binds_to_next_open_payment(
    db, active_application, reconciler, payloads, business
):
    application = await active_application()
    db.refresh(business)

    result = await reconciler.handle(payloads.debit("PROV-DEBIT-1", 9_600, biller_code=business.biller_code))

    assert result.outcome == PROCESSED
    payments = schedule(db, application.application_id)
    assert len(payments) == 10
    assert payments[0].provider_transaction_ref == "PROV-DEBIT-1"
    assert payments[0].status == PaymentStatus.SUCCESSFUL.value
    assert totals(db, application.application_id)[0] == 1


async def test_unscheduled_debit_creates_payment_when_none_open(
    db, active_application, reconciler, payloads, business
):
    application = await active_application()
    repo = PaymentRepository(db)
    for payment in schedule(db, application.application_id):
        repo.mark_terminal(payment.transaction_id, PaymentStatus.FAILED, failure_reason="Test")
    db.commit()
    db.refresh(business)

    result = await reconciler.handle(payloads.debit("PROV-DEBIT-2", 9_600, biller_code=business.biller_code))

    assert result.outcome == PROCESSED
    created = repo.get_by_reference("PROV-DEBIT-2")
    assert created.payment_number == 11
    assert created.status == PaymentStatus.SUCCESSFUL.value
    assert created.transaction_id != "PROV-DEBIT-2"


async def test_unscheduled_debit_refuses_ambiguous_match(
    db, active_application, reconciler, payloads, business
):
    first = await active_application()
    second = await active_application()
    assert first.installment_amount == second.installment_amount
    db.refresh(business)

    result = await reconciler.handle(payloads.debit("PROV-DEBIT-3", 9_600, biller_code=business.biller_code))

    assert result.outcome == FAILED
    assert "cannot bind" in result.message
    assert db.query(PaymentTransaction).filter_by(provider_transaction_ref="PROV-DEBIT-3").count() == 0
    assert totals(db, first.application_id)[0] == 0
    assert totals(db, second.application_id)[0] == 0


async def test_unscheduled_debit_unknown_biller(db, reconciler, payloads):
    result = await reconciler.handle(payloads.debit("PROV-DEBIT-4", 9_600, biller_code="BILL-NOPE"))
    assert result.outcome == FAILED


# Mandate activation


async def test_activation_completes_interrupted_pipeline(
    db, make_application, orchestrator, provider, reconciler, payloads
):
    provider.failing.add("send invoice")
    application = make_application()
    await orchestrator().run_cycle()
    provider.failing.clear()
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_CREATED.value

    result = await reconciler.handle(payloads.activation(application.mandate_ref, mandate_id=4401))

    assert result.outcome == PROCESSED
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value
    assert application.mandate_id == 4401
    assert application.virtual_account_number == provider.last_virtual_account()
    assert len(schedule(db, application.application_id)) == 10
    assert MANDATE_ACTIVATED in events_sent(db)


async def test_activation_replay_does_not_reissue_invoice(
    db, make_application, orchestrator, provider, reconciler, payloads
):
    provider.failing.add("send invoice")
    application = make_application()
    await orchestrator().run_cycle()
    provider.failing.clear()
    db.refresh(application)

    await reconciler.handle(payloads.activation(application.mandate_ref))
    result = await reconciler.handle(payloads.activation(application.mandate_ref))

    assert result.success and result.outcome == DUPLICATE
    assert len(provider.invoices) == 1
    assert events_sent(db).count(MANDATE_ACTIVATED) == 1


async def test_activation_after_synchronous_issuance_is_duplicate(
    db, approved_application, provider, reconciler, payloads
):
    application = await approved_application()

    result = await reconciler.handle(payloads.activation(application.mandate_ref))

    assert result.outcome == DUPLICATE
    assert len(provider.invoices) == 1


async def test_activation_while_invoice_in_flight(
    db, make_application, orchestrator, provider, reconciler, payloads
):
    provider.failing.add("send invoice")
    application = make_application()
    await orchestrator().run_cycle()
    provider.failing.clear()

    # The orchestrator is mid-issuance for this application
    ApplicationRepository(db).claim_invoice_issuance(application.application_id, utcnow())
    db.commit()
    db.refresh(application)

    result = await reconciler.handle(payloads.activation(application.mandate_ref))

    assert result.success
    assert "in progress" in result.message
    assert provider.invoices == []
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value


async def test_activation_after_down_payment_is_duplicate(db, active_application, reconciler, payloads):
    application = await active_application()
    result = await reconciler.handle(payloads.activation(application.mandate_ref))
    assert result.outcome == DUPLICATE


async def test_activation_for_unknown_mandate(reconciler, payloads):
    result = await reconciler.handle(payloads.activation("MAND-UNKNOWN"))
    assert result.outcome == FAILED


# Authenticity and logging


async def test_invalid_signature_is_rejected_and_logged(db, approved_application, reconciler, payloads):
    application = await approved_application()
    payload = payloads.credit(application.virtual_account_number, 24_000)
    payload["details"]["meta"]["signature_hash"] = "0" * 32

    result = await reconciler.handle(payload)

    assert not result.success
    assert result.outcome == REJECTED
    assert webhook_ack(result) == {"success": False, "message": "Invalid signature"}
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value
    log = db.query(ProviderWebhookLog).filter_by(request_ref=payload["request_ref"]).one()
    assert log.signature_valid is False
    assert log.outcome == REJECTED
    assert log.raw_payload == payload


async def test_every_delivery_is_logged(db, reconciler):
    result = await reconciler.handle({"something": "unexpected"})

    assert not result.success
    log = db.query(ProviderWebhookLog).one()
    assert log.raw_payload == {"something": "unexpected"}
    assert log.processed_at is not None


async def test_malformed_payload_is_logged_as_failure(db, reconciler, payloads):
    payload = payloads.debit("ignored", 100)
    del payload["details"]["transaction_ref"]

    result = await reconciler.handle(payload)

    assert result.outcome == FAILED
    assert "Transaction reference" in result.message
