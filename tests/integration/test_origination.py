"""Integration tests for the origination job and mandate pipeline"""

from datetime import timedelta

from sqlalchemy import event, select

from trustrail.domain.models import ApplicationStatus, PaymentStatus
from trustrail.infrastructure.clients.notifier import (
    APPLICATION_APPROVED,
    APPLICATION_DECLINED,
    APPLICATION_FLAGGED,
)
from trustrail.infrastructure.database.models import Application, AuditLog, BusinessWebhookLog
from trustrail.infrastructure.database.repositories import (
    ApplicationRepository,
    PaymentRepository,
    TrustEngineOutputRepository,
)
from trustrail.services.mandates import MandateService
from trustrail.utils.date_utils import utcnow


def events_sent(db):
    return [log.event for log in db.query(BusinessWebhookLog).order_by(BusinessWebhookLog.created_at).all()]


async def test_approved_application_reaches_mandate_active(db, make_application, orchestrator, provider):
    application = make_application()

    report = await orchestrator().run_cycle()

    assert report.processed == 1
    assert report.failed == []
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value
    assert application.mandate_ref in provider.mandates
    assert application.virtual_account_number == provider.last_virtual_account()
    assert application.approved_at is not None
    assert application.mandate_activated_at is not None

    output = TrustEngineOutputRepository(db).get_by_application(application.application_id)
    assert output.trust_score == 82
    assert output.decision == "APPROVED"
    assert application.trust_engine_output_id == output.output_id

    assert APPLICATION_APPROVED in events_sent(db)


async def test_schedule_created_on_invoice(db, make_application, orchestrator, provider):
    application = make_application()
    await orchestrator().process(application.application_id)

    payments = PaymentRepository(db).list_for_application(application.application_id)
    assert [p.payment_number for p in payments] == list(range(1, 11))
    assert all(p.status == PaymentStatus.SCHEDULED.value for p in payments)
    assert all(p.amount == 9_600 for p in payments)
    assert len({p.provider_transaction_ref for p in payments}) == 10

    invoice = provider.invoices[0]
    assert invoice.down_payment == 24_000
    assert invoice.installment_count == 10
    # First installment is one period after issuance, matching the provider's start date
    assert payments[0].scheduled_date.date() == invoice.start_date.date()
    assert invoice.start_date.date() > utcnow().date()


async def test_declined_and_flagged_notify_without_provider_calls(
    db, make_application, orchestrator, scripted_analysis, provider
):
    declined = make_application()
    await orchestrator(scripted_analysis(trust_score=20)).process(declined.application_id)
    flagged = make_application()
    await orchestrator(scripted_analysis(trust_score=55)).process(flagged.application_id)

    db.refresh(declined)
    db.refresh(flagged)
    assert declined.status == ApplicationStatus.DECLINED.value
    assert declined.declined_at is not None
    assert flagged.status == ApplicationStatus.FLAGGED_FOR_REVIEW.value
    assert provider.mandates == {}
    assert provider.invoices == []
    assert sorted(events_sent(db)) == sorted([APPLICATION_DECLINED, APPLICATION_FLAGGED])


async def test_unaffordable_high_score_declines(db, make_application, orchestrator, scripted_analysis):
    application = make_application()
    await orchestrator(scripted_analysis(trust_score=95, can_afford=False)).process(application.application_id)
    db.refresh(application)
    assert application.status == ApplicationStatus.DECLINED.value


async def test_cycle_is_fifo_and_bounded(db, make_application, orchestrator, scripted_analysis):
    applications = [make_application() for _ in range(3)]
    base = utcnow() - timedelta(hours=1)
    # Submitted in reverse order of creation
    for offset, application in enumerate(reversed(applications)):
        application.submitted_at = base + timedelta(minutes=offset)
    db.commit()

    analysis = scripted_analysis(trust_score=20)
    report = await orchestrator(analysis, batch_size=2).run_cycle()

    assert report.processed == 2
    assert analysis.calls == [applications[2].application_id, applications[1].application_id]
    db.refresh(applications[0])
    assert applications[0].status == ApplicationStatus.PENDING_ANALYSIS.value


async def test_claim_is_compare_and_set(db, make_application, orchestrator, scripted_analysis):
    application = make_application()
    repo = ApplicationRepository(db)

    assert repo.compare_and_set_status(
        application.application_id, ApplicationStatus.PENDING_ANALYSIS, ApplicationStatus.ANALYZING
    )
    assert not repo.compare_and_set_status(
        application.application_id, ApplicationStatus.PENDING_ANALYSIS, ApplicationStatus.ANALYZING
    )
    db.commit()

    # A second worker that sees the row already claimed does nothing
    analysis = scripted_analysis()
    assert await orchestrator(analysis).process(application.application_id) is False
    assert analysis.calls == []


async def test_analysis_failure_leaves_application_analyzing(db, make_application, orchestrator, failing_analysis):
    first = make_application()
    second = make_application()

    report = await orchestrator(failing_analysis).run_cycle()

    assert sorted(report.failed) == sorted([first.application_id, second.application_id])
    for application in (first, second):
        db.refresh(application)
        assert application.status == ApplicationStatus.ANALYZING.value
        assert application.trust_engine_output_id is None
        assert TrustEngineOutputRepository(db).get_by_application(application.application_id) is None

    # Not retried by later cycles
    report = await orchestrator(failing_analysis).run_cycle()
    assert report.processed == 0 and report.failed == []


async def test_mandate_failure_stops_at_approved(db, make_application, orchestrator, provider):
    provider.failing.add("create mandate")
    application = make_application()

    report = await orchestrator().run_cycle()

    assert report.failed == [application.application_id]
    db.refresh(application)
    assert application.status == ApplicationStatus.APPROVED.value
    assert application.mandate_ref is None
    # The decision itself is durable
    assert TrustEngineOutputRepository(db).get_by_application(application.application_id) is not None


async def test_invoice_failure_stops_at_mandate_created_and_resumes(
    db, make_application, orchestrator, provider, notifier
):
    provider.failing.add("send invoice")
    application = make_application()

    await orchestrator().run_cycle()

    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_CREATED.value
    assert application.mandate_ref is not None
    assert application.virtual_account_number is None
    assert application.invoice_requested_at is None
    assert PaymentRepository(db).list_for_application(application.application_id) == []

    provider.failing.clear()
    mandates_before = len(provider.mandates)
    await MandateService(db, provider, notifier).run_approval_pipeline(application)

    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_ACTIVE.value
    assert application.virtual_account_number is not None
    # Mandate step was not repeated
    assert len(provider.mandates) == mandates_before


async def test_account_and_mandate_active_commit_together(
    db, make_application, orchestrator, provider, notifier
):
    provider.failing.add("send invoice")
    application = make_application()
    await orchestrator().run_cycle()
    provider.failing.clear()
    db.refresh(application)
    assert application.status == ApplicationStatus.MANDATE_CREATED.value

    committed = []

    def snapshot(session):
        row = session.execute(
            select(Application.status, Application.virtual_account_number).where(
                Application.application_id == application.application_id
            )
        ).one()
        committed.append(tuple(row))

    event.listen(db, "before_commit", snapshot)
    try:
        await MandateService(db, provider, notifier).issue_invoice(application)
    finally:
        event.remove(db, "before_commit", snapshot)

    # A credit arriving between commits must never find an account on MANDATE_CREATED
    assert (ApplicationStatus.MANDATE_ACTIVE.value, provider.last_virtual_account()) in committed
    assert all(
        account is None for status, account in committed if status == ApplicationStatus.MANDATE_CREATED.value
    )


async def test_issue_invoice_is_idempotent(db, make_application, orchestrator, provider, notifier):
    application = make_application()
    await orchestrator().process(application.application_id)
    db.refresh(application)

    account = await MandateService(db, provider, notifier).issue_invoice(application)

    assert account == application.virtual_account_number
    assert len(provider.invoices) == 1
    assert len(PaymentRepository(db).list_for_application(application.application_id)) == 10


async def test_issue_invoice_skips_while_claimed(db, make_application, orchestrator, provider, notifier):
    provider.failing.add("send invoice")
    application = make_application()
    await orchestrator().run_cycle()
    provider.failing.clear()

    # Another caller holds the issuance claim
    ApplicationRepository(db).claim_invoice_issuance(application.application_id, utcnow())
    db.commit()
    db.refresh(application)

    assert await MandateService(db, provider, notifier).issue_invoice(application) is None
    assert provider.invoices == []


async def test_biller_code_created_once(db, business, make_application, orchestrator, provider):
    for _ in range(2):
        make_application()
    await orchestrator().run_cycle()

    db.refresh(business)
    assert business.biller_code is not None
    assert len(provider.merchants) == 1


async def test_transitions_are_audited(db, make_application, orchestrator):
    application = make_application()
    await orchestrator().process(application.application_id)

    entries = db.query(AuditLog).filter(AuditLog.resource_id == application.application_id).all()
    transitions = {
        (e.changes["status"]["before"], e.changes["status"]["after"])
        for e in entries
        if e.changes and "status" in e.changes
    }
    assert transitions == {
        (None, "PENDING_ANALYSIS"),
        ("PENDING_ANALYSIS", "ANALYZING"),
        ("ANALYZING", "APPROVED"),
        ("APPROVED", "MANDATE_CREATED"),
        ("MANDATE_CREATED", "MANDATE_ACTIVE"),
    }
    assert all(e.actor_type == "system" for e in entries)
