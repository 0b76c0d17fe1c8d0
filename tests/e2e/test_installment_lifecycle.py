"""
E2E tests driving whole installment plans through the HTTP surface.

The provider, the business endpoint and the statement scorer (fixed score of 82)
are faked in-process. The API, origination job, webhook receiver and default
monitor run for real.

Scenarios:
- happy path: approve, down payment, ten installments, completion
- default: three failed debits and the monitor marks the plan defaulted
- manual review: a flagged application approved by the business
"""

import json

import pytest
from fastapi.testclient import TestClient

from trustrail.infrastructure.clients.notifier import (
    APPLICATION_APPROVED,
    APPLICATION_COMPLETED,
    APPLICATION_DEFAULTED,
    APPLICATION_FLAGGED,
    DOWN_PAYMENT_RECEIVED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESSFUL,
)
from trustrail.infrastructure.database.repositories import PaymentRepository
from trustrail.services.default_monitor import DefaultMonitor
from trustrail.utils.signatures import verify_business_signature

WALLET = {
    "name": "Laptop over 10 months",
    "plan": {"total_amount": 120000, "down_payment_percentage": 20, "installment_count": 10, "frequency": "monthly"},
    "approval_workflow": {"auto_approve_threshold": 75, "auto_decline_threshold": 40, "min_trust_score": 30},
}

CUSTOMER = {
    "first_name": "Emeka",
    "last_name": "Nwosu",
    "email": "emeka@example.com",
    "phone_number": "08051234567",
    "account_number": "0987654321",
    "bank_code": "044",
    "bvn": "22298765432",
}


def open_application(client: TestClient, headers: dict, statement_csv: str) -> str:
    wallet = client.post("/v1/trust-wallets", json=WALLET, headers=headers)
    assert wallet.status_code == 201
    submitted = client.post(
        f"/v1/trust-wallets/{wallet.json()['trust_wallet_id']}/applications",
        json={"customer": CUSTOMER, "statement_csv": statement_csv},
        headers=headers,
    )
    assert submitted.status_code == 201
    return submitted.json()["application_id"]


def received_events(delivered_webhooks, secret: str) -> list:
    events = []
    for request in delivered_webhooks:
        assert verify_business_signature(request.content, secret, request.headers["X-TrustRail-Signature"])
        events.append(json.loads(request.content)["event"])
    return events


@pytest.mark.e2e
async def test_plan_runs_to_completion(
    client, db, business, orchestrator, payloads, delivered_webhooks, sample_statement_csv
):
    headers = {"X-Business-Id": business.business_id}
    application_id = open_application(client, headers, sample_statement_csv)

    report = await orchestrator().run_cycle()
    assert report.processed == 1

    detail = client.get(f"/v1/applications/{application_id}", headers=headers).json()
    assert detail["status"] == "MANDATE_ACTIVE"
    assert detail["trust_engine_output"]["trust_score"] == 82
    assert detail["trust_engine_output"]["decision"] == "APPROVED"
    account = detail["virtual_account_number"]
    assert account

    ack = client.post("/webhooks/provider", json=payloads.credit(account, 24000))
    assert ack.json()["success"] is True
    assert client.get(f"/v1/applications/{application_id}", headers=headers).json()["status"] == "ACTIVE"

    for payment in PaymentRepository(db).list_for_application(application_id):
        ack = client.post("/webhooks/provider", json=payloads.debit(payment.provider_transaction_ref, 9600))
        assert ack.status_code == 200
        assert ack.json()["success"] is True

    detail = client.get(f"/v1/applications/{application_id}", headers=headers).json()
    assert detail["status"] == "COMPLETED"
    assert detail["payments_completed"] == 10
    assert detail["total_paid"] == pytest.approx(120000)
    assert detail["outstanding_balance"] == 0
    assert detail["completed_at"] is not None
    assert all(p["status"] == "SUCCESSFUL" for p in detail["payments"])

    events = received_events(delivered_webhooks, business.webhook_secret)
    assert events.count(APPLICATION_APPROVED) == 1
    assert events.count(DOWN_PAYMENT_RECEIVED) == 1
    assert events.count(PAYMENT_SUCCESSFUL) == 10
    assert events.count(APPLICATION_COMPLETED) == 1


@pytest.mark.e2e
async def test_missed_payments_default_the_plan(
    client, db, business, orchestrator, payloads, notifier, delivered_webhooks, sample_statement_csv
):
    headers = {"X-Business-Id": business.business_id}
    application_id = open_application(client, headers, sample_statement_csv)
    await orchestrator().run_cycle()
    account = client.get(f"/v1/applications/{application_id}", headers=headers).json()["virtual_account_number"]
    client.post("/webhooks/provider", json=payloads.credit(account, 24000))

    payments = PaymentRepository(db).list_for_application(application_id)
    client.post("/webhooks/provider", json=payloads.debit(payments[0].provider_transaction_ref, 9600))
    for payment in payments[1:4]:
        client.post(
            "/webhooks/provider", json=payloads.debit(payment.provider_transaction_ref, 9600, status="Failed")
        )

    report = await DefaultMonitor(db, notifier).run_cycle()

    assert report.defaulted == [application_id]
    detail = client.get(f"/v1/applications/{application_id}", headers=headers).json()
    assert detail["status"] == "DEFAULTED"
    assert detail["payments_completed"] == 1
    assert detail["outstanding_balance"] == pytest.approx(86400)
    assert [p["failure_reason"] for p in detail["payments"][1:4]] == ["Insufficient funds"] * 3

    events = received_events(delivered_webhooks, business.webhook_secret)
    assert events.count(PAYMENT_FAILED) == 3
    assert events[-1] == APPLICATION_DEFAULTED


@pytest.mark.e2e
async def test_flagged_application_approved_by_business(
    client, business, orchestrator, scripted_analysis, provider, delivered_webhooks, sample_statement_csv
):
    headers = {"X-Business-Id": business.business_id}
    application_id = open_application(client, headers, sample_statement_csv)

    await orchestrator(scripted_analysis(trust_score=60)).run_cycle()
    assert client.get(f"/v1/applications/{application_id}", headers=headers).json()["status"] == "FLAGGED_FOR_REVIEW"
    assert provider.mandates == {}

    approved = client.post(
        f"/v1/applications/{application_id}/approve", json={"reason": "Known customer"}, headers=headers
    )

    assert approved.status_code == 200
    assert approved.json()["status"] == "MANDATE_ACTIVE"
    assert len(provider.mandates) == 1
    events = received_events(delivered_webhooks, business.webhook_secret)
    assert events == [APPLICATION_FLAGGED, APPLICATION_APPROVED]
