"""Unit tests for provider webhook decoding"""

import pytest

from trustrail.domain.events import (
    CREDIT,
    DEBIT,
    MANDATE_ACTIVATION,
    CreditEvent,
    DebitEvent,
    MandateActivationEvent,
    classify_event,
    decode_event,
    parse_envelope,
)
from trustrail.domain.exceptions import WebhookPayloadError


def debit(status="Successful", **meta):
    return {
        "request_ref": "REQ-1",
        "request_type": "collect",
        "details": {
            "status": status,
            "amount": "9600",
            "transaction_ref": "TXN-1",
            "meta": {"biller_code": "BILL-1", "signature_hash": "abc", "payment_id": "PAY-1", **meta},
        },
    }


def test_envelope_fields():
    envelope = parse_envelope(debit())
    assert envelope.request_ref == "REQ-1"
    assert envelope.signature_hash == "abc"
    assert envelope.biller_code == "BILL-1"
    assert envelope.status == "Successful"


def test_envelope_of_garbage_payload():
    envelope = parse_envelope({"details": "not a dict"})
    assert envelope.request_ref == ""
    assert envelope.signature_hash == ""


def test_explicit_event_type_wins():
    payload = debit(cr_account="9912345678", event_type="debit")
    assert classify_event(payload) == DEBIT


def test_activation_marker_beats_credit_marker():
    payload = debit(cr_account="9912345678")
    payload["request_type"] = "activate_mandate"
    assert classify_event(payload) == MANDATE_ACTIVATION


def test_credit_account_marks_credit():
    assert classify_event(debit(cr_account="9912345678")) == CREDIT


def test_debit_is_the_default():
    assert classify_event({}) == DEBIT


def test_decode_successful_debit():
    event = decode_event(debit())
    assert isinstance(event, DebitEvent)
    assert event.transaction_ref == "TXN-1"
    assert event.amount == 9600.0
    assert event.successful is True
    assert event.failure_reason is None


def test_decode_failed_debit_keeps_reason():
    event = decode_event(debit(status="Failed", failure_reason="Insufficient funds"))
    assert event.successful is False
    assert event.failure_reason == "Insufficient funds"


def test_decode_failed_debit_default_reason():
    assert decode_event(debit(status="Failed")).failure_reason == "Payment failed"


def test_decode_debit_without_reference():
    payload = debit()
    del payload["details"]["transaction_ref"]
    with pytest.raises(WebhookPayloadError):
        decode_event(payload)


def test_decode_credit():
    event = decode_event(debit(cr_account="9912345678"))
    assert isinstance(event, CreditEvent)
    assert event.virtual_account == "9912345678"
    assert event.amount == 9600.0


def test_decode_activation_with_nested_id():
    payload = {
        "request_ref": "REQ-2",
        "request_type": "activate_mandate",
        "details": {"transaction_ref": "MAND-1", "data": {"data": {"id": "4401"}}},
    }
    event = decode_event(payload)
    assert isinstance(event, MandateActivationEvent)
    assert event.mandate_ref == "MAND-1"
    assert event.mandate_id == 4401


def test_decode_activation_without_reference():
    payload = {"request_type": "activate_mandate", "details": {}}
    with pytest.raises(WebhookPayloadError):
        decode_event(payload)


def test_unparsable_amount_is_zero():
    payload = debit()
    payload["details"]["amount"] = "lots"
    assert decode_event(payload).amount == 0.0
