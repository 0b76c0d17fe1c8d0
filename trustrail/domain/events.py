"""Typed decoding of payment provider webhook payloads"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from trustrail.domain.exceptions import WebhookPayloadError

DEBIT = "debit"
CREDIT = "credit"
MANDATE_ACTIVATION = "activate_mandate"


@dataclass
class WebhookEnvelope:
    """Fields every provider notification carries"""

    request_ref: str
    request_type: str
    signature_hash: str
    biller_code: str
    status: str


@dataclass
class DebitEvent:
    envelope: WebhookEnvelope
    transaction_ref: str
    amount: float
    successful: bool
    payment_id: str
    failure_reason: Optional[str]

    event_type = DEBIT


@dataclass
class CreditEvent:
    envelope: WebhookEnvelope
    virtual_account: str
    amount: float

    event_type = CREDIT


@dataclass
class MandateActivationEvent:
    envelope: WebhookEnvelope
    mandate_ref: str
    mandate_id: Optional[int]

    event_type = MANDATE_ACTIVATION


ProviderEvent = Union[DebitEvent, CreditEvent, MandateActivationEvent]


def _details(payload: Dict[str, Any]) -> Dict[str, Any]:
    details = payload.get("details")
    return details if isinstance(details, dict) else {}


def _meta(payload: Dict[str, Any]) -> Dict[str, Any]:
    meta = _details(payload).get("meta")
    return meta if isinstance(meta, dict) else {}


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_envelope(payload: Dict[str, Any]) -> WebhookEnvelope:
    meta = _meta(payload)
    return WebhookEnvelope(
        request_ref=str(payload.get("request_ref") or ""),
        request_type=str(payload.get("request_type") or ""),
        signature_hash=str(meta.get("signature_hash") or payload.get("signature_hash") or ""),
        biller_code=str(meta.get("biller_code") or ""),
        status=str(_details(payload).get("status") or ""),
    )


def classify_event(payload: Dict[str, Any]) -> str:
    """
    Decide the event type.

    An explicit meta.event_type wins; otherwise structural markers are tried in
    priority order: mandate-activation marker, credit account, then debit.
    """
    explicit = str(_meta(payload).get("event_type") or "")
    if explicit in (DEBIT, CREDIT, MANDATE_ACTIVATION):
        return explicit
    if MANDATE_ACTIVATION in (payload.get("transaction_type"), payload.get("request_type")):
        return MANDATE_ACTIVATION
    if _meta(payload).get("cr_account"):
        return CREDIT
    return DEBIT


def decode_event(payload: Dict[str, Any]) -> ProviderEvent:
    """
    Decode a raw provider payload into exactly one typed variant.

    Raises:
        WebhookPayloadError: the variant's identifying reference is missing
    """
    envelope = parse_envelope(payload)
    event_type = classify_event(payload)
    details = _details(payload)
    meta = _meta(payload)

    if event_type == MANDATE_ACTIVATION:
        inner = details.get("data") if isinstance(details.get("data"), dict) else {}
        inner = inner.get("data") if isinstance(inner.get("data"), dict) else {}
        mandate_ref = details.get("transaction_ref") or inner.get("reference") or payload.get("transaction_ref")
        if not mandate_ref:
            raise WebhookPayloadError("Mandate reference not found in activation webhook")
        raw_id = inner.get("id") or details.get("mandate_id")
        try:
            mandate_id = int(raw_id) if raw_id not in (None, "") else None
        except (TypeError, ValueError):
            mandate_id = None
        return MandateActivationEvent(envelope=envelope, mandate_ref=str(mandate_ref), mandate_id=mandate_id)

    if event_type == CREDIT:
        virtual_account = meta.get("cr_account")
        if not virtual_account:
            raise WebhookPayloadError("Virtual account not found in credit webhook")
        return CreditEvent(
            envelope=envelope,
            virtual_account=str(virtual_account),
            amount=_amount(details.get("amount")),
        )

    transaction_ref = details.get("transaction_ref")
    if not transaction_ref:
        raise WebhookPayloadError("Transaction reference not found in debit webhook")
    successful = envelope.status.lower() == "successful"
    return DebitEvent(
        envelope=envelope,
        transaction_ref=str(transaction_ref),
        amount=_amount(details.get("amount")),
        successful=successful,
        payment_id=str(meta.get("payment_id") or ""),
        failure_reason=None if successful else str(meta.get("failure_reason") or meta.get("reason") or "Payment failed"),
    )
