"""POST /webhooks/provider - payment provider notifications"""

import json
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from trustrail.api.dependencies import get_notifier, get_payment_provider, get_request_id
from trustrail.api.v1.schemas import WebhookAck
from trustrail.infrastructure.clients.notifier import BusinessNotifier
from trustrail.infrastructure.clients.payment_provider import PaymentProvider
from trustrail.infrastructure.database.session import get_db
from trustrail.services.reconciler import PaymentEventReconciler, webhook_ack

router = APIRouter()


@router.post("/provider", response_model=WebhookAck)
async def receive_provider_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: BusinessNotifier = Depends(get_notifier),
):
    """
    Always answers 200 so the provider does not retry; the real outcome is in
    provider_webhook_log and the returned `success` flag.
    """
    request_id = get_request_id(request)
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except ValueError:
        logging.warning("Provider webhook body is not JSON", extra={"request_id": request_id})
        payload = {"unparsed_body": raw.decode("utf-8", errors="replace")}

    result = await PaymentEventReconciler(db, provider, notifier).handle(payload)
    return webhook_ack(result)
