"""Business webhook delivery with a bounded retry sweep"""

import json
import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from trustrail.config import settings
from trustrail.infrastructure.database.models import Business, BusinessWebhookLog
from trustrail.infrastructure.database.repositories import BusinessRepository, WebhookLogRepository
from trustrail.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)
from trustrail.utils.date_utils import utcnow
from trustrail.utils.signatures import business_signature

logger = logging.getLogger(__name__)

# Events a business can receive
APPLICATION_APPROVED = "application.approved"
APPLICATION_DECLINED = "application.declined"
APPLICATION_FLAGGED = "application.flagged_for_review"
MANDATE_ACTIVATED = "mandate.activated"
DOWN_PAYMENT_RECEIVED = "payment.down_payment_received"
PAYMENT_SUCCESSFUL = "payment.successful"
PAYMENT_FAILED = "payment.failed"
APPLICATION_COMPLETED = "application.completed"
APPLICATION_DEFAULTED = "application.defaulted"


class BusinessNotifier:
    """Posts signed JSON envelopes to each business's webhook URL"""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout or settings.notification_timeout_seconds
        self.max_attempts = settings.notification_max_attempts
        self.retry_batch = settings.notification_retry_batch
        self.transport = transport

    @staticmethod
    def build_envelope(event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        envelope = {"event": event, "timestamp": utcnow().isoformat(), "data": payload}
        # Stored in a JSON column, so datetimes become strings up front
        return json.loads(json.dumps(envelope, default=str))

    async def _deliver(self, business: Business, log: BusinessWebhookLog) -> bool:
        body = json.dumps(log.payload, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-TrustRail-Event": log.event}
        if business.webhook_secret:
            headers["X-TrustRail-Signature"] = business_signature(body, business.webhook_secret)

        log.attempts = (log.attempts or 0) + 1
        log.last_attempt_at = utcnow()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                with notification_latency_histogram.time():
                    response = await client.post(log.url, content=body, headers=headers)
                    response.raise_for_status()
            except httpx.HTTPStatusError as e:
                log.status = "failed"
                log.http_status = e.response.status_code
                log.error_message = f"HTTP {e.response.status_code}"
            except httpx.RequestError as e:
                log.status = "failed"
                log.error_message = str(e) or e.__class__.__name__
            else:
                log.status = "delivered"
                log.http_status = response.status_code
                log.error_message = None
                log.delivered_at = utcnow()
                return True

        notification_failure_counter.inc()
        logger.warning(
            "Business webhook delivery failed",
            extra={
                "business_id": business.business_id,
                "event": log.event,
                "attempts": log.attempts,
                "error": log.error_message,
            },
        )
        return False

    async def notify(self, db: Session, business: Business, event: str, payload: Dict[str, Any]) -> bool:
        """
        Send one event. Never raises on delivery failure; the outcome is in business_webhook_log.

        Returns:
            True when the business acknowledged with 2xx
        """
        if not business.webhook_url:
            logger.debug("No webhook URL configured", extra={"business_id": business.business_id, "event": event})
            return False

        log = WebhookLogRepository(db).add_business_log(
            business_id=business.business_id,
            event=event,
            payload=self.build_envelope(event, payload),
            url=business.webhook_url,
            status="pending",
            attempts=0,
        )
        delivered = await self._deliver(business, log)
        db.commit()
        if delivered:
            logger.info("Business webhook delivered", extra={"business_id": business.business_id, "event": event})
        return delivered

    async def retry_failed(self, db: Session) -> int:
        """Re-send failed deliveries below the attempt cap; returns how many got through"""
        logs = WebhookLogRepository(db).list_retryable_business_logs(self.max_attempts, self.retry_batch)
        businesses = BusinessRepository(db)
        delivered = 0
        for log in logs:
            business = businesses.get(log.business_id)
            if business is None or not business.webhook_url:
                continue
            log.url = business.webhook_url
            if await self._deliver(business, log):
                delivered += 1
            db.commit()

        if delivered:
            logger.info("Retried failed business webhooks", extra={"delivered": delivered, "scanned": len(logs)})
        return delivered
