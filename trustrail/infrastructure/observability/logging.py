"""Structured JSON logging for the origination pipeline and webhook receiver"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from trustrail.config import settings
from trustrail.utils.date_utils import utcnow

logger = logging.getLogger("trustrail")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with timestamp, level and service name"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger"""
    root = logging.getLogger()
    root.setLevel(level)

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    root.addHandler(handler)


def log_transition(
    application_id: str,
    before: str,
    after: str,
    actor_type: str,
    reason: Optional[str] = None,
) -> None:
    """Log one lifecycle transition"""
    logger.info(
        "Application status changed",
        extra={
            "application_id": application_id,
            "step": "transition",
            "status_before": before,
            "status_after": after,
            "actor_type": actor_type,
            "reason": reason,
        },
    )


def log_webhook_event(
    event_type: str,
    request_ref: str,
    outcome: str,
    signature_valid: bool,
    error: Optional[str] = None,
) -> None:
    """Log the outcome of one inbound provider webhook"""
    level = logging.WARNING if error else logging.INFO
    logger.log(
        level,
        "Provider webhook processed",
        extra={
            "event_type": event_type,
            "request_ref": request_ref,
            "step": "webhook",
            "outcome": outcome,
            "signature_valid": signature_valid,
            "error": error,
        },
    )
