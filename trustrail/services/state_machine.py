"""Applies lifecycle transitions with compare-and-set, audit, metrics and logging"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from trustrail.domain.lifecycle import TRANSITION_TIMESTAMPS, ensure_transition
from trustrail.domain.models import ActorType, ApplicationStatus
from trustrail.infrastructure.database.models import Application
from trustrail.infrastructure.database.repositories import ApplicationRepository
from trustrail.infrastructure.observability.logging import log_transition
from trustrail.infrastructure.observability.metrics import record_transition
from trustrail.services.audit import AuditService
from trustrail.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class ApplicationStateMachine:
    """
    The only writer of Application.status.

    A transition is legal-edge checked, then applied with an UPDATE guarded by the
    status the caller last read. When the row has moved in the meantime nothing is
    written and False is returned. On success the audit row and the caller's pending
    work are committed together.
    """

    def __init__(self, db: Session):
        self.db = db
        self.applications = ApplicationRepository(db)
        self.audit = AuditService(db)

    def transition(
        self,
        application: Application,
        target: ApplicationStatus,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        manual: bool = False,
        fields: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Raises:
            InvalidTransitionError: current -> target is not a legal edge
        """
        application_id = application.application_id
        current = ApplicationStatus(application.status)
        target = ApplicationStatus(target)
        ensure_transition(current, target, manual=manual)

        values = dict(fields or {})
        timestamp_column = TRANSITION_TIMESTAMPS.get(target)
        if timestamp_column and timestamp_column not in values:
            values[timestamp_column] = utcnow()

        if not self.applications.compare_and_set_status(application_id, current, target, **values):
            logger.warning(
                "Transition lost to a concurrent writer",
                extra={
                    "application_id": application_id,
                    "status_before": current.value,
                    "status_after": target.value,
                },
            )
            return False

        self.audit.record(
            action=f"application.{target.value.lower()}",
            actor_type=actor_type,
            actor_id=actor_id,
            resource_type="application",
            resource_id=application_id,
            changes={"status": {"before": current.value, "after": target.value}},
            details=details,
        )
        self.db.commit()

        record_transition(current.value, target.value)
        log_transition(application_id, current.value, target.value, ActorType(actor_type).value)
        return True
