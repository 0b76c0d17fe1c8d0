"""Audit trail writer"""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from trustrail.domain.models import ActorType
from trustrail.infrastructure.database.models import AuditLog
from trustrail.infrastructure.database.repositories import AuditLogRepository


class AuditService:
    """Adds audit rows inside the caller's transaction; the caller commits"""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    def record(
        self,
        action: str,
        actor_type: ActorType,
        resource_type: str,
        resource_id: str,
        actor_id: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        return self.repo.add(
            action=action,
            actor_type=ActorType(actor_type).value,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            changes=changes,
            details=details,
        )
