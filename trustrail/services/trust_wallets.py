"""TrustWallet configuration"""

import logging
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from trustrail.domain.exceptions import BusinessRuleViolation, EntityNotFoundError
from trustrail.domain.models import ActorType, ApprovalWorkflow, InstallmentPlan
from trustrail.infrastructure.database.models import Business, TrustWallet
from trustrail.infrastructure.database.repositories import ApplicationRepository, TrustWalletRepository
from trustrail.services.audit import AuditService

logger = logging.getLogger(__name__)


def create_trust_wallet(
    db: Session,
    business: Business,
    name: str,
    plan: InstallmentPlan,
    workflow: ApprovalWorkflow,
    description: Optional[str] = None,
) -> TrustWallet:
    """
    Validate and store a plan with its approval workflow.

    Raises:
        WorkflowConfigurationError: thresholds or plan terms are inconsistent
        BusinessRuleViolation: the business already has a TrustWallet with this name
    """
    plan.validate()
    workflow.validate()

    repo = TrustWalletRepository(db)
    if repo.get_by_name(business.business_id, name) is not None:
        raise BusinessRuleViolation(f"TrustWallet named {name!r} already exists")

    trust_wallet = repo.add(
        TrustWallet(
            business_id=business.business_id,
            name=name,
            description=description,
            total_amount=plan.total_amount,
            down_payment_percentage=plan.down_payment_percentage,
            installment_count=plan.installment_count,
            frequency=plan.frequency,
            interest_rate=plan.interest_rate,
            auto_approve_threshold=workflow.auto_approve_threshold,
            auto_decline_threshold=workflow.auto_decline_threshold,
            min_trust_score=workflow.min_trust_score,
            is_active=True,
        )
    )
    AuditService(db).record(
        action="trust_wallet.created",
        actor_type=ActorType.BUSINESS,
        actor_id=business.business_id,
        resource_type="trust_wallet",
        resource_id=trust_wallet.trust_wallet_id,
        details={"name": name, "total_amount": plan.total_amount},
    )
    db.commit()
    logger.info(
        "TrustWallet created",
        extra={"business_id": business.business_id, "trust_wallet_id": trust_wallet.trust_wallet_id},
    )
    return trust_wallet


def get_trust_wallet(db: Session, trust_wallet_id: str, business: Business) -> TrustWallet:
    trust_wallet = TrustWalletRepository(db).get(trust_wallet_id)
    if trust_wallet is None or trust_wallet.business_id != business.business_id:
        raise EntityNotFoundError(f"TrustWallet {trust_wallet_id} not found")
    return trust_wallet


def list_trust_wallets(
    db: Session,
    business: Business,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[TrustWallet], int]:
    return TrustWalletRepository(db).list_for_business(business.business_id, is_active=is_active, page=page, limit=limit)


def update_trust_wallet(
    db: Session,
    trust_wallet_id: str,
    business: Business,
    name: Optional[str] = None,
    description: Optional[str] = None,
    plan_updates: Optional[Dict[str, Any]] = None,
    workflow_updates: Optional[Dict[str, Any]] = None,
) -> TrustWallet:
    """
    Apply a partial update.

    Plan and workflow changes are merged over the stored values and validated as a
    whole, the same way creation does. Applications already submitted keep the
    terms they were created with.

    Raises:
        EntityNotFoundError: unknown TrustWallet, or one owned by another business
        WorkflowConfigurationError: the merged plan or thresholds are inconsistent
        BusinessRuleViolation: the new name is taken
    """
    repo = TrustWalletRepository(db)
    trust_wallet = get_trust_wallet(db, trust_wallet_id, business)
    changes: Dict[str, Any] = {}

    if plan_updates:
        plan = InstallmentPlan(
            total_amount=trust_wallet.total_amount,
            down_payment_percentage=trust_wallet.down_payment_percentage,
            installment_count=trust_wallet.installment_count,
            frequency=trust_wallet.frequency,
            interest_rate=trust_wallet.interest_rate,
        )
        plan = replace(plan, **plan_updates)
        plan.validate()
        changes.update(asdict(plan))

    if workflow_updates:
        workflow = ApprovalWorkflow(
            auto_approve_threshold=trust_wallet.auto_approve_threshold,
            auto_decline_threshold=trust_wallet.auto_decline_threshold,
            min_trust_score=trust_wallet.min_trust_score,
        )
        workflow = replace(workflow, **workflow_updates)
        workflow.validate()
        changes.update(asdict(workflow))

    if name is not None and name != trust_wallet.name:
        if repo.get_by_name(business.business_id, name) is not None:
            raise BusinessRuleViolation(f"TrustWallet named {name!r} already exists")
        changes["name"] = name
    if description is not None:
        changes["description"] = description

    before = {field: getattr(trust_wallet, field) for field in changes}
    for field, value in changes.items():
        setattr(trust_wallet, field, value)

    AuditService(db).record(
        action="trust_wallet.updated",
        actor_type=ActorType.BUSINESS,
        actor_id=business.business_id,
        resource_type="trust_wallet",
        resource_id=trust_wallet_id,
        changes={
            field: {"before": before[field], "after": value}
            for field, value in changes.items()
            if before[field] != value
        },
    )
    db.commit()
    logger.info(
        "TrustWallet updated",
        extra={"business_id": business.business_id, "trust_wallet_id": trust_wallet_id},
    )
    return trust_wallet


def deactivate_trust_wallet(db: Session, trust_wallet_id: str, business: Business) -> TrustWallet:
    """
    Stop a TrustWallet taking new applications. Rows are kept for history.

    Raises:
        EntityNotFoundError: unknown TrustWallet, or one owned by another business
        BusinessRuleViolation: applications under it are still in origination or repayment
    """
    trust_wallet = get_trust_wallet(db, trust_wallet_id, business)
    if ApplicationRepository(db).has_open_for_trust_wallet(trust_wallet_id):
        raise BusinessRuleViolation("Cannot deactivate a TrustWallet with open applications")
    if not trust_wallet.is_active:
        return trust_wallet

    trust_wallet.is_active = False
    AuditService(db).record(
        action="trust_wallet.deactivated",
        actor_type=ActorType.BUSINESS,
        actor_id=business.business_id,
        resource_type="trust_wallet",
        resource_id=trust_wallet_id,
        changes={"is_active": {"before": True, "after": False}},
    )
    db.commit()
    logger.info(
        "TrustWallet deactivated",
        extra={"business_id": business.business_id, "trust_wallet_id": trust_wallet_id},
    )
    return trust_wallet
