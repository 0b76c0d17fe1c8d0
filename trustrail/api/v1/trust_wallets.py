"""TrustWallet configuration endpoints and application submission"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from trustrail.api.dependencies import get_current_business, get_request_id
from trustrail.api.v1.applications import to_application_response
from trustrail.api.v1.schemas import (
    ApplicationCreateRequest,
    ApplicationResponse,
    Pagination,
    TrustWalletCreateRequest,
    TrustWalletListResponse,
    TrustWalletResponse,
    TrustWalletUpdateRequest,
)
from trustrail.domain.exceptions import (
    BusinessRuleViolation,
    ConfigurationError,
    EntityNotFoundError,
    StatementParseError,
    WorkflowConfigurationError,
)
from trustrail.domain.models import ApprovalWorkflow, InstallmentPlan
from trustrail.infrastructure.database.models import Business, TrustWallet
from trustrail.infrastructure.database.repositories import TrustWalletRepository
from trustrail.infrastructure.database.session import get_db
from trustrail.services.applications import CustomerDetails, submit_application
from trustrail.services.trust_wallets import (
    create_trust_wallet,
    deactivate_trust_wallet,
    get_trust_wallet,
    list_trust_wallets,
    update_trust_wallet,
)

router = APIRouter()


def to_trust_wallet_response(trust_wallet: TrustWallet, application_count: Optional[int] = None) -> TrustWalletResponse:
    return TrustWalletResponse(
        trust_wallet_id=trust_wallet.trust_wallet_id,
        business_id=trust_wallet.business_id,
        name=trust_wallet.name,
        description=trust_wallet.description,
        total_amount=trust_wallet.total_amount,
        down_payment_percentage=trust_wallet.down_payment_percentage,
        installment_count=trust_wallet.installment_count,
        frequency=trust_wallet.frequency,
        auto_approve_threshold=trust_wallet.auto_approve_threshold,
        auto_decline_threshold=trust_wallet.auto_decline_threshold,
        min_trust_score=trust_wallet.min_trust_score,
        is_active=trust_wallet.is_active,
        application_count=application_count,
    )


@router.post("/trust-wallets", response_model=TrustWalletResponse, status_code=201)
def create_trust_wallet_endpoint(
    body: TrustWalletCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """Create an installment plan with its approval thresholds"""
    request_id = get_request_id(request)
    try:
        trust_wallet = create_trust_wallet(
            db,
            business,
            name=body.name,
            plan=InstallmentPlan(**body.plan.model_dump()),
            workflow=ApprovalWorkflow(**body.approval_workflow.model_dump()),
            description=body.description,
        )
    except WorkflowConfigurationError as e:
        db.rollback()
        logging.warning(f"Invalid TrustWallet configuration: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))
    except BusinessRuleViolation as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    return to_trust_wallet_response(trust_wallet)


@router.get("/trust-wallets", response_model=TrustWalletListResponse)
def list_trust_wallets_endpoint(
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """The business's TrustWallets, newest first, with how many applications each has"""
    trust_wallets, total = list_trust_wallets(db, business, is_active=is_active, page=page, limit=limit)
    counts = TrustWalletRepository(db).application_counts([w.trust_wallet_id for w in trust_wallets])
    return TrustWalletListResponse(
        trust_wallets=[to_trust_wallet_response(w, counts.get(w.trust_wallet_id, 0)) for w in trust_wallets],
        pagination=Pagination.of(page, limit, total),
    )


@router.get("/trust-wallets/{trust_wallet_id}", response_model=TrustWalletResponse)
def get_trust_wallet_endpoint(
    trust_wallet_id: str,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    try:
        trust_wallet = get_trust_wallet(db, trust_wallet_id, business)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    counts = TrustWalletRepository(db).application_counts([trust_wallet_id])
    return to_trust_wallet_response(trust_wallet, counts.get(trust_wallet_id, 0))


@router.put("/trust-wallets/{trust_wallet_id}", response_model=TrustWalletResponse)
def update_trust_wallet_endpoint(
    trust_wallet_id: str,
    body: TrustWalletUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """Change name, description, plan terms or thresholds; new terms apply to new applications"""
    request_id = get_request_id(request)
    try:
        trust_wallet = update_trust_wallet(
            db,
            trust_wallet_id,
            business,
            name=body.name,
            description=body.description,
            plan_updates=body.plan.model_dump(exclude_none=True) if body.plan else None,
            workflow_updates=(
                body.approval_workflow.model_dump(exclude_none=True) if body.approval_workflow else None
            ),
        )
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowConfigurationError as e:
        db.rollback()
        logging.warning(f"Invalid TrustWallet configuration: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))
    except BusinessRuleViolation as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    return to_trust_wallet_response(trust_wallet)


@router.delete("/trust-wallets/{trust_wallet_id}", response_model=TrustWalletResponse)
def deactivate_trust_wallet_endpoint(
    trust_wallet_id: str,
    request: Request,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """Soft delete: the TrustWallet stops accepting applications"""
    request_id = get_request_id(request)
    try:
        trust_wallet = deactivate_trust_wallet(db, trust_wallet_id, business)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BusinessRuleViolation as e:
        logging.warning(f"TrustWallet deactivation refused: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail=str(e))

    return to_trust_wallet_response(trust_wallet)


@router.post(
    "/trust-wallets/{trust_wallet_id}/applications",
    response_model=ApplicationResponse,
    status_code=201,
)
def submit_application_endpoint(
    trust_wallet_id: str,
    body: ApplicationCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """
    Submit a customer application with a bank statement.

    Analysis happens later in the origination job; the response is PENDING_ANALYSIS.
    """
    request_id = get_request_id(request)
    trust_wallet = TrustWalletRepository(db).get(trust_wallet_id)
    if trust_wallet is None or trust_wallet.business_id != business.business_id:
        raise HTTPException(status_code=404, detail=f"TrustWallet {trust_wallet_id} not found")

    try:
        application = submit_application(
            db,
            trust_wallet_id,
            CustomerDetails(**body.customer.model_dump()),
            statement_csv=body.statement_csv,
            statement_file_id=body.statement_file_id,
        )
    except StatementParseError as e:
        db.rollback()
        logging.warning(f"Rejected statement: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=400, detail=str(e))
    except EntityNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except BusinessRuleViolation as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        db.rollback()
        logging.error(f"Cannot store application: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Service not configured to store credentials")

    return to_application_response(application)
