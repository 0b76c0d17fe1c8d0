"""Application listing and detail, and the manual review endpoints"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from trustrail.api.dependencies import get_current_business, get_notifier, get_payment_provider, get_request_id
from trustrail.api.v1.schemas import (
    ApplicationDetailResponse,
    ApplicationListResponse,
    ApplicationResponse,
    ManualDecisionRequest,
    Pagination,
    PaymentSchema,
    TrustEngineOutputSchema,
)
from trustrail.domain.exceptions import BusinessRuleViolation, EntityNotFoundError
from trustrail.domain.models import ApplicationStatus
from trustrail.infrastructure.clients.notifier import BusinessNotifier
from trustrail.infrastructure.clients.payment_provider import PaymentProvider
from trustrail.infrastructure.database.models import Application, Business, PaymentTransaction
from trustrail.infrastructure.database.repositories import PaymentRepository, TrustEngineOutputRepository
from trustrail.infrastructure.database.session import get_db
from trustrail.services.applications import get_application, list_applications, manually_approve, manually_decline
from trustrail.services.mandates import MandateService

router = APIRouter()


def to_application_response(application: Application) -> ApplicationResponse:
    return ApplicationResponse(
        application_id=application.application_id,
        trust_wallet_id=application.trust_wallet_id,
        business_id=application.business_id,
        customer_name=application.customer_name,
        status=application.status,
        trust_engine_output_id=application.trust_engine_output_id,
        total_amount=application.total_amount,
        down_payment_required=application.down_payment_required,
        installment_amount=application.installment_amount,
        installment_count=application.installment_count,
        frequency=application.frequency,
        payments_completed=application.payments_completed,
        total_paid=application.total_paid,
        outstanding_balance=application.outstanding_balance,
        down_payment_received=application.down_payment_received,
        mandate_ref=application.mandate_ref,
        virtual_account_number=application.virtual_account_number,
        submitted_at=application.submitted_at,
        approved_at=application.approved_at,
        completed_at=application.completed_at,
    )


def to_payment_schema(payment: PaymentTransaction) -> PaymentSchema:
    return PaymentSchema(
        transaction_id=payment.transaction_id,
        application_id=payment.application_id,
        payment_number=payment.payment_number,
        amount=payment.amount,
        status=payment.status,
        scheduled_date=payment.scheduled_date,
        paid_date=payment.paid_date,
        failure_reason=payment.failure_reason,
    )


@router.get("/applications", response_model=ApplicationListResponse)
def list_applications_endpoint(
    trust_wallet_id: Optional[str] = None,
    status: Optional[ApplicationStatus] = None,
    search: Optional[str] = Query(None, description="Matches customer name, email or phone"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    applications, total = list_applications(
        db, business, trust_wallet_id=trust_wallet_id, status=status, search=search, page=page, limit=limit
    )
    return ApplicationListResponse(
        applications=[to_application_response(a) for a in applications],
        pagination=Pagination.of(page, limit, total),
    )


@router.get("/applications/{application_id}", response_model=ApplicationDetailResponse)
def get_application_endpoint(
    application_id: str,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """Application with its scoring result and payment schedule"""
    try:
        application = get_application(db, application_id, business)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    output = TrustEngineOutputRepository(db).get_by_application(application_id)
    payments = PaymentRepository(db).list_for_application(application_id)

    return ApplicationDetailResponse(
        **to_application_response(application).model_dump(),
        trust_engine_output=(
            TrustEngineOutputSchema(
                output_id=output.output_id,
                decision=output.decision,
                trust_score=output.trust_score,
                is_valid_statement=output.is_valid_statement,
                invalid_statement_reason=output.invalid_statement_reason,
                analysis_source=output.analysis_source,
                statement_analysis=output.statement_analysis,
            )
            if output
            else None
        ),
        payments=[to_payment_schema(p) for p in payments],
    )


@router.post("/applications/{application_id}/approve", response_model=ApplicationResponse)
async def approve_application_endpoint(
    application_id: str,
    request: Request,
    body: Optional[ManualDecisionRequest] = None,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: BusinessNotifier = Depends(get_notifier),
):
    """Approve a FLAGGED_FOR_REVIEW application and start mandate setup"""
    request_id = get_request_id(request)
    try:
        application = await manually_approve(
            db, application_id, business, MandateService(db, provider, notifier), reason=body.reason if body else None
        )
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BusinessRuleViolation as e:
        db.rollback()
        logging.warning(f"Manual approval refused: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail=str(e))
    return to_application_response(application)


@router.post("/applications/{application_id}/decline", response_model=ApplicationResponse)
async def decline_application_endpoint(
    application_id: str,
    request: Request,
    body: Optional[ManualDecisionRequest] = None,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    notifier: BusinessNotifier = Depends(get_notifier),
):
    """Decline a FLAGGED_FOR_REVIEW application"""
    request_id = get_request_id(request)
    try:
        application = await manually_decline(db, application_id, business, notifier, reason=body.reason if body else None)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BusinessRuleViolation as e:
        db.rollback()
        logging.warning(f"Manual decline refused: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail=str(e))
    return to_application_response(application)
