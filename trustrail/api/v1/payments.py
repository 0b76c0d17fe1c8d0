"""GET /v1/payments"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from trustrail.api.dependencies import get_current_business
from trustrail.api.v1.applications import to_payment_schema
from trustrail.api.v1.schemas import Pagination, PaymentListResponse
from trustrail.domain.models import PaymentStatus
from trustrail.infrastructure.database.models import Business
from trustrail.infrastructure.database.session import get_db
from trustrail.services.payments import list_payments

router = APIRouter()


@router.get("/payments", response_model=PaymentListResponse)
def list_payments_endpoint(
    trust_wallet_id: Optional[str] = None,
    application_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    """Installment payments across the business's applications"""
    payments, total = list_payments(
        db,
        business,
        trust_wallet_id=trust_wallet_id,
        application_id=application_id,
        status=status,
        page=page,
        limit=limit,
    )
    return PaymentListResponse(
        payments=[to_payment_schema(p) for p in payments],
        pagination=Pagination.of(page, limit, total),
    )
