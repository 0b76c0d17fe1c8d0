"""Installment payment history for a business"""

from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from trustrail.domain.models import PaymentStatus
from trustrail.infrastructure.database.models import Business, PaymentTransaction
from trustrail.infrastructure.database.repositories import PaymentRepository


def list_payments(
    db: Session,
    business: Business,
    trust_wallet_id: Optional[str] = None,
    application_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[PaymentTransaction], int]:
    """Latest scheduled payments first, optionally narrowed to one TrustWallet or application"""
    return PaymentRepository(db).list_for_business(
        business.business_id,
        trust_wallet_id=trust_wallet_id,
        application_id=application_id,
        status=status,
        page=page,
        limit=limit,
    )
