"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from trustrail.infrastructure.clients.notifier import BusinessNotifier
from trustrail.infrastructure.clients.payment_provider import PaymentProvider, PaymentProviderClient
from trustrail.infrastructure.database.models import Business
from trustrail.infrastructure.database.repositories import BusinessRepository
from trustrail.infrastructure.database.session import get_db


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_payment_provider() -> PaymentProvider:
    """Provide payment provider client instance"""
    return PaymentProviderClient()


def get_notifier() -> BusinessNotifier:
    """Provide business webhook notifier instance"""
    return BusinessNotifier()


def get_current_business(
    x_business_id: str = Header(..., alias="X-Business-Id"),
    db: Session = Depends(get_db),
) -> Business:
    """Resolve the calling business; authentication happens upstream"""
    business = BusinessRepository(db).get(x_business_id)
    if business is None:
        raise HTTPException(status_code=401, detail="Unknown business")
    return business
