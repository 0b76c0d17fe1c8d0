"""SQLAlchemy ORM models for businesses, TrustWallets, applications and payments"""

import uuid
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Float,
    DateTime,
    Integer,
    BigInteger,
    ForeignKey,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from trustrail.utils.date_utils import utcnow

Base = declarative_base()


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


class Business(Base):
    """Merchant offering installment plans"""

    __tablename__ = "business"

    business_id = Column(String(40), primary_key=True, default=lambda: generate_id("BIZ"))
    business_name = Column(Text, nullable=False)
    email = Column(Text, nullable=False, unique=True)
    biller_code = Column(Text, nullable=True, index=True)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    trust_wallets = relationship("TrustWallet", back_populates="business")


class TrustWallet(Base):
    """Installment plan configuration with its approval workflow"""

    __tablename__ = "trust_wallet"
    __table_args__ = (UniqueConstraint("business_id", "name", name="uq_trust_wallet_business_name"),)

    trust_wallet_id = Column(String(40), primary_key=True, default=lambda: generate_id("TW"))
    business_id = Column(String(40), ForeignKey("business.business_id"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    total_amount = Column(Float, nullable=False)
    down_payment_percentage = Column(Float, nullable=False)
    installment_count = Column(Integer, nullable=False)
    frequency = Column(String(10), nullable=False)
    interest_rate = Column(Float, nullable=False, default=0.0)
    auto_approve_threshold = Column(Float, nullable=False)
    auto_decline_threshold = Column(Float, nullable=False)
    min_trust_score = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    business = relationship("Business", back_populates="trust_wallets")


class Application(Base):
    """One customer's installment agreement; status is the lifecycle state machine"""

    __tablename__ = "application"

    application_id = Column(String(40), primary_key=True, default=lambda: generate_id("APP"))
    trust_wallet_id = Column(String(40), ForeignKey("trust_wallet.trust_wallet_id"), nullable=False, index=True)
    business_id = Column(String(40), ForeignKey("business.business_id"), nullable=False, index=True)

    # Customer details; account number and BVN are Fernet tokens
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False, index=True)
    bank_code = Column(Text, nullable=False)
    account_number_encrypted = Column(Text, nullable=False)
    bvn_encrypted = Column(Text, nullable=False)

    # Statement sources
    statement_csv = Column(Text, nullable=True)
    statement_file_id = Column(Text, nullable=True, index=True)
    analysis_response = Column(JSON, nullable=True)

    status = Column(String(24), nullable=False, index=True)
    trust_engine_output_id = Column(String(40), nullable=True, index=True)

    # Financial terms and running totals
    total_amount = Column(Float, nullable=False)
    down_payment_required = Column(Float, nullable=False)
    installment_amount = Column(Float, nullable=False, index=True)
    installment_count = Column(Integer, nullable=False)
    frequency = Column(String(10), nullable=False)
    payments_completed = Column(Integer, nullable=False, default=0)
    total_paid = Column(Float, nullable=False, default=0.0)
    outstanding_balance = Column(Float, nullable=False)
    down_payment_received = Column(Boolean, nullable=False, default=False)
    down_payment_amount = Column(Float, nullable=True)

    # Provider references
    mandate_ref = Column(Text, nullable=True, unique=True)
    mandate_id = Column(BigInteger, nullable=True)
    virtual_account_number = Column(Text, nullable=True, unique=True)

    submitted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    analysis_started_at = Column(DateTime(timezone=True), nullable=True)
    analyzed_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    mandate_created_at = Column(DateTime(timezone=True), nullable=True)
    mandate_activated_at = Column(DateTime(timezone=True), nullable=True)
    invoice_requested_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    down_payment_received_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    payments = relationship(
        "PaymentTransaction", back_populates="application", order_by="PaymentTransaction.payment_number"
    )

    @property
    def customer_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class TrustEngineOutput(Base):
    """Immutable scoring result, one per application"""

    __tablename__ = "trust_engine_output"

    output_id = Column(String(40), primary_key=True, default=lambda: generate_id("TEO"))
    application_id = Column(
        String(40), ForeignKey("application.application_id"), nullable=False, unique=True
    )
    trust_wallet_id = Column(String(40), nullable=False, index=True)
    business_id = Column(String(40), nullable=False, index=True)
    decision = Column(String(24), nullable=False)
    trust_score = Column(Integer, nullable=False)
    is_valid_statement = Column(Boolean, nullable=False, default=True)
    invalid_statement_reason = Column(Text, nullable=True)
    analysis_source = Column(String(16), nullable=False)  # local | external
    statement_analysis = Column(JSON, nullable=False)
    analyzed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PaymentTransaction(Base):
    """One scheduled or executed installment debit"""

    __tablename__ = "payment_transaction"
    __table_args__ = (UniqueConstraint("application_id", "payment_number", name="uq_payment_number"),)

    transaction_id = Column(String(40), primary_key=True, default=lambda: generate_id("TXN"))
    application_id = Column(String(40), ForeignKey("application.application_id"), nullable=False, index=True)
    trust_wallet_id = Column(String(40), nullable=False)
    business_id = Column(String(40), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    status = Column(String(12), nullable=False, default="SCHEDULED", index=True)
    payment_number = Column(Integer, nullable=False)
    total_payments = Column(Integer, nullable=False)
    scheduled_date = Column(DateTime(timezone=True), nullable=False, index=True)
    paid_date = Column(DateTime(timezone=True), nullable=True)
    provider_transaction_ref = Column(Text, nullable=False, unique=True)
    provider_payment_id = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    application = relationship("Application", back_populates="payments")


class ProviderWebhookLog(Base):
    """Every inbound provider notification, kept for audit and replay"""

    __tablename__ = "provider_webhook_log"

    id = Column(String(40), primary_key=True, default=lambda: generate_id("PWL"))
    event_type = Column(String(20), nullable=False, index=True)
    request_type = Column(Text, nullable=True)
    request_ref = Column(Text, nullable=True, index=True)
    raw_payload = Column(JSON, nullable=False)
    biller_code = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    processed_successfully = Column(Boolean, nullable=False, default=False)
    outcome = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)


class BusinessWebhookLog(Base):
    """Outbound business notification with retry tracking"""

    __tablename__ = "business_webhook_log"

    id = Column(String(40), primary_key=True, default=lambda: generate_id("BWL"))
    business_id = Column(String(40), nullable=False, index=True)
    event = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    url = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    http_status = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    """Who changed what, with before/after values"""

    __tablename__ = "audit_log"

    id = Column(String(40), primary_key=True, default=lambda: generate_id("AUD"))
    action = Column(Text, nullable=False, index=True)
    actor_type = Column(String(10), nullable=False)
    actor_id = Column(Text, nullable=True)
    resource_type = Column(Text, nullable=False)
    resource_id = Column(Text, nullable=False, index=True)
    changes = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
