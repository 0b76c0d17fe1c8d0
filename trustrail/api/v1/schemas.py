"""Pydantic schemas for API request/response validation"""

import math
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class PlanSchema(BaseModel):
    total_amount: float = Field(..., gt=0)
    down_payment_percentage: float = Field(..., ge=0, le=100)
    installment_count: int = Field(..., ge=1)
    frequency: Literal["weekly", "monthly"]
    interest_rate: float = Field(0.0, ge=0)


class WorkflowSchema(BaseModel):
    auto_approve_threshold: float = Field(..., ge=0, le=100)
    auto_decline_threshold: float = Field(..., ge=0, le=100)
    min_trust_score: float = Field(..., ge=0, le=100)


class TrustWalletCreateRequest(BaseModel):
    """Request body for POST /v1/trust-wallets"""

    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    plan: PlanSchema
    approval_workflow: WorkflowSchema


class TrustWalletResponse(BaseModel):
    trust_wallet_id: str
    business_id: str
    name: str
    description: Optional[str] = None
    total_amount: float
    down_payment_percentage: float
    installment_count: int
    frequency: str
    auto_approve_threshold: float
    auto_decline_threshold: float
    min_trust_score: float
    is_active: bool
    application_count: Optional[int] = None


class PlanUpdateSchema(BaseModel):
    total_amount: Optional[float] = Field(None, gt=0)
    down_payment_percentage: Optional[float] = Field(None, ge=0, le=100)
    installment_count: Optional[int] = Field(None, ge=1)
    frequency: Optional[Literal["weekly", "monthly"]] = None
    interest_rate: Optional[float] = Field(None, ge=0)


class WorkflowUpdateSchema(BaseModel):
    auto_approve_threshold: Optional[float] = Field(None, ge=0, le=100)
    auto_decline_threshold: Optional[float] = Field(None, ge=0, le=100)
    min_trust_score: Optional[float] = Field(None, ge=0, le=100)


class TrustWalletUpdateRequest(BaseModel):
    """Request body for PUT /v1/trust-wallets/{id}; omitted fields keep their value"""

    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    plan: Optional[PlanUpdateSchema] = None
    approval_workflow: Optional[WorkflowUpdateSchema] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int

    @classmethod
    def of(cls, page: int, limit: int, total_count: int) -> "Pagination":
        return cls(page=page, limit=limit, total_count=total_count, total_pages=math.ceil(total_count / limit))


class TrustWalletListResponse(BaseModel):
    trust_wallets: List[TrustWalletResponse]
    pagination: Pagination


class CustomerSchema(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone_number: str = Field(..., min_length=7)
    account_number: str = Field(..., pattern=r"^\d{10}$")
    bank_code: str = Field(..., min_length=3)
    bvn: str = Field(..., pattern=r"^\d{11}$")


class ApplicationCreateRequest(BaseModel):
    """Request body for POST /v1/trust-wallets/{id}/applications"""

    customer: CustomerSchema
    statement_csv: Optional[str] = Field(None, description="Raw CSV export of the bank statement")
    statement_file_id: Optional[str] = Field(None, description="Handle of a statement already uploaded for analysis")

    @model_validator(mode="after")
    def statement_present(self) -> "ApplicationCreateRequest":
        if not self.statement_csv and not self.statement_file_id:
            raise ValueError("statement_csv or statement_file_id is required")
        return self


class ManualDecisionRequest(BaseModel):
    reason: Optional[str] = None


class ApplicationResponse(BaseModel):
    """Application view; never includes account number or BVN"""

    application_id: str
    trust_wallet_id: str
    business_id: str
    customer_name: str
    status: str
    trust_engine_output_id: Optional[str] = None
    total_amount: float
    down_payment_required: float
    installment_amount: float
    installment_count: int
    frequency: str
    payments_completed: int
    total_paid: float
    outstanding_balance: float
    down_payment_received: bool
    mandate_ref: Optional[str] = None
    virtual_account_number: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TrustEngineOutputSchema(BaseModel):
    output_id: str
    decision: str
    trust_score: int
    is_valid_statement: bool
    invalid_statement_reason: Optional[str] = None
    analysis_source: str
    statement_analysis: Dict[str, Any]


class PaymentSchema(BaseModel):
    transaction_id: str
    application_id: Optional[str] = None
    payment_number: int
    amount: float
    status: str
    scheduled_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    failure_reason: Optional[str] = None


class ApplicationDetailResponse(ApplicationResponse):
    """Response for GET /v1/applications/{id}"""

    trust_engine_output: Optional[TrustEngineOutputSchema] = None
    payments: List[PaymentSchema] = Field(default_factory=list)


class ApplicationListResponse(BaseModel):
    applications: List[ApplicationResponse]
    pagination: Pagination


class PaymentListResponse(BaseModel):
    payments: List[PaymentSchema]
    pagination: Pagination


class WebhookAck(BaseModel):
    success: bool
    message: str
