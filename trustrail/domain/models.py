"""Domain models - pure Python dataclasses representing business entities"""

import enum
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional

from trustrail.domain.exceptions import WorkflowConfigurationError


class Decision(str, enum.Enum):
    APPROVED = "APPROVED"
    FLAGGED_FOR_REVIEW = "FLAGGED_FOR_REVIEW"
    DECLINED = "DECLINED"


class ApplicationStatus(str, enum.Enum):
    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    ANALYZING = "ANALYZING"
    APPROVED = "APPROVED"
    FLAGGED_FOR_REVIEW = "FLAGGED_FOR_REVIEW"
    DECLINED = "DECLINED"
    MANDATE_CREATED = "MANDATE_CREATED"
    MANDATE_ACTIVE = "MANDATE_ACTIVE"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"


class PaymentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"


class ActorType(str, enum.Enum):
    SYSTEM = "system"
    BUSINESS = "business"
    ADMIN = "admin"


FREQUENCIES = ("weekly", "monthly")


@dataclass
class Transaction:
    """One row of a parsed bank statement"""

    date: date
    description: str
    debit: float
    credit: float
    balance: float


@dataclass
class ApprovalWorkflow:
    """Score thresholds a TrustWallet applies to every decision"""

    auto_approve_threshold: float
    auto_decline_threshold: float
    min_trust_score: float

    def validate(self) -> None:
        for name in ("auto_approve_threshold", "auto_decline_threshold", "min_trust_score"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise WorkflowConfigurationError(f"{name} must be between 0 and 100")
        if self.auto_approve_threshold <= self.auto_decline_threshold:
            raise WorkflowConfigurationError(
                "Auto-approve threshold must be greater than auto-decline threshold"
            )
        if self.min_trust_score > self.auto_approve_threshold:
            raise WorkflowConfigurationError(
                "Minimum trust score must be less than or equal to auto-approve threshold"
            )


@dataclass
class InstallmentPlan:
    """Financial terms a TrustWallet offers"""

    total_amount: float
    down_payment_percentage: float
    installment_count: int
    frequency: str  # "weekly" or "monthly"
    interest_rate: float = 0.0

    def validate(self) -> None:
        if self.total_amount <= 0:
            raise WorkflowConfigurationError("Total amount must be positive")
        if not 0 <= self.down_payment_percentage <= 100:
            raise WorkflowConfigurationError("Down payment percentage must be between 0 and 100")
        if self.installment_count < 1:
            raise WorkflowConfigurationError("Installment count must be at least 1")
        if self.frequency not in FREQUENCIES:
            raise WorkflowConfigurationError(f"Unsupported frequency: {self.frequency}")
        if self.interest_rate < 0:
            raise WorkflowConfigurationError("Interest rate cannot be negative")


@dataclass
class InstallmentTerms:
    """Amounts derived from a plan when a customer applies"""

    total_amount: float
    down_payment_required: float
    installment_amount: float
    installment_count: int
    frequency: str


@dataclass
class Installment:
    """Single payment in a repayment plan"""

    payment_number: int
    due_date: date
    amount: float


@dataclass
class IncomeSource:
    description: str
    frequency: str
    avg_amount: float


@dataclass
class IncomeAnalysis:
    total_income: float
    avg_monthly_income: float
    income_consistency: float  # 0-1
    income_sources: List[IncomeSource] = field(default_factory=list)


@dataclass
class SpendingCategories:
    bills: float = 0.0
    loans: float = 0.0
    gambling: float = 0.0
    transfers: float = 0.0
    other: float = 0.0


@dataclass
class SpendingAnalysis:
    total_spending: float
    avg_monthly_spending: float
    spending_categories: SpendingCategories


@dataclass
class BalanceAnalysis:
    avg_balance: float
    min_balance: float
    max_balance: float
    closing_balance: float


@dataclass
class BehaviorAnalysis:
    transaction_count: int
    avg_daily_transactions: float
    bounce_count: int
    overdraft_usage: bool


@dataclass
class DebtProfile:
    existing_loan_repayments: float
    debt_to_income_ratio: float


@dataclass
class AffordabilityAssessment:
    can_afford_installment: bool
    monthly_installment_amount: float
    disposable_income: float
    affordability_ratio: float
    cushion: float


@dataclass
class RiskFlag:
    flag: str
    severity: str  # LOW | MEDIUM | HIGH
    description: str


@dataclass
class TrustScoreBreakdown:
    income_stability: float
    spending_behavior: float
    balance_health: float
    transaction_behavior: float
    affordability: float
    total: int


@dataclass
class RuleCompliance:
    passed_min_trust_score: bool
    overall_pass: bool


@dataclass
class PeriodCovered:
    start_date: Optional[date]
    end_date: Optional[date]
    months_analyzed: int


@dataclass
class TrustEngineResult:
    """Output of statement analysis, persisted once per application"""

    decision: Decision
    trust_score: int
    period_covered: PeriodCovered
    income_analysis: IncomeAnalysis
    spending_analysis: SpendingAnalysis
    balance_analysis: BalanceAnalysis
    behavior_analysis: BehaviorAnalysis
    debt_profile: DebtProfile
    affordability_assessment: AffordabilityAssessment
    risk_flags: List[RiskFlag]
    rule_compliance: RuleCompliance
    trust_score_breakdown: Optional[TrustScoreBreakdown] = None
    is_valid_statement: bool = True
    invalid_statement_reason: Optional[str] = None

    def statement_analysis(self) -> Dict[str, Any]:
        """JSON-safe view of the sub-analyses for storage"""
        data = asdict(self)
        period = data["period_covered"]
        for key in ("start_date", "end_date"):
            if period[key] is not None:
                period[key] = period[key].isoformat()
        for key in ("decision", "trust_score", "is_valid_statement", "invalid_statement_reason"):
            data.pop(key)
        return data
