"""External document-understanding analyzer for uploaded bank statements"""

import json
import logging
from datetime import date
from typing import Any, Dict, List, Literal, Optional, Tuple

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from trustrail.config import settings
from trustrail.domain.exceptions import StatementAnalyzerError
from trustrail.domain.models import (
    AffordabilityAssessment,
    ApprovalWorkflow,
    BalanceAnalysis,
    BehaviorAnalysis,
    DebtProfile,
    Decision,
    IncomeAnalysis,
    IncomeSource,
    PeriodCovered,
    RiskFlag,
    RuleCompliance,
    SpendingAnalysis,
    SpendingCategories,
    TrustEngineResult,
    TrustScoreBreakdown,
)

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IncomeSourceSchema(_CamelModel):
    description: str = ""
    frequency: str = ""
    avg_amount: float = 0.0


class IncomeAnalysisSchema(_CamelModel):
    total_income: float
    avg_monthly_income: float
    income_consistency: float = Field(ge=0, le=1)
    income_sources: List[IncomeSourceSchema] = Field(default_factory=list)


class SpendingCategoriesSchema(_CamelModel):
    bills: float = 0.0
    loans: float = 0.0
    gambling: float = 0.0
    transfers: float = 0.0
    other: float = 0.0


class SpendingAnalysisSchema(_CamelModel):
    total_spending: float
    avg_monthly_spending: float
    spending_categories: SpendingCategoriesSchema = Field(default_factory=SpendingCategoriesSchema)


class BalanceAnalysisSchema(_CamelModel):
    avg_balance: float
    min_balance: float
    max_balance: float
    closing_balance: float


class BehaviorAnalysisSchema(_CamelModel):
    transaction_count: int
    avg_daily_transactions: float
    bounce_count: int
    overdraft_usage: bool


class DebtProfileSchema(_CamelModel):
    existing_loan_repayments: float
    debt_to_income_ratio: float


class AffordabilitySchema(_CamelModel):
    can_afford_installment: bool
    monthly_installment_amount: float
    disposable_income: float
    affordability_ratio: float
    cushion: float


class RiskFlagSchema(_CamelModel):
    flag: str
    severity: Literal["LOW", "MEDIUM", "HIGH"]
    description: str = ""


class BreakdownSchema(_CamelModel):
    income_stability: float
    spending_behavior: float
    balance_health: float
    transaction_behavior: float
    affordability: float
    total: int


class PeriodSchema(_CamelModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    months_analyzed: int = 1


class RuleComplianceSchema(_CamelModel):
    passed_min_trust_score: bool
    overall_pass: bool


class AnalysisResultSchema(_CamelModel):
    """Shape the model is prompted to return; anything else is rejected"""

    is_valid_statement: bool = True
    invalid_statement_reason: Optional[str] = None
    decision: Decision = Decision.DECLINED
    trust_score: int = Field(default=0, ge=0, le=100)
    trust_score_breakdown: Optional[BreakdownSchema] = None
    period_covered: PeriodSchema = Field(default_factory=PeriodSchema)
    income_analysis: Optional[IncomeAnalysisSchema] = None
    spending_analysis: Optional[SpendingAnalysisSchema] = None
    balance_analysis: Optional[BalanceAnalysisSchema] = None
    behavior_analysis: Optional[BehaviorAnalysisSchema] = None
    debt_profile: Optional[DebtProfileSchema] = None
    affordability_assessment: Optional[AffordabilitySchema] = None
    risk_flags: List[RiskFlagSchema] = Field(default_factory=list)
    rule_compliance: Optional[RuleComplianceSchema] = None

    @model_validator(mode="after")
    def analyses_present_for_valid_statement(self) -> "AnalysisResultSchema":
        if not self.is_valid_statement:
            return self
        missing = [
            name
            for name in (
                "income_analysis",
                "spending_analysis",
                "balance_analysis",
                "behavior_analysis",
                "debt_profile",
                "affordability_assessment",
                "rule_compliance",
            )
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(f"missing analyses: {', '.join(missing)}")
        return self

    def to_result(self) -> TrustEngineResult:
        """Map onto the domain result; only valid for genuine statements"""
        income = self.income_analysis
        spending = self.spending_analysis
        breakdown = self.trust_score_breakdown
        return TrustEngineResult(
            decision=self.decision,
            trust_score=self.trust_score,
            period_covered=PeriodCovered(**self.period_covered.model_dump()),
            income_analysis=IncomeAnalysis(
                total_income=income.total_income,
                avg_monthly_income=income.avg_monthly_income,
                income_consistency=income.income_consistency,
                income_sources=[IncomeSource(**s.model_dump()) for s in income.income_sources],
            ),
            spending_analysis=SpendingAnalysis(
                total_spending=spending.total_spending,
                avg_monthly_spending=spending.avg_monthly_spending,
                spending_categories=SpendingCategories(**spending.spending_categories.model_dump()),
            ),
            balance_analysis=BalanceAnalysis(**self.balance_analysis.model_dump()),
            behavior_analysis=BehaviorAnalysis(**self.behavior_analysis.model_dump()),
            debt_profile=DebtProfile(**self.debt_profile.model_dump()),
            affordability_assessment=AffordabilityAssessment(**self.affordability_assessment.model_dump()),
            risk_flags=[RiskFlag(**f.model_dump()) for f in self.risk_flags],
            rule_compliance=RuleCompliance(**self.rule_compliance.model_dump()),
            trust_score_breakdown=TrustScoreBreakdown(**breakdown.model_dump()) if breakdown else None,
        )


def build_prompt(base_prompt: str, installment_amount: float, workflow: ApprovalWorkflow) -> str:
    return (
        f"{base_prompt}\n\n"
        f"Installment Amount: ₦{installment_amount}\n"
        f"Auto-Approve Threshold: {workflow.auto_approve_threshold}\n"
        f"Auto-Decline Threshold: {workflow.auto_decline_threshold}\n"
        f"Min Trust Score: {workflow.min_trust_score}"
    )


class OpenAIStatementAnalyzer:
    """Sends a stored statement file to a chat model and validates the JSON it returns"""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        prompt: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.model = model or settings.openai_model
        self.prompt = prompt if prompt is not None else settings.openai_prompt
        self.timeout = timeout or settings.analysis_timeout_seconds

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise StatementAnalyzerError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def analyze(
        self,
        file_id: str,
        installment_amount: float,
        workflow: ApprovalWorkflow,
    ) -> Tuple[AnalysisResultSchema, Dict[str, Any]]:
        """
        Analyze one uploaded statement.

        Returns:
            The validated analysis and a debugging record of the raw response

        Raises:
            StatementAnalyzerError: API failure, empty reply, invalid JSON or schema mismatch
        """
        if not self.prompt:
            raise StatementAnalyzerError("OPENAI_PROMPT is not configured")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "developer",
                        "content": [{"type": "text", "text": build_prompt(self.prompt, installment_amount, workflow)}],
                    },
                    {"role": "user", "content": [{"type": "file", "file": {"file_id": file_id}}]},
                ],
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
        except OpenAIError as e:
            raise StatementAnalyzerError(f"Statement analysis request failed: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise StatementAnalyzerError("Empty response from statement analyzer")
        content = response.choices[0].message.content

        try:
            analysis = AnalysisResultSchema.model_validate(json.loads(content))
        except json.JSONDecodeError as e:
            raise StatementAnalyzerError("Statement analyzer returned invalid JSON") from e
        except ValidationError as e:
            raise StatementAnalyzerError(f"Statement analyzer output failed validation: {e}") from e

        raw = {
            "model": response.model,
            "finish_reason": response.choices[0].finish_reason,
            "raw_response": content,
        }
        logger.info("Statement analysis completed", extra={"file_id": file_id, "model": response.model})
        return analysis, raw
