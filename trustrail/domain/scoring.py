"""Trust scoring engine - affordability analysis and credit decisions from a statement ledger"""

import math
from typing import List, Sequence

from trustrail.domain.exceptions import InsufficientDataError
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
    Transaction,
    TrustEngineResult,
    TrustScoreBreakdown,
)
from trustrail.utils.date_utils import months_between

CATEGORY_KEYWORDS = {
    "bills": (
        "PHCN", "EKEDC", "IKEDC", "DSTV", "GOTV", "STARTIMES", "AIRTEL", "MTN", "GLO",
        "9MOBILE", "ETISALAT", "WATER BILL", "ELECTRICITY", "CABLE TV",
    ),
    "loans": (
        "LOAN", "REPAYMENT", "INSTALLMENT", "CREDIT CORP", "CARBON", "BRANCH",
        "FAIRMONEY", "PALMCREDIT", "RENMONEY",
    ),
    "gambling": ("BET", "BETKING", "SPORTYBET", "NAIRABET", "1XBET", "BET9JA", "MSPORT", "MERRYBET"),
    "salary": ("SALARY", "SAL", "WAGES", "PAYROLL"),
    "freelance": ("TRANSFER", "REMITTANCE", "UPWORK", "FIVERR"),
    "business": ("POS", "PAYMENT FOR", "SALES"),
}

TRANSFER_KEYWORDS = ("TRANSFER", "FIP", "NIP")

BOUNCE_KEYWORDS = ("INSUFFICIENT FUNDS", "REVERSAL", "DECLINED", "FAILED", "REJECTED")

# Credits per active month assumed for a fully consistent earner
EXPECTED_MONTHLY_CREDITS = 5

# Installment must stay under this share of disposable income
MAX_AFFORDABILITY_RATIO = 0.5

GAMBLING_FLAG_THRESHOLD = 10_000
BOUNCE_FLAG_THRESHOLD = 3
DEBT_TO_INCOME_FLAG_THRESHOLD = 0.4


def _matches(description: str, keywords: Sequence[str]) -> bool:
    desc = description.upper()
    return any(keyword in desc for keyword in keywords)


def analyze_income(transactions: List[Transaction], months_analyzed: int) -> IncomeAnalysis:
    """
    Sum credits and detect income sources.

    Sources are tagged independently, so one credit can count as both salary and
    freelance income.
    """
    credits = [tx for tx in transactions if tx.credit > 0]
    total_income = sum(tx.credit for tx in credits)

    sources = []
    for label, frequency in (("salary", "monthly"), ("freelance", "irregular"), ("business", "irregular")):
        matched = [tx for tx in credits if _matches(tx.description, CATEGORY_KEYWORDS[label])]
        if matched:
            avg_amount = sum(tx.credit for tx in matched) / len(matched)
            sources.append(IncomeSource(description=label.upper(), frequency=frequency, avg_amount=avg_amount))

    months_with_income = min(len(credits) / EXPECTED_MONTHLY_CREDITS, months_analyzed)
    income_consistency = min(months_with_income / months_analyzed, 1.0)

    return IncomeAnalysis(
        total_income=total_income,
        avg_monthly_income=total_income / months_analyzed,
        income_consistency=income_consistency,
        income_sources=sources,
    )


def analyze_spending(transactions: List[Transaction], months_analyzed: int) -> SpendingAnalysis:
    """Sum debits and put each one in exactly one category"""
    debits = [tx for tx in transactions if tx.debit > 0]
    categories = SpendingCategories()

    for tx in debits:
        if _matches(tx.description, CATEGORY_KEYWORDS["bills"]):
            categories.bills += tx.debit
        elif _matches(tx.description, CATEGORY_KEYWORDS["loans"]):
            categories.loans += tx.debit
        elif _matches(tx.description, CATEGORY_KEYWORDS["gambling"]):
            categories.gambling += tx.debit
        elif _matches(tx.description, TRANSFER_KEYWORDS):
            categories.transfers += tx.debit
        else:
            categories.other += tx.debit

    total_spending = sum(tx.debit for tx in debits)
    return SpendingAnalysis(
        total_spending=total_spending,
        avg_monthly_spending=total_spending / months_analyzed,
        spending_categories=categories,
    )


def analyze_balance(transactions: List[Transaction]) -> BalanceAnalysis:
    balances = [tx.balance for tx in transactions]
    return BalanceAnalysis(
        avg_balance=sum(balances) / len(balances),
        min_balance=min(balances),
        max_balance=max(balances),
        closing_balance=balances[-1],
    )


def analyze_behavior(transactions: List[Transaction], months_analyzed: int) -> BehaviorAnalysis:
    count = len(transactions)
    return BehaviorAnalysis(
        transaction_count=count,
        avg_daily_transactions=count / max(months_analyzed * 30, 1),
        bounce_count=sum(1 for tx in transactions if _matches(tx.description, BOUNCE_KEYWORDS)),
        overdraft_usage=any(tx.balance < 0 for tx in transactions),
    )


def calculate_debt_profile(income: IncomeAnalysis, spending: SpendingAnalysis) -> DebtProfile:
    # Loan debits are treated as a monthly figure
    loans = spending.spending_categories.loans
    ratio = loans / income.avg_monthly_income if income.avg_monthly_income > 0 else 0.0
    return DebtProfile(existing_loan_repayments=loans, debt_to_income_ratio=ratio)


def assess_affordability(
    income: IncomeAnalysis,
    spending: SpendingAnalysis,
    debt: DebtProfile,
    installment_amount: float,
) -> AffordabilityAssessment:
    disposable = income.avg_monthly_income - (spending.avg_monthly_spending + debt.existing_loan_repayments)
    ratio = installment_amount / disposable if disposable > 0 else 1.0
    return AffordabilityAssessment(
        can_afford_installment=ratio < MAX_AFFORDABILITY_RATIO,
        monthly_installment_amount=installment_amount,
        disposable_income=disposable,
        affordability_ratio=ratio,
        cushion=disposable - installment_amount,
    )


def calculate_trust_score(
    income: IncomeAnalysis,
    spending: SpendingAnalysis,
    balance: BalanceAnalysis,
    behavior: BehaviorAnalysis,
    affordability: AffordabilityAssessment,
    installment_amount: float,
) -> TrustScoreBreakdown:
    """
    Weighted 0-100 trust score.

    Components:
    - Income stability (30): consistency x 15, plus 15/10/5 for installment under 20/30/40% of income
    - Spending behavior (25): up to 10 for low debt ratio, minus up to 10 for gambling,
      plus up to 15 for savings rate
    - Balance health (20): average and minimum balance against the installment
    - Transaction behavior (15): bounces, overdraft, activity level
    - Affordability (10): 10/7/4 for affordability ratio under 0.2/0.3/0.4
    """
    monthly_income = income.avg_monthly_income
    categories = spending.spending_categories

    income_score = income.income_consistency * 15
    installment_share = installment_amount / monthly_income if monthly_income > 0 else math.inf
    if installment_share < 0.2:
        income_score += 15
    elif installment_share < 0.3:
        income_score += 10
    elif installment_share < 0.4:
        income_score += 5

    if affordability.disposable_income > 0 and monthly_income > 0:
        debt_ratio = categories.loans / monthly_income
    else:
        debt_ratio = 1.0
    spending_score = max(0.0, 10 - debt_ratio * 20)
    if categories.gambling > 0:
        spending_score -= min(10.0, categories.gambling / 1000)
    if monthly_income > 0:
        savings_rate = (monthly_income - spending.avg_monthly_spending) / monthly_income
        spending_score += min(15.0, savings_rate * 20)

    balance_score = 0.0
    if balance.avg_balance > installment_amount * 2:
        balance_score += 10
    elif balance.avg_balance > installment_amount:
        balance_score += 5
    if balance.min_balance > installment_amount:
        balance_score += 10
    elif balance.min_balance > installment_amount * 0.5:
        balance_score += 5

    behavior_score = 0.0
    if behavior.bounce_count == 0:
        behavior_score += 5
    elif behavior.bounce_count <= 2:
        behavior_score += 2
    else:
        behavior_score -= 5
    behavior_score += -5 if behavior.overdraft_usage else 5
    if behavior.transaction_count > 30:
        behavior_score += 5
    elif behavior.transaction_count > 15:
        behavior_score += 2

    affordability_score = 0.0
    if affordability.affordability_ratio < 0.2:
        affordability_score = 10
    elif affordability.affordability_ratio < 0.3:
        affordability_score = 7
    elif affordability.affordability_ratio < 0.4:
        affordability_score = 4

    raw = income_score + spending_score + balance_score + behavior_score + affordability_score
    return TrustScoreBreakdown(
        income_stability=round(income_score, 2),
        spending_behavior=round(spending_score, 2),
        balance_health=balance_score,
        transaction_behavior=behavior_score,
        affordability=affordability_score,
        total=int(round(max(0.0, min(100.0, raw)))),
    )


def generate_risk_flags(
    behavior: BehaviorAnalysis,
    spending: SpendingAnalysis,
    debt: DebtProfile,
    affordability: AffordabilityAssessment,
) -> List[RiskFlag]:
    flags = []
    gambling = spending.spending_categories.gambling

    if gambling > GAMBLING_FLAG_THRESHOLD:
        flags.append(RiskFlag("HIGH_GAMBLING_ACTIVITY", "HIGH", f"Gambling spending: ₦{gambling:,.2f}"))
    if behavior.bounce_count > BOUNCE_FLAG_THRESHOLD:
        flags.append(RiskFlag("FREQUENT_BOUNCES", "HIGH", f"{behavior.bounce_count} bounces detected"))
    if behavior.overdraft_usage:
        flags.append(RiskFlag("OVERDRAFT_USAGE", "MEDIUM", "Account has gone into overdraft"))
    if debt.debt_to_income_ratio > DEBT_TO_INCOME_FLAG_THRESHOLD:
        flags.append(
            RiskFlag(
                "HIGH_DEBT_TO_INCOME",
                "HIGH",
                f"Debt-to-income ratio: {debt.debt_to_income_ratio * 100:.1f}%",
            )
        )
    if not affordability.can_afford_installment:
        flags.append(
            RiskFlag(
                "CANNOT_AFFORD_INSTALLMENT",
                "HIGH",
                f"Installment is {affordability.affordability_ratio * 100:.1f}% of disposable income (limit 50%)",
            )
        )

    return flags


def make_decision(trust_score: float, workflow: ApprovalWorkflow, can_afford: bool) -> Decision:
    """
    Map score to decision.

    Affordability failure and the hard floors win over the approve/decline band;
    scores strictly between the two thresholds go to manual review.
    """
    if not can_afford:
        return Decision.DECLINED
    if trust_score < workflow.min_trust_score:
        return Decision.DECLINED
    if trust_score < workflow.auto_decline_threshold:
        return Decision.DECLINED
    if trust_score >= workflow.auto_approve_threshold:
        return Decision.APPROVED
    return Decision.FLAGGED_FOR_REVIEW


def analyze_statement(
    transactions: List[Transaction],
    installment_amount: float,
    workflow: ApprovalWorkflow,
) -> TrustEngineResult:
    """Main entry point: score a parsed ledger against a TrustWallet's workflow"""
    if not transactions:
        raise InsufficientDataError("No transactions found in statement")

    start_date = transactions[0].date
    end_date = transactions[-1].date
    months_analyzed = max(months_between(start_date, end_date), 1)

    income = analyze_income(transactions, months_analyzed)
    spending = analyze_spending(transactions, months_analyzed)
    balance = analyze_balance(transactions)
    behavior = analyze_behavior(transactions, months_analyzed)
    debt = calculate_debt_profile(income, spending)
    affordability = assess_affordability(income, spending, debt, installment_amount)

    breakdown = calculate_trust_score(income, spending, balance, behavior, affordability, installment_amount)
    decision = make_decision(breakdown.total, workflow, affordability.can_afford_installment)

    return TrustEngineResult(
        decision=decision,
        trust_score=breakdown.total,
        period_covered=PeriodCovered(start_date, end_date, months_analyzed),
        income_analysis=income,
        spending_analysis=spending,
        balance_analysis=balance,
        behavior_analysis=behavior,
        debt_profile=debt,
        affordability_assessment=affordability,
        risk_flags=generate_risk_flags(behavior, spending, debt, affordability),
        rule_compliance=RuleCompliance(
            passed_min_trust_score=breakdown.total >= workflow.min_trust_score,
            overall_pass=decision == Decision.APPROVED,
        ),
        trust_score_breakdown=breakdown,
    )


def create_invalid_statement_result(reason: str, installment_amount: float) -> TrustEngineResult:
    """Zeroed, declined result used when the upload is not a bank statement"""
    return TrustEngineResult(
        decision=Decision.DECLINED,
        trust_score=0,
        period_covered=PeriodCovered(None, None, 0),
        income_analysis=IncomeAnalysis(0.0, 0.0, 0.0, []),
        spending_analysis=SpendingAnalysis(0.0, 0.0, SpendingCategories()),
        balance_analysis=BalanceAnalysis(0.0, 0.0, 0.0, 0.0),
        behavior_analysis=BehaviorAnalysis(0, 0.0, 0, False),
        debt_profile=DebtProfile(0.0, 0.0),
        affordability_assessment=AffordabilityAssessment(
            can_afford_installment=False,
            monthly_installment_amount=installment_amount,
            disposable_income=0.0,
            affordability_ratio=1.0,
            cushion=-installment_amount,
        ),
        risk_flags=[RiskFlag("INVALID_STATEMENT", "HIGH", reason)],
        rule_compliance=RuleCompliance(passed_min_trust_score=False, overall_pass=False),
        trust_score_breakdown=TrustScoreBreakdown(0, 0, 0, 0, 0, 0),
        is_valid_statement=False,
        invalid_statement_reason=reason,
    )
