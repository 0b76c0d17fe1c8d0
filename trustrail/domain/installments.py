"""Installment terms and repayment schedules for TrustWallet plans"""

from datetime import date
from typing import List, Optional

from trustrail.domain.models import Installment, InstallmentPlan, InstallmentTerms
from trustrail.utils.date_utils import next_payment_date


def compute_installment_terms(plan: InstallmentPlan) -> InstallmentTerms:
    """
    Split a plan's total into a down payment and equal installments.

    Example:
        120,000 at 20% down over 10 payments -> 24,000 down, 10 x 9,600
    """
    plan.validate()
    down_payment = round(plan.total_amount * plan.down_payment_percentage / 100, 2)
    installment_amount = round((plan.total_amount - down_payment) / plan.installment_count, 2)

    return InstallmentTerms(
        total_amount=plan.total_amount,
        down_payment_required=down_payment,
        installment_amount=installment_amount,
        installment_count=plan.installment_count,
        frequency=plan.frequency,
    )


def generate_payment_schedule(
    installment_amount: float,
    installment_count: int,
    frequency: str,
    start_date: date,
    financed_amount: Optional[float] = None,
) -> List[Installment]:
    """
    Generate the recurring debit schedule, first payment due on start_date.

    Weekly payments are 7 days apart; monthly payments land on the same calendar
    day each month (clamped to month end). When financed_amount is given the last
    payment carries the rounding remainder so the schedule sums to it exactly.
    """
    if installment_count <= 0:
        return []

    schedule = [
        Installment(
            payment_number=number,
            due_date=next_payment_date(start_date, number, frequency),
            amount=installment_amount,
        )
        for number in range(1, installment_count + 1)
    ]
    if financed_amount is not None:
        schedule[-1].amount = round(financed_amount - installment_amount * (installment_count - 1), 2)
    return schedule
