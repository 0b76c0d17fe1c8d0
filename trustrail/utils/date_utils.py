"""Date manipulation utilities"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

# Layouts seen in Nigerian bank CSV exports, tried in order
STATEMENT_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d %b %Y",
    "%d-%b-%Y",
    "%Y/%m/%d",
)


def parse_statement_date(value: str) -> Optional[date]:
    """Match a statement cell against the known layouts; None if nothing fits"""
    if not value:
        return None
    text = value.strip()
    for fmt in STATEMENT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end (floor, like a month diff)"""
    delta = relativedelta(end, start)
    return delta.years * 12 + delta.months


def next_payment_date(start: date, payment_number: int, frequency: str) -> date:
    """Due date of the 1-indexed payment_number counted from start"""
    if frequency == "monthly":
        return start + relativedelta(months=payment_number - 1)
    return start + timedelta(weeks=payment_number - 1)


def format_provider_date(moment: datetime) -> str:
    """Provider expects YYYY-MM-DD-HH-mm-ss"""
    return moment.strftime("%Y-%m-%d-%H-%M-%S")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
