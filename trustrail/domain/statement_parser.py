"""Bank statement CSV parsing with running-balance reconstruction"""

import io
import re
from typing import Dict, List, Optional, Sequence

import pandas as pd

from trustrail.domain.exceptions import StatementParseError
from trustrail.domain.models import Transaction
from trustrail.utils.date_utils import parse_statement_date

# Header synonyms per field, first match wins
COLUMN_SYNONYMS: Dict[str, Sequence[str]] = {
    "date": ("date", "trans date", "transaction date", "value date", "posting date"),
    "description": ("description", "narration", "remarks", "details", "transaction details"),
    "debit": ("debit", "debit amount", "withdrawal", "dr"),
    "credit": ("credit", "credit amount", "deposit", "cr"),
    "balance": ("balance", "running balance", "available balance", "bal"),
}

_AMOUNT_NOISE = re.compile(r"[₦$£€,\s]")


def validate_csv_content(content: bytes | str) -> None:
    """Reject exports that cannot possibly hold a header plus one data row"""
    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
    if not text or not text.strip():
        raise StatementParseError("CSV content is empty")
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        raise StatementParseError("CSV must contain at least a header row and one data row")


def find_column(columns: Sequence[str], synonyms: Sequence[str]) -> Optional[str]:
    """Case-insensitive header lookup"""
    for name in synonyms:
        for column in columns:
            if str(column).strip().lower() == name:
                return column
    return None


def parse_amount(value: Optional[str]) -> float:
    """
    Parse a money cell, stripping currency symbols, separators and whitespace.

    Unparsable cells count as zero rather than failing the statement.
    """
    if value is None:
        return 0.0
    cleaned = _AMOUNT_NOISE.sub("", str(value))
    if not cleaned:
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def fill_missing_balances(transactions: List[Transaction]) -> None:
    """
    Give every row a running balance.

    With no balance data at all, balances accumulate from zero. Otherwise the first
    non-zero balance is the anchor: earlier rows are rebuilt backward by undoing each
    later row's net movement, later zero rows are rebuilt forward from their predecessor.
    """
    anchor = next((i for i, tx in enumerate(transactions) if tx.balance != 0), None)

    if anchor is None:
        balance = 0.0
        for tx in transactions:
            balance = balance + tx.credit - tx.debit
            tx.balance = round(balance, 2)
        return

    for i in range(anchor - 1, -1, -1):
        following = transactions[i + 1]
        transactions[i].balance = round(following.balance - following.credit + following.debit, 2)

    for i in range(anchor + 1, len(transactions)):
        tx = transactions[i]
        if tx.balance == 0:
            previous = transactions[i - 1]
            tx.balance = round(previous.balance + tx.credit - tx.debit, 2)


def parse_bank_statement_csv(content: bytes | str) -> List[Transaction]:
    """
    Parse a bank statement export into a date-ordered ledger.

    Raises:
        StatementParseError: empty export, missing date/description columns,
            or no date cell in a recognised layout
    """
    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise StatementParseError(f"CSV parsing error: {e}") from e

    if frame.empty:
        raise StatementParseError("No rows found in CSV")

    columns = list(frame.columns)
    mapping = {name: find_column(columns, synonyms) for name, synonyms in COLUMN_SYNONYMS.items()}
    if mapping["date"] is None or mapping["description"] is None:
        raise StatementParseError("CSV has no recognizable date and description columns")

    transactions: List[Transaction] = []
    for row in frame.to_dict(orient="records"):
        parsed_date = parse_statement_date(row[mapping["date"]])
        if parsed_date is None:
            continue
        transactions.append(
            Transaction(
                date=parsed_date,
                description=str(row[mapping["description"]]).strip(),
                debit=parse_amount(row[mapping["debit"]]) if mapping["debit"] else 0.0,
                credit=parse_amount(row[mapping["credit"]]) if mapping["credit"] else 0.0,
                balance=parse_amount(row[mapping["balance"]]) if mapping["balance"] else 0.0,
            )
        )

    if not transactions:
        raise StatementParseError("No valid transactions found in CSV (unrecognized date format)")

    transactions.sort(key=lambda t: t.date)
    fill_missing_balances(transactions)
    return transactions
