"""
Regex pattern helpers for receipts and bank statements.

These are a secondary signal only: the structured AI pass is authoritative.
The pipeline stores pattern candidates next to the AI output so a reviewer
can compare the two when a document is disputed.
"""

from __future__ import annotations

import logging
import re
from datetime import date

from finscan.schemas.documents import StatementLine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Receipt patterns
# ---------------------------------------------------------------------------

_RECEIPT_AMOUNT = re.compile(r"(?:total|subtotal|amount)[\s:$]*(\d+\.?\d*)", re.IGNORECASE)
_RECEIPT_DATE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}")
_RECEIPT_ITEM = re.compile(r"^.+\s+\$?\d+\.?\d*$", re.MULTILINE)


def extract_receipt_patterns(text: str) -> dict:
    """
    Pull obvious receipt fields out of raw (uncleaned) OCR text.

    Returns:
        amounts  : full "total 12.50"-style matches
        dates    : date-looking tokens
        merchant : first three lines joined (merchant names print at the top)
        items    : lines ending in a price
    """
    text = text or ""
    return {
        "amounts":  [m.group(0) for m in _RECEIPT_AMOUNT.finditer(text)],
        "dates":    _RECEIPT_DATE.findall(text),
        "merchant": " ".join(text.split("\n")[:3]).strip(),
        "items":    [m.group(0) for m in _RECEIPT_ITEM.finditer(text)],
    }


# ---------------------------------------------------------------------------
# Statement lines
# ---------------------------------------------------------------------------

_AMOUNT = r"(-?[$€£₹]?-?\d[\d,]*(?:\.\d+)?)"

_STATEMENT_LINE_PATTERNS = (
    re.compile(r"(?<!\d)(\d{4}-\d{2}-\d{2})\s+(.+?)\s+" + _AMOUNT + r"\s*$"),
    re.compile(r"(?<!\d)(\d{1,2}/\d{1,2}/\d{2,4})\s+(.+?)\s+" + _AMOUNT + r"\s*$"),
    re.compile(r"(?<!\d)(\d{1,2}-\d{1,2}-\d{2,4})\s+(.+?)\s+" + _AMOUNT + r"\s*$"),
)

# ISO first, otherwise "2024-01-15" would be read as MM-DD-YY
_DATE_FORMATS = (
    ("ymd", re.compile(r"(\d{4})-(\d{2})-(\d{2})")),
    ("mdy", re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")),
    ("mdy", re.compile(r"(\d{1,2})-(\d{1,2})-(\d{2,4})")),
)


def normalize_statement_date(value: str) -> str | None:
    """
    Rewrite MM/DD/YYYY, MM-DD-YYYY (two-digit years become 20YY) or
    YYYY-MM-DD as YYYY-MM-DD. Returns None when no layout matches.
    """
    value = (value or "").strip()

    for layout, pattern in _DATE_FORMATS:
        match = pattern.search(value)
        if not match:
            continue
        a, b, c = match.groups()
        if layout == "ymd":
            return f"{a}-{b.zfill(2)}-{c.zfill(2)}"
        year = f"20{c}" if len(c) == 2 else c
        return f"{year}-{a.zfill(2)}-{b.zfill(2)}"

    return None


def parse_statement_date(value: str, today: date | None = None) -> str:
    """Like normalize_statement_date, but anything unrecognized becomes today's date."""
    return normalize_statement_date(value) or (today or date.today()).isoformat()


def _parse_amount(raw: str) -> float | None:
    negative = "-" in raw
    digits = re.sub(r"[^\d.]", "", raw)
    if not digits or digits == ".":
        return None
    try:
        amount = float(digits)
    except ValueError:
        return None
    return -amount if negative else amount


def parse_statement_lines(text: str, today: date | None = None) -> list[StatementLine]:
    """
    Find `date  description  amount` rows in statement text.

    A negative amount is an expense, anything else is income; amounts are
    stored as absolute values. Each line matches at most one pattern.
    """
    lines: list[StatementLine] = []
    for raw_line in (text or "").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        for pattern in _STATEMENT_LINE_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            raw_date, description, raw_amount = match.groups()
            amount = _parse_amount(raw_amount)
            description = description.strip()
            if amount is None or not description:
                break
            lines.append(
                StatementLine(
                    date=parse_statement_date(raw_date, today=today),
                    description=description,
                    amount=abs(amount),
                    type="expense" if amount < 0 else "income",
                )
            )
            break

    logger.debug("Statement patterns | lines_found=%d", len(lines))
    return lines


# ---------------------------------------------------------------------------
# Transaction tables
# ---------------------------------------------------------------------------

def _is_table_header(line: str) -> bool:
    lower = line.lower()
    return (
        "date" in lower
        and "description" in lower
        and ("amount" in lower or "debit" in lower or "credit" in lower)
    )


def extract_transaction_tables(text: str) -> list[list[str]]:
    """
    Group the rows that follow a `Date ... Description ... Amount` header.

    A table ends at a line containing "Total" or "Balance", or at a blank
    line. Returns one list of raw row strings per table found.
    """
    tables: list[list[str]] = []
    current: list[str] = []
    in_table = False

    for line in (text or "").split("\n"):
        if _is_table_header(line):
            in_table = True
            current = []
            continue

        if in_table and ("Total" in line or "Balance" in line or not line.strip()):
            if current:
                tables.append(current)
                current = []
            in_table = False
            continue

        if in_table:
            current.append(line)

    if current:
        tables.append(current)
    return tables
