import csv
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from io import StringIO
from typing import Optional, Union

from errors import InvalidInputError
from models import DESCRIPTION_MAX, NAME_MAX, PAYEE_MAX, TransactionType
from schemas import ImportRow


class StatementKind(str, Enum):
    credit_card = "credit_card"
    checking_savings = "checking_savings"
    qif = "qif"


_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_US_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_QIF_RE = re.compile(r"^(\d{1,2})/\s?(\d{1,2})'\s?(\d{2}|\d{4})$")
_AMOUNT_RE = re.compile(r"^(\d*)(?:\.(\d{0,2}))?$")


def normalize_date(value: Union[date, str, None]) -> date:
    """Accept YYYY-MM-DD, MM/DD/YYYY, MM/DD/YY (and QIF M/D'YY).

    The calendar has the final say: 02/30/2024 is rejected.
    """
    if isinstance(value, date):
        return value
    raw = (value or "").strip()
    match = _ISO_RE.match(raw)
    if match:
        year, month, day = (int(g) for g in match.groups())
    else:
        match = _US_RE.match(raw) or _QIF_RE.match(raw)
        if not match:
            raise InvalidInputError(f"Unrecognized date '{raw}'")
        month, day, year = (int(g) for g in match.groups())
        if year < 100:
            year += 1900 if year >= 70 else 2000
    if year < 1900:
        raise InvalidInputError(f"Invalid date '{raw}'")
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidInputError(f"Invalid date '{raw}'") from exc


def normalize_optional_date(value: Union[date, str, None]) -> Optional[date]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return normalize_date(value)


def parse_amount(value: str) -> int:
    """Parse a statement amount into signed integer cents.

    Handles "$1,234.50", " -12.3 ", "(45.00)". More than two fractional
    digits is rejected.
    """
    clean = (value or "").strip()
    negative = False
    if clean.startswith("(") and clean.endswith(")"):
        negative = True
        clean = clean[1:-1]
    clean = clean.replace("$", "").replace(",", "").replace(" ", "")
    if clean.startswith("-"):
        negative = not negative
        clean = clean[1:]
    elif clean.startswith("+"):
        clean = clean[1:]
    match = _AMOUNT_RE.match(clean)
    if not clean or clean == "." or not match:
        raise InvalidInputError(f"Invalid amount '{value}'")
    whole, frac = match.group(1), match.group(2) or ""
    cents = int(whole or "0") * 100 + int(frac.ljust(2, "0"))
    return -cents if negative else cents


def extract_last4(card: str) -> str:
    digits = [ch for ch in card or "" if ch.isdigit()]
    if len(digits) < 4:
        return ""
    return "".join(digits[-4:])


def _clip(value: Optional[str], limit: int) -> str:
    return (value or "").strip()[:limit]


def _normalize_header(value: str) -> str:
    return (value or "").strip().lower()


@dataclass
class ColumnMap:
    date: Optional[int] = None
    card: Optional[int] = None
    debit: Optional[int] = None
    credit: Optional[int] = None
    amount: Optional[int] = None
    txn_type: Optional[int] = None
    description: Optional[int] = None
    txn_description: Optional[int] = None
    category: Optional[int] = None

    @property
    def kind(self) -> StatementKind:
        if self.card is not None:
            return StatementKind.credit_card
        return StatementKind.checking_savings


def match_columns(header: list[str]) -> ColumnMap:
    """Map header cells onto known columns; the first matching cell wins."""
    columns = ColumnMap()
    for idx, cell in enumerate(header):
        name = _normalize_header(cell)
        if columns.date is None and name in {"date", "transaction date"}:
            columns.date = idx
        elif columns.card is None and "card" in name:
            columns.card = idx
        elif name == "debit":
            columns.debit = idx
        elif name == "credit":
            columns.credit = idx
        elif columns.amount is None and name in {"amount", "transaction amount"}:
            columns.amount = idx
        elif columns.txn_type is None and name in {"type", "transaction type"}:
            columns.txn_type = idx
        elif columns.txn_description is None and name == "transaction description":
            columns.txn_description = idx
        elif columns.description is None and name in {
            "description",
            "memo",
            "payee",
            "merchant",
        }:
            columns.description = idx
        elif columns.category is None and name in {
            "category",
            "transaction category",
        }:
            columns.category = idx
    return columns


def type_from_label(label: str) -> TransactionType:
    name = _normalize_header(label)
    if "credit" in name or "deposit" in name or "income" in name:
        return TransactionType.income
    return TransactionType.expense


@dataclass
class ParsedStatement:
    kind: Optional[StatementKind]
    rows: list[ImportRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    source_account: Optional[str] = None


def _cell(fields: list[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(fields):
        return ""
    return fields[idx].strip()


def _parse_amount_or_zero(value: str) -> int:
    if not value:
        return 0
    return parse_amount(value)


def _csv_row(fields: list[str], columns: ColumnMap) -> Optional[ImportRow]:
    raw_date = _cell(fields, columns.date)
    if not raw_date:
        return None
    txn_date = normalize_date(raw_date)
    kind = columns.kind

    if kind == StatementKind.credit_card:
        payee = _cell(fields, columns.description)
    else:
        payee = _cell(fields, columns.txn_description) or _cell(
            fields, columns.description
        )
    category = _cell(fields, columns.category) or None

    card_last4 = ""
    if kind == StatementKind.credit_card:
        card_last4 = extract_last4(_cell(fields, columns.card))
        debit = _parse_amount_or_zero(_cell(fields, columns.debit))
        credit = _parse_amount_or_zero(_cell(fields, columns.credit))
        if debit > 0:
            amount, txn_type = debit, TransactionType.expense
        elif credit > 0:
            amount, txn_type = credit, TransactionType.income
        else:
            return None
    else:
        raw_amount = _cell(fields, columns.amount)
        if not raw_amount:
            return None
        signed = parse_amount(raw_amount)
        if signed == 0:
            return None
        type_label = _cell(fields, columns.txn_type)
        if type_label:
            txn_type = type_from_label(type_label)
        elif signed >= 0:
            txn_type = TransactionType.income
        else:
            txn_type = TransactionType.expense
        amount = abs(signed)

    return ImportRow(
        date=txn_date,
        amount_cents=amount,
        type=txn_type,
        payee=_clip(payee, PAYEE_MAX),
        card_last4=card_last4,
        category=_clip(category, NAME_MAX) or None,
    )


def parse_csv(content: str) -> ParsedStatement:
    reader = csv.reader(StringIO(content))
    header: Optional[list[str]] = None
    for fields in reader:
        if any(cell.strip() for cell in fields):
            header = fields
            break
    if header is None:
        return ParsedStatement(kind=None, errors=["File is empty"])

    columns = match_columns(header)
    if columns.date is None:
        return ParsedStatement(kind=None, errors=["No date column found"])

    result = ParsedStatement(kind=columns.kind)
    for fields in reader:
        if not any(cell.strip() for cell in fields):
            continue
        try:
            row = _csv_row(fields, columns)
        except InvalidInputError as exc:
            result.errors.append(f"Line {reader.line_num}: {exc}")
            continue
        if row is not None:
            result.rows.append(row)

    if not result.rows and not result.errors:
        result.errors.append("No transactions found in file")
    return result


_QIF_TRANSACTION_TYPES = {"bank", "ccard", "cash"}


def parse_qif(content: str) -> ParsedStatement:
    result = ParsedStatement(kind=StatementKind.qif)
    in_account = False
    in_txns = False
    pending_account = ""
    active_account = ""
    seen_account = ""
    multi_account = False
    record: dict[str, str] = {}

    for raw_line in content.splitlines():
        line = raw_line.rstrip("\r\n")
        if not line:
            continue
        if line.startswith("!"):
            in_txns = False
            if line.strip() == "!Account":
                in_account = True
                pending_account = ""
            elif line.startswith("!Type:"):
                in_account = False
                if _normalize_header(line[6:]) in _QIF_TRANSACTION_TYPES:
                    in_txns = True
                    active_account = pending_account
            continue
        if in_account:
            if line[0] == "N":
                pending_account = line[1:].strip()
            elif line[0] == "^":
                in_account = False
            continue
        if not in_txns:
            continue
        if line[0] != "^":
            record[line[0]] = line[1:]
            continue

        if record.get("D") and record.get("T"):
            try:
                signed = parse_amount(record["T"])
                txn_date = normalize_date(record["D"])
            except InvalidInputError as exc:
                result.errors.append(str(exc))
                signed = 0
            if signed:
                category = (record.get("L") or "").strip()
                result.rows.append(
                    ImportRow(
                        date=txn_date,
                        amount_cents=abs(signed),
                        type=TransactionType.expense
                        if signed < 0
                        else TransactionType.income,
                        payee=_clip(record.get("P"), PAYEE_MAX),
                        description=_clip(record.get("M"), DESCRIPTION_MAX),
                        # "[Account]" categories are QIF transfer markers.
                        category=_clip(category, NAME_MAX)
                        if category and not category.startswith("[")
                        else None,
                    )
                )
                if active_account:
                    if not seen_account:
                        seen_account = active_account
                    elif seen_account != active_account:
                        multi_account = True
        record = {}

    if multi_account:
        return ParsedStatement(
            kind=None, errors=["QIF import supports one account per file."]
        )
    result.source_account = seen_account or None
    if not result.rows and not result.errors:
        result.errors.append("No transactions found in file")
    return result


def looks_like_qif(content: str) -> bool:
    for line in content.splitlines():
        if line.strip():
            return line.startswith("!")
    return False


def parse_statement(content: str) -> ParsedStatement:
    if looks_like_qif(content):
        return parse_qif(content)
    return parse_csv(content)
