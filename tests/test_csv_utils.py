from datetime import date

import pytest

from csv_utils import (
    StatementKind,
    extract_last4,
    match_columns,
    normalize_date,
    parse_amount,
    parse_csv,
    parse_qif,
    parse_statement,
)
from errors import InvalidInputError
from models import TransactionType


def test_date_formats_normalize_to_the_same_day() -> None:
    assert normalize_date("03/15/2024") == date(2024, 3, 15)
    assert normalize_date("2024-03-15") == date(2024, 3, 15)
    assert normalize_date("3/15/24") == date(2024, 3, 15)
    assert normalize_date("12/31/99") == date(1999, 12, 31)
    assert normalize_date("3/15'24") == date(2024, 3, 15)
    assert normalize_date(date(2024, 3, 15)).isoformat() == "2024-03-15"


@pytest.mark.parametrize(
    "value",
    [
        "13/01/2024",
        "02/30/2024",
        "2023-02-29",
        "04/31/2024",
        "15-03-2024",
        "2024-3-5",
        "2024-03-5",
        "",
        "yesterday",
    ],
)
def test_invalid_dates_are_rejected(value) -> None:
    with pytest.raises(InvalidInputError):
        normalize_date(value)


def test_leap_day_is_accepted() -> None:
    assert normalize_date("02/29/2024") == date(2024, 2, 29)


@pytest.mark.parametrize(
    "value,cents",
    [
        ("$1,234.50", 123_450),
        (" -12.3 ", -1_230),
        ("(45.00)", -4_500),
        ("($7.05)", -705),
        ("0.5", 50),
        ("12", 1_200),
        ("+3.99", 399),
        (".99", 99),
    ],
)
def test_parse_amount_to_exact_cents(value, cents) -> None:
    assert parse_amount(value) == cents


@pytest.mark.parametrize("value", ["1.234", "abc", "", "$", "1.2.3", "--5"])
def test_parse_amount_rejects_malformed_values(value) -> None:
    with pytest.raises(InvalidInputError):
        parse_amount(value)


def test_extract_last4_uses_trailing_digits() -> None:
    assert extract_last4("XXXX-XXXX-XXXX-4242") == "4242"
    assert extract_last4("*123") == ""


def test_header_vocabulary_is_case_and_space_insensitive() -> None:
    columns = match_columns(
        [" Transaction Date ", "CARD NUMBER", "Debit", "Credit", "Merchant", "Category"]
    )
    assert (columns.date, columns.card, columns.debit, columns.credit) == (0, 1, 2, 3)
    assert columns.description == 4
    assert columns.category == 5
    assert columns.kind == StatementKind.credit_card

    checking = match_columns(["Date", "Transaction Description", "Memo", "Transaction Amount", "Type"])
    assert checking.kind == StatementKind.checking_savings
    assert (checking.txn_description, checking.description) == (1, 2)
    assert (checking.amount, checking.txn_type) == (3, 4)


def test_explicit_type_column_wins_over_sign() -> None:
    parsed = parse_csv(
        "Date,Description,Amount,Type\n"
        "2024-03-01,Refund,-20.00,Credit\n"
        "2024-03-02,Fee,15.00,Debit\n"
        "2024-03-03,Paycheck,100.00,\n"
    )
    assert [(r.type, r.amount_cents) for r in parsed.rows] == [
        (TransactionType.income, 2_000),
        (TransactionType.expense, 1_500),
        (TransactionType.income, 10_000),
    ]


def test_transaction_description_preferred_for_payee() -> None:
    parsed = parse_csv(
        "Date,Description,Transaction Description,Amount\n"
        "2024-03-01,POS 1234,Corner Market,-5.00\n"
        "2024-03-02,ATM,,-20.00\n"
    )
    assert [r.payee for r in parsed.rows] == ["Corner Market", "ATM"]


def test_bad_lines_are_reported_and_skipped() -> None:
    parsed = parse_csv(
        "Date,Description,Amount\n"
        "2024-03-01,Good,-1.00\n"
        "2024-02-30,Bad date,-2.00\n"
        "2024-03-02,Zero,0.00\n"
        "2024-03-03,Bad amount,abc\n"
    )
    assert [r.payee for r in parsed.rows] == ["Good"]
    assert len(parsed.errors) == 2
    assert parsed.errors[0].startswith("Line 3:")


def test_csv_without_date_column_is_unclassified() -> None:
    parsed = parse_csv("Description,Amount\nCoffee,-4.00\n")
    assert parsed.kind is None
    assert parsed.errors == ["No date column found"]


def test_long_payees_are_truncated() -> None:
    parsed = parse_csv(f"Date,Description,Amount\n2024-03-01,{'x' * 300},-1.00\n")
    assert len(parsed.rows[0].payee) == 128


def test_qif_rejects_multiple_accounts() -> None:
    content = (
        "!Account\nNOne\n^\n!Type:Bank\nD3/1'24\nT-1.00\n^\n"
        "!Account\nNTwo\n^\n!Type:Bank\nD3/2'24\nT-2.00\n^\n"
    )
    parsed = parse_qif(content)
    assert parsed.kind is None
    assert parsed.errors == ["QIF import supports one account per file."]


def test_parse_statement_detects_qif() -> None:
    parsed = parse_statement("!Type:CCard\nD03/01/2024\nT-9.99\nPStream\nMMonthly\n^\n")
    assert parsed.kind == StatementKind.qif
    assert parsed.source_account is None
    [row] = parsed.rows
    assert (row.type, row.amount_cents, row.payee, row.description) == (
        TransactionType.expense,
        999,
        "Stream",
        "Monthly",
    )
