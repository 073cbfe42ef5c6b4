from datetime import date

import pytest

from errors import InvalidInputError
from models import (
    ACCOUNT_TYPE_LABELS,
    CATEGORY_TYPE_LABELS,
    TRANSACTION_TYPE_LABELS,
    AccountType,
    CategoryType,
    TransactionType,
    account_type_from_label,
    category_type_for,
    category_type_from_label,
    transaction_type_from_label,
)
from periods import month_key, month_period, month_to_date, parse_month_key


def test_label_tables_cover_every_member() -> None:
    assert set(ACCOUNT_TYPE_LABELS) == set(AccountType)
    assert set(CATEGORY_TYPE_LABELS) == set(CategoryType)
    assert set(TRANSACTION_TYPE_LABELS) == set(TransactionType)


def test_labels_map_back_to_members() -> None:
    for member, label in ACCOUNT_TYPE_LABELS.items():
        assert account_type_from_label(label) == member
        assert account_type_from_label(member.value) == member
    assert account_type_from_label("CreditCard") == AccountType.credit_card
    assert account_type_from_label(" physical asset ") == AccountType.physical_asset
    assert category_type_from_label("Income") == CategoryType.income
    assert transaction_type_from_label("TRANSFER") == TransactionType.transfer

    with pytest.raises(ValueError):
        account_type_from_label("Brokerage")


def test_category_type_for_transaction_type() -> None:
    assert category_type_for(TransactionType.expense) == CategoryType.expense
    assert category_type_for(TransactionType.income) == CategoryType.income
    assert category_type_for(TransactionType.transfer) is None


def test_month_windows() -> None:
    feb = month_period("2024-02")
    assert (feb.start, feb.end) == (date(2024, 2, 1), date(2024, 2, 29))
    dec = month_period("2023-12")
    assert dec.end == date(2023, 12, 31)
    assert month_key(date(2024, 3, 9)) == "2024-03"

    mtd = month_to_date(date(2024, 3, 15))
    assert (mtd.start, mtd.end) == (date(2024, 3, 1), date(2024, 3, 15))


@pytest.mark.parametrize("value", ["2024-13", "2024-00", "24-01", "2024/01", ""])
def test_invalid_month_keys(value) -> None:
    with pytest.raises(InvalidInputError):
        parse_month_key(value)
