import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

NAME_MAX = 64
PAYEE_MAX = 128
DESCRIPTION_MAX = 256


class AccountType(str, Enum):
    cash = "cash"
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    physical_asset = "physical_asset"
    investment = "investment"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


ACCOUNT_TYPE_LABELS: dict[AccountType, str] = {
    AccountType.cash: "Cash",
    AccountType.checking: "Checking",
    AccountType.savings: "Savings",
    AccountType.credit_card: "Credit Card",
    AccountType.physical_asset: "Physical Asset",
    AccountType.investment: "Investment",
}

CATEGORY_TYPE_LABELS: dict[CategoryType, str] = {
    CategoryType.expense: "Expense",
    CategoryType.income: "Income",
}

TRANSACTION_TYPE_LABELS: dict[TransactionType, str] = {
    TransactionType.expense: "Expense",
    TransactionType.income: "Income",
    TransactionType.transfer: "Transfer",
}


def _reverse(labels: dict) -> dict[str, Enum]:
    reverse: dict[str, Enum] = {}
    for member, label in labels.items():
        reverse[label.lower()] = member
        reverse[member.value] = member
        reverse[member.value.replace("_", "")] = member
        reverse[label.lower().replace(" ", "")] = member
    return reverse


_ACCOUNT_TYPES_BY_LABEL = _reverse(ACCOUNT_TYPE_LABELS)
_CATEGORY_TYPES_BY_LABEL = _reverse(CATEGORY_TYPE_LABELS)
_TRANSACTION_TYPES_BY_LABEL = _reverse(TRANSACTION_TYPE_LABELS)


def account_type_from_label(label: str) -> AccountType:
    try:
        return _ACCOUNT_TYPES_BY_LABEL[label.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown account type '{label}'") from None


def category_type_from_label(label: str) -> CategoryType:
    try:
        return _CATEGORY_TYPES_BY_LABEL[label.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown category type '{label}'") from None


def transaction_type_from_label(label: str) -> TransactionType:
    try:
        return _TRANSACTION_TYPES_BY_LABEL[label.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown transaction type '{label}'") from None


def category_type_for(txn_type: TransactionType) -> Optional[CategoryType]:
    if txn_type == TransactionType.transfer:
        return None
    return CategoryType(txn_type.value)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(NAME_MAX), nullable=False, unique=True)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.cash
    )
    card_last4: Mapped[Optional[str]] = mapped_column(String(4))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    @property
    def type_label(self) -> str:
        return ACCOUNT_TYPE_LABELS[self.type]


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(NAME_MAX), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )

    __table_args__ = (
        UniqueConstraint("type", "name", "parent_id", name="uq_category_type_name_parent"),
        Index(
            "uq_category_top_level_type_name",
            "type",
            "name",
            unique=True,
            sqlite_where=text("parent_id IS NULL"),
        ),
        Index("ix_categories_parent", "parent_id"),
        CheckConstraint(
            "parent_id IS NULL OR parent_id <> id", name="ck_category_not_own_parent"
        ),
    )

    @property
    def display_name(self) -> str:
        if self.parent is not None:
            return f"{self.parent.name}:{self.name}"
        return self.name


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    reflection_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    payee: Mapped[Optional[str]] = mapped_column(String(PAYEE_MAX))
    description: Mapped[Optional[str]] = mapped_column(Text)
    transfer_id: Mapped[Optional[int]] = mapped_column(Integer)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category", "category_id"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_transfer", "transfer_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "type <> 'transfer' OR category_id IS NULL",
            name="ck_transactions_transfer_uncategorized",
        ),
    )

    @property
    def effective_date(self) -> dt.date:
        return self.reflection_date or self.date


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("category_id", "month", name="uq_budget_category_month"),
        Index("ix_budgets_month", "month"),
        CheckConstraint("limit_cents >= 0", name="ck_budget_limit_positive"),
    )
