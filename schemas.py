import datetime as dt
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import (
    DESCRIPTION_MAX,
    NAME_MAX,
    PAYEE_MAX,
    AccountType,
    CategoryType,
    TransactionType,
)

# Dates stay loosely typed here; the ledger normalizes and validates them.
DateInput = Union[dt.date, str]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=NAME_MAX)
    type: AccountType = AccountType.cash
    card_last4: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=NAME_MAX)
    type: CategoryType
    parent_id: Optional[int] = None


class TransactionIn(BaseModel):
    amount_cents: int
    type: TransactionType
    account_id: int
    category_id: Optional[int] = None
    date: DateInput
    reflection_date: Optional[DateInput] = None
    payee: Optional[str] = Field(default=None, max_length=PAYEE_MAX)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX)
    transfer_id: Optional[int] = None


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int
    date: DateInput
    reflection_date: Optional[DateInput] = None
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX)

    def as_transaction(self) -> TransactionIn:
        return TransactionIn(
            amount_cents=self.amount_cents,
            type=TransactionType.transfer,
            account_id=self.from_account_id,
            date=self.date,
            reflection_date=self.reflection_date,
            description=self.description,
        )


class BudgetIn(BaseModel):
    category_id: int
    month: str = Field(..., min_length=7, max_length=7)
    limit_cents: int = Field(..., ge=0)


class CategoryPropagationIn(BaseModel):
    payee: str = Field(..., min_length=1, max_length=PAYEE_MAX)
    type: TransactionType
    category_id: int


class ImportRow(BaseModel):
    """One normalized statement row ready for matching against the ledger."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    payee: str = ""
    description: str = ""
    card_last4: str = ""
    category: Optional[str] = None
    category_id: Optional[int] = None
