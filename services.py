from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterable, Iterator, Optional, Union

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, joinedload

from csv_utils import (
    ParsedStatement,
    StatementKind,
    normalize_date,
    normalize_optional_date,
)
from errors import (
    CategoryInUseError,
    ConflictError,
    HasChildrenError,
    HasTransactionsError,
    ImportAbortedError,
    InvalidInputError,
    LedgerError,
    NotFoundError,
    StorageError,
)
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
    category_type_for,
)
from periods import Period, local_today, month_period, month_to_date, parse_month_key
from schemas import AccountIn, BudgetIn, CategoryIn, ImportRow, TransactionIn

logger = logging.getLogger(__name__)

TRANSFER_PLACEHOLDER = "(transfer)"

# Utilization tiers, in basis points of the limit.
NOMINAL_MAX_BPS = 10_000
WARNING_MAX_BPS = 12_500


@contextmanager
def _atomic(session: Session, action: str) -> Iterator[None]:
    """Commit the enclosed work as one unit; roll back all of it on failure."""
    try:
        yield
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"{action}: storage failure")
        raise StorageError(f"{action} failed: {exc}") from exc
    except Exception:
        session.rollback()
        raise


def _effective_date():
    return func.coalesce(Transaction.reflection_date, Transaction.date)


def _signed_amount():
    # The outflow leg of a transfer is the one whose id is the shared transfer_id.
    return case(
        (Transaction.type == TransactionType.income, Transaction.amount_cents),
        (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
        (
            and_(
                Transaction.type == TransactionType.transfer,
                Transaction.id == Transaction.transfer_id,
            ),
            -Transaction.amount_cents,
        ),
        else_=Transaction.amount_cents,
    )


def _clean_text(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def seed_defaults(session: Session) -> None:
    session.add(Account(name="Cash", type=AccountType.cash))
    for name in (
        "Groceries",
        "Dining Out",
        "Transportation",
        "Housing",
        "Utilities",
        "Entertainment",
        "Healthcare",
        "Shopping",
        "Other Expense",
    ):
        session.add(Category(name=name, type=CategoryType.expense))
    for name in ("Salary", "Freelance", "Investments", "Other Income"):
        session.add(Category(name=name, type=CategoryType.income))
    session.commit()


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        stmt = select(Account).order_by(Account.name, Account.id)
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: Optional[int]) -> Account:
        account = None
        if account_id and account_id > 0:
            account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    @staticmethod
    def _card_last4(data: AccountIn) -> Optional[str]:
        card = (data.card_last4 or "").strip()
        if data.type != AccountType.credit_card or not card:
            return None
        if len(card) != 4 or not card.isdigit():
            raise InvalidInputError("Card last 4 must be exactly four digits")
        return card

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Account name is required")
        card_last4 = self._card_last4(data)
        with _atomic(self.session, "account_create"):
            account = Account(name=name, type=data.type, card_last4=card_last4)
            self.session.add(account)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Account '{name}' already exists") from exc
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Account name is required")
        card_last4 = self._card_last4(data)
        with _atomic(self.session, "account_update"):
            account = self.get(account_id)
            account.name = name
            account.type = data.type
            account.card_last4 = card_last4
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Account '{name}' already exists") from exc
        return account

    def count_transactions(self, account_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.account_id == account_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete(self, account_id: int, *, cascade: bool = False) -> int:
        """Delete an account, optionally with its transactions.

        Returns the number of transactions removed with it. Transfer legs in
        other accounts that paired with a removed row are unlinked and turned
        into a plain expense or income with the same balance effect.
        """
        with _atomic(self.session, "account_delete"):
            self.get(account_id)
            count = self.count_transactions(account_id)
            if count and not cascade:
                raise HasTransactionsError(
                    f"Account has {count} transaction(s); delete them first"
                )
            if count:
                transfer_ids = select(Transaction.transfer_id).where(
                    Transaction.account_id == account_id,
                    Transaction.transfer_id.is_not(None),
                )
                # A surviving leg keeps its balance sign: outflow becomes an
                # expense, inflow an income.
                self.session.execute(
                    update(Transaction)
                    .where(
                        Transaction.account_id != account_id,
                        Transaction.transfer_id.in_(transfer_ids),
                    )
                    .values(
                        type=case(
                            (
                                Transaction.id == Transaction.transfer_id,
                                TransactionType.expense.value,
                            ),
                            else_=TransactionType.income.value,
                        ),
                        transfer_id=None,
                    )
                    .execution_options(synchronize_session="fetch")
                )
                self.session.execute(
                    delete(Transaction).where(Transaction.account_id == account_id)
                )
            result = self.session.execute(
                delete(Account).where(Account.id == account_id)
            )
            if result.rowcount != 1:
                raise NotFoundError("Account was removed concurrently")
        if count:
            logger.info(
                f"account_delete: account_id={account_id} cascaded_transactions={count}"
            )
        return count

    def credit_cards_by_last4(self) -> dict[str, list[int]]:
        stmt = (
            select(Account.id, Account.card_last4)
            .where(
                Account.type == AccountType.credit_card,
                Account.card_last4.is_not(None),
            )
            .order_by(Account.name, Account.id)
        )
        cards: dict[str, list[int]] = {}
        for row in self.session.execute(stmt):
            cards.setdefault(row.card_last4, []).append(row.id)
        return cards


_UNSET = object()


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = select(Category).options(joinedload(Category.parent))
        if type is not None:
            stmt = stmt.where(Category.type == type)
        categories = list(self.session.scalars(stmt).all())
        return sorted(categories, key=lambda c: (c.display_name, c.id))

    def get(self, category_id: Optional[int]) -> Category:
        category = None
        if category_id and category_id > 0:
            category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _validate_parent(
        self,
        type: CategoryType,
        parent_id: Optional[int],
        category_id: Optional[int] = None,
    ) -> Optional[int]:
        if not parent_id or parent_id <= 0:
            return None
        if category_id is not None and parent_id == category_id:
            raise InvalidInputError("A category cannot be its own parent")
        parent = self.session.get(Category, parent_id)
        if not parent:
            raise NotFoundError("Parent category not found")
        if parent.type != type:
            raise InvalidInputError("Parent category must have the same type")
        if parent.parent_id is not None:
            raise InvalidInputError("Categories can only be nested one level deep")
        return parent.id

    def _find(
        self, type: CategoryType, name: str, parent_id: Optional[int]
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.type == type,
            Category.name == name,
            Category.parent_id.is_(None)
            if parent_id is None
            else Category.parent_id == parent_id,
        )
        return self.session.scalar(stmt)

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Category name is required")
        with _atomic(self.session, "category_create"):
            parent_id = self._validate_parent(data.type, data.parent_id)
            category = Category(name=name, type=data.type, parent_id=parent_id)
            self.session.add(category)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Category '{name}' already exists") from exc
        return category

    def get_or_create(
        self, type: CategoryType, name: str, parent_id: Optional[int] = None
    ) -> Category:
        """Find a category by (type, name, parent), creating it if missing.

        A concurrent writer creating the same row first is resolved by
        re-reading after the uniqueness violation.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Category name is required")
        with _atomic(self.session, "category_get_or_create"):
            parent_id = self._validate_parent(type, parent_id)
            existing = self._find(type, name, parent_id)
            if existing:
                return existing
            category = Category(name=name, type=type, parent_id=parent_id)
            try:
                with self.session.begin_nested():
                    self.session.add(category)
            except IntegrityError:
                existing = self._find(type, name, parent_id)
                if existing is None:
                    raise ConflictError(f"Category '{name}' already exists")
                logger.info(
                    f"category_get_or_create: reused concurrent insert name={name!r}"
                )
                return existing
        return category

    def resolve_label(self, type: CategoryType, label: str) -> Category:
        """Get or create a category from a "Parent:Child" or plain label."""
        label = (label or "").strip()
        parent_name, sep, child_name = label.partition(":")
        parent_name, child_name = parent_name.strip(), child_name.strip()
        if not sep or not parent_name or not child_name:
            return self.get_or_create(type, label)
        parent = self.get_or_create(type, parent_name)
        return self.get_or_create(type, child_name, parent.id)

    def update(self, category_id: int, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Category name is required")
        with _atomic(self.session, "category_update"):
            category = self.get(category_id)
            parent_id = self._validate_parent(data.type, data.parent_id, category.id)
            if parent_id is not None and self.count_children(category.id):
                raise InvalidInputError(
                    "A category with children cannot become a child"
                )
            if data.type != category.type:
                if self.count_children(category.id) or self.count_transactions(
                    category.id
                ):
                    raise InvalidInputError(
                        "Category type cannot change while it is in use"
                    )
            category.name = name
            category.type = data.type
            category.parent_id = parent_id
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Category '{name}' already exists") from exc
        return category

    def count_children(self, category_id: int) -> int:
        stmt = select(func.count(Category.id)).where(Category.parent_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def count_transactions(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.category_id == category_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete(
        self, category_id: int, replacement_id: Union[int, None, object] = _UNSET
    ) -> int:
        """Delete a category, moving its transactions to ``replacement_id``.

        ``replacement_id=None`` leaves the moved transactions uncategorized.
        Omitting it is only allowed when nothing references the category.
        Returns the number of reassigned transactions.
        """
        with _atomic(self.session, "category_delete"):
            category = self.get(category_id)
            if self.count_children(category.id):
                raise HasChildrenError("Delete or move the subcategories first")
            used = self.count_transactions(category.id)
            if used:
                if replacement_id is _UNSET:
                    raise CategoryInUseError(
                        f"Category has {used} transaction(s); choose a replacement"
                    )
                target_id = None
                if replacement_id is not None and replacement_id > 0:
                    if replacement_id == category.id:
                        raise InvalidInputError(
                            "Replacement must differ from the deleted category"
                        )
                    replacement = self.get(replacement_id)
                    if replacement.type != category.type:
                        raise InvalidInputError(
                            "Replacement category must have the same type"
                        )
                    target_id = replacement.id
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.category_id == category.id)
                    .values(category_id=target_id)
                )
            self.session.execute(delete(Budget).where(Budget.category_id == category.id))
            self.session.delete(category)
        return used


@dataclass
class TransactionRow:
    id: int
    account_id: int
    amount_cents: int
    type: TransactionType
    date: date
    reflection_date: Optional[date]
    category_id: Optional[int]
    category_name: str
    payee: str
    description: str
    transfer_id: Optional[int]

    @property
    def effective_date(self) -> date:
        return self.reflection_date or self.date

    @property
    def signed_amount_cents(self) -> int:
        if self.type == TransactionType.income:
            return self.amount_cents
        if self.type == TransactionType.expense:
            return -self.amount_cents
        if self.transfer_id is not None and self.transfer_id == self.id:
            return -self.amount_cents
        return self.amount_cents


_SORTABLE_COLUMNS = {
    "date": "effective_date",
    "amount": "amount_cents",
    "payee": "payee",
    "category": "category_name",
    "description": "description",
    "type": "type",
}


def transaction_sort_key(column: str) -> Callable[[TransactionRow], tuple]:
    try:
        attr = _SORTABLE_COLUMNS[column]
    except KeyError:
        raise InvalidInputError(f"Cannot sort by '{column}'") from None

    def key(row: TransactionRow) -> tuple:
        value = getattr(row, attr)
        if isinstance(value, str):
            value = value.lower()
        return (value, row.id)

    return key


def sort_transaction_rows(
    rows: Iterable[TransactionRow], column: str = "date", *, descending: bool = True
) -> list[TransactionRow]:
    return sorted(rows, key=transaction_sort_key(column), reverse=descending)


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, transaction_id: Optional[int]) -> Transaction:
        txn = None
        if transaction_id and transaction_id > 0:
            txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _prepare(self, data: TransactionIn) -> dict[str, object]:
        if data.amount_cents <= 0:
            raise InvalidInputError("Amount must be positive")
        txn_date = normalize_date(data.date)
        reflection_date = normalize_optional_date(data.reflection_date)
        AccountService(self.session).get(data.account_id)

        category_id = data.category_id if data.category_id and data.category_id > 0 else None
        if data.type == TransactionType.transfer:
            category_id = None
        if category_id is not None:
            category = CategoryService(self.session).get(category_id)
            if category.type != category_type_for(data.type):
                raise InvalidInputError("Category type mismatch")

        return {
            "amount_cents": data.amount_cents,
            "type": data.type,
            "account_id": data.account_id,
            "category_id": category_id,
            "date": txn_date,
            "reflection_date": reflection_date,
            "payee": _clean_text(data.payee),
            "description": _clean_text(data.description),
        }

    def _insert(self, fields: dict[str, object], transfer_id: Optional[int] = None) -> Transaction:
        txn = Transaction(**fields, transfer_id=transfer_id)
        self.session.add(txn)
        self.session.flush()
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        if data.type == TransactionType.transfer:
            raise InvalidInputError("Transfers are recorded as a pair of accounts")
        with _atomic(self.session, "transaction_create"):
            txn = self._insert(self._prepare(data))
        return txn

    def _siblings(self, transfer_id: int, exclude_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.transfer_id == transfer_id, Transaction.id != exclude_id)
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        """Rewrite a transaction and keep any transfer group consistent.

        A nonzero ``transfer_id`` makes the row a transfer; any other type
        drops the link. Remaining mirror legs receive the new amount, dates,
        payee and description; a leg left without a partner is unlinked.
        """
        with _atomic(self.session, "transaction_update"):
            txn = self.get(transaction_id)
            old_transfer_id = txn.transfer_id

            txn_type = data.type
            if data.transfer_id:
                txn_type = TransactionType.transfer
            fields = self._prepare(data.model_copy(update={"type": txn_type}))

            if txn_type == TransactionType.transfer:
                fields["payee"] = None
                new_transfer_id = data.transfer_id or old_transfer_id
            else:
                new_transfer_id = None

            for name, value in fields.items():
                setattr(txn, name, value)
            txn.transfer_id = new_transfer_id

            if old_transfer_id and old_transfer_id != new_transfer_id:
                self.session.execute(
                    update(Transaction)
                    .where(
                        Transaction.transfer_id == old_transfer_id,
                        Transaction.id != txn.id,
                    )
                    .values(transfer_id=None)
                )

            if new_transfer_id:
                siblings = self._siblings(new_transfer_id, txn.id)
                if not siblings:
                    txn.transfer_id = None
                for mirror in siblings:
                    mirror.amount_cents = txn.amount_cents
                    mirror.date = txn.date
                    mirror.reflection_date = txn.reflection_date
                    mirror.payee = txn.payee
                    mirror.description = txn.description
            self.session.flush()
        return txn

    def delete(self, transaction_id: int) -> int:
        """Delete a transaction; a transfer leg takes its whole group with it."""
        with _atomic(self.session, "transaction_delete"):
            txn = self.get(transaction_id)
            if txn.transfer_id is not None:
                result = self.session.execute(
                    delete(Transaction).where(
                        Transaction.transfer_id == txn.transfer_id
                    )
                )
                removed = result.rowcount
            else:
                self.session.delete(txn)
                removed = 1
        return removed

    def list_for_account(
        self, account_id: int, *, sort: Optional[str] = None, descending: bool = True
    ) -> list[TransactionRow]:
        AccountService(self.session).get(account_id)
        Parent = aliased(Category)
        Mirror = aliased(Transaction)
        MirrorAccount = aliased(Account)
        mirror_account = (
            select(MirrorAccount.name)
            .join(Mirror, Mirror.account_id == MirrorAccount.id)
            .where(
                Mirror.transfer_id == Transaction.transfer_id,
                Mirror.id != Transaction.id,
            )
            .order_by(Mirror.id)
            .limit(1)
            .correlate(Transaction)
            .scalar_subquery()
        )
        stmt = (
            select(
                Transaction,
                Category.name.label("category_name"),
                Parent.name.label("parent_name"),
                mirror_account.label("mirror_account"),
            )
            .outerjoin(Category, Transaction.category_id == Category.id)
            .outerjoin(Parent, Category.parent_id == Parent.id)
            .where(Transaction.account_id == account_id)
            .order_by(_effective_date().desc(), Transaction.id.desc())
        )
        rows: list[TransactionRow] = []
        for txn, category_name, parent_name, mirror in self.session.execute(stmt):
            if txn.type == TransactionType.transfer:
                display = mirror or TRANSFER_PLACEHOLDER
            elif category_name and parent_name:
                display = f"{parent_name}:{category_name}"
            else:
                display = category_name or ""
            rows.append(
                TransactionRow(
                    id=txn.id,
                    account_id=txn.account_id,
                    amount_cents=txn.amount_cents,
                    type=txn.type,
                    date=txn.date,
                    reflection_date=txn.reflection_date,
                    category_id=txn.category_id,
                    category_name=display,
                    payee=txn.payee or "",
                    description=txn.description or "",
                    transfer_id=txn.transfer_id,
                )
            )
        if sort is not None:
            rows = sort_transaction_rows(rows, sort, descending=descending)
        return rows

    def most_recent_category_for_payee(
        self, account_id: int, payee: Optional[str], type: TransactionType
    ) -> Optional[int]:
        if not payee or type == TransactionType.transfer:
            return None
        stmt = (
            select(Transaction.category_id)
            .where(
                Transaction.account_id == account_id,
                Transaction.payee == payee,
                Transaction.type == type,
                Transaction.category_id.is_not(None),
            )
            .order_by(_effective_date().desc(), Transaction.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def count_uncategorized_by_payee(self, payee: str, type: TransactionType) -> int:
        if not payee or type == TransactionType.transfer:
            return 0
        stmt = select(func.count(Transaction.id)).where(
            Transaction.payee == payee,
            Transaction.type == type,
            Transaction.category_id.is_(None),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def apply_category_to_uncategorized_by_payee(
        self, payee: str, type: TransactionType, category_id: int
    ) -> int:
        if not payee:
            raise InvalidInputError("Payee is required")
        if type == TransactionType.transfer:
            raise InvalidInputError("Transfers cannot be categorized")
        with _atomic(self.session, "category_propagate"):
            category = CategoryService(self.session).get(category_id)
            if category.type != category_type_for(type):
                raise InvalidInputError("Category type mismatch")
            result = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.payee == payee,
                    Transaction.type == type,
                    Transaction.category_id.is_(None),
                )
                .values(category_id=category.id)
            )
            count = result.rowcount
        logger.info(
            f"category_propagate: payee={payee!r} category_id={category_id} updated={count}"
        )
        return count


class TransferService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionService(session)

    @staticmethod
    def _check_accounts(from_account_id: int, to_account_id: int) -> None:
        if not from_account_id or from_account_id <= 0:
            raise InvalidInputError("Transfer source account is required")
        if not to_account_id or to_account_id <= 0:
            raise InvalidInputError("Transfer destination account is required")
        if from_account_id == to_account_id:
            raise InvalidInputError("Cannot transfer to the same account")

    def _leg_fields(self, data: TransactionIn, to_account_id: int) -> dict[str, object]:
        fields = self.transactions._prepare(
            data.model_copy(update={"type": TransactionType.transfer, "category_id": None})
        )
        AccountService(self.session).get(to_account_id)
        fields["payee"] = None
        return fields

    def create(
        self, data: TransactionIn, to_account_id: int
    ) -> tuple[Transaction, Transaction]:
        """Record money moving from ``data.account_id`` to ``to_account_id``.

        Returns ``(outflow, inflow)``. The outflow leg carries its own id as
        the shared transfer_id.
        """
        self._check_accounts(data.account_id, to_account_id)
        with _atomic(self.session, "transfer_create"):
            fields = self._leg_fields(data, to_account_id)
            outflow = self.transactions._insert(fields)
            inflow = self.transactions._insert(
                {**fields, "account_id": to_account_id}, transfer_id=outflow.id
            )
            outflow.transfer_id = outflow.id
            self.session.flush()
        logger.info(
            f"transfer_create: transfer_id={outflow.id} from={data.account_id} "
            f"to={to_account_id} amount_cents={outflow.amount_cents}"
        )
        return outflow, inflow

    def update(
        self, transaction_id: int, data: TransactionIn, to_account_id: int
    ) -> tuple[Transaction, Transaction]:
        """Rewrite both legs of the transfer containing ``transaction_id``.

        A missing mirror leg is recreated; a row that lost its marker falls
        back to its own id as the group key.
        """
        self._check_accounts(data.account_id, to_account_id)
        with _atomic(self.session, "transfer_update"):
            txn = self.transactions.get(transaction_id)
            fields = self._leg_fields(data, to_account_id)

            group_id = txn.transfer_id or txn.id
            siblings = self.transactions._siblings(group_id, txn.id)
            mirror = siblings[0] if siblings else None
            if mirror is None and group_id != txn.id:
                group_id = txn.id

            if mirror is not None and mirror.id == group_id:
                outflow, inflow = mirror, txn
            else:
                outflow, inflow = txn, mirror

            for name, value in fields.items():
                setattr(outflow, name, value)
            outflow.transfer_id = group_id
            if inflow is None:
                inflow = self.transactions._insert(
                    {**fields, "account_id": to_account_id}, transfer_id=group_id
                )
                logger.info(f"transfer_update: recreated mirror transfer_id={group_id}")
            else:
                for name, value in fields.items():
                    setattr(inflow, name, value)
                inflow.account_id = to_account_id
                inflow.transfer_id = group_id
            self.session.flush()
        logger.info(
            f"transfer_update: transfer_id={group_id} from={data.account_id} "
            f"to={to_account_id} amount_cents={outflow.amount_cents}"
        )
        return outflow, inflow


@dataclass(frozen=True)
class BalancePoint:
    date: date
    balance_cents: int


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _signed_sum(self, account_id: int, *conditions) -> int:
        stmt = select(func.coalesce(func.sum(_signed_amount()), 0)).where(
            Transaction.account_id == account_id, *conditions
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def account_balance(self, account_id: int) -> int:
        AccountService(self.session).get(account_id)
        return self._signed_sum(account_id)

    def totals(self, account_id: int, period: Period) -> dict[str, int]:
        effective = _effective_date()
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expense"),
            func.coalesce(func.sum(_signed_amount()), 0).label("net"),
        ).where(
            Transaction.account_id == account_id,
            effective >= period.start,
            effective <= period.end,
        )
        row = self.session.execute(stmt).one()
        return {
            "income": int(row.income),
            "expense": int(row.expense),
            "net": int(row.net),
        }

    def month_to_date(self, account_id: int, today: Optional[date] = None) -> dict[str, int]:
        AccountService(self.session).get(account_id)
        return self.totals(account_id, month_to_date(today))

    def month_to_date_income(self, account_id: int, today: Optional[date] = None) -> int:
        return self.month_to_date(account_id, today)["income"]

    def month_to_date_expense(self, account_id: int, today: Optional[date] = None) -> int:
        return self.month_to_date(account_id, today)["expense"]

    def month_to_date_net(self, account_id: int, today: Optional[date] = None) -> int:
        return self.month_to_date(account_id, today)["net"]

    def balance_series(
        self, account_id: int, lookback_days: int, today: Optional[date] = None
    ) -> list[BalancePoint]:
        """Closing balance for each of the last ``lookback_days`` days.

        The opening balance is summed once; the window is then walked forward
        adding each day's net change.
        """
        if lookback_days <= 0:
            raise InvalidInputError("lookback_days must be positive")
        AccountService(self.session).get(account_id)
        today = today or local_today()
        start = today - timedelta(days=lookback_days - 1)
        effective = _effective_date()

        balance = self._signed_sum(account_id, effective < start)
        day = effective.label("day")
        stmt = (
            select(day, func.sum(_signed_amount()).label("delta"))
            .where(
                Transaction.account_id == account_id,
                effective >= start,
                effective <= today,
            )
            .group_by(day)
        )
        deltas = {row.day: int(row.delta or 0) for row in self.session.execute(stmt)}

        series: list[BalancePoint] = []
        for offset in range(lookback_days):
            current = start + timedelta(days=offset)
            balance += deltas.get(current, 0)
            series.append(BalancePoint(current, balance))
        return series


@dataclass
class BudgetRow:
    category_id: int
    name: str
    parent_id: Optional[int]
    limit_cents: Optional[int]
    spent_cents: int
    utilization_bps: Optional[int]

    @property
    def has_rule(self) -> bool:
        return self.limit_cents is not None

    @property
    def tier(self) -> Optional[str]:
        return BudgetService.utilization_tier(self.utilization_bps)


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def effective_rule(self, category_id: int, month: str) -> Optional[Budget]:
        parse_month_key(month)
        stmt = (
            select(Budget)
            .where(Budget.category_id == category_id, Budget.month <= month)
            .order_by(Budget.month.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def effective_budget(self, category_id: int, month: str) -> Optional[int]:
        rule = self.effective_rule(category_id, month)
        return rule.limit_cents if rule else None

    def set_budget_effective(self, data: BudgetIn) -> Budget:
        """Upsert the rule for exactly ``data.month``; it applies onward."""
        parse_month_key(data.month)
        if data.limit_cents < 0:
            raise InvalidInputError("Budget limit cannot be negative")
        with _atomic(self.session, "budget_set"):
            category = CategoryService(self.session).get(data.category_id)
            if category.type != CategoryType.expense:
                raise InvalidInputError("Budgets can only be set for expense categories")
            rule = self.session.scalar(
                select(Budget).where(
                    Budget.category_id == category.id, Budget.month == data.month
                )
            )
            if rule:
                rule.limit_cents = data.limit_cents
            else:
                rule = Budget(
                    category_id=category.id,
                    month=data.month,
                    limit_cents=data.limit_cents,
                )
                self.session.add(rule)
            self.session.flush()
        return rule

    def delete_rule(self, category_id: int, month: str) -> None:
        parse_month_key(month)
        with _atomic(self.session, "budget_delete"):
            result = self.session.execute(
                delete(Budget).where(
                    Budget.category_id == category_id, Budget.month == month
                )
            )
            if result.rowcount == 0:
                raise NotFoundError("Budget rule not found")

    @staticmethod
    def utilization_bps(spent_cents: int, limit_cents: Optional[int]) -> Optional[int]:
        if limit_cents is None or limit_cents <= 0:
            return None
        return spent_cents * 10_000 // limit_cents

    @staticmethod
    def utilization_tier(bps: Optional[int]) -> Optional[str]:
        if bps is None:
            return None
        if bps <= NOMINAL_MAX_BPS:
            return "nominal"
        if bps <= WARNING_MAX_BPS:
            return "warning"
        return "over"

    def _category_scope(self, category_id: int, include_children: bool) -> list[int]:
        ids = [category_id]
        if include_children:
            ids.extend(
                self.session.scalars(
                    select(Category.id).where(Category.parent_id == category_id)
                ).all()
            )
        return ids

    def spent_for_month(
        self, category_id: int, month: str, *, include_children: bool = True
    ) -> int:
        period = month_period(month)
        effective = _effective_date()
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.category_id.in_(
                self._category_scope(category_id, include_children)
            ),
            Transaction.type == TransactionType.expense,
            effective >= period.start,
            effective <= period.end,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _row(self, category: Category, month: str) -> BudgetRow:
        limit = self.effective_budget(category.id, month)
        spent = self.spent_for_month(
            category.id, month, include_children=category.parent_id is None
        )
        return BudgetRow(
            category_id=category.id,
            name=category.display_name,
            parent_id=category.parent_id,
            limit_cents=limit,
            spent_cents=spent,
            utilization_bps=self.utilization_bps(spent, limit),
        )

    def rows_for_month(self, month: str) -> list[BudgetRow]:
        parse_month_key(month)
        stmt = (
            select(Category)
            .where(
                Category.type == CategoryType.expense, Category.parent_id.is_(None)
            )
            .order_by(Category.name, Category.id)
        )
        return [self._row(category, month) for category in self.session.scalars(stmt)]

    def child_rows_for_month(self, parent_id: int, month: str) -> list[BudgetRow]:
        parse_month_key(month)
        stmt = (
            select(Category)
            .options(joinedload(Category.parent))
            .where(Category.parent_id == parent_id)
            .order_by(Category.name, Category.id)
        )
        return [self._row(category, month) for category in self.session.scalars(stmt)]

    def transactions_for_month(self, category_id: int, month: str) -> list[Transaction]:
        category = CategoryService(self.session).get(category_id)
        period = month_period(month)
        effective = _effective_date()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(
                Transaction.category_id.in_(
                    self._category_scope(category.id, category.parent_id is None)
                ),
                Transaction.type == TransactionType.expense,
                effective >= period.start,
                effective <= period.end,
            )
            .order_by(effective.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).unique().all())


@dataclass
class ImportResult:
    imported: int = 0
    duplicates: int = 0
    unmatched: int = 0
    ambiguous_cards: set[str] = field(default_factory=set)

    @property
    def skipped(self) -> int:
        return self.duplicates + self.unmatched


class _LedgerSnapshot:
    """Existing rows of one account, each usable once as a duplicate match."""

    def __init__(self, rows: list[TransactionRow]) -> None:
        self.rows = rows
        self.consumed = [False] * len(rows)

    def consume_match(self, row: ImportRow) -> bool:
        for idx, existing in enumerate(self.rows):
            if self.consumed[idx]:
                continue
            if (
                existing.amount_cents == row.amount_cents
                and existing.type == row.type
                and existing.date == row.date
                and existing.payee == row.payee
            ):
                self.consumed[idx] = True
                return True
        return False


class ImportService:
    def __init__(self, session: Session, *, create_categories: bool = True) -> None:
        self.session = session
        self.create_categories = create_categories
        self.transactions = TransactionService(session)
        self.categories = CategoryService(session)

    def _snapshot(self, account_id: int) -> _LedgerSnapshot:
        return _LedgerSnapshot(self.transactions.list_for_account(account_id))

    def _category_for(self, row: ImportRow, account_id: int) -> Optional[int]:
        category_type = category_type_for(row.type)
        if row.category_id and row.category_id > 0:
            category = self.session.get(Category, row.category_id)
            if category is not None and category.type == category_type:
                return category.id
        if row.category and self.create_categories and category_type is not None:
            return self.categories.resolve_label(category_type, row.category).id
        return self.transactions.most_recent_category_for_payee(
            account_id, row.payee, row.type
        )

    def _insert_row(self, row: ImportRow, account_id: int) -> None:
        txn = Transaction(
            amount_cents=row.amount_cents,
            type=row.type,
            account_id=account_id,
            category_id=self._category_for(row, account_id),
            date=row.date,
            payee=_clean_text(row.payee),
            description=_clean_text(row.description),
        )
        self.session.add(txn)
        self.session.commit()

    def _abort(self, exc: Exception, result: ImportResult) -> ImportAbortedError:
        self.session.rollback()
        logger.exception(
            f"import: aborted imported={result.imported} skipped={result.skipped}"
        )
        return ImportAbortedError(f"Import stopped: {exc}", result)

    def import_credit_card(self, rows: Iterable[ImportRow]) -> ImportResult:
        """Import card statement rows into the account owning each card.

        Card digits shared by several credit-card accounts are reported in
        ``ambiguous_cards`` and those rows are left out.
        """
        result = ImportResult()
        try:
            cards = AccountService(self.session).credit_cards_by_last4()
            snapshots: dict[int, _LedgerSnapshot] = {}
            for row in rows:
                matches = cards.get(row.card_last4, []) if row.card_last4 else []
                if len(matches) != 1:
                    if len(matches) > 1 and row.card_last4 not in result.ambiguous_cards:
                        result.ambiguous_cards.add(row.card_last4)
                        logger.warning(
                            f"import_credit_card: card_last4={row.card_last4} "
                            f"matches accounts={matches}; rows skipped"
                        )
                    result.unmatched += 1
                    continue
                account_id = matches[0]
                snapshot = snapshots.get(account_id)
                if snapshot is None:
                    snapshot = snapshots[account_id] = self._snapshot(account_id)
                if snapshot.consume_match(row):
                    result.duplicates += 1
                    continue
                self._insert_row(row, account_id)
                result.imported += 1
        except (SQLAlchemyError, StorageError, LedgerError) as exc:
            raise self._abort(exc, result) from exc
        logger.info(
            f"import_credit_card: imported={result.imported} "
            f"duplicates={result.duplicates} unmatched={result.unmatched}"
        )
        return result

    def import_checking(self, rows: Iterable[ImportRow], account_id: int) -> ImportResult:
        result = ImportResult()
        AccountService(self.session).get(account_id)
        try:
            snapshot = self._snapshot(account_id)
            for row in rows:
                if snapshot.consume_match(row):
                    result.duplicates += 1
                    continue
                self._insert_row(row, account_id)
                result.imported += 1
        except (SQLAlchemyError, StorageError, LedgerError) as exc:
            raise self._abort(exc, result) from exc
        logger.info(
            f"import_checking: account_id={account_id} imported={result.imported} "
            f"duplicates={result.duplicates}"
        )
        return result

    def import_statement(
        self, statement: ParsedStatement, account_id: Optional[int] = None
    ) -> ImportResult:
        if statement.kind is None:
            raise InvalidInputError("; ".join(statement.errors) or "Unreadable statement")
        if statement.kind == StatementKind.credit_card:
            return self.import_credit_card(statement.rows)
        if account_id is None and statement.source_account:
            account_id = self.session.scalar(
                select(Account.id).where(Account.name == statement.source_account)
            )
        if account_id is None:
            raise InvalidInputError("Choose the account to import into")
        return self.import_checking(statement.rows, account_id)
