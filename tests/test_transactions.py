from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, create_ledger_engine
from errors import InvalidInputError, NotFoundError
from models import (
    Account,
    AccountType,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)
from schemas import TransactionIn
from services import (
    TransactionService,
    TransferService,
    sort_transaction_rows,
    transaction_sort_key,
)


def make_session():
    engine = create_ledger_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    account = Account(name="Checking", type=AccountType.checking)
    other = Account(name="Savings", type=AccountType.savings)
    food = Category(name="Food", type=CategoryType.expense)
    salary = Category(name="Salary", type=CategoryType.income)
    session.add_all([account, other, food, salary])
    session.commit()
    return account, other, food, salary


def expense(account_id: int, amount_cents: int = 1_250, **kwargs) -> TransactionIn:
    fields = dict(
        amount_cents=amount_cents,
        type=TransactionType.expense,
        account_id=account_id,
        date="2024-03-15",
        payee="Corner Market",
    )
    fields.update(kwargs)
    return TransactionIn(**fields)


def test_create_normalizes_dates_and_drops_nonpositive_category() -> None:
    session = make_session()
    account, _, _, _ = seed(session)

    txn = TransactionService(session).create(
        expense(account.id, date="03/15/24", reflection_date="2024-03-16", category_id=0)
    )

    assert txn.date == date(2024, 3, 15)
    assert txn.reflection_date == date(2024, 3, 16)
    assert txn.effective_date == date(2024, 3, 16)
    assert txn.category_id is None


def test_create_rejects_invalid_input_without_writing() -> None:
    session = make_session()
    account, _, _, salary = seed(session)
    service = TransactionService(session)

    with pytest.raises(InvalidInputError):
        service.create(expense(account.id, amount_cents=0))
    with pytest.raises(InvalidInputError):
        service.create(expense(account.id, date="2024-04-31"))
    with pytest.raises(InvalidInputError, match="Category type mismatch"):
        service.create(expense(account.id, category_id=salary.id))
    with pytest.raises(NotFoundError):
        service.create(expense(999))

    assert session.scalars(select(Transaction)).all() == []


def test_update_with_transfer_id_forces_transfer_and_clears_category() -> None:
    session = make_session()
    account, other, food, _ = seed(session)
    service = TransactionService(session)
    outflow, inflow = TransferService(session).create(
        TransactionIn(
            amount_cents=500,
            type=TransactionType.transfer,
            account_id=account.id,
            date="2024-03-01",
        ),
        other.id,
    )

    updated = service.update(
        outflow.id,
        expense(
            account.id,
            amount_cents=800,
            category_id=food.id,
            transfer_id=outflow.transfer_id,
        ),
    )

    assert updated.type == TransactionType.transfer
    assert updated.category_id is None
    assert updated.payee is None
    session.refresh(inflow)
    assert inflow.amount_cents == 800
    assert inflow.date == date(2024, 3, 15)
    assert inflow.payee is None


def test_update_to_expense_unlinks_former_mirror() -> None:
    session = make_session()
    account, other, food, _ = seed(session)
    service = TransactionService(session)
    outflow, inflow = TransferService(session).create(
        TransactionIn(
            amount_cents=500,
            type=TransactionType.transfer,
            account_id=account.id,
            date="2024-03-01",
        ),
        other.id,
    )

    updated = service.update(outflow.id, expense(account.id, category_id=food.id))

    assert updated.type == TransactionType.expense
    assert updated.transfer_id is None
    assert updated.category_id == food.id
    session.refresh(inflow)
    assert inflow.transfer_id is None


def test_update_heals_orphaned_transfer_leg() -> None:
    session = make_session()
    account, _, _, _ = seed(session)
    orphan = Transaction(
        amount_cents=300,
        type=TransactionType.transfer,
        account_id=account.id,
        date=date(2024, 3, 2),
        transfer_id=12345,
    )
    session.add(orphan)
    session.commit()

    updated = TransactionService(session).update(
        orphan.id,
        TransactionIn(
            amount_cents=300,
            type=TransactionType.transfer,
            account_id=account.id,
            date="2024-03-02",
            transfer_id=12345,
        ),
    )

    assert updated.transfer_id is None


def test_update_missing_transaction_is_not_found() -> None:
    session = make_session()
    account, _, _, _ = seed(session)
    with pytest.raises(NotFoundError):
        TransactionService(session).update(42, expense(account.id))


def test_list_orders_by_effective_date_then_id() -> None:
    session = make_session()
    account, _, food, _ = seed(session)
    lunch = Category(name="Lunch", type=CategoryType.expense, parent_id=food.id)
    session.add(lunch)
    session.commit()
    service = TransactionService(session)

    early = service.create(expense(account.id, date="2024-03-01"))
    late_by_reflection = service.create(
        expense(account.id, date="2024-02-01", reflection_date="2024-03-10")
    )
    same_day = service.create(
        expense(account.id, date="2024-03-01", category_id=lunch.id)
    )

    rows = service.list_for_account(account.id)
    assert [r.id for r in rows] == [late_by_reflection.id, same_day.id, early.id]
    assert rows[1].category_name == "Food:Lunch"
    assert rows[0].signed_amount_cents == -1_250


def test_sort_key_closes_over_column() -> None:
    session = make_session()
    account, _, _, _ = seed(session)
    service = TransactionService(session)
    service.create(expense(account.id, amount_cents=300, payee="beta"))
    service.create(expense(account.id, amount_cents=100, payee="Alpha"))
    service.create(expense(account.id, amount_cents=200, payee="gamma"))
    rows = service.list_for_account(account.id)

    by_amount = transaction_sort_key("amount")
    by_payee = transaction_sort_key("payee")
    assert [r.amount_cents for r in sorted(rows, key=by_amount)] == [100, 200, 300]
    assert [r.payee for r in sorted(rows, key=by_payee)] == ["Alpha", "beta", "gamma"]
    assert [r.amount_cents for r in sort_transaction_rows(rows, "amount")] == [
        300,
        200,
        100,
    ]
    with pytest.raises(InvalidInputError):
        transaction_sort_key("account")


def test_most_recent_category_for_payee_uses_effective_date() -> None:
    session = make_session()
    account, _, food, _ = seed(session)
    dining = Category(name="Dining", type=CategoryType.expense)
    session.add(dining)
    session.commit()
    service = TransactionService(session)

    service.create(expense(account.id, date="2024-03-20", category_id=food.id))
    service.create(
        expense(
            account.id,
            date="2024-03-01",
            reflection_date="2024-03-25",
            category_id=dining.id,
        )
    )
    service.create(expense(account.id, date="2024-03-30"))

    assert (
        service.most_recent_category_for_payee(
            account.id, "Corner Market", TransactionType.expense
        )
        == dining.id
    )
    assert (
        service.most_recent_category_for_payee(
            account.id, "Corner Market", TransactionType.income
        )
        is None
    )


def test_apply_category_to_uncategorized_by_payee() -> None:
    session = make_session()
    account, _, food, salary = seed(session)
    service = TransactionService(session)
    service.create(expense(account.id))
    service.create(expense(account.id, date="2024-03-16"))
    service.create(expense(account.id, payee="Elsewhere"))
    already = service.create(
        expense(account.id, category_id=food.id, date="2024-03-17")
    )

    assert service.count_uncategorized_by_payee("Corner Market", TransactionType.expense) == 2
    assert (
        service.apply_category_to_uncategorized_by_payee(
            "Corner Market", TransactionType.expense, food.id
        )
        == 2
    )
    assert service.count_uncategorized_by_payee("Corner Market", TransactionType.expense) == 0
    assert service.get(already.id).category_id == food.id

    with pytest.raises(InvalidInputError, match="Category type mismatch"):
        service.apply_category_to_uncategorized_by_payee(
            "Elsewhere", TransactionType.expense, salary.id
        )
