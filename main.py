import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import parse_statement
from database import SessionLocal, init_db
from errors import (
    ConflictError,
    ImportAbortedError,
    LedgerError,
    NotFoundError,
    StorageError,
)
from models import Account, Category, Transaction, category_type_from_label
from periods import local_today, month_key
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    CategoryPropagationIn,
    TransactionIn,
    TransferIn,
)
from services import (
    AccountService,
    BudgetRow,
    BudgetService,
    CategoryService,
    ImportResult,
    ImportService,
    MetricsService,
    TransactionRow,
    TransactionService,
    TransferService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledgerbook")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    logging.basicConfig(level=get_settings().log_level)
    created = init_db()
    logger.info(f"startup: database_ready new={created}")


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def account_out(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "type_label": account.type_label,
        "card_last4": account.card_last4,
    }


def category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "display_name": category.display_name,
        "type": category.type.value,
        "parent_id": category.parent_id,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "category_id": txn.category_id,
        "date": txn.date.isoformat(),
        "reflection_date": txn.reflection_date.isoformat()
        if txn.reflection_date
        else None,
        "payee": txn.payee,
        "description": txn.description,
        "transfer_id": txn.transfer_id,
    }


def row_out(row: TransactionRow) -> dict[str, object]:
    return {
        "id": row.id,
        "amount_cents": row.amount_cents,
        "signed_amount_cents": row.signed_amount_cents,
        "type": row.type.value,
        "date": row.date.isoformat(),
        "effective_date": row.effective_date.isoformat(),
        "category_id": row.category_id,
        "category": row.category_name,
        "payee": row.payee,
        "description": row.description,
        "transfer_id": row.transfer_id,
    }


def budget_row_out(row: BudgetRow) -> dict[str, object]:
    return {
        "category_id": row.category_id,
        "name": row.name,
        "parent_id": row.parent_id,
        "limit_cents": row.limit_cents,
        "spent_cents": row.spent_cents,
        "utilization_bps": row.utilization_bps,
        "tier": row.tier,
    }


def import_result_out(result: ImportResult) -> dict[str, object]:
    return {
        "imported": result.imported,
        "skipped": result.skipped,
        "duplicates": result.duplicates,
        "unmatched": result.unmatched,
        "ambiguous_cards": sorted(result.ambiguous_cards),
    }


class TransferUpdateIn(BaseModel):
    to_account_id: int
    transaction: TransactionIn


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    return [account_out(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", status_code=201)
def api_create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        return account_out(AccountService(db).create(data))
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc


@app.put("/api/accounts/{account_id}")
def api_update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    try:
        return account_out(AccountService(db).update(account_id, data))
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}")
def api_delete_account(
    account_id: int, cascade: bool = False, db: Session = Depends(get_db)
):
    try:
        removed = AccountService(db).delete(account_id, cascade=cascade)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"deleted_transactions": removed}


@app.get("/api/accounts/{account_id}/transactions")
def api_account_transactions(
    account_id: int,
    sort: Optional[str] = None,
    descending: bool = True,
    db: Session = Depends(get_db),
):
    try:
        rows = TransactionService(db).list_for_account(
            account_id, sort=sort, descending=descending
        )
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return [row_out(r) for r in rows]


@app.get("/api/accounts/{account_id}/summary")
def api_account_summary(account_id: int, db: Session = Depends(get_db)):
    metrics = MetricsService(db)
    try:
        balance = metrics.account_balance(account_id)
        mtd = metrics.month_to_date(account_id)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"balance_cents": balance, "month_to_date": mtd}


@app.get("/api/accounts/{account_id}/balance-series")
def api_balance_series(account_id: int, days: int = 30, db: Session = Depends(get_db)):
    try:
        series = MetricsService(db).balance_series(account_id, days)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return [
        {"date": point.date.isoformat(), "balance_cents": point.balance_cents}
        for point in series
    ]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    service = TransactionService(db)
    try:
        txn = service.create(data)
        uncategorized = 0
        if txn.category_id and txn.payee:
            uncategorized = service.count_uncategorized_by_payee(txn.payee, txn.type)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {**transaction_out(txn), "uncategorized_same_payee": uncategorized}


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        return transaction_out(TransactionService(db).update(transaction_id, data))
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/transactions/apply-category")
def api_apply_category(data: CategoryPropagationIn, db: Session = Depends(get_db)):
    try:
        count = TransactionService(db).apply_category_to_uncategorized_by_payee(
            data.payee, data.type, data.category_id
        )
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"updated": count}


@app.post("/api/transfers", status_code=201)
def api_create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    try:
        outflow, inflow = TransferService(db).create(
            data.as_transaction(), data.to_account_id
        )
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"outflow": transaction_out(outflow), "inflow": transaction_out(inflow)}


@app.put("/api/transfers/{transaction_id}")
def api_update_transfer(
    transaction_id: int, data: TransferUpdateIn, db: Session = Depends(get_db)
):
    try:
        outflow, inflow = TransferService(db).update(
            transaction_id, data.transaction, data.to_account_id
        )
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"outflow": transaction_out(outflow), "inflow": transaction_out(inflow)}


@app.get("/api/categories")
def api_categories(type: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        category_type = category_type_from_label(type) if type else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [category_out(c) for c in CategoryService(db).list_all(category_type)]


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return category_out(CategoryService(db).create(data))
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int, data: CategoryIn, db: Session = Depends(get_db)
):
    try:
        return category_out(CategoryService(db).update(category_id, data))
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    replacement_id: Optional[int] = None,
    uncategorize: bool = False,
    db: Session = Depends(get_db),
):
    service = CategoryService(db)
    try:
        if replacement_id is not None:
            moved = service.delete(category_id, replacement_id)
        elif uncategorize:
            moved = service.delete(category_id, None)
        else:
            moved = service.delete(category_id)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"reassigned_transactions": moved}


@app.get("/api/budgets")
def api_budgets(month: Optional[str] = None, db: Session = Depends(get_db)):
    month = month or month_key(local_today())
    service = BudgetService(db)
    try:
        rows = []
        for parent in service.rows_for_month(month):
            rows.append(
                {
                    **budget_row_out(parent),
                    "children": [
                        budget_row_out(child)
                        for child in service.child_rows_for_month(
                            parent.category_id, month
                        )
                    ],
                }
            )
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {"month": month, "rows": rows}


@app.put("/api/budgets")
def api_set_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        rule = BudgetService(db).set_budget_effective(data)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {
        "id": rule.id,
        "category_id": rule.category_id,
        "month": rule.month,
        "limit_cents": rule.limit_cents,
    }


@app.delete("/api/budgets/{category_id}/{month}")
def api_delete_budget(category_id: int, month: str, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete_rule(category_id, month)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/budgets/{category_id}/{month}/transactions")
def api_budget_transactions(
    category_id: int, month: str, db: Session = Depends(get_db)
):
    try:
        txns = BudgetService(db).transactions_for_month(category_id, month)
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return [transaction_out(t) for t in txns]


@app.post("/api/import")
async def api_import(
    file: UploadFile = File(...),
    account_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
):
    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 text") from exc

    statement = parse_statement(content)
    try:
        result = ImportService(db).import_statement(statement, account_id)
    except ImportAbortedError as exc:
        logger.info(f"import: partial result kept {import_result_out(exc.result)}")
        raise HTTPException(
            status_code=500,
            detail={"error": str(exc), **import_result_out(exc.result)},
        ) from exc
    except (LedgerError, StorageError) as exc:
        raise http_error(exc) from exc
    return {
        "kind": statement.kind.value if statement.kind else None,
        "errors": statement.errors,
        **import_result_out(result),
    }


@app.get("/api/health")
def api_health():
    return {"status": "ok", "today": local_today().isoformat()}


def main():
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=False)


if __name__ == "__main__":
    main()
