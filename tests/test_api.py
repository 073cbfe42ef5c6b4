import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from database import Base, create_ledger_engine
from main import app, get_db


@pytest.fixture
def client():
    engine = create_ledger_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_account(client, name: str, **extra) -> int:
    response = client.post("/api/accounts", json={"name": name, **extra})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_account_errors_map_to_http_statuses(client) -> None:
    create_account(client, "Checking", type="checking")

    assert client.post("/api/accounts", json={"name": "Checking"}).status_code == 409
    assert client.put("/api/accounts/99", json={"name": "Nope"}).status_code == 404
    bad_card = client.post(
        "/api/accounts",
        json={"name": "Visa", "type": "credit_card", "card_last4": "12"},
    )
    assert bad_card.status_code == 422


def test_transfer_and_summary_flow(client) -> None:
    checking = create_account(client, "Checking", type="checking")
    savings = create_account(client, "Savings", type="savings")

    income = client.post(
        "/api/transactions",
        json={
            "amount_cents": 10_000,
            "type": "income",
            "account_id": checking,
            "date": "2024-03-01",
            "payee": "Employer",
        },
    )
    assert income.status_code == 201, income.text

    transfer = client.post(
        "/api/transfers",
        json={
            "from_account_id": checking,
            "to_account_id": savings,
            "amount_cents": 2_500,
            "date": "03/02/2024",
        },
    )
    assert transfer.status_code == 201, transfer.text
    body = transfer.json()
    assert body["outflow"]["transfer_id"] == body["outflow"]["id"]
    assert body["inflow"]["transfer_id"] == body["outflow"]["id"]

    summary = client.get(f"/api/accounts/{checking}/summary").json()
    assert summary["balance_cents"] == 7_500

    rows = client.get(f"/api/accounts/{checking}/transactions").json()
    assert [r["category"] for r in rows] == ["Savings", ""]

    deleted = client.delete(f"/api/transactions/{body['inflow']['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/api/accounts/{savings}/transactions").json() == []


def test_same_account_transfer_is_rejected(client) -> None:
    checking = create_account(client, "Checking", type="checking")
    response = client.post(
        "/api/transfers",
        json={
            "from_account_id": checking,
            "to_account_id": checking,
            "amount_cents": 100,
            "date": "2024-03-02",
        },
    )
    assert response.status_code == 422
    assert "same account" in response.json()["detail"]


def test_account_delete_requires_cascade(client) -> None:
    checking = create_account(client, "Checking", type="checking")
    client.post(
        "/api/transactions",
        json={
            "amount_cents": 500,
            "type": "expense",
            "account_id": checking,
            "date": "2024-03-01",
        },
    )

    assert client.delete(f"/api/accounts/{checking}").status_code == 409
    response = client.delete(f"/api/accounts/{checking}", params={"cascade": "true"})
    assert response.json() == {"deleted_transactions": 1}


def test_category_and_budget_endpoints(client) -> None:
    food = client.post("/api/categories", json={"name": "Food", "type": "expense"}).json()
    client.post(
        "/api/categories",
        json={"name": "Lunch", "type": "expense", "parent_id": food["id"]},
    )

    assert client.delete(f"/api/categories/{food['id']}").status_code == 409

    rule = client.put(
        "/api/budgets",
        json={"category_id": food["id"], "month": "2024-01", "limit_cents": 50_000},
    )
    assert rule.status_code == 200, rule.text

    budgets = client.get("/api/budgets", params={"month": "2024-02"}).json()
    [row] = budgets["rows"]
    assert row["limit_cents"] == 50_000
    assert row["utilization_bps"] == 0
    assert row["tier"] == "nominal"
    assert [c["name"] for c in row["children"]] == ["Food:Lunch"]

    assert client.get("/api/budgets", params={"month": "2024-1"}).status_code == 422
    assert client.get("/api/categories", params={"type": "bogus"}).status_code == 400
    names = [c["display_name"] for c in client.get("/api/categories").json()]
    assert names == ["Food", "Food:Lunch"]


def test_import_endpoint_reports_counts(client) -> None:
    checking = create_account(client, "Checking", type="checking")
    content = b"Date,Description,Amount\n03/01/2024,Payroll,100.00\n03/02/2024,Cafe,-4.00\n"

    first = client.post(
        "/api/import",
        files={"file": ("statement.csv", content, "text/csv")},
        data={"account_id": str(checking)},
    )
    second = client.post(
        "/api/import",
        files={"file": ("statement.csv", content, "text/csv")},
        data={"account_id": str(checking)},
    )

    assert first.status_code == 200, first.text
    assert (first.json()["imported"], first.json()["skipped"]) == (2, 0)
    assert (second.json()["imported"], second.json()["skipped"]) == (0, 2)
    assert first.json()["kind"] == "checking_savings"
