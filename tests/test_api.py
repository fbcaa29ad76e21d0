from datetime import date

from fastapi.testclient import TestClient

from config import Settings
from database import Base, build_engine, build_session_factory
from dates import FixedClock
from errors import StoreUnavailable
from main import create_app


def make_client(today: date = date(2025, 10, 29)):
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = build_session_factory(engine)
    settings = Settings(
        database_url="sqlite://", timezone="UTC", fetch_retry_backoff_secs=0
    )
    app = create_app(
        factory, settings=settings, clock=FixedClock(today), start_scheduler=False
    )
    return TestClient(app), app


def test_account_lifecycle():
    client, _ = make_client()
    resp = client.post(
        "/api/accounts", json={"name": "Checking", "initial_balance_cents": 100_000}
    )
    assert resp.status_code == 201
    account = resp.json()
    assert account["balance_cents"] == 100_000
    assert account["reconciled_on"] == "2025-10-29"

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "expense",
            "amount_cents": 2_500,
            "date": "2025-10-20",
        },
    )
    assert resp.status_code == 201
    txn_id = resp.json()["id"]

    resp = client.post(f"/api/accounts/{account['id']}/recompute")
    assert resp.json() == {"account_id": account["id"], "balance_cents": 97_500}

    resp = client.delete(f"/api/transactions/{txn_id}")
    assert resp.status_code == 204
    assert client.get(f"/api/accounts/{account['id']}").json()["balance_cents"] == 100_000


def test_missing_resources_return_404():
    client, _ = make_client()
    assert client.get("/api/accounts/999").status_code == 404
    assert client.post("/api/accounts/999/recompute").status_code == 404
    assert client.get("/api/credit-cards/5/bills").status_code == 404


def test_validation_errors_return_400():
    client, _ = make_client()
    account = client.post("/api/accounts", json={"name": "Checking"}).json()
    resp = client.post(
        "/api/transfers",
        json={
            "from_account_id": account["id"],
            "to_account_id": account["id"],
            "amount_cents": 100,
        },
    )
    assert resp.status_code == 400
    assert "same account" in resp.json()["detail"]


def test_installment_preview():
    client, _ = make_client()
    resp = client.post(
        "/api/installments/preview",
        json={
            "total_cents": 10_003,
            "count": 3,
            "purchase_date": "2025-10-30",
            "closing_day": 30,
            "due_day": 10,
        },
    )
    assert resp.status_code == 200
    plan = resp.json()
    assert [item["amount_cents"] for item in plan] == [3_335, 3_334, 3_334]
    assert plan[0]["label"] == "1/3"
    assert (plan[0]["cycle_year"], plan[0]["cycle_month"]) == (2025, 11)
    assert plan[0]["due_date"] == "2025-12-10"
    assert plan[0]["bill_label"] == "December 2025"

    resp = client.post(
        "/api/installments/preview",
        json={
            "total_cents": 10_000,
            "count": 1,
            "purchase_date": "2025-10-30",
            "closing_day": 30,
        },
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/installments/preview",
        json={
            "total_cents": 10_000,
            "count": 100_000,
            "purchase_date": "2025-10-30",
            "closing_day": 30,
        },
    )
    assert resp.status_code == 422


def test_card_purchase_bills_and_payment():
    client, _ = make_client()
    account = client.post(
        "/api/accounts", json={"name": "Checking", "initial_balance_cents": 50_000}
    ).json()
    card = client.post(
        "/api/credit-cards",
        json={
            "account_id": account["id"],
            "name": "Visa",
            "closing_day": 30,
            "due_day": 10,
            "credit_limit_cents": 200_000,
        },
    ).json()

    resp = client.post(
        f"/api/credit-cards/{card['id']}/purchases",
        json={
            "amount_cents": 120_000,
            "purchase_date": "2025-10-29",
            "installments": 10,
            "description": "TV",
        },
    )
    assert resp.status_code == 201
    assert len(resp.json()) == 10

    card_view = client.get(f"/api/credit-cards/{card['id']}").json()
    assert card_view["used_limit_cents"] == 120_000
    assert card_view["available_limit_cents"] == 80_000

    bills = client.get(f"/api/credit-cards/{card['id']}/bills").json()
    assert bills[0]["label"] == "November 2025"
    assert bills[0]["total_cents"] == 12_000

    resp = client.post(
        f"/api/credit-cards/{card['id']}/bills/pay",
        json={
            "account_id": account["id"],
            "amount_cents": 12_000,
            "payment_date": "2025-10-29",
        },
    )
    assert resp.status_code == 201
    assert client.get(f"/api/accounts/{account['id']}").json()["balance_cents"] == 38_000


def test_card_subscription_and_recurring_run():
    client, _ = make_client()
    account = client.post("/api/accounts", json={"name": "Checking"}).json()
    card = client.post(
        "/api/credit-cards",
        json={
            "account_id": account["id"],
            "name": "Visa",
            "closing_day": 5,
            "due_day": 12,
            "credit_limit_cents": 10_000,
        },
    ).json()

    resp = client.post(
        f"/api/credit-cards/{card['id']}/subscriptions",
        json={"amount_cents": 1_500, "recurring_day": 15, "start_date": "2025-08-01"},
    )
    assert resp.status_code == 201
    template = resp.json()
    assert template["date"] == "2025-08-15"
    assert template["status"] == "pending"
    assert template["recurrence"] == "monthly"

    resp = client.post("/api/users/1/process-recurring")
    assert resp.json() == {"user_id": 1, "posted": 2}
    assert client.post("/api/users/1/process-recurring").json()["posted"] == 0
    card_view = client.get(f"/api/credit-cards/{card['id']}").json()
    assert card_view["used_limit_cents"] == 4_500

    resp = client.post(
        f"/api/credit-cards/{card['id']}/subscriptions",
        json={"amount_cents": 1_500, "recurring_day": 0, "start_date": "2025-08-01"},
    )
    assert resp.status_code == 422
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "expense",
            "amount_cents": 100,
            "date": "2025-10-01",
            "recurrence": "weekly",
        },
    )
    assert resp.status_code == 422


def test_user_level_recompute_and_process_due():
    client, _ = make_client()
    client.post("/api/accounts", json={"name": "Checking", "initial_balance_cents": 1_000})
    client.post("/api/accounts", json={"name": "Savings", "initial_balance_cents": 2_000})

    report = client.post("/api/users/1/recompute").json()
    assert report["succeeded"] == 2
    assert report["failed"] == 0

    resp = client.post("/api/users/1/process-due")
    assert resp.json() == {"user_id": 1, "accounts_updated": 0}


def test_store_outage_returns_503(monkeypatch):
    client, app = make_client()

    def unavailable(account_id):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(app.state.reconciler, "recompute", unavailable)
    assert client.post("/api/accounts/1/recompute").status_code == 503
