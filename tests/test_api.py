import pytest
from fastapi.testclient import TestClient

from cashpath import models
from cashpath.main import app, get_job_runner, get_session_factory, get_settings, get_suggester
from cashpath.recurring import RecurringJobRunner, RecurringWorker
from cashpath.settings import Settings

ADMIN = {"X-Admin-Token": "letmein"}


def admin_settings(token="letmein"):
    settings = Settings()
    settings.ADMIN_TOKEN = token
    return settings


@pytest.fixture
def client(session_factory, suggester):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_suggester] = lambda: suggester
    app.dependency_overrides[get_settings] = lambda: admin_settings()
    app.dependency_overrides[get_job_runner] = lambda: RecurringJobRunner(
        RecurringWorker(session_factory), max_workers=2, retries=1
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def setup(client):
    wallet = client.post("/wallets", json={"name": "Main", "type": "bank", "balance": 1_000_000}).json()
    category = client.post("/categories", json={"name": "Bills", "type": "expense"}).json()
    return wallet, category


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_demo_user_is_created_on_first_use(client, db):
    assert client.get("/wallets").json() == []
    assert db.query(models.User).count() == 1


def test_unknown_user_header_is_unauthorized(client):
    resp = client.get("/wallets", headers={"X-User-Id": "999"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "unauthorized"


def test_transaction_flow(client, setup):
    wallet, category = setup
    resp = client.post(
        "/transactions",
        json={
            "name": "Electricity",
            "type": "expense",
            "amount": 25_000,
            "date": "2025-03-01T00:00:00",
            "category_id": category["id"],
            "wallet_id": wallet["id"],
        },
    )
    assert resp.status_code == 200
    txn = resp.json()
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 975_000

    client.patch(f"/transactions/{txn['id']}", json={"amount": 30_000})
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 970_000

    page = client.get("/transactions", params={"type": "expense"}).json()
    assert page["total_count"] == 1
    stats = client.get("/transactions/stats").json()
    assert stats["total_expense"] == 30_000

    assert client.delete(f"/transactions/{txn['id']}").json() == {"success": True}
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 1_000_000
    assert client.get(f"/transactions/{txn['id']}").status_code == 404


def test_recurring_without_frequency_is_rejected(client, setup):
    wallet, category = setup
    resp = client.post(
        "/transactions",
        json={
            "name": "Netflix",
            "type": "expense",
            "amount": 100,
            "date": "2025-03-01T00:00:00",
            "category_id": category["id"],
            "wallet_id": wallet["id"],
            "is_recurring": True,
        },
    )
    assert resp.status_code == 422


def test_goal_flow(client, setup):
    wallet, _ = setup
    goal = client.post("/goals", json={"name": "Laptop", "target_amount": 2_000_000}).json()
    assert len(goal["milestones"]) == 4

    resp = client.post(f"/goals/{goal['id']}/add-amount", json={"wallet_id": wallet["id"], "amount": 1_200_000})
    assert resp.status_code == 400
    assert resp.json()["detail"] == {
        "code": "insufficient_funds",
        "message": "Insufficient wallet balance",
        "available": 1_000_000,
    }

    result = client.post(f"/goals/{goal['id']}/add-amount", json={"wallet_id": wallet["id"], "amount": 600_000}).json()
    assert result["goal"]["current_amount"] == 600_000
    assert result["goal"]["status"] == "active"
    assert result["newly_completed_milestones"] == [goal["milestones"][0]["id"]]
    assert result["is_goal_completed"] is False

    client.post(f"/goals/{goal['id']}/remove-amount", json={"wallet_id": wallet["id"], "amount": 100_000})
    history = client.get(f"/goals/{goal['id']}/transactions").json()
    assert [h["amount"] for h in history] == [600_000, 500_000]
    assert history[1]["wallet"]["name"] == "Main"

    regenerated = client.post(
        f"/goals/{goal['id']}/regenerate-milestones", json={"pace": "aggressive"}
    ).json()
    assert len(regenerated["milestones"]) == 3

    deleted = client.delete(f"/goals/{goal['id']}").json()
    assert deleted == {"success": True, "returned_amounts": {str(wallet["id"]): 500_000}}
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 1_000_000
    assert client.get(f"/goals/{goal['id']}").status_code == 404


def test_milestone_patch(client):
    goal = client.post("/goals", json={"name": "Trip", "target_amount": 1000, "milestone_pace": "relaxed"}).json()
    milestone_id = goal["milestones"][0]["id"]

    resp = client.patch(f"/milestones/{milestone_id}", json={"is_completed": True})
    assert resp.json()["is_completed"] is True
    assert resp.json()["completed_at"] is not None


def test_recurring_process_runs_in_background(client, setup, db):
    wallet, category = setup
    template = client.post(
        "/transactions",
        json={
            "name": "Gym",
            "type": "expense",
            "amount": 50,
            "date": "2020-01-01T00:00:00",
            "category_id": category["id"],
            "wallet_id": wallet["id"],
            "is_recurring": True,
            "frequency": "daily",
        },
    ).json()

    result = client.post("/recurring/process").json()
    assert result["processed"] == 1

    # background tasks have run by the time TestClient returns
    occurrences = (
        db.query(models.Transaction).filter(models.Transaction.recurring_template_id == template["id"]).all()
    )
    assert len(occurrences) == 1
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 1_000_000 - 100

    again = client.post("/admin/recurring/run", headers=ADMIN).json()
    assert again == {"processed": 0, "message": "No transactions due for processing today"}


def test_projection_endpoints(client):
    projections = client.get("/simulation/projections", params={"net_amount": 1000}).json()
    assert projections["five_year_with_interest"] == 64_996

    series = client.get("/simulation/projection-series", params={"yearly_amount": 100, "years": 3}).json()
    assert [p["year"] for p in series] == [0, 1, 2, 3]


def test_scenarios_api(client):
    created = client.post(
        "/scenarios",
        json={"name": "Side job", "items": [{"name": "Tutoring", "amount": 200, "type": "income"}]},
    ).json()
    assert created["projection_1_year"] == 2400

    updated = client.put(
        f"/scenarios/{created['id']}",
        json={"name": "Side job", "items": [{"name": "Tutoring", "amount": 300, "type": "income"}]},
    ).json()
    assert updated["net_monthly"] == 300

    assert len(client.get("/scenarios").json()) == 1
    client.delete(f"/scenarios/{created['id']}")
    assert client.get(f"/scenarios/{created['id']}").status_code == 404


def test_category_in_use(client, setup):
    wallet, category = setup
    client.post(
        "/transactions",
        json={
            "name": "Water",
            "type": "expense",
            "amount": 10,
            "date": "2025-03-01T00:00:00",
            "category_id": category["id"],
            "wallet_id": wallet["id"],
        },
    )
    resp = client.delete(f"/categories/{category['id']}")
    assert resp.status_code == 400
    assert resp.json()["detail"]["transaction_count"] == 1


def test_admin_run_needs_the_token(client):
    assert client.post("/admin/recurring/run").status_code == 401
    resp = client.post("/admin/recurring/run", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "unauthorized"
    assert client.post("/admin/recurring/run", headers=ADMIN).status_code == 200


def test_admin_run_is_off_without_configured_token(client):
    app.dependency_overrides[get_settings] = lambda: admin_settings(token=None)
    assert client.post("/admin/recurring/run", headers=ADMIN).status_code == 401


def create_expense(client, wallet, category, amount=100, **extra):
    payload = {
        "name": "Rent",
        "type": "expense",
        "amount": amount,
        "date": "2025-03-01T00:00:00",
        "category_id": category["id"],
        "wallet_id": wallet["id"],
    }
    payload.update(extra)
    return client.post("/transactions", json=payload).json()


def test_transaction_patch_with_nulls(client, setup):
    wallet, category = setup
    txn = create_expense(client, wallet, category, description="March")

    resp = client.patch(
        f"/transactions/{txn['id']}",
        json={"wallet_id": None, "category_id": None, "amount": None, "description": None},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert (body["wallet_id"], body["category_id"], body["amount"]) == (wallet["id"], category["id"], 100)
    assert body["description"] is None
    assert client.get(f"/wallets/{wallet['id']}").json()["balance"] == 1_000_000 - 100


def test_transaction_patch_recurring_flag(client, setup):
    wallet, category = setup
    one_off = create_expense(client, wallet, category)
    resp = client.patch(f"/transactions/{one_off['id']}", json={"is_recurring": True})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "validation_error"

    template = create_expense(client, wallet, category, is_recurring=True, frequency="monthly")
    resp = client.patch(f"/transactions/{template['id']}", json={"is_recurring": True, "amount": 150})
    assert resp.status_code == 200
    assert resp.json()["frequency"] == "monthly"

    resp = client.patch(f"/transactions/{one_off['id']}", json={"frequency": "weekly"})
    assert resp.json()["frequency"] is None


def test_goal_patch_with_nulls(client):
    goal = client.post(
        "/goals", json={"name": "Bike", "target_amount": 3000, "target_date": "2030-01-01T00:00:00"}
    ).json()

    resp = client.patch(f"/goals/{goal['id']}", json={"name": None, "status": None, "target_date": None})

    assert resp.status_code == 200
    assert resp.json()["name"] == "Bike"
    assert resp.json()["status"] == "active"
    assert resp.json()["target_date"] is None


def test_wallet_and_category_stats(client, setup):
    wallet, category = setup
    create_expense(client, wallet, category, amount=400)
    create_expense(client, wallet, category, amount=100, date="2025-02-10T00:00:00")

    stats = client.get("/wallets/stats").json()
    assert stats == [{"wallet_id": wallet["id"], "total_transactions": 2, "total_income": 0, "total_expense": 500}]

    breakdown = client.get(f"/wallets/{wallet['id']}/category-breakdown", params={"type": "expense"}).json()
    assert breakdown == [
        {"category_id": category["id"], "category_name": "Bills", "type": "expense", "total": 500, "count": 2}
    ]

    assert client.get(f"/wallets/{wallet['id']}/monthly-stats", params={"months": 13}).status_code == 422
    assert client.get(f"/wallets/{wallet['id']}/monthly-stats", params={"months": 12}).status_code == 200

    assert client.get("/categories/stats").json() == [
        {"category_id": category["id"], "total_transactions": 2, "total_amount": 500}
    ]
