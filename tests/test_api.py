from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base, utcnow
from errors import ExternalServiceError
from identity import issue_session_token
from ratelimit import TokenBucketLimiter
from schemas import ReceiptDraft
from services import UserService


class StubScanner:
    def __init__(self, error: bool = False) -> None:
        self.error = error

    def scan(self, image: bytes, mime_type: str) -> ReceiptDraft:
        if self.error:
            raise ExternalServiceError("Failed to scan receipt")
        return ReceiptDraft(
            amount=Decimal("12.30"),
            date=datetime(2025, 2, 1),
            description="Lunch",
            merchantName="Deli",
            category="food",
        )


@pytest.fixture()
def client(monkeypatch):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    with factory() as session:
        UserService(session).ensure("alice", "alice@example.com", "Alice")
        UserService(session).ensure("bob", "bob@example.com", "Bob")

    monkeypatch.setattr(
        main, "rate_limiter", TokenBucketLimiter(capacity=100, refill_per_hour=100)
    )
    main.app.dependency_overrides[main.get_db] = override_db
    main.app.dependency_overrides[main.get_receipt_scanner] = lambda: StubScanner()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(external_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(external_id)}"}


def _create_account(client, who="alice", **extra) -> dict:
    resp = client.post("/api/accounts", json={"name": "Main", **extra}, headers=auth(who))
    assert resp.status_code == 201
    return resp.json()


def _txn_body(account_id: int, **extra) -> dict:
    body = {
        "account_id": account_id,
        "type": "EXPENSE",
        "amount": "42.50",
        "date": "2025-01-15T12:00:00",
        "category": "food",
    }
    body.update(extra)
    return body


def test_requires_identity(client) -> None:
    assert client.get("/api/accounts").status_code == 401
    resp = client.get("/api/accounts", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Unauthorized"}


def test_create_transaction_updates_balance_and_signals_views(client) -> None:
    account = _create_account(client, opening_balance="100.00")
    resp = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("alice")
    )
    assert resp.status_code == 201
    assert resp.headers["HX-Trigger"] == "transactions-changed"
    assert resp.headers["X-Invalidate-Paths"] == f"/account/{account['id']},/dashboard"
    assert resp.json()["version"] == 1

    accounts = client.get("/api/accounts", headers=auth("alice")).json()
    assert Decimal(accounts[0]["balance"]) == Decimal("57.50")


def test_update_delete_and_restore(client) -> None:
    account = _create_account(client)
    txn = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("alice")
    ).json()

    resp = client.put(
        f"/api/transactions/{txn['id']}",
        json=_txn_body(account["id"], type="INCOME"),
        headers=auth("alice"),
    )
    assert resp.status_code == 200
    balance = client.get("/api/accounts", headers=auth("alice")).json()[0]["balance"]
    assert Decimal(balance) == Decimal("42.50")

    resp = client.delete(f"/api/transactions/{txn['id']}", headers=auth("alice"))
    assert resp.status_code == 204
    assert resp.headers["HX-Trigger"] == "transactions-changed"
    assert client.get(
        f"/api/transactions/{txn['id']}", headers=auth("alice")
    ).status_code == 404

    resp = client.post(f"/api/transactions/{txn['id']}/restore", headers=auth("alice"))
    assert resp.status_code == 200
    listed = client.get("/api/transactions", headers=auth("alice")).json()
    assert [item["id"] for item in listed] == [txn["id"]]


def test_other_users_data_is_not_found(client) -> None:
    account = _create_account(client, who="alice")
    _create_account(client, who="bob")
    resp = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("bob")
    )
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Account not found"}


def test_validation_errors(client) -> None:
    account = _create_account(client)
    resp = client.post(
        "/api/transactions",
        json=_txn_body(account["id"], is_recurring=True),
        headers=auth("alice"),
    )
    assert resp.status_code == 422
    resp = client.post(
        "/api/transactions",
        json=_txn_body(account["id"], amount="-5"),
        headers=auth("alice"),
    )
    assert resp.status_code == 422
    resp = client.post(
        "/api/transactions",
        json=_txn_body(account["id"], recurring_interval="FORTNIGHTLY", is_recurring=True),
        headers=auth("alice"),
    )
    assert resp.status_code == 422


def test_rate_limited_create(client, monkeypatch) -> None:
    monkeypatch.setattr(
        main, "rate_limiter", TokenBucketLimiter(capacity=1, refill_per_hour=0)
    )
    account = _create_account(client)
    first = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("alice")
    )
    second = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("alice")
    )
    assert first.status_code == 201
    assert second.status_code == 429
    balance = client.get("/api/accounts", headers=auth("alice")).json()[0]["balance"]
    assert Decimal(balance) == Decimal("-42.50")


def test_budget_round_trip(client) -> None:
    account = _create_account(client)
    client.post(
        "/api/transactions",
        json=_txn_body(account["id"], date=utcnow().isoformat()),
        headers=auth("alice"),
    )
    assert client.get("/api/budget", headers=auth("alice")).json()["budget"] is None

    resp = client.put("/api/budget", json={"amount": "500.00"}, headers=auth("alice"))
    assert resp.status_code == 200
    status = client.get("/api/budget", headers=auth("alice")).json()
    assert Decimal(status["budget"]["amount"]) == Decimal("500.00")
    assert Decimal(status["current_expenses"]) == Decimal("42.50")
    assert status["account_id"] == account["id"]


def test_receipt_scan(client) -> None:
    files = {"file": ("r.png", b"\x89PNG data", "image/png")}
    resp = client.post("/api/receipts/scan", files=files, headers=auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["merchantName"] == "Deli"

    files = {"file": ("r.txt", b"hello", "text/plain")}
    resp = client.post("/api/receipts/scan", files=files, headers=auth("alice"))
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Please upload an image file"}

    files = {"file": ("big.png", b"x" * (5 * 1024 * 1024 + 1), "image/png")}
    resp = client.post("/api/receipts/scan", files=files, headers=auth("alice"))
    assert resp.status_code == 400


def test_receipt_scan_failure_is_bad_gateway(client) -> None:
    main.app.dependency_overrides[main.get_receipt_scanner] = lambda: StubScanner(
        error=True
    )
    files = {"file": ("r.png", b"\x89PNG data", "image/png")}
    resp = client.post("/api/receipts/scan", files=files, headers=auth("alice"))
    assert resp.status_code == 502
    assert resp.json() == {"detail": "Failed to scan receipt"}


def test_new_identity_is_provisioned_on_first_request(client) -> None:
    headers = {
        "Authorization": "Bearer "
        + issue_session_token("carol", email="carol@example.com", name="Carol")
    }
    resp = client.post("/api/accounts", json={"name": "Wallet"}, headers=headers)
    assert resp.status_code == 201
    assert resp.json()["is_default"] is True

    again = client.get("/api/accounts", headers=headers).json()
    assert [item["name"] for item in again] == ["Wallet"]

    # Without an email claim an unknown identity stays anonymous.
    resp = client.get("/api/accounts", headers=auth("dave"))
    assert resp.status_code == 401


def test_account_audit_matches_history(client) -> None:
    account = _create_account(client, opening_balance="250.00")
    client.post("/api/transactions", json=_txn_body(account["id"]), headers=auth("alice"))

    resp = client.get(f"/api/accounts/{account['id']}/audit", headers=auth("alice"))
    assert resp.status_code == 200
    audit = resp.json()
    assert Decimal(audit["balance"]) == Decimal("207.50")
    assert Decimal(audit["computed_balance"]) == Decimal("207.50")
    assert audit["in_sync"] is True

    resp = client.get(f"/api/accounts/{account['id']}/audit", headers=auth("bob"))
    assert resp.status_code == 404


def test_update_with_stale_version_conflicts(client) -> None:
    account = _create_account(client)
    txn = client.post(
        "/api/transactions", json=_txn_body(account["id"]), headers=auth("alice")
    ).json()

    first = client.put(
        f"/api/transactions/{txn['id']}",
        json=_txn_body(account["id"], amount="50.00", version=txn["version"]),
        headers=auth("alice"),
    )
    assert first.status_code == 200
    assert first.json()["version"] == txn["version"] + 1

    second = client.put(
        f"/api/transactions/{txn['id']}",
        json=_txn_body(account["id"], amount="99.00", version=txn["version"]),
        headers=auth("alice"),
    )
    assert second.status_code == 409
    balance = client.get("/api/accounts", headers=auth("alice")).json()[0]["balance"]
    assert Decimal(balance) == Decimal("-50.00")
