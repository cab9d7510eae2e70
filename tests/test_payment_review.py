from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from storefront import main as app_main
from storefront.api.deps import get_clock
from storefront.domain.models import AuditLog, EventEnvelope, EventRecord
from storefront.infra import audit, db
from storefront.infra.clock import FrozenClock, as_utc
from storefront.infra.events import INVOICE_APPROVED, SUBSCRIPTION_TRANSITIONED, event_bus

SIGNUP = datetime(2026, 10, 1, tzinfo=UTC)


@pytest.fixture()
def review_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "payment_review_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)

    clock = FrozenClock(SIGNUP)
    app_main.app.dependency_overrides[get_clock] = lambda: clock
    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, tenant_id: str, username: str, password: str) -> str:
    response = client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _operator_with_tiers(client: TestClient) -> tuple[str, str, str]:
    response = client.post(
        "/api/identity/platform-operators",
        json={"bootstrap_secret": "dev-platform-secret", "username": "reviewer", "password": "review-pass"},
    )
    assert response.status_code == 201
    token = _login(client, response.json()["tenant_id"], "reviewer", "review-pass")
    tier_ids = []
    for name, price, order in (("Starter", 1900, 0), ("Pro", 4900, 1)):
        tier_resp = client.post(
            "/api/tiers",
            json={"name": name, "country": "US", "currency": "USD", "monthly_price_cents": price, "tier_order": order},
            headers=_auth_header(token),
        )
        assert tier_resp.status_code == 201
        tier_ids.append(tier_resp.json()["id"])
    return token, tier_ids[0], tier_ids[1]


def _signup(client: TestClient, name: str) -> tuple[str, str]:
    tenant_resp = client.post("/api/identity/tenants", json={"name": name, "country": "US"})
    assert tenant_resp.status_code == 201
    tenant_id = tenant_resp.json()["id"]
    bootstrap_resp = client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": "owner", "password": "owner-pass"},
    )
    assert bootstrap_resp.status_code == 201
    return tenant_id, _login(client, tenant_id, "owner", "owner-pass")


def _request_invoice(client: TestClient, tenant_id: str, owner: str) -> dict:
    response = client.post(f"/api/subscriptions/tenants/{tenant_id}:renew", headers=_auth_header(owner))
    assert response.status_code == 201
    return response.json()


def _submit(client: TestClient, tenant_id: str, owner: str, invoice_id: str, receipt: str = "wire-1") -> None:
    response = client.post(
        f"/api/subscriptions/tenants/{tenant_id}/invoices/{invoice_id}:submit",
        json={"receipt_ref": receipt},
        headers=_auth_header(owner),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "SUBMITTED"


def test_approval_activates_subscription_and_emits_events(review_client: TestClient) -> None:
    operator, starter_id, _ = _operator_with_tiers(review_client)
    tenant_id, owner = _signup(review_client, "shop-approve")
    invoice = _request_invoice(review_client, tenant_id, owner)
    assert invoice["invoice_type"] == "TRIAL_CONVERSION"

    early_resp = review_client.post(
        f"/api/payment-reviews/invoices/{invoice['id']}:approve",
        json={},
        headers=_auth_header(operator),
    )
    assert early_resp.status_code == 409

    _submit(review_client, tenant_id, owner, invoice["id"], receipt=" wire-7788 ")

    seen: list[str] = []

    def handler(envelope: EventEnvelope) -> None:
        seen.append(envelope.event_type)

    event_bus.subscribe("*", handler)
    try:
        approve_resp = review_client.post(
            f"/api/payment-reviews/invoices/{invoice['id']}:approve",
            json={"reviewer_notes": "matched bank statement"},
            headers=_auth_header(operator),
        )
    finally:
        event_bus.unsubscribe("*", handler)
    assert approve_resp.status_code == 200
    decision = approve_resp.json()
    assert decision["invoice"]["status"] == "APPROVED"
    assert decision["invoice"]["receipt_ref"] == "wire-7788"
    assert decision["invoice"]["reviewer_notes"] == "matched bank statement"
    assert decision["invoice"]["reviewed_at"] is not None
    assert decision["subscription"]["status"] == "ACTIVE"
    assert decision["subscription"]["current_tier_id"] == starter_id
    ends_at = as_utc(datetime.fromisoformat(decision["subscription"]["subscription_ends_at"]))
    assert ends_at == SIGNUP + timedelta(days=30)
    assert seen == [INVOICE_APPROVED, SUBSCRIPTION_TRANSITIONED]

    again_resp = review_client.post(
        f"/api/payment-reviews/invoices/{invoice['id']}:approve",
        json={},
        headers=_auth_header(operator),
    )
    assert again_resp.status_code == 409

    engine = db.engine
    with Session(engine) as session:
        event_types = session.exec(select(EventRecord.event_type).where(EventRecord.tenant_id == tenant_id)).all()
        approvals = session.exec(select(AuditLog).where(AuditLog.action == "subscription.invoice.approve")).all()
    assert sorted(event_types) == sorted(
        [
            "subscription.invoice.issued",
            "subscription.invoice.submitted",
            "subscription.invoice.approved",
            "subscription.transitioned",
        ]
    )
    assert len(approvals) == 1
    assert approvals[0].tenant_id == tenant_id
    assert approvals[0].detail["who"]["platform"] is True
    assert approvals[0].detail["what"]["subscription_status"] == "ACTIVE"


def test_rejection_requires_notes_and_frees_the_period(review_client: TestClient) -> None:
    operator, _, _ = _operator_with_tiers(review_client)
    tenant_id, owner = _signup(review_client, "shop-reject")
    invoice = _request_invoice(review_client, tenant_id, owner)

    pending_reject = review_client.post(
        f"/api/payment-reviews/invoices/{invoice['id']}:reject",
        json={"reviewer_notes": "no receipt"},
        headers=_auth_header(operator),
    )
    assert pending_reject.status_code == 409

    _submit(review_client, tenant_id, owner, invoice["id"])

    blank_resp = review_client.post(
        f"/api/payment-reviews/invoices/{invoice['id']}:reject",
        json={"reviewer_notes": "   "},
        headers=_auth_header(operator),
    )
    assert blank_resp.status_code == 422

    reject_resp = review_client.post(
        f"/api/payment-reviews/invoices/{invoice['id']}:reject",
        json={"reviewer_notes": "amount does not match"},
        headers=_auth_header(operator),
    )
    assert reject_resp.status_code == 200
    assert reject_resp.json()["status"] == "REJECTED"

    sub_resp = review_client.get(f"/api/subscriptions/tenants/{tenant_id}", headers=_auth_header(owner))
    assert sub_resp.json()["status"] == "TRIAL"
    assert sub_resp.json()["version"] == 2

    retry = _request_invoice(review_client, tenant_id, owner)
    assert retry["id"] != invoice["id"]
    assert retry["billing_period_start"] == invoice["billing_period_start"]
    assert retry["invoice_number"] > invoice["invoice_number"]


def test_submit_requires_receipt_reference(review_client: TestClient) -> None:
    _operator_with_tiers(review_client)
    tenant_id, owner = _signup(review_client, "shop-receipt")
    invoice = _request_invoice(review_client, tenant_id, owner)
    response = review_client.post(
        f"/api/subscriptions/tenants/{tenant_id}/invoices/{invoice['id']}:submit",
        json={"receipt_ref": ""},
        headers=_auth_header(owner),
    )
    assert response.status_code == 422


def test_review_queue_filters(review_client: TestClient) -> None:
    operator, _, _ = _operator_with_tiers(review_client)
    tenant_a, owner_a = _signup(review_client, "shop-queue-a")
    tenant_b, owner_b = _signup(review_client, "shop-queue-b")
    invoice_a = _request_invoice(review_client, tenant_a, owner_a)
    invoice_b = _request_invoice(review_client, tenant_b, owner_b)
    _submit(review_client, tenant_b, owner_b, invoice_b["id"])

    submitted = review_client.get(
        "/api/payment-reviews/invoices?status=SUBMITTED",
        headers=_auth_header(operator),
    ).json()
    assert [item["id"] for item in submitted] == [invoice_b["id"]]

    by_tenant = review_client.get(
        f"/api/payment-reviews/invoices?tenant_id={tenant_a}",
        headers=_auth_header(operator),
    ).json()
    assert [item["id"] for item in by_tenant] == [invoice_a["id"]]

    newest_first = review_client.get("/api/payment-reviews/invoices", headers=_auth_header(operator)).json()
    assert [item["id"] for item in newest_first] == [invoice_b["id"], invoice_a["id"]]

    detail_resp = review_client.get(
        f"/api/payment-reviews/invoices/{invoice_a['id']}",
        headers=_auth_header(operator),
    )
    assert detail_resp.status_code == 200
    assert detail_resp.json()["tenant_id"] == tenant_a

    owner_queue = review_client.get("/api/payment-reviews/invoices", headers=_auth_header(owner_a))
    assert owner_queue.status_code == 403

    owner_approve = review_client.post(
        f"/api/payment-reviews/invoices/{invoice_b['id']}:approve",
        json={},
        headers=_auth_header(owner_b),
    )
    assert owner_approve.status_code == 403

    cross_tenant_submit = review_client.post(
        f"/api/subscriptions/tenants/{tenant_a}/invoices/{invoice_b['id']}:submit",
        json={"receipt_ref": "wire-x"},
        headers=_auth_header(owner_a),
    )
    assert cross_tenant_submit.status_code == 404


def test_approval_rolls_back_when_subscription_cannot_transition(review_client: TestClient) -> None:
    operator, starter_id, pro_id = _operator_with_tiers(review_client)
    tenant_id, owner = _signup(review_client, "shop-atomic")
    conversion = _request_invoice(review_client, tenant_id, owner)
    _submit(review_client, tenant_id, owner, conversion["id"])
    activate = review_client.post(
        f"/api/payment-reviews/invoices/{conversion['id']}:approve",
        json={},
        headers=_auth_header(operator),
    )
    assert activate.status_code == 200

    upgrade_resp = review_client.post(
        f"/api/subscriptions/tenants/{tenant_id}:change-tier",
        json={"new_tier_id": pro_id},
        headers=_auth_header(owner),
    )
    assert upgrade_resp.status_code == 201
    upgrade = upgrade_resp.json()

    pause_resp = review_client.post(f"/api/subscriptions/tenants/{tenant_id}:pause", headers=_auth_header(owner))
    assert pause_resp.status_code == 200
    _submit(review_client, tenant_id, owner, upgrade["id"])

    approve_resp = review_client.post(
        f"/api/payment-reviews/invoices/{upgrade['id']}:approve",
        json={},
        headers=_auth_header(operator),
    )
    assert approve_resp.status_code == 409

    invoice_resp = review_client.get(
        f"/api/payment-reviews/invoices/{upgrade['id']}",
        headers=_auth_header(operator),
    )
    assert invoice_resp.json()["status"] == "SUBMITTED"
    assert invoice_resp.json()["reviewed_by"] is None

    record = review_client.get(f"/api/subscriptions/tenants/{tenant_id}", headers=_auth_header(owner)).json()
    assert record["status"] == "PAUSED"
    assert record["current_tier_id"] == starter_id
