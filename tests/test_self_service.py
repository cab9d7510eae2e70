from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from storefront import main as app_main
from storefront.api.deps import get_clock
from storefront.domain.models import AuditLog
from storefront.infra import audit, db, redis_state
from storefront.infra.clock import FrozenClock, as_utc

SIGNUP = datetime(2026, 10, 1, tzinfo=UTC)


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        return True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def ping(self) -> bool:
        return True


@dataclass
class Storefront:
    client: TestClient
    clock: FrozenClock
    operator: str
    tiers: dict[str, str]


@pytest.fixture()
def storefront(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Storefront, None, None]:
    db_path = tmp_path / "self_service_test.db"
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
    fake_redis = FakeRedis()
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)

    clock = FrozenClock(SIGNUP)
    app_main.app.dependency_overrides[get_clock] = lambda: clock
    client = TestClient(app_main.app)

    operator_resp = client.post(
        "/api/identity/platform-operators",
        json={"bootstrap_secret": "dev-platform-secret", "username": "ops", "password": "ops-pass"},
    )
    assert operator_resp.status_code == 201
    operator = _login(client, operator_resp.json()["tenant_id"], "ops", "ops-pass")
    tiers: dict[str, str] = {}
    for name, country, price, order in (
        ("Lite", "US", 900, 0),
        ("Starter", "US", 1900, 1),
        ("Pro", "US", 4900, 2),
        ("Plus", "US", 1900, 3),
        ("Pro-DE", "DE", 4500, 0),
    ):
        tier_resp = client.post(
            "/api/tiers",
            json={
                "name": name,
                "country": country,
                "currency": "USD" if country == "US" else "EUR",
                "monthly_price_cents": price,
                "tier_order": order,
            },
            headers=_auth_header(operator),
        )
        assert tier_resp.status_code == 201
        tiers[name] = tier_resp.json()["id"]

    yield Storefront(client=client, clock=clock, operator=operator, tiers=tiers)
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


def _signup(env: Storefront, name: str, tier: str = "Starter") -> tuple[str, str]:
    tenant_resp = env.client.post(
        "/api/identity/tenants",
        json={"name": name, "country": "US", "tier_id": env.tiers[tier]},
    )
    assert tenant_resp.status_code == 201
    tenant_id = tenant_resp.json()["id"]
    bootstrap_resp = env.client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": "owner", "password": "owner-pass"},
    )
    assert bootstrap_resp.status_code == 201
    return tenant_id, _login(env.client, tenant_id, "owner", "owner-pass")


def _pay(env: Storefront, tenant_id: str, owner: str, invoice_id: str) -> dict:
    submit_resp = env.client.post(
        f"/api/subscriptions/tenants/{tenant_id}/invoices/{invoice_id}:submit",
        json={"receipt_ref": f"wire-{invoice_id[:8]}"},
        headers=_auth_header(owner),
    )
    assert submit_resp.status_code == 200
    approve_resp = env.client.post(
        f"/api/payment-reviews/invoices/{invoice_id}:approve",
        json={},
        headers=_auth_header(env.operator),
    )
    assert approve_resp.status_code == 200
    return approve_resp.json()["subscription"]


def _activate(env: Storefront, name: str, tier: str = "Starter") -> tuple[str, str]:
    tenant_id, owner = _signup(env, name, tier)
    renew_resp = env.client.post(f"/api/subscriptions/tenants/{tenant_id}:renew", headers=_auth_header(owner))
    assert renew_resp.status_code == 201
    record = _pay(env, tenant_id, owner, renew_resp.json()["id"])
    assert record["status"] == "ACTIVE"
    return tenant_id, owner


def _post(env: Storefront, token: str, path: str, payload: dict | None = None):
    return env.client.post(path, json=payload, headers=_auth_header(token))


def _ts(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))


def test_renewal_request_from_trial_is_a_conversion(storefront: Storefront) -> None:
    tenant_id, owner = _signup(storefront, "shop-convert")
    first = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:renew")
    assert first.status_code == 201
    invoice = first.json()
    assert invoice["invoice_type"] == "TRIAL_CONVERSION"
    assert invoice["created_by"] != "system"
    assert _ts(invoice["billing_period_start"]) == SIGNUP + timedelta(days=15)

    duplicate = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:renew")
    assert duplicate.status_code == 409

    tier_change = _post(
        storefront,
        owner,
        f"/api/subscriptions/tenants/{tenant_id}:change-tier",
        {"new_tier_id": storefront.tiers["Pro"]},
    )
    assert tier_change.status_code == 409


def test_early_renewal_bills_from_current_end(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-early")
    renewal = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:renew")
    assert renewal.status_code == 201
    assert renewal.json()["invoice_type"] == "RENEWAL"
    assert _ts(renewal.json()["billing_period_start"]) == SIGNUP + timedelta(days=30)

    duplicate = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:renew")
    assert duplicate.status_code == 409


def test_upgrade_and_downgrade_requests(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-upgrade")
    change_path = f"/api/subscriptions/tenants/{tenant_id}:change-tier"

    same_tier = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Starter"]})
    assert same_tier.status_code == 422
    same_price = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Plus"]})
    assert same_price.status_code == 422
    foreign = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Pro-DE"]})
    assert foreign.status_code == 422
    missing = _post(storefront, owner, change_path, {"new_tier_id": "no-such-tier"})
    assert missing.status_code == 404

    upgrade = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Pro"]})
    assert upgrade.status_code == 201
    invoice = upgrade.json()
    assert invoice["invoice_type"] == "UPGRADE"
    assert invoice["amount_cents"] == 4900
    assert invoice["previous_tier_id"] == storefront.tiers["Starter"]
    assert _ts(invoice["due_date"]) == SIGNUP + timedelta(days=7)

    second = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Lite"]})
    assert second.status_code == 409

    storefront.clock.advance(days=3)
    record = _pay(storefront, tenant_id, owner, invoice["id"])
    assert record["current_tier_id"] == storefront.tiers["Pro"]
    assert _ts(record["subscription_ends_at"]) == storefront.clock() + timedelta(days=30)

    downgrade = _post(storefront, owner, change_path, {"new_tier_id": storefront.tiers["Lite"]})
    assert downgrade.status_code == 201
    assert downgrade.json()["invoice_type"] == "DOWNGRADE"
    assert downgrade.json()["amount_cents"] == 900
    assert downgrade.json()["previous_tier_id"] == storefront.tiers["Pro"]

    storefront.clock.advance(days=5)
    downgraded = _pay(storefront, tenant_id, owner, downgrade.json()["id"])
    assert downgraded["status"] == "ACTIVE"
    assert downgraded["current_tier_id"] == storefront.tiers["Lite"]
    assert _ts(downgraded["subscription_ends_at"]) == storefront.clock() + timedelta(days=30)


def test_retired_tier_cannot_be_requested(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-retired")
    retire = storefront.client.patch(
        f"/api/tiers/{storefront.tiers['Pro']}",
        json={"is_active": False},
        headers=_auth_header(storefront.operator),
    )
    assert retire.status_code == 200
    response = _post(
        storefront,
        owner,
        f"/api/subscriptions/tenants/{tenant_id}:change-tier",
        {"new_tier_id": storefront.tiers["Pro"]},
    )
    assert response.status_code == 422


def test_pause_and_resume(storefront: Storefront) -> None:
    trial_id, trial_owner = _signup(storefront, "shop-trial-pause")
    trial_pause = _post(storefront, trial_owner, f"/api/subscriptions/tenants/{trial_id}:pause")
    assert trial_pause.status_code == 409

    tenant_id, owner = _activate(storefront, "shop-pause")
    pause = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:pause")
    assert pause.status_code == 200
    assert pause.json()["status"] == "PAUSED"
    assert pause.json()["paused_at"] is not None

    double_pause = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:pause")
    assert double_pause.status_code == 409

    resume = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:resume")
    assert resume.status_code == 200
    assert resume.json()["status"] == "ACTIVE"
    assert resume.json()["paused_at"] is None

    assert _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:pause").status_code == 200
    storefront.clock.advance(days=40)
    run = _post(storefront, storefront.operator, "/api/automation/subscriptions:run")
    assert run.status_code == 200
    paused = storefront.client.get(f"/api/subscriptions/tenants/{tenant_id}", headers=_auth_header(owner))
    assert paused.json()["status"] == "PAUSED"
    invoices = storefront.client.get(
        f"/api/subscriptions/tenants/{tenant_id}/invoices",
        headers=_auth_header(owner),
    )
    assert [item["invoice_type"] for item in invoices.json()] == ["TRIAL_CONVERSION"]

    with Session(db.engine) as session:
        audited = session.exec(select(AuditLog).where(AuditLog.action == "subscription.pause")).all()
    assert len(audited) == 2
    assert audited[0].tenant_id == tenant_id
    assert audited[0].detail["what"]["status"] == "PAUSED"


def test_expired_pause_requires_renewal(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-expired-pause")
    assert _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:pause").status_code == 200

    storefront.clock.set(SIGNUP + timedelta(days=31))
    resume = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:resume")
    assert resume.status_code == 409
    detail = resume.json()["detail"]
    assert detail["code"] == "subscription_expired"
    assert detail["action"] == "renew"

    renewal = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:renew")
    assert renewal.status_code == 201
    assert renewal.json()["invoice_type"] == "RENEWAL"
    assert _ts(renewal.json()["billing_period_start"]) == storefront.clock()

    record = _pay(storefront, tenant_id, owner, renewal.json()["id"])
    assert record["status"] == "ACTIVE"
    assert record["paused_at"] is None
    assert _ts(record["subscription_ends_at"]) == storefront.clock() + timedelta(days=30)


def test_cannot_pause_lapsed_subscription(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-lapsed")
    storefront.clock.set(SIGNUP + timedelta(days=30, minutes=1))
    response = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:pause")
    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot pause - subscription already expired"


def test_cancel_is_terminal(storefront: Storefront) -> None:
    tenant_id, owner = _activate(storefront, "shop-cancel")
    cancel = _post(
        storefront,
        owner,
        f"/api/subscriptions/tenants/{tenant_id}:cancel",
        {"reason": " closing the shop "},
    )
    assert cancel.status_code == 200
    record = cancel.json()
    assert record["status"] == "CANCELLED"
    assert record["cancellation_reason"] == "closing the shop"
    assert record["cancelled_at"] is not None

    for action in (":pause", ":resume", ":renew"):
        response = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}{action}")
        assert response.status_code == 409
    again = _post(storefront, owner, f"/api/subscriptions/tenants/{tenant_id}:cancel", {})
    assert again.status_code == 409

    storefront.clock.advance(days=60)
    run = _post(storefront, storefront.operator, "/api/automation/subscriptions:run")
    assert run.json()["transitions"] == {}


def test_owner_is_scoped_to_own_tenant(storefront: Storefront) -> None:
    tenant_a, owner_a = _signup(storefront, "shop-scope-a")
    tenant_b, _ = _signup(storefront, "shop-scope-b")

    own = storefront.client.get(f"/api/subscriptions/tenants/{tenant_a}", headers=_auth_header(owner_a))
    assert own.status_code == 200
    other = storefront.client.get(f"/api/subscriptions/tenants/{tenant_b}", headers=_auth_header(owner_a))
    assert other.status_code == 404
    other_invoices = storefront.client.get(
        f"/api/subscriptions/tenants/{tenant_b}/invoices",
        headers=_auth_header(owner_a),
    )
    assert other_invoices.status_code == 404
    other_pause = _post(storefront, owner_a, f"/api/subscriptions/tenants/{tenant_b}:pause")
    assert other_pause.status_code == 404

    operator_view = storefront.client.get(
        f"/api/subscriptions/tenants/{tenant_b}",
        headers=_auth_header(storefront.operator),
    )
    assert operator_view.status_code == 200
    assert operator_view.json()["status"] == "TRIAL"
