from __future__ import annotations

import asyncio
import os
import time
from uuid import uuid4

import httpx

PLATFORM_BOOTSTRAP_SECRET = os.getenv("PLATFORM_BOOTSTRAP_SECRET", "dev-platform-secret")


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def _login(client: httpx.AsyncClient, tenant_id: str, username: str, password: str) -> str:
    login_resp = await client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "username": username, "password": password},
    )
    assert_status(login_resp, 200)
    return login_resp.json()["access_token"]


async def bootstrap_operator(client: httpx.AsyncClient, prefix: str) -> str:
    run_id = uuid4().hex[:8]
    username = f"{prefix}-operator-{run_id}"
    password = f"pass-{run_id}"
    operator_resp = await client.post(
        "/api/identity/platform-operators",
        json={"bootstrap_secret": PLATFORM_BOOTSTRAP_SECRET, "username": username, "password": password},
    )
    assert_status(operator_resp, 201)
    return await _login(client, operator_resp.json()["tenant_id"], username, password)


async def create_tier(
    client: httpx.AsyncClient,
    operator_token: str,
    *,
    country: str,
    name: str,
    monthly_price_cents: int,
    tier_order: int = 0,
) -> str:
    tier_resp = await client.post(
        "/api/tiers",
        json={
            "name": name,
            "country": country,
            "currency": "USD",
            "monthly_price_cents": monthly_price_cents,
            "tier_order": tier_order,
        },
        headers=auth_headers(operator_token),
    )
    assert_status(tier_resp, 201)
    return tier_resp.json()["id"]


async def bootstrap_owner(client: httpx.AsyncClient, prefix: str, country: str) -> tuple[str, str]:
    run_id = uuid4().hex[:8]
    tenant_name = f"{prefix}-store-{run_id}"
    username = f"{prefix}-owner-{run_id}"
    password = f"pass-{run_id}"

    tenant_resp = await client.post("/api/identity/tenants", json={"name": tenant_name, "country": country})
    assert_status(tenant_resp, 201)
    tenant_id = tenant_resp.json()["id"]

    bootstrap_resp = await client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": username, "password": password},
    )
    assert_status(bootstrap_resp, 201)
    return tenant_id, await _login(client, tenant_id, username, password)
