from __future__ import annotations

import asyncio
import os

import httpx
from demo_common import (
    assert_status,
    auth_headers,
    bootstrap_operator,
    bootstrap_owner,
    create_tier,
    wait_ok,
)


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")
        await wait_ok(client, "/readyz")

        operator_token = await bootstrap_operator(client, "lifecycle")
        country = "US"
        await create_tier(client, operator_token, country=country, name="Starter", monthly_price_cents=1900)
        pro_tier_id = await create_tier(
            client,
            operator_token,
            country=country,
            name="Pro",
            monthly_price_cents=4900,
            tier_order=1,
        )

        tenant_id, owner_token = await bootstrap_owner(client, "lifecycle", country)
        sub_resp = await client.get(f"/api/subscriptions/tenants/{tenant_id}", headers=auth_headers(owner_token))
        assert_status(sub_resp, 200)
        if sub_resp.json()["status"] != "TRIAL":
            raise RuntimeError("expected new tenant to start in TRIAL")

        renew_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}:renew",
            headers=auth_headers(owner_token),
        )
        assert_status(renew_resp, 201)
        conversion = renew_resp.json()
        if conversion["invoice_type"] != "TRIAL_CONVERSION":
            raise RuntimeError("expected a trial conversion invoice")

        submit_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}/invoices/{conversion['id']}:submit",
            json={"receipt_ref": "bank-transfer-0001"},
            headers=auth_headers(owner_token),
        )
        assert_status(submit_resp, 200)

        approve_resp = await client.post(
            f"/api/payment-reviews/invoices/{conversion['id']}:approve",
            json={"reviewer_notes": "receipt matched"},
            headers=auth_headers(operator_token),
        )
        assert_status(approve_resp, 200)
        if approve_resp.json()["subscription"]["status"] != "ACTIVE":
            raise RuntimeError("expected subscription to be ACTIVE after approval")

        upgrade_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}:change-tier",
            json={"new_tier_id": pro_tier_id},
            headers=auth_headers(owner_token),
        )
        assert_status(upgrade_resp, 201)
        if upgrade_resp.json()["invoice_type"] != "UPGRADE":
            raise RuntimeError("expected an upgrade invoice")

        duplicate_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}:change-tier",
            json={"new_tier_id": pro_tier_id},
            headers=auth_headers(owner_token),
        )
        assert_status(duplicate_resp, 409)

        run_resp = await client.post("/api/automation/subscriptions:run", headers=auth_headers(operator_token))
        assert_status(run_resp, 200)
        last_run_resp = await client.get(
            "/api/automation/subscriptions/last-run",
            headers=auth_headers(operator_token),
        )
        assert_status(last_run_resp, 200)

        pause_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}:pause",
            headers=auth_headers(owner_token),
        )
        assert_status(pause_resp, 200)
        resume_resp = await client.post(
            f"/api/subscriptions/tenants/{tenant_id}:resume",
            headers=auth_headers(owner_token),
        )
        assert_status(resume_resp, 200)
        if resume_resp.json()["status"] != "ACTIVE":
            raise RuntimeError("expected subscription to resume to ACTIVE")

    print("demo_subscription_lifecycle: ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
