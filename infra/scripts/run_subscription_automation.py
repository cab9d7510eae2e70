from __future__ import annotations

import asyncio
import os
import sys

import httpx
from demo_common import assert_status, auth_headers, wait_ok


async def _run() -> int:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    token = os.getenv("AUTOMATION_TOKEN")
    if not token:
        print("AUTOMATION_TOKEN is required", file=sys.stderr)
        return 2

    async with httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(120.0)) as client:
        await wait_ok(client, "/healthz")
        run_resp = await client.post("/api/automation/subscriptions:run", headers=auth_headers(token))
        assert_status(run_resp, 200)
        body = run_resp.json()

    print(
        "subscription automation as_of={as_of} invoices={invoices} transitions={transitions} "
        "skipped={skipped} concurrent={concurrent} errors={errors}".format(
            as_of=body["as_of"],
            invoices=body["invoices_created"],
            transitions=body["transitions"],
            skipped=body["skipped_duplicates"],
            concurrent=body["skipped_concurrent"],
            errors=len(body["errors"]),
        )
    )
    return 1 if body["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_run()))
