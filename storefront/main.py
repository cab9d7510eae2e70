from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException

from storefront.api.routers import automation, identity, payment_reviews, subscriptions, tiers
from storefront.infra.audit import AuditMiddleware
from storefront.infra.db import check_db_ready
from storefront.infra.redis_state import check_redis_ready

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title="storefront-subscriptions",
    description="Subscription lifecycle and invoicing automation for multi-tenant storefronts.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(tiers.router, prefix="/api/tiers", tags=["tiers"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(payment_reviews.router, prefix="/api/payment-reviews", tags=["payment-reviews"])
app.include_router(automation.router, prefix="/api/automation", tags=["automation"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
