from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from storefront.domain.models import AuditLog, now_utc
from storefront.infra.db import engine

logger = logging.getLogger(__name__)

AUDITED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SKIPPED_PATHS = frozenset({"/healthz", "/readyz", "/api/identity/dev-login"})
_STATE_KEY = "subscription_audit"


@dataclass
class AuditContext:
    action: str | None = None
    resource: str | None = None
    # Tenant whose subscription the request touched. Operators act from the
    # platform tenant, so the row is filed under the subject instead.
    subject_tenant_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _context(request: Request) -> AuditContext:
    ctx = getattr(request.state, _STATE_KEY, None)
    if not isinstance(ctx, AuditContext):
        ctx = AuditContext()
        setattr(request.state, _STATE_KEY, ctx)
    return ctx


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    tenant_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Annotate the current request; repeated calls merge into the same context."""
    ctx = _context(request)
    if action is not None:
        ctx.action = action
    if resource is not None:
        ctx.resource = resource
    if tenant_id is not None:
        ctx.subject_tenant_id = tenant_id
    if detail:
        ctx.detail = _merge(ctx.detail, detail)


def classify_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code == 409:
        return "conflict"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def build_audit_log(request: Request, status_code: int) -> AuditLog:
    ctx = _context(request)
    claims = getattr(request.state, "claims", {}) or {}
    actor_tenant_id = claims.get("tenant_id", "system")
    path = request.url.path
    base: dict[str, Any] = {
        "who": {
            "tenant_id": actor_tenant_id,
            "actor_id": claims.get("sub"),
            "platform": bool(claims.get("platform", False)),
        },
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": path,
            "client_ip": request.client.host if request.client is not None else None,
        },
        "result": {"status_code": status_code, "outcome": classify_outcome(status_code)},
    }
    return AuditLog(
        tenant_id=ctx.subject_tenant_id or actor_tenant_id,
        actor_id=claims.get("sub"),
        action=ctx.action or f"{request.method}:{path}",
        resource=ctx.resource or path,
        method=request.method,
        status_code=status_code,
        detail=_merge(base, ctx.detail),
    )


class AuditMiddleware(BaseHTTPMiddleware):
    """Persists one audit row per state-changing request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.method not in AUDITED_METHODS or request.url.path in SKIPPED_PATHS:
            return response
        row = build_audit_log(request, response.status_code)
        try:
            with Session(engine) as session:
                session.add(row)
                session.commit()
        except Exception:
            logger.exception("audit write failed action=%s resource=%s", row.action, row.resource)
        return response
