from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER", "storefront-subscriptions")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
# Cron callers hold long-lived operator tokens; keep owner sessions short.
AUTOMATION_EXPIRES_MIN = int(os.getenv("AUTOMATION_TOKEN_EXPIRES_MIN", str(24 * 60)))

REQUIRED_CLAIMS = ["sub", "tenant_id", "exp", "iss"]


class TokenError(Exception):
    pass


def create_access_token(
    *,
    user_id: str,
    tenant_id: str,
    permissions: list[str] | None = None,
    is_platform_operator: bool = False,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    default_minutes = AUTOMATION_EXPIRES_MIN if is_platform_operator else JWT_EXPIRES_MIN
    payload: dict[str, Any] = {
        "iss": JWT_ISSUER,
        "sub": user_id,
        "tenant_id": tenant_id,
        "permissions": sorted(set(permissions or [])),
        "platform": is_platform_operator,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes or default_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    if not isinstance(decoded.get("permissions", []), list):
        raise TokenError("permissions claim must be a list")
    return decoded
