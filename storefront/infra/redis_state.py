from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

AUTOMATION_LAST_RUN_KEY = "automation:subscriptions:last_run"
AUTOMATION_LAST_RUN_TTL_SECONDS = int(os.getenv("AUTOMATION_LAST_RUN_TTL_SECONDS", str(7 * 24 * 3600)))


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def store_automation_run(payload: str) -> None:
    get_redis().set(AUTOMATION_LAST_RUN_KEY, payload, ex=AUTOMATION_LAST_RUN_TTL_SECONDS)


def load_automation_run() -> str | None:
    raw = get_redis().get(AUTOMATION_LAST_RUN_KEY)
    if isinstance(raw, bytes):
        return raw.decode()
    return raw


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
