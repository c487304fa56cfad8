#!/usr/bin/env python3
"""Monitoring probe for the monetization service.

Checks the API (/health), each configured payment provider
(/health/payments), PostgreSQL and Redis, and prints a JSON array of
``{service, status, latency_ms}`` objects.

Exit codes:
    0 -- all services healthy
    1 -- one or more services unhealthy
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg  # type: ignore[import-untyped]
import httpx
from redis.asyncio import Redis

APP_URL = os.environ.get("APP_URL", "http://localhost:8000")
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "postgresql://app:devpassword@db:5432/memecraft"
)
REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")

CHECK_TIMEOUT = float(os.environ.get("HEALTHCHECK_TIMEOUT", "5"))


def _pg_dsn(url: str) -> str:
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def _timed(service: str, probe: Callable[[], Awaitable[bool]]) -> dict[str, Any]:
    """Run *probe* under the check timeout and time it."""
    start = time.monotonic()
    entry: dict[str, Any] = {"service": service}
    try:
        healthy = await asyncio.wait_for(probe(), timeout=CHECK_TIMEOUT)
        entry["status"] = "healthy" if healthy else "unhealthy"
    except Exception as exc:
        entry["status"] = "unhealthy"
        entry["error"] = str(exc)
    entry["latency_ms"] = round((time.monotonic() - start) * 1000, 2)
    return entry


async def _probe_postgres() -> bool:
    conn = await asyncpg.connect(_pg_dsn(DATABASE_URL))
    try:
        return await conn.fetchval("SELECT 1") == 1
    finally:
        await conn.close()


async def _probe_redis() -> bool:
    redis = Redis.from_url(REDIS_URL, decode_responses=True)
    try:
        return bool(await redis.ping())
    finally:
        await redis.close()


async def check_payment_providers(client: httpx.AsyncClient) -> list[dict[str, Any]]:
    """One entry per provider reported by /health/payments."""
    start = time.monotonic()
    try:
        resp = await client.get(f"{APP_URL}/health/payments", timeout=CHECK_TIMEOUT)
        resp.raise_for_status()
        providers: dict[str, bool] = resp.json()["providers"]
    except Exception as exc:
        return [{
            "service": "payments",
            "status": "unhealthy",
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
            "error": str(exc),
        }]
    latency = round((time.monotonic() - start) * 1000, 2)
    return [
        {
            "service": f"payments:{name}",
            "status": "healthy" if ok else "unhealthy",
            "latency_ms": latency,
        }
        for name, ok in sorted(providers.items())
    ]


async def run_checks() -> list[dict[str, Any]]:
    async with httpx.AsyncClient() as client:
        async def probe_app() -> bool:
            resp = await client.get(f"{APP_URL}/health")
            return resp.status_code == 200

        app, postgres, redis, providers = await asyncio.gather(
            _timed("app", probe_app),
            _timed("postgres", _probe_postgres),
            _timed("redis", _probe_redis),
            check_payment_providers(client),
        )
    return [app, postgres, redis, *providers]


async def main() -> int:
    results = await run_checks()

    json.dump(results, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 0 if all(r["status"] == "healthy" for r in results) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
