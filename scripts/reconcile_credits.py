#!/usr/bin/env python3
"""Credit ledger reconciliation.

For every user with a balance row, recomputes the balance as the sum of the
user's ledger entries and the lifetime total as the sum of the positive
entries, and reports rows where the stored values disagree.

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_credits.py

Exit codes:
    0 -- ledger and balances agree
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/memecraft"

DISCREPANCY_QUERY = """
SELECT
    b.user_id,
    b.balance  AS stored_balance,
    b.lifetime AS stored_lifetime,
    COALESCE(SUM(t.amount), 0)::int AS computed_balance,
    COALESCE(SUM(t.amount) FILTER (WHERE t.amount > 0), 0)::int AS computed_lifetime
FROM credit_balances b
LEFT JOIN credit_transactions t USING (user_id)
GROUP BY b.user_id, b.balance, b.lifetime
HAVING b.balance  <> COALESCE(SUM(t.amount), 0)
    OR b.lifetime <> COALESCE(SUM(t.amount) FILTER (WHERE t.amount > 0), 0)
ORDER BY b.user_id
"""

ORPHAN_QUERY = """
SELECT DISTINCT t.user_id
FROM credit_transactions t
LEFT JOIN credit_balances b USING (user_id)
WHERE b.user_id IS NULL
ORDER BY t.user_id
"""


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def reconcile(dsn: str) -> dict[str, list]:
    conn: asyncpg.Connection = await asyncpg.connect(dsn)
    try:
        rows = await conn.fetch(DISCREPANCY_QUERY)
        orphans = await conn.fetch(ORPHAN_QUERY)
    finally:
        await conn.close()

    discrepancies = [
        {
            "user_id": row["user_id"],
            "stored_balance": row["stored_balance"],
            "computed_balance": row["computed_balance"],
            "stored_lifetime": row["stored_lifetime"],
            "computed_lifetime": row["computed_lifetime"],
        }
        for row in rows
    ]
    # Ledger entries without a balance row mean a write bypassed the ledger
    return {
        "discrepancies": discrepancies,
        "orphaned_users": [row["user_id"] for row in orphans],
    }


async def main() -> int:
    result = await reconcile(_get_dsn())
    problems = len(result["discrepancies"]) + len(result["orphaned_users"])

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_problems": problems,
        **result,
    }
    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
