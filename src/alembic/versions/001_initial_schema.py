"""Initial schema -- ledger, subscriptions, payments, promo codes and the ledger trigger.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op

from memecraft.schema_sql import (
    indexes,
    tables_billing,
    tables_payments,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    _execute_all(tables_billing.ALL)
    _execute_all(tables_payments.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")
    for table in (
        "promo_codes",
        "payments",
        "subscriptions",
        "credit_transactions",
        "credit_balances",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
