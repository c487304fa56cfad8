"""CREATE TABLE statements for credit balances, the ledger and subscriptions."""

CREDIT_BALANCES = """
CREATE TABLE credit_balances (
    user_id     VARCHAR(64) PRIMARY KEY,
    balance     INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_credit_balances_balance_nonneg CHECK (balance >= 0),
    lifetime    INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_credit_balances_lifetime_nonneg CHECK (lifetime >= 0),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    id            BIGSERIAL PRIMARY KEY,
    user_id       VARCHAR(64) NOT NULL,
    amount        INTEGER NOT NULL
                  CONSTRAINT ck_credit_transactions_amount_nonzero CHECK (amount != 0),
    txn_type      VARCHAR(20) NOT NULL
                  CONSTRAINT ck_credit_transactions_txn_type
                  CHECK (txn_type IN (
                      'purchase','generation','referral','bonus','refund'
                  )),
    description   TEXT NOT NULL DEFAULT '',
    balance_after INTEGER NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

SUBSCRIPTIONS = """
CREATE TABLE subscriptions (
    user_id              VARCHAR(64) PRIMARY KEY,
    plan                 VARCHAR(20) NOT NULL DEFAULT 'free'
                         CONSTRAINT ck_subscriptions_plan
                         CHECK (plan IN ('free','premium','pro')),
    status               VARCHAR(20) NOT NULL DEFAULT 'active'
                         CONSTRAINT ck_subscriptions_status
                         CHECK (status IN ('active','trialing','cancelled','expired')),
    current_period_end   TIMESTAMPTZ,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled_at         TIMESTAMPTZ,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [CREDIT_BALANCES, CREDIT_TRANSACTIONS, SUBSCRIPTIONS]
