"""CREATE TABLE statements for payments and promo codes."""

PAYMENTS = """
CREATE TABLE payments (
    id                  VARCHAR(36) PRIMARY KEY,
    user_id             VARCHAR(64) NOT NULL,
    amount              INTEGER NOT NULL
                        CONSTRAINT ck_payments_amount_nonneg CHECK (amount >= 0),
    currency            VARCHAR(3) NOT NULL,
    status              VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CONSTRAINT ck_payments_status
                        CHECK (status IN ('pending','succeeded','failed','refunded')),
    provider            VARCHAR(30) NOT NULL,
    provider_payment_id VARCHAR(255) NOT NULL,
    description         TEXT NOT NULL DEFAULT '',
    metadata            TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_payments_provider_ref UNIQUE (provider, provider_payment_id)
);
"""

PROMO_CODES = """
CREATE TABLE promo_codes (
    code        VARCHAR(50) PRIMARY KEY,
    type        VARCHAR(20) NOT NULL DEFAULT 'discount',
    value       INTEGER NOT NULL
                CONSTRAINT ck_promo_codes_value_percent CHECK (value BETWEEN 0 AND 100),
    is_active   BOOLEAN NOT NULL DEFAULT TRUE,
    expires_at  TIMESTAMPTZ,
    max_uses    INTEGER NOT NULL DEFAULT 1,
    used_count  INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_promo_codes_used_count_nonneg CHECK (used_count >= 0)
);
"""

ALL = [PAYMENTS, PROMO_CODES]
