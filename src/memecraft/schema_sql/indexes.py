"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # credit_transactions
    "CREATE INDEX ix_credit_transactions_user_id ON credit_transactions(user_id);",
    "CREATE INDEX idx_credit_txn_user_type_time "
    "ON credit_transactions(user_id, txn_type, created_at DESC);",
    # payments
    "CREATE INDEX ix_payments_user_id ON payments(user_id);",
    "CREATE INDEX idx_payments_pending ON payments(created_at) WHERE status = 'pending';",
    # subscriptions
    "CREATE INDEX idx_subscriptions_period_end ON subscriptions(current_period_end) "
    "WHERE status = 'active';",
]
