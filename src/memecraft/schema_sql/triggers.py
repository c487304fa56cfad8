"""Trigger functions and trigger DDL for the initial schema."""

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

TRG_CREDIT_TRANSACTIONS_IMMUTABLE = """
CREATE TRIGGER trg_credit_transactions_immutable
    BEFORE UPDATE OR DELETE ON credit_transactions
    FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();
"""

FUNCTIONS_ALL = [FN_RAISE_IMMUTABLE]

TRIGGERS_ALL = [TRG_CREDIT_TRANSACTIONS_IMMUTABLE]
