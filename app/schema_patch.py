"""
In-place column additions for databases created before the reconciliation
columns existed. Tables are only ever widened; nothing is dropped or retyped.
"""
import logging

from sqlalchemy import text

from app.database import engine

logger = logging.getLogger(__name__)

SUBSCRIPTION_RECONCILIATION_COLUMNS = (
    ("auto_renewal_count", "INTEGER NOT NULL DEFAULT 0"),
    ("gateway_ref_kind", "VARCHAR(16)"),
    ("gateway_ref_id", "VARCHAR"),
    ("pending_since", "TIMESTAMP"),
    ("pending_plan_id", "INTEGER"),
    ("version_id", "INTEGER NOT NULL DEFAULT 1"),
)

PAYMENT_FAILURE_COLUMNS = (
    ("invoice_id", "VARCHAR"),
    ("failure_reason", "VARCHAR"),
    ("failure_description", "TEXT"),
)


def _get_table_columns(conn, table_name: str):
    if engine.dialect.name == "sqlite":
        return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table_name})"))}

    rows = conn.execute(
        text("SELECT column_name FROM information_schema.columns WHERE table_name = :table_name"),
        {"table_name": table_name},
    )
    return {row[0] for row in rows}


def _add_missing_columns(table_name: str, wanted) -> list:
    added = []
    with engine.begin() as conn:
        existing = _get_table_columns(conn, table_name)
        # A missing table is created whole by create_all, not patched here.
        if not existing:
            return added
        for column_name, ddl in wanted:
            if column_name in existing:
                continue
            conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl}"))
            added.append(column_name)
    if added:
        logger.info("schema_patch table=%s added=%s", table_name, ",".join(added))
    return added


def ensure_subscription_reconciliation_columns():
    return _add_missing_columns("subscriptions", SUBSCRIPTION_RECONCILIATION_COLUMNS)


def ensure_payment_failure_columns():
    return _add_missing_columns("payments", PAYMENT_FAILURE_COLUMNS)
