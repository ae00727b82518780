from sqlalchemy import text

from tests.support import BillingTestCase

from app.database import Base, engine
from app.schema_patch import (
    _get_table_columns,
    ensure_payment_failure_columns,
    ensure_subscription_reconciliation_columns,
)


class TestSchemaPatch(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.db.close()
        Base.metadata.drop_all(bind=engine)
        with engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE subscriptions (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, "
                    "status VARCHAR(16), expire DATETIME, auto_pay BOOLEAN NOT NULL DEFAULT 0)"
                )
            )
            conn.execute(
                text(
                    "CREATE TABLE payments (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, "
                    "gateway_payment_id VARCHAR NOT NULL, status VARCHAR(16) NOT NULL)"
                )
            )
            conn.execute(text("INSERT INTO subscriptions (user_id, status) VALUES (1, 'active')"))

    def tearDown(self):
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE IF EXISTS subscriptions"))
            conn.execute(text("DROP TABLE IF EXISTS payments"))
        super().tearDown()

    def columns(self, table_name):
        with engine.connect() as conn:
            return _get_table_columns(conn, table_name)

    def test_legacy_tables_gain_new_columns(self):
        ensure_subscription_reconciliation_columns()
        ensure_payment_failure_columns()

        self.assertTrue(
            {"auto_renewal_count", "gateway_ref_kind", "gateway_ref_id", "pending_since", "pending_plan_id", "version_id"}
            <= self.columns("subscriptions")
        )
        self.assertTrue({"invoice_id", "failure_reason", "failure_description"} <= self.columns("payments"))

        with engine.connect() as conn:
            row = conn.execute(text("SELECT auto_renewal_count, version_id FROM subscriptions")).one()
        self.assertEqual(tuple(row), (0, 1))

    def test_patch_is_repeatable(self):
        ensure_subscription_reconciliation_columns()
        before = self.columns("subscriptions")
        ensure_subscription_reconciliation_columns()
        self.assertEqual(self.columns("subscriptions"), before)

    def test_missing_tables_are_skipped(self):
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE payments"))
        ensure_payment_failure_columns()
        self.assertEqual(self.columns("payments"), set())
