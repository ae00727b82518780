import hashlib
import hmac
from datetime import timedelta

from tests.support import BillingTestCase, payment_event, subscription_event

from app import ledger, models
from app.errors import GatewayError, NotFoundError, SignatureError, ValidationError
from app.notifications import KIND_WELCOME
from app.services import reconciliation
from app.services.gateway_events import handle_event
from app.subscriptions import STATE_PENDING_PAYMENT, utcnow


def checkout_signature(order_id, payment_id, secret="rzp_test_secret"):
    return hmac.new(secret.encode("utf-8"), f"{order_id}|{payment_id}".encode("utf-8"), hashlib.sha256).hexdigest()


class ReconciliationTestCase(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.plan = self.make_plan()
        self.user = self.make_user()


class TestSubscribe(ReconciliationTestCase):
    def test_one_time_checkout_records_pending_order(self):
        checkout = reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "One-Time")

        self.assertEqual(checkout["order_id"], "order_abc")
        self.assertIsNone(checkout["subscription_id"])
        self.assertEqual(checkout["key_id"], "rzp_test_key")
        self.assertEqual(checkout["amount_paise"], 49900)
        notes = self.gateway.create_order.call_args.args[3]
        self.assertEqual(notes, {"plan_id": str(self.plan.id), "user_id": str(self.user.id), "payment_type": "one-time"})

        subscription = self.reload(self.user)
        self.assertEqual(subscription.live_ref, models.GatewayRef(models.PAYMENT_TYPE_ONE_TIME, "order_abc"))
        self.assertIsNotNone(subscription.pending_since)
        self.assertEqual(subscription.plan_id, self.plan.id)
        self.assertEqual(subscription.gateway_customer_id, "cust_test1")
        self.assertFalse(subscription.auto_pay)
        self.assertIsNone(subscription.status)

    def test_recurring_checkout_uses_gateway_plan(self):
        checkout = reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "recurring")

        self.assertEqual(checkout["subscription_id"], "sub_xyz")
        kwargs = self.gateway.create_subscription.call_args.kwargs
        self.assertEqual(kwargs["plan_id"], "plan_gw1")
        self.assertEqual(kwargs["total_count"], 2)
        self.assertEqual(kwargs["customer_id"], "cust_test1")
        self.assertEqual(self.reload(self.user).live_ref, models.GatewayRef(models.PAYMENT_TYPE_RECURRING, "sub_xyz"))

    def test_existing_customer_is_reused(self):
        self.set_subscription(self.user, gateway_customer_id="cust_known")
        reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")
        self.gateway.create_customer.assert_not_called()

    def test_gateway_failure_leaves_record_untouched(self):
        self.gateway.create_order.side_effect = GatewayError("down")
        version = self.reload(self.user).version_id

        with self.assertRaises(GatewayError):
            reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")

        subscription = self.reload(self.user)
        self.assertIsNone(subscription.live_ref)
        self.assertEqual(subscription.version_id, version)

    def test_malformed_gateway_id_is_rejected(self):
        self.gateway.create_order.return_value = {"id": "bogus"}
        with self.assertRaises(GatewayError):
            reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")
        self.assertIsNone(self.reload(self.user).live_ref)

    def test_invalid_requests(self):
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "lifetime")
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time", gateway="stripe")
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, None, "one-time")
        with self.assertRaises(NotFoundError):
            reconciliation.subscribe(self.db, self.gateway, self.user, 999, "one-time")

        hidden = self.make_plan(title="Hidden", is_active=False)
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, hidden.id, "one-time")

        no_gateway_plan = self.make_plan(title="Local only", gateway_plan_id=None)
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, no_gateway_plan.id, "recurring")
        self.gateway.create_order.assert_not_called()
        self.gateway.create_subscription.assert_not_called()

    def test_refused_while_active(self):
        self.make_active(self.user, self.plan)
        with self.assertRaises(ValidationError):
            reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")
        self.gateway.create_order.assert_not_called()

    def test_stale_recurring_checkout_is_cancelled_and_replaced(self):
        self.set_subscription(
            self.user,
            live_ref=models.GatewayRef(models.PAYMENT_TYPE_RECURRING, "sub_old"),
            pending_since=utcnow() - timedelta(minutes=5),
        )

        reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")

        self.gateway.cancel_subscription.assert_called_once_with("sub_old")
        self.assertEqual(self.reload(self.user).live_ref.id, "order_abc")


class TestManualRenew(ReconciliationTestCase):
    def test_keeps_access_while_checkout_is_pending(self):
        self.make_active(self.user, self.plan, ref_id="sub_old", auto_renewal_count=2, auto_pay=False)
        expire = self.reload(self.user).expire

        reconciliation.manual_renew(self.db, self.gateway, self.user, self.plan.id, "recurring")

        subscription = self.reload(self.user)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)
        self.assertEqual(subscription.expire, expire)
        self.assertEqual(subscription.live_ref.id, "sub_xyz")
        self.assertIsNotNone(subscription.pending_since)
        self.assertEqual(reconciliation.subscription_status(self.db, self.user)["state"], "active")
        self.gateway.cancel_subscription.assert_called_once_with("sub_old")

    def test_unpaid_renewal_keeps_the_paid_plan(self):
        weekly = self.make_plan(title="Weekly Sprint", amount_paise=9900, interval="weekly")
        yearly = self.make_plan(title="Yearly Pro", amount_paise=399900, interval="yearly")
        self.make_active(self.user, weekly, payment_type=models.PAYMENT_TYPE_ONE_TIME, ref_id=None, days=5)
        expire = self.reload(self.user).expire

        reconciliation.manual_renew(self.db, self.gateway, self.user, yearly.id, "one-time")

        subscription = self.reload(self.user)
        self.assertEqual(subscription.plan_id, weekly.id)
        self.assertEqual(subscription.payment_type, models.PAYMENT_TYPE_ONE_TIME)
        self.assertEqual(subscription.pending_plan_id, yearly.id)
        self.assertEqual(subscription.live_ref.id, "order_abc")
        status = reconciliation.subscription_status(self.db, self.user)
        self.assertEqual(status["plan_title"], "Weekly Sprint")
        self.assertEqual(status["pending_plan_id"], yearly.id)

        handle_event(
            self.db,
            self.gateway,
            payment_event("payment.captured", "pay_yearly", 399900, order_id="order_abc"),
            self.outbox,
        )

        subscription = self.reload(self.user)
        self.assertEqual(subscription.plan_id, yearly.id)
        self.assertIsNone(subscription.pending_plan_id)
        self.assertIsNone(subscription.live_ref)
        self.assertEqual(subscription.expire, expire + timedelta(days=365))

    def test_failed_checkout_survives_cancellation_of_old_subscription(self):
        self.make_active(self.user, self.plan, ref_id="sub_old")
        before = self.reload(self.user)
        expire, plan_id = before.expire, before.plan_id
        self.gateway.create_order.side_effect = GatewayError("down")

        with self.assertRaises(GatewayError):
            reconciliation.manual_renew(self.db, self.gateway, self.user, self.plan.id, "one-time")

        self.gateway.cancel_subscription.assert_called_once_with("sub_old")
        subscription = self.reload(self.user)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)
        self.assertIsNone(subscription.live_ref)
        self.assertFalse(subscription.auto_pay)

        outcome = handle_event(
            self.db,
            self.gateway,
            subscription_event("subscription.cancelled", "sub_old"),
            self.outbox,
        )

        self.assertEqual(outcome.reason, "unknown_subscription")
        subscription = self.reload(self.user)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)
        self.assertEqual(subscription.expire, expire)
        self.assertEqual(subscription.plan_id, plan_id)

    def test_failed_cancel_puts_reference_back(self):
        self.make_active(self.user, self.plan, ref_id="sub_old")
        self.gateway.cancel_subscription.side_effect = GatewayError("down")
        self.gateway.create_order.side_effect = GatewayError("down")

        with self.assertLogs("app.services.reconciliation", level="WARNING"):
            with self.assertRaises(GatewayError):
                reconciliation.manual_renew(self.db, self.gateway, self.user, self.plan.id, "one-time")

        subscription = self.reload(self.user)
        self.assertEqual(subscription.live_ref, models.GatewayRef(models.PAYMENT_TYPE_RECURRING, "sub_old"))
        self.assertTrue(subscription.auto_pay)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)

    def test_tolerates_failure_to_cancel_old_subscription(self):
        self.make_active(self.user, self.plan, ref_id="sub_old")
        self.gateway.cancel_subscription.side_effect = GatewayError("down")

        with self.assertLogs("app.services.reconciliation", level="WARNING"):
            checkout = reconciliation.manual_renew(self.db, self.gateway, self.user, self.plan.id, "one-time")

        self.assertEqual(checkout["order_id"], "order_abc")
        self.assertEqual(self.reload(self.user).live_ref.id, "order_abc")


class TestCancelAndPause(ReconciliationTestCase):
    def test_cancel_recurring_plan(self):
        self.make_active(self.user, self.plan)

        subscription = reconciliation.cancel_plan(self.db, self.gateway, self.user)

        self.gateway.cancel_subscription.assert_called_once_with("sub_xyz")
        self.assertIsNone(subscription.status)
        self.assertIsNone(subscription.plan_id)
        self.assertIsNone(subscription.live_ref)
        self.assertFalse(subscription.auto_pay)

    def test_cancel_aborts_when_gateway_refuses(self):
        self.make_active(self.user, self.plan)
        self.gateway.cancel_subscription.side_effect = GatewayError("down")

        with self.assertRaises(GatewayError):
            reconciliation.cancel_plan(self.db, self.gateway, self.user)
        self.assertEqual(self.reload(self.user).status, models.STATUS_ACTIVE)

    def test_cancel_one_time_plan_skips_gateway(self):
        self.make_active(self.user, self.plan, payment_type=models.PAYMENT_TYPE_ONE_TIME, ref_id=None)
        reconciliation.cancel_plan(self.db, self.gateway, self.user)
        self.gateway.cancel_subscription.assert_not_called()
        self.assertIsNone(self.reload(self.user).status)

    def test_cancel_without_subscription(self):
        with self.assertRaises(NotFoundError):
            reconciliation.cancel_plan(self.db, self.gateway, self.user)

    def test_pause_and_resume(self):
        self.make_active(self.user, self.plan)

        self.assertFalse(reconciliation.pause_subscription(self.db, self.gateway, self.user).auto_pay)
        self.gateway.pause_subscription.assert_called_once_with("sub_xyz")

        self.assertTrue(reconciliation.resume_subscription(self.db, self.gateway, self.user).auto_pay)
        self.gateway.resume_subscription.assert_called_once_with("sub_xyz")

    def test_pause_requires_active_recurring(self):
        self.make_active(self.user, self.plan, payment_type=models.PAYMENT_TYPE_ONE_TIME, ref_id=None)
        with self.assertRaises(ValidationError):
            reconciliation.pause_subscription(self.db, self.gateway, self.user)

        self.make_active(self.user, self.plan, pending_since=utcnow())
        with self.assertRaises(ValidationError):
            reconciliation.pause_subscription(self.db, self.gateway, self.user)
        self.gateway.pause_subscription.assert_not_called()

    def test_resume_refused_beyond_renewal_cap(self):
        self.make_active(self.user, self.plan, auto_renewal_count=2, auto_pay=False)
        with self.assertRaises(ValidationError):
            reconciliation.resume_subscription(self.db, self.gateway, self.user)
        self.gateway.resume_subscription.assert_not_called()

    def test_pause_gateway_failure_changes_nothing(self):
        self.make_active(self.user, self.plan)
        self.gateway.pause_subscription.side_effect = GatewayError("down")
        with self.assertRaises(GatewayError):
            reconciliation.pause_subscription(self.db, self.gateway, self.user)
        self.assertTrue(self.reload(self.user).auto_pay)


class TestCancelAutoRenewal(ReconciliationTestCase):
    def test_cancelled_at_gateway_clears_reference(self):
        self.make_active(self.user, self.plan, auto_renewal_count=1)

        subscription = reconciliation.cancel_auto_renewal(self.db, self.gateway, self.user)

        self.assertFalse(subscription.auto_pay)
        self.assertEqual(subscription.auto_renewal_count, 0)
        self.assertIsNone(subscription.live_ref)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)

    def test_gateway_failure_keeps_reference(self):
        self.make_active(self.user, self.plan, auto_renewal_count=1)
        self.gateway.cancel_subscription.side_effect = GatewayError("down")

        with self.assertLogs("app.services.reconciliation", level="WARNING"):
            subscription = reconciliation.cancel_auto_renewal(self.db, self.gateway, self.user)

        self.assertFalse(subscription.auto_pay)
        self.assertEqual(subscription.auto_renewal_count, 0)
        self.assertEqual(subscription.live_ref.id, "sub_xyz")


class TestSubscriptionStatus(ReconciliationTestCase):
    def test_pending_checkout(self):
        reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")

        status = reconciliation.subscription_status(self.db, self.user)

        self.assertEqual(status["state"], STATE_PENDING_PAYMENT)
        self.assertEqual(status["pending_ref_kind"], models.PAYMENT_TYPE_ONE_TIME)
        self.assertEqual(status["pending_ref_id"], "order_abc")
        self.assertEqual(status["plan_title"], "Monthly Pro")

    def test_manual_renewal_flag(self):
        self.make_active(self.user, self.plan, auto_renewal_count=1)
        status = reconciliation.subscription_status(self.db, self.user)
        self.assertTrue(status["needs_manual_renewal"])
        self.assertFalse(status["can_auto_renew"])
        self.assertIsNone(status["pending_ref_id"])


class TestConfirmPayment(ReconciliationTestCase):
    def setUp(self):
        super().setUp()
        reconciliation.subscribe(self.db, self.gateway, self.user, self.plan.id, "one-time")
        self.gateway.fetch_payment.return_value = {
            "id": "pay_abc",
            "order_id": "order_abc",
            "status": "captured",
            "amount": 49900,
            "currency": "INR",
            "method": "card",
            "notes": {},
        }

    def confirm(self, user=None, signature=None, order_id="order_abc", payment_id="pay_abc"):
        return reconciliation.confirm_payment(
            self.db,
            self.gateway,
            user or self.user,
            order_id,
            payment_id,
            signature if signature is not None else checkout_signature(order_id, payment_id),
            self.outbox,
        )

    def test_confirm_activates(self):
        outcome = self.confirm()

        self.assertEqual(outcome.status, "ok")
        subscription = self.reload(self.user)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)
        self.assertIsNone(subscription.live_ref)
        self.assertEqual(self.outbox.kinds(), [KIND_WELCOME])

    def test_confirm_then_webhook_style_repeat_is_idempotent(self):
        self.confirm()
        outcome = self.confirm()
        self.assertTrue(outcome.idempotent)
        self.assertEqual(len(self.payments(self.user)), 1)
        self.assertEqual(len(self.outbox.messages), 1)

    def test_bad_signature(self):
        with self.assertRaises(SignatureError):
            self.confirm(signature="deadbeef")
        self.gateway.fetch_payment.assert_not_called()
        self.assertIsNone(self.reload(self.user).status)

    def test_malformed_ids(self):
        with self.assertRaises(ValidationError):
            self.confirm(order_id="abc")
        with self.assertRaises(ValidationError):
            self.confirm(payment_id="order_abc")

    def test_unconfigured_gateway(self):
        self.gateway.configured = False
        with self.assertRaises(GatewayError):
            self.confirm()

    def test_payment_for_another_order(self):
        self.gateway.fetch_payment.return_value["order_id"] = "order_other"
        with self.assertRaises(ValidationError):
            self.confirm()

    def test_payment_not_captured_yet(self):
        self.gateway.fetch_payment.return_value["status"] = "authorized"
        with self.assertRaises(ValidationError):
            self.confirm()
        self.assertEqual(self.payments(), [])

    def test_cannot_confirm_someone_elses_order(self):
        intruder = self.make_user("intruder@example.com")
        with self.assertRaises(NotFoundError):
            self.confirm(user=intruder)
        self.assertIsNone(self.reload(intruder).status)
        self.assertIsNone(self.reload(self.user).status)
        self.assertEqual(self.payments(), [])


class TestAdminOperations(ReconciliationTestCase):
    def test_change_user_plan_with_manual_payment(self):
        yearly = self.make_plan(title="Yearly Pro", amount_paise=399900, interval="yearly")
        self.make_active(self.user, self.plan)
        before = utcnow()

        subscription = reconciliation.change_user_plan(
            self.db, self.gateway, self.user.id, yearly.id, self.outbox, manual_amount_paise=350000
        )

        self.gateway.cancel_subscription.assert_called_once_with("sub_xyz")
        self.assertEqual(subscription.plan_id, yearly.id)
        self.assertEqual(subscription.gateway, models.GATEWAY_ADMIN)
        self.assertEqual(subscription.payment_type, models.PAYMENT_TYPE_ONE_TIME)
        self.assertFalse(subscription.auto_pay)
        self.assertIsNone(subscription.live_ref)
        self.assertGreaterEqual(subscription.expire, before + timedelta(days=365))

        payments = self.payments(self.user)
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].gateway, models.GATEWAY_ADMIN)
        self.assertEqual(payments[0].amount_paise, 350000)
        self.assertTrue(payments[0].gateway_payment_id.startswith("MANUAL_"))
        self.assertTrue(payments[0].gateway_payment_id.endswith(f"_{self.user.id}"))
        self.assertEqual(payments[0].status, ledger.STATUS_COMPLETED)
        self.assertEqual(self.outbox.kinds(), [KIND_WELCOME])

    def test_change_user_plan_without_payment(self):
        reconciliation.change_user_plan(self.db, self.gateway, self.user.id, self.plan.id, self.outbox)
        self.assertEqual(self.payments(), [])
        with self.assertRaises(ValidationError):
            reconciliation.change_user_plan(
                self.db, self.gateway, self.user.id, self.plan.id, self.outbox, manual_amount_paise=0
            )
        with self.assertRaises(NotFoundError):
            reconciliation.change_user_plan(self.db, self.gateway, 999, self.plan.id, self.outbox)

    def test_add_free_access(self):
        before = utcnow()
        subscription = reconciliation.add_free_access(self.db, self.user.id, 14, plan_id=self.plan.id)

        self.assertTrue(subscription.free)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)
        self.assertEqual(subscription.gateway, models.GATEWAY_ADMIN)
        self.assertEqual(subscription.plan_id, self.plan.id)
        self.assertGreaterEqual(subscription.expire, before + timedelta(days=14))
        with self.assertRaises(ValidationError):
            reconciliation.add_free_access(self.db, self.user.id, 0)

    def test_extend_user_plan(self):
        self.make_active(self.user, self.plan, payment_type=models.PAYMENT_TYPE_ONE_TIME, ref_id=None, days=5)
        expire = self.reload(self.user).expire

        subscription = reconciliation.extend_user_plan(self.db, self.user.id, 10)

        self.assertEqual(subscription.expire, expire + timedelta(days=10))

    def test_extend_reactivates_expired_plan(self):
        self.make_active(
            self.user,
            self.plan,
            payment_type=models.PAYMENT_TYPE_ONE_TIME,
            ref_id=None,
            status=models.STATUS_EXPIRED,
            expire=utcnow() - timedelta(days=2),
        )
        subscription = reconciliation.extend_user_plan(self.db, self.user.id, 7)
        self.assertEqual(subscription.status, models.STATUS_ACTIVE)

    def test_extend_without_plan(self):
        with self.assertRaises(ValidationError):
            reconciliation.extend_user_plan(self.db, self.user.id, 10)

    def test_suspend_paid_plan(self):
        self.make_active(self.user, self.plan)

        subscription = reconciliation.suspend_user_plan(self.db, self.gateway, self.user.id)

        self.gateway.cancel_subscription.assert_called_once_with("sub_xyz")
        self.assertFalse(subscription.free)
        self.assertIsNone(subscription.status)
        self.assertIsNone(subscription.expire)
        self.assertIsNone(subscription.live_ref)

    def test_suspend_free_grant_keeps_free_flag(self):
        reconciliation.add_free_access(self.db, self.user.id, 14)

        subscription = reconciliation.suspend_user_plan(self.db, self.gateway, self.user.id)

        self.assertTrue(subscription.free)
        self.assertIsNone(subscription.status)
        self.gateway.cancel_subscription.assert_not_called()

    def test_users_by_expiry_date(self):
        other = self.make_user("other@example.com", full_name="Other")
        far = self.make_user("far@example.com")
        self.make_active(self.user, self.plan, days=3)
        self.make_active(other, self.plan, days=3)
        self.make_active(far, self.plan, days=40)

        groups = reconciliation.users_by_expiry_date(self.db, 7)

        self.assertEqual(len(groups), 1)
        self.assertEqual({u["email"] for u in groups[0]["users"]}, {"student@example.com", "other@example.com"})
        self.assertEqual(groups[0]["users"][0]["plan_title"], "Monthly Pro")
        with self.assertRaises(ValidationError):
            reconciliation.users_by_expiry_date(self.db, 0)
