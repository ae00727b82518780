import hashlib
import hmac
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

import requests

from tests import support  # noqa: F401

from app.errors import GatewayError
from app.razorpay_client import (
    RazorpayClient,
    looks_like_razorpay_id,
    normalize_currency,
    timestamp_to_datetime,
    verify_checkout_signature,
    verify_webhook_signature,
)


def _response(status_code=200, payload=None, json_error=False):
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload if payload is not None else {}
    return response


class TestRazorpayClient(unittest.TestCase):
    def setUp(self):
        self.client = RazorpayClient(key_id="rzp_key", key_secret="rzp_secret", api_base="https://api.test/v1/", timeout=7)

    def test_request_uses_basic_auth_and_timeout(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(payload={"id": "order_1"})) as request_mock:
            result = self.client.create_order(49900, "inr", "receipt-1", {"plan_id": "3"})

        self.assertEqual(result, {"id": "order_1"})
        kwargs = request_mock.call_args.kwargs
        self.assertEqual(kwargs["method"], "POST")
        self.assertEqual(kwargs["url"], "https://api.test/v1/orders")
        self.assertEqual(kwargs["auth"], ("rzp_key", "rzp_secret"))
        self.assertEqual(kwargs["timeout"], 7)
        self.assertEqual(kwargs["json"]["currency"], "INR")
        self.assertEqual(kwargs["json"]["notes"], {"plan_id": "3"})

    def test_transport_failure_is_gateway_error(self):
        with patch("app.razorpay_client.requests.request", side_effect=requests.Timeout("slow")):
            with self.assertRaises(GatewayError):
                self.client.fetch_payment("pay_1")

    def test_http_error_is_gateway_error(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(status_code=500)):
            with self.assertRaises(GatewayError):
                self.client.fetch_subscription("sub_1")

    def test_non_json_is_gateway_error(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(json_error=True)):
            with self.assertRaises(GatewayError):
                self.client.fetch_order("order_1")

    def test_non_object_json_is_gateway_error(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(payload=["x"])):
            with self.assertRaises(GatewayError):
                self.client.fetch_order("order_1")

    def test_unconfigured_client_never_calls_out(self):
        client = RazorpayClient()
        with patch("app.razorpay_client.requests.request") as request_mock:
            with self.assertRaises(GatewayError):
                client.create_customer("A", "a@example.com")
        request_mock.assert_not_called()

    def test_subscription_lifecycle_paths(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(payload={"id": "sub_1"})) as request_mock:
            self.client.create_subscription("plan_1", 2, customer_id="cust_1")
            self.client.cancel_subscription("sub_1")
            self.client.pause_subscription("sub_1")
            self.client.resume_subscription("sub_1")

        urls = [c.kwargs["url"] for c in request_mock.call_args_list]
        self.assertEqual(
            urls,
            [
                "https://api.test/v1/subscriptions",
                "https://api.test/v1/subscriptions/sub_1/cancel",
                "https://api.test/v1/subscriptions/sub_1/pause",
                "https://api.test/v1/subscriptions/sub_1/resume",
            ],
        )
        create_payload = request_mock.call_args_list[0].kwargs["json"]
        self.assertEqual(create_payload["total_count"], 2)
        self.assertEqual(create_payload["customer_id"], "cust_1")
        self.assertEqual(request_mock.call_args_list[1].kwargs["json"], {"cancel_at_cycle_end": 0})

    def test_create_plan_payload(self):
        with patch("app.razorpay_client.requests.request", return_value=_response(payload={"id": "plan_1"})) as request_mock:
            self.client.create_plan("monthly", 3, "Quarterly Pro", 129900, "INR")
        payload = request_mock.call_args.kwargs["json"]
        self.assertEqual(payload["period"], "monthly")
        self.assertEqual(payload["interval"], 3)
        self.assertEqual(payload["item"]["amount"], 129900)
        self.assertEqual(payload["item"]["description"], "Quarterly Pro")


class TestSignatures(unittest.TestCase):
    def test_webhook_signature(self):
        body = b'{"event":"payment.captured"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        self.assertTrue(verify_webhook_signature(body, signature, "whsec"))
        self.assertFalse(verify_webhook_signature(body, signature, "other"))
        self.assertFalse(verify_webhook_signature(body + b" ", signature, "whsec"))
        self.assertFalse(verify_webhook_signature(body, "", "whsec"))

    def test_checkout_signature(self):
        signature = hmac.new(b"key_secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
        self.assertTrue(verify_checkout_signature("order_1", "pay_1", signature, "key_secret"))
        self.assertFalse(verify_checkout_signature("order_1", "pay_2", signature, "key_secret"))
        self.assertFalse(verify_checkout_signature("order_1", "pay_1", signature, ""))


class TestHelpers(unittest.TestCase):
    def test_timestamp_to_datetime(self):
        self.assertEqual(timestamp_to_datetime(1767225600), datetime(2026, 1, 1))
        self.assertEqual(timestamp_to_datetime("1767225600"), datetime(2026, 1, 1))
        self.assertIsNone(timestamp_to_datetime(0))
        self.assertIsNone(timestamp_to_datetime("soon"))
        self.assertIsNone(timestamp_to_datetime(None))
        self.assertIsNone(timestamp_to_datetime(10**20))

    def test_ids_and_currency(self):
        self.assertTrue(looks_like_razorpay_id("order_Abc123", "order"))
        self.assertFalse(looks_like_razorpay_id("sub_Abc123", "order"))
        self.assertFalse(looks_like_razorpay_id("order_", "order"))
        self.assertEqual(normalize_currency("usd"), "USD")
        self.assertEqual(normalize_currency("rupees"), "INR")
