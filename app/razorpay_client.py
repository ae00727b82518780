import hashlib
import hmac
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from app.errors import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.razorpay.com/v1"
DEFAULT_TIMEOUT_SECONDS = 15


def looks_like_razorpay_id(value: str, prefix: str) -> bool:
    return bool(re.fullmatch(rf"{prefix}_[A-Za-z0-9]+", (value or "").strip()))


def normalize_currency(raw_currency: str) -> str:
    currency = (raw_currency or "INR").strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", currency):
        return "INR"
    return currency


def billing_currency() -> str:
    return normalize_currency(os.getenv("BILLING_CURRENCY", "INR"))


def webhook_secret() -> str:
    return os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip()


def recurring_total_count() -> int:
    raw = os.getenv("RAZORPAY_RECURRING_TOTAL_COUNT", "2").strip()
    try:
        count = int(raw)
        if count <= 0:
            raise ValueError
        return count
    except ValueError:
        return 2


def _timeout_seconds() -> float:
    raw = os.getenv("RAZORPAY_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)).strip()
    try:
        timeout = float(raw)
        if timeout <= 0:
            raise ValueError
        return timeout
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def timestamp_to_datetime(raw_value: Any) -> Optional[datetime]:
    """Razorpay sends epoch seconds; 0, garbage and missing values mean 'unknown'."""
    if raw_value is None:
        return None
    try:
        timestamp = int(raw_value)
    except (TypeError, ValueError):
        return None
    if timestamp <= 0:
        return None
    try:
        return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, provided_signature: str, secret: str) -> bool:
    provided_signature = (provided_signature or "").strip()
    if not provided_signature or not secret:
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), provided_signature)


def verify_checkout_signature(order_id: str, payment_id: str, provided_signature: str, key_secret: str) -> bool:
    provided_signature = (provided_signature or "").strip()
    if not provided_signature or not key_secret:
        return False
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.compare_digest(_hmac_hex(key_secret, message), provided_signature)


class RazorpayClient:
    """
    Thin blocking wrapper over the Razorpay REST API.

    Every call is bounded by a timeout. Transport failures, HTTP errors and
    non-JSON answers all raise GatewayError; callers treat that as "nothing
    happened at the gateway, safe to retry".
    """

    def __init__(
        self,
        key_id: str = "",
        key_secret: str = "",
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "RazorpayClient":
        return cls(
            key_id=os.getenv("RAZORPAY_KEY_ID", "").strip(),
            key_secret=os.getenv("RAZORPAY_KEY_SECRET", "").strip(),
            api_base=os.getenv("RAZORPAY_API_BASE", DEFAULT_API_BASE).strip() or DEFAULT_API_BASE,
            timeout=_timeout_seconds(),
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _request(self, method: str, path: str, json_payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.configured:
            raise GatewayError("Payment gateway is not configured.")

        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("razorpay_request_failed method=%s path=%s error=%s", method, path, exc.__class__.__name__)
            raise GatewayError("Failed to contact Razorpay.") from exc

        if response.status_code >= 400:
            logger.warning("razorpay_request_rejected method=%s path=%s status=%s", method, path, response.status_code)
            raise GatewayError("Unable to process Razorpay request right now.")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Invalid response received from Razorpay.") from exc

        if not isinstance(payload, dict):
            raise GatewayError("Unexpected response format from Razorpay.")
        return payload

    def create_customer(self, name: str, email: str, contact: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name or email, "email": email, "fail_existing": "0"}
        if contact:
            payload["contact"] = contact
        return self._request("POST", "/customers", payload)

    def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/orders",
            {
                "amount": int(amount_paise),
                "currency": normalize_currency(currency),
                "receipt": receipt[:40],
                "notes": notes or {},
            },
        )

    def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        customer_id: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": int(total_count),
            "customer_notify": 1,
            "notes": notes or {},
        }
        if customer_id:
            payload["customer_id"] = customer_id
        return self._request("POST", "/subscriptions", payload)

    def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._request("GET", f"/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = False) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )

    def pause_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._request("POST", f"/subscriptions/{subscription_id}/pause", {"pause_at": "now"})

    def resume_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._request("POST", f"/subscriptions/{subscription_id}/resume", {"resume_at": "now"})

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def create_plan(
        self,
        period: str,
        interval: int,
        name: str,
        amount_paise: int,
        currency: str,
        description: str = "",
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/plans",
            {
                "period": period,
                "interval": int(interval),
                "item": {
                    "name": name,
                    "amount": int(amount_paise),
                    "currency": normalize_currency(currency),
                    "description": description or name,
                },
            },
        )


def get_razorpay_client() -> RazorpayClient:
    return RazorpayClient.from_env()
