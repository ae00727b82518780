"""
Error taxonomy for the billing core.

Routers never build HTTPExceptions for billing failures themselves; they let
these propagate and ``register_error_handlers`` turns them into JSON
responses. Webhook processing catches the non-fatal ones and acknowledges.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(BillingError):
    """Malformed request; nothing was mutated."""

    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class GatewayError(BillingError):
    """The payment provider failed, timed out or answered garbage. Safe to retry."""

    status_code = 502


class SignatureError(BillingError):
    status_code = 400


class ReconciliationAmbiguity(BillingError):
    """A captured payment could not be attributed to exactly one plan or user."""

    status_code = 422

    def __init__(self, detail: str, reason: str = "ambiguous"):
        super().__init__(detail)
        self.reason = reason


class ConcurrentUpdateError(BillingError):
    status_code = 409


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def _billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.warning("billing_error path=%s status=%s detail=%s", request.url.path, exc.status_code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
