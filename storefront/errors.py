"""
Error taxonomy of the checkout pipeline.

Only errors that affect the correctness of a persisted order are meant to
reach a caller. DuplicateOrder (replayed checkout), UnknownReference (webhook
for an order we never created) and NotificationFailure (confirmation email)
are raised internally and resolved where they occur.
"""
from __future__ import annotations
from typing import Optional


class CheckoutError(Exception):
    code = "checkout_error"
    status_code = 400
    retryable = False

    def __init__(self, detail: str = "", *, status_code: Optional[int] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ValidationError(CheckoutError):
    code = "validation_error"
    status_code = 400


class PriceMismatch(CheckoutError):
    code = "price_mismatch"
    status_code = 409

    def __init__(self, quoted: int, verified: int):
        super().__init__(
            f"quoted total {quoted} does not match verified total {verified}; "
            "please re-quote"
        )
        self.quoted = quoted
        self.verified = verified

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({"quoted_total": self.quoted, "verified_total": self.verified})
        return d


class DuplicateOrder(CheckoutError):
    code = "duplicate_order"
    status_code = 200

    def __init__(self, reference: str):
        super().__init__(f"order {reference} already exists")
        self.reference = reference


class OrderNotFound(CheckoutError):
    code = "order_not_found"
    status_code = 404


class CancellationRefused(CheckoutError):
    code = "cancellation_refused"
    status_code = 409


class InvalidTransition(CheckoutError):
    code = "invalid_transition"
    status_code = 409


class NotReady(CheckoutError):
    code = "not_ready"
    status_code = 409


class GatewayUnavailable(CheckoutError):
    code = "gateway_unavailable"
    status_code = 503
    retryable = True


class GatewayMisconfigured(CheckoutError):
    code = "gateway_misconfigured"
    status_code = 500


class WebhookVerificationFailure(CheckoutError):
    code = "webhook_verification_failure"
    status_code = 400


class UnknownReference(CheckoutError):
    code = "unknown_reference"
    status_code = 200


class NotificationFailure(CheckoutError):
    code = "notification_failure"
    status_code = 502
