from __future__ import annotations
from abc import ABC, abstractmethod
import asyncio
import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, TypedDict, TYPE_CHECKING
from urllib.parse import urlencode, urlparse

import httpx

from .config import Settings
from .errors import (
    GatewayMisconfigured, GatewayUnavailable, NotReady,
    WebhookVerificationFailure,
)
from .model.order import OrderStatus, PaymentStatus
from .signals import Advisory, Authoritative, parse_provider_status

if TYPE_CHECKING:
    from .model.order import Order

logger = logging.getLogger("storefront.gateway")

SIGNATURE_HEADER = "x-payment-signature"


# ----------------------------
# Hosted widget
# ----------------------------
@dataclass(frozen=True)
class GatewayConfig:
    channel_id: Optional[str]
    payment_url: Optional[str]
    script_url: Optional[str]
    secret: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            channel_id=settings.payment_channel_id,
            payment_url=settings.payment_url,
            script_url=settings.payment_script_url,
            secret=settings.webhook_secret,
        )

    def validate(self) -> int:
        """Return the numeric channel id or raise GatewayMisconfigured."""
        if not self.payment_url or not self.channel_id:
            raise GatewayMisconfigured(
                "payment gateway configuration missing: PAYMENT_URL or "
                "PAYMENT_CHANNEL_ID"
            )
        if urlparse(self.payment_url).scheme not in ("http", "https"):
            raise GatewayMisconfigured(
                f"payment gateway URL is not http(s): {self.payment_url!r}"
            )
        try:
            channel = int(self.channel_id)
        except ValueError:
            channel = 0
        if channel <= 0:
            raise GatewayMisconfigured(
                f"payment gateway channel id is not a number: "
                f"{self.channel_id!r}"
            )
        if not self.script_url:
            raise GatewayMisconfigured("payment widget script URL missing")
        return channel


class WidgetState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"                    # script loaded, no button yet
    BUTTON_READY = "button_ready"      # initialised for an order
    UNAVAILABLE = "unavailable"        # script failed to load (retryable)
    MISCONFIGURED = "misconfigured"    # operator fault
    CLIENT_SUCCESS = "client_success"  # advisory only
    CLIENT_FAILURE = "client_failure"  # advisory only


TERMINAL_ERROR_STATES = (WidgetState.UNAVAILABLE, WidgetState.MISCONFIGURED)


class WidgetOptions(TypedDict):
    paymentUrl: str
    channelID: int
    amount: int
    phone: str
    name: str
    reference: str
    buttonName: str
    successUrl: str
    failedUrl: str
    callbackUrl: str


class CheckoutUrls(TypedDict):
    success_url: str
    failure_url: str
    callback_url: str


def checkout_urls(base_url: str, order: "Order") -> CheckoutUrls:
    base = base_url.rstrip("/")
    q_ok = urlencode({"orderId": order.id, "ref": order.external_reference})
    q_fail = urlencode({
        "payment_status": "failed",
        "orderId": order.id,
        "ref": order.external_reference,
    })
    return {
        "success_url": f"{base}/order/success?{q_ok}",
        "failure_url": f"{base}/checkout?{q_fail}",
        "callback_url": f"{base}/api/payments/callback",
    }


def display_amount(cents: int) -> int:
    # the widget takes whole currency units, round up
    return -(-int(cents) // 100)


Listener = Callable[[Advisory], None]


class Subscription:
    def __init__(self, adapter: "PaymentGatewayAdapter",
                 listener: Listener) -> None:
        self._adapter = adapter
        self.listener = listener

    @property
    def active(self) -> bool:
        return self in self._adapter._subscriptions

    def unsubscribe(self) -> None:
        try:
            self._adapter._subscriptions.remove(self)
        except ValueError:
            pass


class PaymentGatewayAdapter:
    """
    Bridge to the hosted payment widget for one checkout flow.

    The widget script is loaded asynchronously and the button may only be
    initialised once the order exists. Outcomes the widget reports to the
    client arrive as Advisory signals through `publish()`; they change the
    display state only. Use it as an async context manager (or call
    `close()`) so listeners are removed when the checkout flow ends.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http: httpx.AsyncClient,
        timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.http = http
        self.timeout = timeout
        self.state = WidgetState.IDLE
        self.message = ""
        self.reference: Optional[str] = None
        self.last_advisory: Optional[Advisory] = None
        self._script_loaded = False
        self._subscriptions: List[Subscription] = []

    async def __aenter__(self) -> "PaymentGatewayAdapter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---
    # script loading
    # ---
    def _set(self, state: WidgetState, message: str = "") -> None:
        self.state = state
        self.message = message

    async def load_script(self) -> None:
        if self._script_loaded:
            return
        if self.state in TERMINAL_ERROR_STATES:
            raise (GatewayUnavailable(self.message)
                   if self.state is WidgetState.UNAVAILABLE
                   else GatewayMisconfigured(self.message))
        if not self.config.script_url:
            self._misconfigured("payment widget script URL missing")

        self._set(WidgetState.LOADING, "Loading payment gateway...")
        try:
            resp = await asyncio.wait_for(
                self.http.get(self.config.script_url), timeout=self.timeout
            )
            resp.raise_for_status()
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            msg = ("Payment gateway failed to load. Please refresh and try "
                   "again.")
            self._set(WidgetState.UNAVAILABLE, msg)
            logger.warning("payment widget script failed to load: %r", e)
            raise GatewayUnavailable(msg) from e

        self._script_loaded = True
        self._set(WidgetState.READY)

    async def retry(self) -> None:
        """Manual retry after the script failed to load."""
        if self.state is WidgetState.UNAVAILABLE:
            self._set(WidgetState.IDLE)
        await self.load_script()

    def _misconfigured(self, detail: str) -> None:
        self._set(WidgetState.MISCONFIGURED,
                  "Payment gateway configuration error. Please contact "
                  "support.")
        logger.error("payment gateway misconfigured: %s", detail)
        raise GatewayMisconfigured(detail)

    # ---
    # button initialisation
    # ---
    def init(
        self,
        order: Optional["Order"],
        success_url: str,
        failure_url: str,
        callback_url: str,
    ) -> WidgetOptions:
        if self.state is WidgetState.MISCONFIGURED:
            raise GatewayMisconfigured(self.message)
        if order is None:
            raise NotReady("payment widget needs an order first")
        if (order.payment_status != PaymentStatus.PENDING.value
                or order.status != OrderStatus.PENDING.value):
            raise NotReady(
                f"order {order.external_reference} is not awaiting payment"
            )
        if not self._script_loaded:
            raise NotReady("payment widget script not loaded yet")
        try:
            channel = self.config.validate()
        except GatewayMisconfigured as e:
            self._misconfigured(e.detail)

        amount = display_amount(order.total)
        options: WidgetOptions = {
            "paymentUrl": self.config.payment_url,
            "channelID": channel,
            "amount": amount,
            "phone": order.phone,
            "name": order.recipient_name or "Valued Customer",
            "reference": order.external_reference,
            "buttonName": f"Pay Now {(order.currency or '').upper()} "
                          f"{amount:,}",
            "successUrl": success_url,
            "failedUrl": failure_url,
            "callbackUrl": callback_url,
        }
        self.reference = order.external_reference
        self._set(WidgetState.BUTTON_READY,
                  "Please complete payment using the button below.")
        return options

    # ---
    # advisory channel
    # ---
    def subscribe(self, listener: Listener) -> Subscription:
        sub = Subscription(self, listener)
        self._subscriptions.append(sub)
        return sub

    def publish(self, signal: Advisory) -> bool:
        """
        Feed a client-reported outcome. Returns False if the signal does not
        belong to the order this widget was initialised for.
        """
        if self.reference is None or signal.reference != self.reference:
            logger.warning("ignoring advisory for %s, widget bound to %s",
                           signal.reference, self.reference)
            return False
        self.last_advisory = signal
        if signal.success:
            self._set(WidgetState.CLIENT_SUCCESS,
                      "Payment successful! Awaiting final confirmation...")
        else:
            self._set(WidgetState.CLIENT_FAILURE,
                      signal.message or "Payment failed. Please try again.")
        for sub in list(self._subscriptions):
            sub.listener(signal)
        return True

    def close(self) -> None:
        self._subscriptions.clear()

    def snapshot(self) -> Dict[str, Optional[str]]:
        return {
            "state": self.state.value,
            "message": self.message,
            "reference": self.reference,
        }


# ----------------------------
# Webhook verification (provider side)
# ----------------------------
class PaymentProvider(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    def parse_outcome(self, event: dict) -> Authoritative: ...


class MockGateway(PaymentProvider):
    """
    HMAC-SHA256 over the raw body, base64 encoded in `x-payment-signature`.

    Accepts both our callback shape `{reference, status, transactionId}` and
    the button SDK shape `{paymentSuccess, user_reference, reference,
    providerReference, amount}`.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        headers = {k.lower(): v for k, v in headers.items()}
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise WebhookVerificationFailure("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise WebhookVerificationFailure("Invalid JSON")
        if not isinstance(event, dict):
            raise WebhookVerificationFailure("Invalid payload")
        return event

    def parse_outcome(self, event: dict) -> Authoritative:
        if "user_reference" in event:
            reference = event.get("user_reference")
            status = parse_provider_status(event.get("paymentSuccess"))
            transaction_id = event.get("providerReference")
            provider_reference = event.get("reference")
        else:
            reference = event.get("reference")
            status = parse_provider_status(event.get("status"))
            transaction_id = (event.get("transactionId")
                              or event.get("transaction_id"))
            provider_reference = event.get("providerReference")
        if not reference:
            raise WebhookVerificationFailure("missing reference")
        if status is None:
            raise WebhookVerificationFailure("missing or unknown status")
        amount = event.get("amount")
        try:
            amount = int(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount = None
        return Authoritative(
            reference=str(reference),
            provider_status=status,
            transaction_id=transaction_id,
            provider_reference=provider_reference,
            amount=amount,
        )
