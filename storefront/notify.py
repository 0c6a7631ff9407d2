"""
Order confirmation mail.

`NotificationClient` is constructed explicitly and handed to the
OrderCoordinator; the server owns its lifecycle:

    client = NotificationClient(host="smtp.example.com", port=587, ...)
    await client.connect()
    ...
    await client.send_order_confirmation(order, recipient)
    ...
    await client.close()

Delivery is best-effort from the caller's point of view. Failures are raised
as NotificationFailure so the coordinator can log and drop them.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional, TYPE_CHECKING

import aiosmtplib
from jinja2 import Environment, DictLoader, select_autoescape

from .collaborators import OwnerProfile
from .config import Settings
from .errors import NotificationFailure

if TYPE_CHECKING:
    from .model.order import Order

logger = logging.getLogger("storefront.notify")


TEMPLATES = {
    "confirmation.txt": """\
Dear {{ name }},

Thank you for your order! We have received it and it is being processed.

Order number: {{ order.external_reference }}
Order date:   {{ created }}
Total:        {{ currency }} {{ amount(order.total) }}
Ship to:      {{ order.street }}, {{ order.city }}, {{ order.county }}, \
{{ order.country }}

Items:
{% for item in order.line_items -%}
  - {{ item.product_id }}{% if item.variation %} ({{ item.variation }})\
{% endif %} x {{ item.quantity }}
{% endfor %}
View your order: {{ order_url }}
""",
    "confirmation.html": """\
<body style="font-family: sans-serif;">
  <h1>Order Confirmation</h1>
  <p>Dear {{ name }},</p>
  <p>Thank you for your order! We have received it and it is being
     processed.</p>
  <ul>
    <li><strong>Order Number:</strong> {{ order.external_reference }}</li>
    <li><strong>Order Date:</strong> {{ created }}</li>
    <li><strong>Total:</strong> {{ currency }} {{ amount(order.total) }}</li>
    <li><strong>Shipping Address:</strong> {{ order.street }},
        {{ order.city }}, {{ order.county }}, {{ order.country }}</li>
  </ul>
  <ul>
  {% for item in order.line_items %}
    <li>{{ item.product_id }}{% if item.variation %} - Variation:
        {{ item.variation }}{% endif %} - Quantity: {{ item.quantity }}</li>
  {% endfor %}
  </ul>
  <a href="{{ order_url }}">View Order Details</a>
</body>
""",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",)),
)


def _amount(cents: int) -> str:
    return f"{int(cents) / 100:,.2f}"


def render_confirmation(
    order: "Order", recipient: OwnerProfile, base_url: str
) -> tuple[str, str]:
    ctx = {
        "order": order,
        "name": recipient.name or order.recipient_name or "Valued Customer",
        "created": datetime.fromtimestamp(
            order.created_at, tz=timezone.utc
        ).strftime("%Y-%m-%d"),
        "currency": (order.currency or "").upper(),
        "amount": _amount,
        "order_url": f"{base_url.rstrip('/')}/order?orderId={order.id}",
    }
    text = _env.get_template("confirmation.txt").render(**ctx)
    html = _env.get_template("confirmation.html").render(**ctx)
    return text, html


class NotificationClient:
    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        encryption: str = "tls",
        sender: str = "no-reply@localhost",
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.encryption = encryption
        self.sender = sender
        self.base_url = base_url
        self.timeout = timeout
        self._smtp: Optional[aiosmtplib.SMTP] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationClient":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            encryption=settings.smtp_encryption,
            sender=settings.no_reply_address,
            base_url=settings.public_base_url,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    @property
    def connected(self) -> bool:
        return self._smtp is not None and self._smtp.is_connected

    def _make_smtp(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            use_tls=self.encryption == "ssl",
            start_tls=True if self.encryption == "tls" else False,
            timeout=self.timeout,
        )

    async def connect(self) -> None:
        if not self.enabled or self.connected:
            return
        smtp = self._make_smtp()
        try:
            await smtp.connect()
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotificationFailure(f"SMTP connect failed: {e}") from e
        self._smtp = smtp
        logger.info("SMTP connection to %s:%s established",
                    self.host, self.port)

    async def verify(self) -> bool:
        if not self.enabled:
            return False
        try:
            await self.connect()
            await self._smtp.noop()
            return True
        except (NotificationFailure, aiosmtplib.SMTPException, OSError) as e:
            logger.warning("SMTP verify failed: %s", e)
            await self.close()
            return False

    async def close(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None or not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except aiosmtplib.SMTPException:
            smtp.close()

    async def send_order_confirmation(
        self, order: "Order", recipient: OwnerProfile
    ) -> None:
        if not self.enabled:
            logger.info("mail disabled, skipping confirmation for %s",
                        order.external_reference)
            return
        if not recipient.email:
            raise NotificationFailure(
                f"no email address for owner {recipient.owner_id}"
            )
        if not await self.verify():
            raise NotificationFailure("SMTP connection failed")

        text, html = render_confirmation(order, recipient, self.base_url)
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient.email
        msg["Subject"] = "Order Confirmation"
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        try:
            await self._smtp.send_message(msg)
        except aiosmtplib.SMTPException as e:
            raise NotificationFailure(f"SMTP send failed: {e}") from e
        logger.info("order confirmation for %s sent to %s",
                    order.external_reference, recipient.email)
