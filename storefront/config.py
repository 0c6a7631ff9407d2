from __future__ import annotations
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_SCRIPT_URL = "https://applet.payherokenya.com/cdn/button_sdk.js?v=3.1"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name, default)
    if value is not None and not value.strip():
        return default
    return value


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None

    # pricing
    tax_rate: Decimal = Decimal("0.16")
    price_tolerance: int = 0  # minor units
    currency: str = "kes"
    invoice_prefix: str = "INV"

    # payment gateway
    payment_channel_id: Optional[str] = None
    payment_url: Optional[str] = None
    payment_script_url: str = DEFAULT_SCRIPT_URL
    payment_script_timeout: float = 10.0
    webhook_secret: str = "supersecret"
    public_base_url: str = "http://localhost:8000"

    # checkout gate
    checkout_gate_backend: str = "sql"  # 'sql' | 'redis'
    checkout_gate_ttl: int = 24 * 3600
    redis_url: str = "redis://127.0.0.1:6379"

    # notifications
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_encryption: str = "tls"  # 'tls' | 'ssl' | 'none'
    no_reply_address: str = "no-reply@localhost"

    # admin back office
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env("DATABASE_URL"),
            tax_rate=Decimal(_env("TAX_RATE", "0.16")),
            price_tolerance=int(_env("PRICE_TOLERANCE", "0")),
            currency=_env("CURRENCY", "kes").lower(),
            invoice_prefix=_env("INVOICE_PREFIX", "INV"),
            payment_channel_id=_env("PAYMENT_CHANNEL_ID"),
            payment_url=_env("PAYMENT_URL"),
            payment_script_url=_env("PAYMENT_SCRIPT_URL", DEFAULT_SCRIPT_URL),
            payment_script_timeout=float(_env("PAYMENT_SCRIPT_TIMEOUT", "10")),
            webhook_secret=_env("WEBHOOK_SECRET", "supersecret"),
            public_base_url=_env("PUBLIC_BASE_URL", "http://localhost:8000"),
            checkout_gate_backend=_env(
                "CHECKOUT_GATE_BACKEND", "sql"
            ).lower(),
            checkout_gate_ttl=int(_env("CHECKOUT_GATE_TTL", str(24 * 3600))),
            redis_url=_env("REDIS_URL", "redis://127.0.0.1:6379"),
            smtp_host=_env("SMTP_HOST"),
            smtp_port=int(_env("SMTP_PORT", "587")),
            smtp_username=_env("SMTP_USERNAME"),
            smtp_password=_env("SMTP_PASSWORD"),
            smtp_encryption=_env("SMTP_ENCRYPTION", "tls").lower(),
            no_reply_address=_env(
                "NO_REPLY_EMAIL_ADDRESS", "no-reply@localhost"
            ),
            session_secret=_env("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=_env("ADMIN_USERNAME", "admin"),
            admin_password=_env("ADMIN_PASSWORD", "supasecret"),
        )
