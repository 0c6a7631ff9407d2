from __future__ import annotations
from enum import Enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    JSON,
    Index,
)

from ..db import Base
from ...helpers import to_iso


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


# fulfilment edges; pending -> processing is reserved for the webhook and
# pending -> cancelled for the cancel operation
FULFILMENT_STEPS = {
    OrderStatus.SHIPPED: OrderStatus.PROCESSING,
    OrderStatus.DELIVERED: OrderStatus.SHIPPED,
}


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    external_reference = Column(String, nullable=False, unique=True)
    checkout_session_id = Column(String, nullable=True)

    # immutable snapshot: [{product_id, unit_price, quantity, variation}]
    line_items = Column(JSON, nullable=False)
    subtotal = Column(Integer, nullable=False)  # cents
    tax_rate = Column(String, nullable=False)
    tax_amount = Column(Integer, nullable=False)  # cents
    total = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="kes")

    # shipping address + payer contact
    recipient_name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    email = Column(String, nullable=True)
    street = Column(String, nullable=False)
    city = Column(String, nullable=False)
    county = Column(String, nullable=False)
    country = Column(String, nullable=False)

    # pending | processing | shipped | delivered | cancelled
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    # pending | completed | failed
    payment_status = Column(
        String, nullable=False, default=PaymentStatus.PENDING.value
    )
    transaction_id = Column(String, nullable=True)
    # the gateway's own reference for the transaction
    provider_reference = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_orders_owner_created", "owner_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "external_reference": self.external_reference,
            "line_items": list(self.line_items or []),
            "subtotal": self.subtotal,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "currency": self.currency,
            "shipping_address": {
                "recipient": self.recipient_name,
                "phone": self.phone,
                "email": self.email,
                "street": self.street,
                "city": self.city,
                "county": self.county,
                "country": self.country,
            },
            "status": self.status,
            "payment_status": self.payment_status,
            "transaction_id": self.transaction_id,
            "created_at": to_iso(self.created_at),
            "paid_at": to_iso(self.paid_at),
        }
