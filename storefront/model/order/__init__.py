from ..db import Base
from .orm import Order, OrderStatus, PaymentStatus, FULFILMENT_STEPS

__all__ = [
    "Base", "Order", "OrderStatus", "PaymentStatus", "FULFILMENT_STEPS",
]
