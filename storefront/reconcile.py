"""
Reconciliation of payment outcomes.

Advisory signals come from the client and are only logged. Authoritative
signals come from the verified provider webhook and are applied with one
conditional UPDATE guarded by `payment_status = 'pending'`, so concurrent
or repeated deliveries of the same webhook cannot both win. A payment that
completes clears the owner's cart; a failure there is logged and dropped.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import case, select, update

from .collaborators import CartService
from .errors import UnknownReference
from .gateway import display_amount
from .helpers import now_ts
from .infra.sql import Database
from .model.order import Order, OrderStatus, PaymentStatus
from .signals import Advisory, Authoritative

logger = logging.getLogger("storefront.reconcile")


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # payment already terminal, no-op
    UNKNOWN = "unknown"      # no order with this reference, no-op


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    reference: str
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "outcome": self.outcome.value,
            "reference": self.reference,
            "order_id": self.order_id,
            "payment_status": self.payment_status,
            "order_status": self.status,
        }


class ReconciliationService:
    def __init__(self, db: Database,
                 carts: Optional[CartService] = None) -> None:
        self.db = db
        self.carts = carts

    def record_advisory(self, signal: Advisory) -> Advisory:
        logger.info("advisory %s for %s (display only)",
                    "success" if signal.success else "failure",
                    signal.reference)
        return signal

    async def apply_authoritative(
        self, signal: Authoritative
    ) -> ReconcileResult:
        target = signal.provider_status
        if not target.terminal:
            raise ValueError(f"webhook status must be terminal, got {target}")

        paid = target is PaymentStatus.COMPLETED
        ts = now_ts()
        cancelled = Order.status == OrderStatus.CANCELLED.value
        values = {
            "payment_status": target.value,
            "transaction_id": signal.transaction_id,
            # a cancelled order keeps its cancellation time
            "updated_at": case((cancelled, Order.updated_at), else_=ts),
            # paid orders start fulfilment; failed ones stay pending so the
            # owner may retry, cancelled ones stay cancelled
            "status": case(
                (Order.status == OrderStatus.PENDING.value,
                 OrderStatus.PROCESSING.value if paid
                 else OrderStatus.PENDING.value),
                else_=Order.status,
            ),
        }
        if signal.provider_reference:
            values["provider_reference"] = signal.provider_reference
        if paid:
            values["paid_at"] = ts

        stmt = (
            update(Order)
            .where(Order.external_reference == signal.reference)
            .where(Order.payment_status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        try:
            rowcount, order = await self._apply(stmt, signal.reference)
        except UnknownReference:
            logger.warning("webhook for unknown reference %s acknowledged",
                           signal.reference)
            return ReconcileResult(Outcome.UNKNOWN, signal.reference)

        result = ReconcileResult(
            outcome=Outcome.APPLIED if rowcount == 1 else Outcome.DUPLICATE,
            reference=signal.reference,
            order_id=order.id,
            payment_status=order.payment_status,
            status=order.status,
        )

        if result.outcome is Outcome.DUPLICATE:
            logger.warning(
                "webhook for %s ignored, payment already %s",
                signal.reference, order.payment_status,
            )
            return result

        logger.info("payment %s for order %s (%s), order now %s",
                    order.payment_status, order.id, signal.reference,
                    order.status)
        if (paid and signal.amount is not None
                and signal.amount != display_amount(order.total)):
            logger.warning(
                "amount mismatch for order %s: expected %s, paid %s",
                order.id, display_amount(order.total), signal.amount,
            )
        if paid and order.status == OrderStatus.CANCELLED.value:
            logger.warning(
                "payment completed for cancelled order %s, refund needed",
                order.id,
            )
        if paid:
            await self._clear_cart(order)
        return result

    async def _apply(self, stmt, reference: str) -> Tuple[int, Order]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    rowcount = (await s.execute(stmt)).rowcount
                order = (await s.execute(
                    select(Order).where(Order.external_reference == reference)
                )).scalar_one_or_none()
        if order is None:
            raise UnknownReference(f"no order with reference {reference}")
        return rowcount, order

    async def _clear_cart(self, order: Order) -> None:
        if self.carts is None:
            return
        try:
            await self.carts.clear(order.owner_id)
        except Exception:
            logger.error("failed to clear cart of %s after order %s",
                         order.owner_id, order.external_reference,
                         exc_info=True)
