from __future__ import annotations
import asyncio
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, replace
from typing import Optional, List, Set, Mapping

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError

from .collaborators import Catalog, Notifier, OwnerDirectory, OwnerProfile
from .config import Settings
from .errors import (
    CancellationRefused, DuplicateOrder, InvalidTransition, OrderNotFound,
    ValidationError,
)
from .helpers import now_ts, normalize_phone, is_blank, is_valid_email
from .infra.sql import Database
from .model.order import Order, OrderStatus, PaymentStatus, FULFILMENT_STEPS
from .pricing import CartSnapshot, PricingBreakdown, price, verify_quote
from .taskgraph import TaskGraph

logger = logging.getLogger("storefront.orders")


@dataclass(frozen=True)
class ShippingAddress:
    recipient: str
    phone: str
    street: str
    city: str
    county: str
    country: str
    email: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Optional[Mapping]) -> "ShippingAddress":
        d = d or {}
        return cls(
            recipient=str(d.get("recipient") or d.get("name") or "").strip(),
            phone=str(d.get("phone") or "").strip(),
            street=str(d.get("street") or "").strip(),
            city=str(d.get("city") or "").strip(),
            county=str(d.get("county") or "").strip(),
            country=str(d.get("country") or "").strip(),
            email=(d.get("email") or None),
        )

    def missing_fields(self) -> List[str]:
        return [f for f in ("recipient", "phone", "street", "city",
                            "county", "country")
                if is_blank(getattr(self, f))]


def new_reference(prefix: str = "INV") -> str:
    # millisecond timestamp keeps references ordered, the random suffix
    # keeps two checkouts in the same millisecond apart
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5).upper()}"


def validate_cart(cart: CartSnapshot) -> None:
    if cart is None or cart.is_empty():
        raise ValidationError("cart is empty")
    for item in cart.items:
        if is_blank(item.product_id):
            raise ValidationError("line item without product_id")
        if item.quantity <= 0:
            raise ValidationError(
                f"quantity for {item.product_id} must be positive"
            )


def validate_address(address: Optional[ShippingAddress]) -> ShippingAddress:
    if address is None:
        raise ValidationError("shipping address is required")
    missing = address.missing_fields()
    if missing:
        raise ValidationError(
            f"incomplete shipping address, missing: {', '.join(missing)}"
        )
    phone = normalize_phone(address.phone)
    if phone is None:
        raise ValidationError(f"invalid phone number {address.phone!r}")
    if address.email and not is_valid_email(address.email):
        raise ValidationError(f"invalid email address {address.email!r}")
    return replace(address, phone=phone)


class OrderCoordinator:
    """
    Turns a validated cart and address into exactly one persisted order.

    Idempotency comes in two layers. A checkout session id passed by the
    caller is bound to one external reference through the checkout gate, so
    a repeated call for the same session tries to insert the same reference.
    The unique constraint on `orders.external_reference` then rejects the
    second insert, which is answered with the order already stored.
    """

    def __init__(
        self,
        db: Database,
        catalog: Catalog,
        directory: OwnerDirectory,
        notifier: Optional[Notifier],
        gate,
        settings: Settings,
        notify_in_background: bool = True,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.directory = directory
        self.notifier = notifier
        self.gate = gate
        self.settings = settings
        self.notify_in_background = notify_in_background
        self._background: Set[asyncio.Task] = set()

    # ---
    # quoting
    # ---
    async def quote(self, cart: CartSnapshot) -> PricingBreakdown:
        validate_cart(cart)
        prices = await self._resolve_prices(cart)
        return price(cart.with_prices(prices), self.settings.tax_rate)

    async def _resolve_prices(self, cart: CartSnapshot) -> dict:
        ids = sorted({i.product_id for i in cart.items})
        found = await asyncio.gather(*(self.catalog.get_price(p) for p in ids))
        prices = dict(zip(ids, found))
        unknown = [p for p, v in prices.items() if v is None]
        if unknown:
            raise ValidationError(f"unknown products: {', '.join(unknown)}")
        return prices

    async def _check_stock(self, cart: CartSnapshot) -> None:
        wanted: dict = {}
        for i in cart.items:
            key = (i.product_id, i.variation)
            wanted[key] = wanted.get(key, 0) + i.quantity
        keys = list(wanted)
        stock = await asyncio.gather(
            *(self.catalog.get_stock(p, v) for p, v in keys)
        )
        short = [k[0] for k, have in zip(keys, stock) if have < wanted[k]]
        if short:
            raise ValidationError(
                f"insufficient stock for: {', '.join(sorted(set(short)))}"
            )

    def _loading_graph(self) -> TaskGraph:
        async def owner(owner_id: str) -> OwnerProfile:
            profile = await self.directory.get_owner(owner_id)
            if profile is None:
                raise ValidationError(f"unknown owner {owner_id!r}")
            return profile

        async def prices(cart: CartSnapshot) -> dict:
            return await self._resolve_prices(cart)

        async def stock(cart: CartSnapshot, prices: dict) -> None:
            await self._check_stock(cart)

        async def breakdown(cart: CartSnapshot, prices: dict):
            verified = cart.with_prices(prices)
            return verified, price(verified, self.settings.tax_rate)

        g = TaskGraph()
        g.add("owner", owner, inputs=("owner_id",))
        g.add("prices", prices, inputs=("cart",))
        g.add("stock", stock, after=("prices",), inputs=("cart",))
        g.add("breakdown", breakdown, after=("prices",), inputs=("cart",))
        return g

    # ---
    # creation
    # ---
    async def create_order(
        self,
        cart: CartSnapshot,
        address: Optional[ShippingAddress],
        owner_id: Optional[str],
        quoted_total: int,
        checkout_session_id: Optional[str] = None,
    ) -> Order:
        if is_blank(owner_id):
            raise ValidationError("owner identity is required")

        # sessions are scoped per owner so two owners never share a reference
        gate_key = (
            f"{owner_id}:{checkout_session_id}" if checkout_session_id else None
        )
        if gate_key:
            ref = await self.gate.lookup(gate_key)
            if ref is not None:
                existing = await self.find_by_reference(ref)
                if existing is not None:
                    logger.info("checkout %s already produced order %s",
                                checkout_session_id, ref)
                    return existing

        validate_cart(cart)
        address = validate_address(address)

        results = await self._loading_graph().run(owner_id=owner_id, cart=cart)
        owner: OwnerProfile = results["owner"]
        verified_cart, breakdown = results["breakdown"]
        verify_quote(quoted_total, breakdown, self.settings.price_tolerance)

        reference = new_reference(self.settings.invoice_prefix)
        if gate_key:
            reference = await self.gate.claim(gate_key, reference)

        order = Order(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            external_reference=reference,
            checkout_session_id=checkout_session_id,
            line_items=[i.to_dict() for i in verified_cart.items],
            subtotal=breakdown.subtotal,
            tax_rate=str(breakdown.tax_rate),
            tax_amount=breakdown.tax_amount,
            total=breakdown.total,
            currency=self.settings.currency,
            recipient_name=address.recipient,
            phone=address.phone,
            email=address.email or owner.email,
            street=address.street,
            city=address.city,
            county=address.county,
            country=address.country,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            created_at=now_ts(),
        )

        try:
            await self._insert(order)
        except DuplicateOrder as dup:
            existing = await self.find_by_reference(dup.reference)
            logger.info("order %s already exists, returning it",
                        dup.reference)
            return existing

        logger.info("order %s created for %s, total %s",
                    order.external_reference, owner_id, order.total)
        await self._confirm(order, owner)
        return order

    async def _insert(self, order: Order) -> None:
        async with self.db.sessions() as s:
            try:
                async with self.db.gated():
                    async with s.begin():
                        s.add(order)
            except IntegrityError:
                # an idempotent replay racing the first write
                await s.rollback()
                if await self.find_by_reference(order.external_reference):
                    raise DuplicateOrder(order.external_reference)
                raise

    async def _confirm(self, order: Order, owner: OwnerProfile) -> None:
        if self.notifier is None:
            return
        recipient = replace(owner, email=order.email or owner.email,
                            name=owner.name or order.recipient_name)
        if self.notify_in_background:
            task = asyncio.create_task(self._send_confirmation(order,
                                                               recipient))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            await self._send_confirmation(order, recipient)

    async def _send_confirmation(
        self, order: Order, recipient: OwnerProfile
    ) -> None:
        try:
            await self.notifier.send_order_confirmation(order, recipient)
        except Exception:
            logger.error("failed to send confirmation for order %s",
                         order.external_reference, exc_info=True)

    async def drain(self) -> None:
        """Wait for confirmations still in flight."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # ---
    # reads
    # ---
    async def find_by_reference(self, reference: str) -> Optional[Order]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                return (await s.execute(
                    select(Order).where(Order.external_reference == reference)
                )).scalar_one_or_none()

    async def get_order(self, key: str) -> Order:
        async with self.db.gated():
            async with self.db.sessions() as s:
                order = (await s.execute(
                    select(Order).where(
                        or_(Order.id == key, Order.external_reference == key)
                    )
                )).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"order {key} not found")
        return order

    async def list_orders(
        self,
        owner_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        paid_only: bool = False,
        limit: int = 200,
    ) -> List[Order]:
        stmt = select(Order)
        if owner_id is not None:
            stmt = stmt.where(Order.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        if paid_only:
            stmt = stmt.where(
                Order.payment_status == PaymentStatus.COMPLETED.value
            )
        stmt = stmt.order_by(Order.created_at.desc()).limit(
            max(1, min(limit, 500))
        )
        async with self.db.gated():
            async with self.db.sessions() as s:
                return list((await s.execute(stmt)).scalars().all())

    # ---
    # transitions
    # ---
    async def cancel_order(
        self, key: str, requester_id: str, is_admin: bool = False
    ) -> Order:
        """Cancel a pending order, addressed by id or external reference."""
        order = await self.get_order(key)
        if not is_admin and order.owner_id != requester_id:
            raise CancellationRefused(
                "unauthorized to cancel this order", status_code=403
            )

        stmt = (
            update(Order)
            .where(Order.id == order.id)
            .where(Order.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CANCELLED.value, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        if not is_admin:
            stmt = stmt.where(Order.owner_id == requester_id)

        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    rowcount = (await s.execute(stmt)).rowcount

        order = await self.get_order(order.id)
        if rowcount != 1:
            raise CancellationRefused(
                f"can only cancel pending orders, order is {order.status}"
            )
        logger.info("order %s cancelled by %s", order.id, requester_id)
        return order

    async def advance_fulfilment(
        self, key: str, target: OrderStatus | str
    ) -> Order:
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidTransition(f"unknown order status {target!r}")
        source = FULFILMENT_STEPS.get(target)
        if source is None:
            raise InvalidTransition(
                f"{target.value} is not a fulfilment step"
            )

        order = await self.get_order(key)
        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    rowcount = (await s.execute(
                        update(Order)
                        .where(Order.id == order.id)
                        .where(Order.status == source.value)
                        .values(status=target.value, updated_at=now_ts())
                        .execution_options(synchronize_session=False)
                    )).rowcount

        order = await self.get_order(order.id)
        if rowcount != 1:
            raise InvalidTransition(
                f"cannot move order from {order.status} to {target.value}"
            )
        logger.info("order %s moved to %s", order.id, target.value)
        return order
