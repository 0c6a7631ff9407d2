import asyncio
import re
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from storefront.collaborators import SqlCatalog, SqlOwnerDirectory
from storefront.errors import (
    CancellationRefused, InvalidTransition, OrderNotFound, PriceMismatch,
    ValidationError,
)
from storefront.model.checkoutgate import new_gate
from storefront.model.db import Product
from storefront.model.order import Order, OrderStatus, PaymentStatus
from storefront.orders import (
    OrderCoordinator, ShippingAddress, new_reference, validate_address,
)
from storefront.pricing import CartSnapshot, LineItem
from storefront.signals import Authoritative

from conftest import FailingNotifier, an_address, two_ticket_cart


async def count_orders(db) -> int:
    async with db.sessions() as s:
        return (await s.execute(
            select(func.count()).select_from(Order)
        )).scalar_one()


class TestHelpers:
    def test_reference_format(self):
        ref = new_reference("INV")
        assert re.match(r"^INV-\d{13}-[0-9A-F]{10}$", ref)
        assert new_reference("INV") != ref

    def test_address_phone_normalised(self):
        assert validate_address(an_address()).phone == "0712345678"
        assert validate_address(
            an_address(phone="0712345678")).phone == "0712345678"

    def test_address_missing_fields(self):
        with pytest.raises(ValidationError, match="street, city"):
            validate_address(an_address(street=" ", city=""))

    def test_address_bad_phone(self):
        with pytest.raises(ValidationError, match="phone"):
            validate_address(an_address(phone="12345"))

    def test_address_bad_email(self):
        with pytest.raises(ValidationError, match="email"):
            validate_address(an_address(email="not-an-email"))

    def test_address_from_dict(self):
        addr = ShippingAddress.from_dict({"name": "Bob", "city": " Mombasa "})
        assert addr.recipient == "Bob"
        assert addr.city == "Mombasa"
        assert "street" in addr.missing_fields()


class TestQuote:
    @pytest.mark.asyncio
    async def test_uses_catalog_prices(self, coordinator):
        cart = CartSnapshot.of([
            LineItem("p1", unit_price=1, quantity=2),
            LineItem("p2", unit_price=1, quantity=1),
        ])
        b = await coordinator.quote(cart)
        assert (b.subtotal, b.tax_amount, b.total) == (2500, 400, 2900)

    @pytest.mark.asyncio
    async def test_unknown_product(self, coordinator):
        with pytest.raises(ValidationError, match="unknown products: nope"):
            await coordinator.quote(
                CartSnapshot.of([LineItem("nope", 100, 1)])
            )


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order(self, coordinator, notifier, db):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", quoted_total=2900,
        )
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == PaymentStatus.PENDING.value
        assert (order.subtotal, order.tax_amount, order.total) == \
            (2500, 400, 2900)
        assert order.tax_rate == "0.16"
        assert order.phone == "0712345678"
        assert order.email == "alice@example.com"
        assert order.line_items[1] == {
            "product_id": "p2", "unit_price": 500, "quantity": 1,
            "variation": "L",
        }
        assert re.match(r"^INV-\d{13}-[0-9A-F]{10}$",
                        order.external_reference)
        assert notifier.sent == [(order.external_reference,
                                  "alice@example.com")]
        assert await count_orders(db) == 1

    @pytest.mark.asyncio
    async def test_address_email_preferred(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(email="shipping@example.com"),
            "alice", quoted_total=2900,
        )
        assert order.email == "shipping@example.com"

    @pytest.mark.asyncio
    async def test_client_prices_are_ignored(self, coordinator):
        cart = CartSnapshot.of([LineItem("p1", unit_price=1, quantity=1)])
        order = await coordinator.create_order(
            cart, an_address(), "alice", quoted_total=1160,
        )
        assert order.line_items[0]["unit_price"] == 1000
        assert order.total == 1160

    @pytest.mark.asyncio
    async def test_price_mismatch(self, coordinator, db):
        with pytest.raises(PriceMismatch) as e:
            await coordinator.create_order(
                two_ticket_cart(), an_address(), "alice", quoted_total=2500,
            )
        assert e.value.verified == 2900
        assert await count_orders(db) == 0

    @pytest.mark.asyncio
    async def test_price_changed_since_quote(self, coordinator, db):
        quoted = (await coordinator.quote(two_ticket_cart())).total
        async with db.sessions() as s:
            async with s.begin():
                p = await s.get(Product, "p1")
                p.price = 1200
        with pytest.raises(PriceMismatch):
            await coordinator.create_order(
                two_ticket_cart(), an_address(), "alice", quoted_total=quoted,
            )

    @pytest.mark.asyncio
    async def test_price_tolerance(self, db, notifier, settings):
        coordinator = OrderCoordinator(
            db=db, catalog=SqlCatalog(db), directory=SqlOwnerDirectory(db),
            notifier=notifier, gate=new_gate("sql", db=db),
            settings=replace(settings, price_tolerance=5),
            notify_in_background=False,
        )
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", quoted_total=2897,
        )
        assert order.total == 2900

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cart,match", [
        (CartSnapshot.of([]), "cart is empty"),
        (CartSnapshot.of([LineItem("p1", 1000, 0)]), "must be positive"),
        (CartSnapshot.of([LineItem("", 1000, 1)]), "without product_id"),
        (CartSnapshot.of([LineItem("p3", 7000, 2)]), "insufficient stock"),
        (CartSnapshot.of([LineItem("zzz", 1, 1)]), "unknown products"),
    ])
    async def test_invalid_carts(self, coordinator, db, cart, match):
        with pytest.raises(ValidationError, match=match):
            await coordinator.create_order(
                cart, an_address(), "alice", quoted_total=0,
            )
        assert await count_orders(db) == 0

    @pytest.mark.asyncio
    async def test_stock_counts_repeated_lines(self, coordinator):
        cart = CartSnapshot.of([
            LineItem("p3", 7000, 1, "front"),
            LineItem("p3", 7000, 1, "front"),
        ])
        with pytest.raises(ValidationError, match="insufficient stock"):
            await coordinator.create_order(
                cart, an_address(), "alice", quoted_total=16240,
            )

    @pytest.mark.asyncio
    async def test_missing_address(self, coordinator):
        with pytest.raises(ValidationError, match="address"):
            await coordinator.create_order(
                two_ticket_cart(), None, "alice", quoted_total=2900,
            )

    @pytest.mark.asyncio
    async def test_missing_owner(self, coordinator):
        with pytest.raises(ValidationError, match="owner"):
            await coordinator.create_order(
                two_ticket_cart(), an_address(), "  ", quoted_total=2900,
            )

    @pytest.mark.asyncio
    async def test_unknown_owner(self, coordinator, db):
        with pytest.raises(ValidationError, match="unknown owner"):
            await coordinator.create_order(
                two_ticket_cart(), an_address(), "mallory", quoted_total=2900,
            )
        assert await count_orders(db) == 0

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_order(
        self, db, settings, caplog
    ):
        failing = FailingNotifier()
        coordinator = OrderCoordinator(
            db=db, catalog=SqlCatalog(db), directory=SqlOwnerDirectory(db),
            notifier=failing, gate=new_gate("sql", db=db),
            settings=settings, notify_in_background=False,
        )
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", quoted_total=2900,
        )
        assert failing.calls == 1
        assert order.status == OrderStatus.PENDING.value
        assert await count_orders(db) == 1
        assert "failed to send confirmation" in caplog.text

    @pytest.mark.asyncio
    async def test_background_confirmation_drained(self, db, settings,
                                                   notifier):
        coordinator = OrderCoordinator(
            db=db, catalog=SqlCatalog(db), directory=SqlOwnerDirectory(db),
            notifier=notifier, gate=new_gate("sql", db=db),
            settings=settings,
        )
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", quoted_total=2900,
        )
        await coordinator.drain()
        assert notifier.sent == [(order.external_reference,
                                  "alice@example.com")]


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_session_yields_one_order(self, coordinator, notifier,
                                                 db):
        first = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        second = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        assert second.id == first.id
        assert second.external_reference == first.external_reference
        assert await count_orders(db) == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_different_sessions_yield_two_orders(self, coordinator, db):
        a = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        b = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-2",
        )
        assert a.id != b.id
        assert await count_orders(db) == 2

    @pytest.mark.asyncio
    async def test_sessions_are_scoped_per_owner(self, coordinator, db):
        a = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        b = await coordinator.create_order(
            two_ticket_cart(), an_address(), "bob", 2900,
            checkout_session_id="cs-1",
        )
        assert b.owner_id == "bob"
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_concurrent_submissions(self, coordinator, db):
        results = await asyncio.gather(*(
            coordinator.create_order(
                two_ticket_cart(), an_address(), "alice", 2900,
                checkout_session_id="cs-race",
            )
            for _ in range(3)
        ))
        assert len({o.id for o in results}) == 1
        assert await count_orders(db) == 1

    @pytest.mark.asyncio
    async def test_unique_reference_resolves_to_existing(
        self, db, settings, notifier
    ):
        # a gate that forgot the first lookup but still hands out the same
        # reference: the unique constraint has the last word
        gate = AsyncMock()
        gate.lookup.return_value = None
        gate.claim.return_value = "INV-1700000000000-AAAAAAAAAA"
        coordinator = OrderCoordinator(
            db=db, catalog=SqlCatalog(db), directory=SqlOwnerDirectory(db),
            notifier=notifier, gate=gate, settings=settings,
            notify_in_background=False,
        )
        first = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        second = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
            checkout_session_id="cs-1",
        )
        assert second.id == first.id
        assert await count_orders(db) == 1
        assert len(notifier.sent) == 1


class TestReads:
    @pytest.mark.asyncio
    async def test_get_by_id_or_reference(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        assert (await coordinator.get_order(order.id)).id == order.id
        assert (await coordinator.get_order(
            order.external_reference)).id == order.id
        with pytest.raises(OrderNotFound):
            await coordinator.get_order("missing")

    @pytest.mark.asyncio
    async def test_list_orders_filters(self, coordinator, reconciler):
        a = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await coordinator.create_order(
            two_ticket_cart(), an_address(), "bob", 2900,
        )
        await reconciler.apply_authoritative(Authoritative(
            a.external_reference, PaymentStatus.COMPLETED, "TX1",
        ))

        mine = await coordinator.list_orders(owner_id="alice")
        assert len(mine) == 2
        assert all(o.owner_id == "alice" for o in mine)
        assert mine[0].created_at >= mine[1].created_at

        paid = await coordinator.list_orders(paid_only=True)
        assert [o.id for o in paid] == [a.id]

        processing = await coordinator.list_orders(
            status=OrderStatus.PROCESSING)
        assert [o.id for o in processing] == [a.id]


class TestCancel:
    @pytest.mark.asyncio
    async def test_owner_cancels_pending(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        cancelled = await coordinator.cancel_order(order.id, "alice")
        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.payment_status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await coordinator.cancel_order(order.id, "alice")
        with pytest.raises(CancellationRefused) as e:
            await coordinator.cancel_order(order.id, "alice")
        assert e.value.status_code == 409

    @pytest.mark.asyncio
    async def test_cannot_cancel_processing(self, coordinator, reconciler):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await reconciler.apply_authoritative(Authoritative(
            order.external_reference, PaymentStatus.COMPLETED, "TX1",
        ))
        with pytest.raises(CancellationRefused, match="pending"):
            await coordinator.cancel_order(order.id, "alice")
        assert (await coordinator.get_order(order.id)).status == \
            OrderStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_other_owner_refused(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        with pytest.raises(CancellationRefused) as e:
            await coordinator.cancel_order(order.id, "bob")
        assert e.value.status_code == 403
        assert (await coordinator.get_order(order.id)).status == \
            OrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_cancel_by_reference(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        cancelled = await coordinator.cancel_order(
            order.external_reference, "alice")
        assert cancelled.id == order.id
        assert cancelled.status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_other_owner_refused_by_reference(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        with pytest.raises(CancellationRefused) as e:
            await coordinator.cancel_order(order.external_reference, "bob")
        assert e.value.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_cancels_any_pending(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        cancelled = await coordinator.cancel_order(order.id, "admin",
                                                   is_admin=True)
        assert cancelled.status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_unknown_order(self, coordinator):
        with pytest.raises(OrderNotFound):
            await coordinator.cancel_order("missing", "alice")


class TestFulfilment:
    @pytest.mark.asyncio
    async def test_paid_order_moves_forward(self, coordinator, reconciler):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await reconciler.apply_authoritative(Authoritative(
            order.external_reference, PaymentStatus.COMPLETED, "TX1",
        ))
        shipped = await coordinator.advance_fulfilment(order.id, "shipped")
        assert shipped.status == OrderStatus.SHIPPED.value
        delivered = await coordinator.advance_fulfilment(
            order.id, OrderStatus.DELIVERED)
        assert delivered.status == OrderStatus.DELIVERED.value

    @pytest.mark.asyncio
    async def test_advance_by_reference(self, coordinator, reconciler):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await reconciler.apply_authoritative(Authoritative(
            order.external_reference, PaymentStatus.COMPLETED, "TX1",
        ))
        shipped = await coordinator.advance_fulfilment(
            order.external_reference, "shipped")
        assert shipped.id == order.id
        assert shipped.status == OrderStatus.SHIPPED.value

    @pytest.mark.asyncio
    async def test_advance_unknown_order(self, coordinator):
        with pytest.raises(OrderNotFound):
            await coordinator.advance_fulfilment("missing", "shipped")

    @pytest.mark.asyncio
    async def test_unpaid_order_cannot_ship(self, coordinator):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        with pytest.raises(InvalidTransition):
            await coordinator.advance_fulfilment(order.id, "shipped")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["processing", "cancelled",
                                        "pending", "lost"])
    async def test_only_fulfilment_steps(self, coordinator, target):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        with pytest.raises(InvalidTransition):
            await coordinator.advance_fulfilment(order.id, target)

    @pytest.mark.asyncio
    async def test_no_skipping(self, coordinator, reconciler):
        order = await coordinator.create_order(
            two_ticket_cart(), an_address(), "alice", 2900,
        )
        await reconciler.apply_authoritative(Authoritative(
            order.external_reference, PaymentStatus.COMPLETED, "TX1",
        ))
        with pytest.raises(InvalidTransition, match="processing"):
            await coordinator.advance_fulfilment(order.id, "delivered")
