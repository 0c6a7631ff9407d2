from __future__ import annotations
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .collaborators import SqlCartService, SqlCatalog, SqlOwnerDirectory
from .config import Settings
from .errors import CheckoutError, NotificationFailure, ValidationError
from .errors import WebhookVerificationFailure
from .gateway import (
    GatewayConfig, MockGateway, PaymentGatewayAdapter, PaymentProvider,
    SIGNATURE_HEADER, checkout_urls, display_amount,
)
from .helpers import ct_equal, now_ts
from .infra.sql import make_database
from .model.checkoutgate import new_gate
from .model.db import Base
from .model.order import Order, OrderStatus
from .notify import NotificationClient
from .orders import OrderCoordinator, ShippingAddress
from .pricing import CartSnapshot, LineItem
from .reconcile import ReconciliationService
from .signals import Advisory
from .tracking import progress, project

logger = logging.getLogger("storefront.server")


# ---
# startup / shutdown
# ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings

    print('\n' * 3)
    print('=' * 50)
    print('Storefront checkout is starting up...')
    print(f'   - Database: {settings.database_url.split("://")[0]}')
    print(f'   - Checkout gate backend: {settings.checkout_gate_backend}')
    print(f'   - Mail: {settings.smtp_host or "disabled"}')
    print('=' * 50)
    print('\n' * 3)

    db = make_database(settings.database_url)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )

    app.state.redis = None
    if settings.checkout_gate_backend == "redis":
        app.state.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    notifier = NotificationClient.from_settings(settings)
    try:
        await notifier.connect()
    except NotificationFailure as e:
        # mail is best effort, the shop keeps running without it
        logger.warning("notification client not connected: %s", e)

    app.state.db = db
    app.state.notifier = notifier
    app.state.coordinator = OrderCoordinator(
        db=db,
        catalog=SqlCatalog(db),
        directory=SqlOwnerDirectory(db),
        notifier=notifier,
        gate=new_gate(settings.checkout_gate_backend, db=db,
                      r=app.state.redis,
                      ttl_seconds=settings.checkout_gate_ttl),
        settings=settings,
    )
    app.state.reconciler = ReconciliationService(db, carts=SqlCartService(db))
    app.state.provider = MockGateway(settings.webhook_secret)
    try:
        yield
    finally:
        await app.state.coordinator.drain()
        await notifier.close()
        await app.state.http.aclose()
        if app.state.redis is not None:
            await app.state.redis.close()
        await db.dispose()


# ----------------------------
# Dependencies
# ----------------------------
def get_coordinator(request: Request) -> OrderCoordinator:
    return request.app.state.coordinator


def get_reconciler(request: Request) -> ReconciliationService:
    return request.app.state.reconciler


def get_provider(request: Request) -> PaymentProvider:
    return request.app.state.provider


def current_owner(request: Request) -> str:
    # the upstream auth layer sets a verified owner id; trusted as-is
    owner = (request.headers.get("x-owner-id") or "").strip()
    if not owner:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=403, detail="admin only")


def _visible_to(request: Request, order: Order) -> bool:
    if is_admin(request):
        return True
    owner = (request.headers.get("x-owner-id") or "").strip()
    return bool(owner) and owner == order.owner_id


def _cart_from_payload(payload: dict) -> CartSnapshot:
    items = payload.get("items")
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    if not all(isinstance(i, dict) for i in items):
        raise ValidationError("items must be objects")
    return CartSnapshot.of(LineItem.from_dict(i) for i in items)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if not settings.database_url:
        raise RuntimeError("NEED DATABASE_URL!")

    app = FastAPI(
        title="Storefront Checkout",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

    @app.exception_handler(CheckoutError)
    async def _checkout_error(request: Request, exc: CheckoutError):
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    # ----------------------------
    # API: quote & order creation
    # ----------------------------
    @app.post("/api/checkout/quote")
    async def quote(
        payload: dict,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        breakdown = await coordinator.quote(_cart_from_payload(payload))
        return breakdown.to_dict()

    @app.post("/api/orders", status_code=201)
    async def create_order(
        payload: dict,
        owner_id: str = Depends(current_owner),
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        total = payload.get("total")
        if total is None:
            raise ValidationError("total is required")
        try:
            total = int(total)
        except (TypeError, ValueError):
            raise ValidationError("total must be an integer amount in cents")

        order = await coordinator.create_order(
            cart=_cart_from_payload(payload),
            address=ShippingAddress.from_dict(payload.get("address")),
            owner_id=owner_id,
            quoted_total=total,
            checkout_session_id=payload.get("checkout_session_id"),
        )
        return order.to_dict()

    # ----------------------------
    # API: order reads (polled by the success page)
    # ----------------------------
    @app.get("/api/orders")
    async def list_my_orders(
        status: Optional[str] = None,
        owner_id: str = Depends(current_owner),
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        if status is not None and status not in {s.value for s in OrderStatus}:
            raise ValidationError(f"unknown status {status!r}")
        orders = await coordinator.list_orders(owner_id=owner_id,
                                               status=status)
        return {"items": [o.to_dict() for o in orders]}

    @app.get("/api/orders/{key}")
    async def get_order(
        key: str, request: Request,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        order = await coordinator.get_order(key)
        if not _visible_to(request, order):
            raise HTTPException(403, detail="Unauthorized to view this order")
        return order.to_dict()

    @app.get("/api/orders/{key}/tracking")
    async def get_tracking(
        key: str, request: Request,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        order = await coordinator.get_order(key)
        if not _visible_to(request, order):
            raise HTTPException(403, detail="Unauthorized to view this order")
        milestones = project(order, now_ts())
        return {
            "order_id": order.id,
            "status": order.status,
            "milestones": [m.to_dict() for m in milestones],
            "progress": progress(milestones),
        }

    @app.post("/api/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str, request: Request,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        admin = is_admin(request)
        requester = (request.headers.get("x-owner-id") or "").strip()
        if not requester and not admin:
            raise HTTPException(status_code=401, detail="Unauthorized")
        order = await coordinator.cancel_order(
            order_id, requester or request.session.get("admin_user"),
            is_admin=admin,
        )
        return order.to_dict()

    # ----------------------------
    # API: payment widget
    # ----------------------------
    @app.post("/api/orders/{order_id}/widget")
    async def init_widget(
        order_id: str,
        owner_id: str = Depends(current_owner),
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        order = await coordinator.get_order(order_id)
        if order.owner_id != owner_id:
            raise HTTPException(403, detail="Unauthorized to pay this order")
        async with PaymentGatewayAdapter(
            GatewayConfig.from_settings(settings),
            http=app.state.http,
            timeout=settings.payment_script_timeout,
        ) as widget:
            await widget.load_script()
            options = widget.init(
                order, **checkout_urls(settings.public_base_url, order)
            )
            return {"widget": widget.snapshot(), "options": options}

    @app.post("/api/orders/{order_id}/advisory")
    async def advisory(
        order_id: str,
        payload: dict,
        owner_id: str = Depends(current_owner),
        coordinator: OrderCoordinator = Depends(get_coordinator),
        reconciler: ReconciliationService = Depends(get_reconciler),
    ):
        order = await coordinator.get_order(order_id)
        if order.owner_id != owner_id:
            raise HTTPException(403, detail="Unauthorized")
        signal = reconciler.record_advisory(Advisory(
            reference=order.external_reference,
            success=bool(payload.get("paymentSuccess",
                                     payload.get("success"))),
            message=payload.get("message"),
        ))
        return {
            "display_status": ("client_success" if signal.success
                               else "client_failure"),
            "payment_status": order.payment_status,
        }

    # ----------------------------
    # Webhook endpoint
    # ----------------------------
    @app.post("/api/payments/callback")
    async def payments_callback(
        request: Request,
        provider: PaymentProvider = Depends(get_provider),
        reconciler: ReconciliationService = Depends(get_reconciler),
    ):
        payload = await request.body()
        headers = dict(request.headers)
        try:
            event = provider.verify_webhook(payload, headers)
            signal = provider.parse_outcome(event)
        except WebhookVerificationFailure as e:
            logger.error("rejected payment callback (%s), possible "
                         "integrity issue", e.detail)
            raise
        result = await reconciler.apply_authoritative(signal)
        return result.to_dict()

    # ----------------------------
    # Admin back office
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            return {"ok": True}
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)

    @app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
    async def api_admin_orders(
        limit: int = 200, user_id: Optional[str] = None,
        status: Optional[str] = None,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        if status is not None and status not in {s.value for s in OrderStatus}:
            raise ValidationError(f"unknown status {status!r}")
        orders = await coordinator.list_orders(
            owner_id=user_id, status=status, paid_only=True, limit=limit
        )
        return {"items": [o.to_dict() for o in orders], "limit": limit}

    @app.post("/api/admin/orders/{order_id}/status",
              dependencies=[Depends(require_admin)])
    async def api_admin_status(
        order_id: str, payload: dict,
        coordinator: OrderCoordinator = Depends(get_coordinator),
    ):
        order = await coordinator.advance_fulfilment(
            order_id, payload.get("status")
        )
        return order.to_dict()

    # ----------------------------
    # Mock gateway: emits a signed webhook like the real provider would
    # ----------------------------
    @app.post("/mockpay/{reference}/emit")
    async def mockpay_emit(
        reference: str, request: Request,
        coordinator: OrderCoordinator = Depends(get_coordinator),
        provider: MockGateway = Depends(get_provider),
    ):
        form = await request.form()
        kind = form.get("t")  # succeeded|failed|canceled
        if kind not in {"succeeded", "failed", "canceled"}:
            raise HTTPException(400, detail="invalid kind")

        order = await coordinator.get_order(reference)
        event = {
            "reference": order.external_reference,
            "status": "completed" if kind == "succeeded" else kind,
            "transactionId": f"MCK{uuid.uuid4().hex[:10].upper()}",
            "amount": display_amount(order.total),
            "created_at": int(time.time()),
        }
        body = json.dumps(event).encode()
        urls = checkout_urls(settings.public_base_url, order)

        try:
            await app.state.http.post(
                urls["callback_url"],
                content=body,
                headers={
                    SIGNATURE_HEADER: provider.sign(body),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the provider retries on its own; the user can emit again
            logger.warning("mock webhook delivery failed: %s", e)

        if kind == "succeeded":
            return RedirectResponse(url=urls["success_url"],
                                    status_code=HTTP_303_SEE_OTHER)
        return RedirectResponse(url=urls["failure_url"],
                                status_code=HTTP_303_SEE_OTHER)

    return app
