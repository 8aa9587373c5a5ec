"""
Order Service — FastAPI entrypoint

Thin HTTP handlers over the lifecycle engine. Commands (POST) change an
order; queries (GET) read it. The payment gateway calls the webhook, and a
background task started in the lifespan runs the reminder/expiry sweeper.

┌──────────┐  commands   ┌─────────────────┐  CAS   ┌──────────┐
│ Buyer /  │ ──────────▶ │ Lifecycle Engine │ ─────▶ │ Order DB │
│ Seller   │             └────────▲────────┘        └──────────┘
└──────────┘                      │ sweep_expired        ▲
┌──────────┐  webhook             │                      │ scan
│ Paystack │ ───────────▶ reconcile_payment       ┌──────┴──────┐
└──────────┘                                      │   Sweeper   │
                                                  └─────────────┘

Authentication is handled upstream; the acting user arrives in X-User-Id.
"""

import asyncio
import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from . import queries
from .config import Settings, configure_logging
from .engine import OrderLifecycleEngine, TransitionResult
from .errors import ErrorKind, InvalidState, OrderError, ReferenceMismatch
from .gateway import PaystackGateway
from .notifications import RedisNotificationSink
from .publisher import RedisEventPublisher
from .schema import verify_schema
from .store import OrderStore
from .sweeper import RedisSweepLock, Sweeper

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.ITEM_UNAVAILABLE: 409,
    ErrorKind.DEADLINE_EXPIRED: 410,
    ErrorKind.REFERENCE_MISMATCH: 422,
    ErrorKind.INVALID_ORDER: 422,
    ErrorKind.GATEWAY: 502,
}


@dataclass
class Services:
    store: OrderStore
    engine: OrderLifecycleEngine
    gateway: PaystackGateway
    sweeper: Sweeper | None = None
    admin_token: str = ""
    db_engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None


async def build_services(settings: Settings) -> Services:
    db_engine = create_async_engine(settings.database_url, echo=False)
    await verify_schema(db_engine)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)

    store = OrderStore(session_factory)
    notifier = RedisNotificationSink(redis)
    gateway = PaystackGateway(settings.paystack_base_url, settings.paystack_secret_key)
    engine = OrderLifecycleEngine(
        store,
        notifier,
        gateway,
        RedisEventPublisher(redis),
        commit_window=settings.commit_window,
    )
    sweeper = Sweeper(
        engine,
        store,
        notifier,
        reminder_window=settings.reminder_window,
        interval=settings.sweep_interval_seconds,
        lock=RedisSweepLock(redis),
    )
    return Services(
        store=store,
        engine=engine,
        gateway=gateway,
        sweeper=sweeper,
        admin_token=settings.admin_token,
        db_engine=db_engine,
        redis=redis,
    )


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the application.

    With `services` given (tests), nothing is read from the environment and
    no background sweeper is started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        settings = Settings.from_env()
        configure_logging(settings.log_level)
        built = await build_services(settings)
        app.state.services = built

        shutdown_event = asyncio.Event()
        sweeper_task = asyncio.create_task(built.sweeper.run_forever(shutdown_event))
        yield
        shutdown_event.set()
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
        await built.redis.aclose()
        await built.db_engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=exc.to_dict())

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def _transition_response(result: TransitionResult) -> dict:
    return {
        "order": result.order.to_dict(),
        "settlement_pending": result.settlement_pending,
        "message": result.message,
    }


# ── Request Models ───────────────────────────────


class CheckoutRequest(BaseModel):
    buyer_email: str
    seller_id: str
    item_ref: str
    amount: int = Field(gt=0)
    metadata: dict = {}


class CancelRequest(BaseModel):
    reason: str | None = None


class RefundRequest(BaseModel):
    reason: str = "admin_refund"


def _register_routes(app: FastAPI) -> None:

    # ── Command Endpoints ────────────────────────

    @app.post("/commands/orders", status_code=201)
    async def cmd_checkout(
        req: CheckoutRequest,
        x_user_id: str = Header(...),
        services: Services = Depends(get_services),
    ):
        """Create an order and open the payment session for it."""
        order, session_url = await services.engine.start_checkout(
            x_user_id, req.buyer_email, req.seller_id, req.item_ref, req.amount, req.metadata
        )
        return {"order": order.to_dict(), "payment_url": session_url}

    @app.post("/commands/orders/{order_id}/commit")
    async def cmd_commit(
        order_id: str,
        x_user_id: str = Header(...),
        services: Services = Depends(get_services),
    ):
        result = await services.engine.commit(order_id, x_user_id)
        return _transition_response(result)

    @app.post("/commands/orders/{order_id}/collect")
    async def cmd_mark_collected(
        order_id: str,
        x_user_id: str = Header(...),
        services: Services = Depends(get_services),
    ):
        result = await services.engine.mark_collected(order_id, x_user_id)
        return _transition_response(result)

    @app.post("/commands/orders/{order_id}/confirm-delivery")
    async def cmd_confirm_delivery(
        order_id: str,
        x_user_id: str = Header(...),
        services: Services = Depends(get_services),
    ):
        result = await services.engine.confirm_delivery(order_id, x_user_id)
        return _transition_response(result)

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel(
        order_id: str,
        req: CancelRequest,
        x_user_id: str = Header(...),
        services: Services = Depends(get_services),
    ):
        result = await services.engine.cancel(order_id, x_user_id, req.reason)
        return _transition_response(result)

    @app.post("/admin/orders/{order_id}/refund")
    async def admin_refund(
        order_id: str,
        req: RefundRequest,
        x_admin_token: str = Header(""),
        services: Services = Depends(get_services),
    ):
        if not services.admin_token or not hmac.compare_digest(x_admin_token, services.admin_token):
            raise HTTPException(403, "Admin token required")
        result = await services.engine.refund(order_id, req.reason)
        return _transition_response(result)

    # ── Gateway Webhook ──────────────────────────

    @app.post("/webhooks/payment")
    async def payment_webhook(request: Request, services: Services = Depends(get_services)):
        """Called by the gateway when a charge succeeds or fails."""
        body = await request.body()
        signature = request.headers.get("x-paystack-signature")
        if not services.gateway.verify_signature(body, signature):
            logger.warning("Rejected payment webhook with a bad signature")
            raise HTTPException(401, "Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(400, "Webhook body is not JSON") from None
        data = payload.get("data") if isinstance(payload, dict) else None
        reference = data.get("reference") if isinstance(data, dict) else None
        if not reference:
            raise HTTPException(400, "Missing payment reference")
        try:
            result = await services.engine.reconcile_payment(reference)
        except InvalidState as e:
            # Gateways deliver webhooks more than once.
            logger.info("Ignoring repeated webhook for %s: %s", reference, e)
            return {"status": "ignored", "current_status": e.current_status}
        except ReferenceMismatch as e:
            # Redelivery cannot fix a mismatch; acknowledge it so the gateway stops.
            logger.error("Rejected payment webhook for %s: %s", reference, e)
            return {"status": "rejected", "error": e.kind.value, "order_id": e.order_id}
        return {"status": "processed", "order_status": result.order.status.value}

    # ── Query Endpoints ──────────────────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        user_id: str,
        role: str | None = None,
        services: Services = Depends(get_services),
    ):
        return await services.store.read(
            lambda session: queries.list_orders_for_user(session, user_id, role)
        )

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: str, services: Services = Depends(get_services)):
        order = await services.store.read(lambda session: queries.get_order(session, order_id))
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/queries/sellers/{seller_id}/pending-commits")
    async def query_pending_commits(seller_id: str, services: Services = Depends(get_services)):
        now = services.engine.clock()
        return await services.store.read(
            lambda session: queries.list_pending_commits(session, seller_id, now)
        )

    @app.get("/events/{order_id}")
    async def get_order_events(order_id: str, services: Services = Depends(get_services)):
        """Audit trail of one order."""
        return await services.store.load_events(order_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}


app = create_app()
