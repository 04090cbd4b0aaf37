"""
HTTP surface of kickoff.

Nothing is built at import time; serve through the factory:

    uvicorn kickoff.server:create_app --factory
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import orjson
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse, Response
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings
from .fulfillment import TaskRunner, process_callback, reconcile
from .helpers import ct_equal, normalize_msisdn, now_ts, to_iso
from .images import (
    DEFAULT_BUCKET,
    ImageNotFound,
    ImageProxy,
    ImageRef,
    ObjectRef,
    UpstreamError,
    resolve_reference,
)
from .infra.sql import make_async_engine
from .infra.storage import ObjectStorage, SupabaseStorage
from .model import ledger
from .model.db import (
    ORDER_PAID,
    ORDER_PENDING,
    PAYMENT_FAILED,
    Base,
    Event,
    Order,
    OrderItem,
    Product,
    Ticket,
    User,
)
from .model.intent import EventTicket, StoreOrder, VipPlan
from .model.tasks import create_schema, new_store
from .mpesa import (
    CallbackError,
    GatewayError,
    PaymentAdapter,
    new_adapter,
    parse_callback,
    simulated_callback,
)
from .qr import QRIssuer, ticket_qr_path
from . import subscriptions

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

router = APIRouter()


def _error(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse({"error": message}, status_code=status_code)


# ----------------------------
# Startup / shutdown
# ----------------------------
async def _say_hello(app: FastAPI) -> None:
    s: Settings = app.state.settings
    driver = app.state.engine.url.drivername
    tasks = "Redis" if s.tasks_backend == "redis" else "SQL"
    mode = "SIMULATION" if app.state.gateway.simulated else "Daraja"
    log.info("=" * 50)
    log.info("kickoff is starting up...")
    log.info("   - Database:      %s", driver)
    log.info("   - Tasks Backend: %s", tasks)
    log.info("   - M-Pesa:        %s", mode)
    log.info("=" * 50)


async def _db_init(app: FastAPI) -> None:
    s: Settings = app.state.settings
    engine, SessionAsync, gated = make_async_engine(
        s.database_url,
        pool_size=s.db_pool_size,
        max_overflow=s.db_max_overflow,
        pool_timeout=s.db_pool_timeout,
        gate_limit=s.db_gate_limit,
    )
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if s.tasks_backend == "pg":
            await create_schema(conn)


async def _http_client_start(app: FastAPI) -> None:
    if app.state.http is None:
        app.state.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(
                max_connections=128, max_keepalive_connections=64
            ),
        )
        app.state.own_http = True


async def _redis_start(app: FastAPI) -> None:
    s: Settings = app.state.settings
    app.state.redis = None
    if s.tasks_backend == "redis":
        app.state.redis = redis.from_url(
            s.redis_url,
            decode_responses=True,
            max_connections=s.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


async def _services_start(app: FastAPI) -> None:
    s: Settings = app.state.settings
    if app.state.storage is None:
        app.state.storage = SupabaseStorage(
            app.state.http, s.supabase_url, s.supabase_service_key
        )
    if app.state.gateway is None:
        app.state.gateway = new_adapter(s, app.state.http)
    app.state.issuer = QRIssuer(app.state.storage, s)
    app.state.proxy = ImageProxy(app.state.storage, app.state.http,
                                 ttl=s.signed_url_ttl)


async def _http_client_stop(app: FastAPI) -> None:
    if app.state.own_http and app.state.http is not None:
        await app.state.http.aclose()
        app.state.http = None


async def _redis_stop(app: FastAPI) -> None:
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


async def _db_stop(app: FastAPI) -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _db_init(app)
    await _http_client_start(app)
    await _redis_start(app)
    await _services_start(app)
    await _say_hello(app)
    try:
        yield
    finally:
        await _http_client_stop(app)
        await _redis_stop(app)
        await _db_stop(app)


async def _http_error(request: Request, exc: StarletteHTTPException):
    return ORJSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[ObjectStorage] = None,
    gateway: Optional[PaymentAdapter] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    app = FastAPI(
        title="kickoff",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage
    app.state.gateway = gateway
    app.state.http = http
    app.state.own_http = False
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.include_router(router)
    return app


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.SessionAsync() as session:
        yield session


async def tasks(request: Request):
    st = request.app.state
    s: Settings = st.settings
    if s.tasks_backend == "pg":
        async with st.SessionAsync() as session:
            yield new_store(
                "pg", db=session, gated=st.gated,
                max_attempts=s.task_max_attempts,
                retry_base_seconds=s.task_retry_base_seconds,
            )
    else:
        yield new_store(
            "redis", r=st.redis,
            max_attempts=s.task_max_attempts,
            retry_base_seconds=s.task_retry_base_seconds,
        )


async def task_runner(request: Request, store=Depends(tasks)) -> TaskRunner:
    st = request.app.state
    return TaskRunner(store, st.SessionAsync, st.gated, st.issuer,
                      st.settings)


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


async def _follow_up(runner: TaskRunner, refs) -> None:
    # the payment is committed at this point; leftovers are picked up by
    # reconcile
    try:
        await runner.submit(refs)
    except Exception:
        log.exception("follow-up tasks did not run")


# ----------------------------
# M-Pesa callback
# ----------------------------
@router.post("/payments/mpesa/webhook")
@router.post("/api/payments/mpesa/webhook")
async def mpesa_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    runner: TaskRunner = Depends(task_runner),
):
    st = request.app.state
    try:
        body = orjson.loads(await request.body())
    except orjson.JSONDecodeError as e:
        log.warning("unparseable callback body: %s", e)
        return _error(500, "Invalid JSON")

    try:
        cb = parse_callback(body)
    except CallbackError as e:
        log.warning("rejected callback: %s", e)
        return _error(400, str(e))

    try:
        outcome = await process_callback(db, st.gated, cb, body, st.settings)
    except Exception:
        # rolled back; the payment is still pending and redelivery retries
        log.exception("callback for %s failed", cb.checkout_request_id)
        return _error(500, "Internal error")

    await _follow_up(runner, outcome.tasks)
    return {"message": outcome.message}


# ----------------------------
# Payment initiation
# ----------------------------
def _positive_int(v, name: str) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise HTTPException(400, detail=f"{name} must be an integer")
    if n < 1:
        raise HTTPException(400, detail=f"{name} must be at least 1")
    return n


@router.post("/payments/mpesa/initiate")
async def mpesa_initiate(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    runner: TaskRunner = Depends(task_runner),
):
    st = request.app.state
    s: Settings = st.settings
    gateway: PaymentAdapter = st.gateway

    user_id = str(payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(400, detail="user_id is required")
    phone = normalize_msisdn(payload.get("phone_number"))
    if phone is None:
        raise HTTPException(400, detail="phone_number must be a valid "
                                        "Safaricom number")
    purposes = [k for k in ("order_id", "event_id", "plan")
                if payload.get(k)]
    if len(purposes) != 1:
        raise HTTPException(
            400, detail="exactly one of order_id, event_id or plan is "
                        "required"
        )
    purpose = purposes[0]
    if purpose == "plan" and payload["plan"] != "vip":
        raise HTTPException(400, detail="unknown plan")

    async with st.gated():
        async with db.begin():
            if purpose == "order_id":
                order = await db.get(Order, _positive_int(
                    payload["order_id"], "order_id"))
                if order is None:
                    raise HTTPException(404, detail="Order not found")
                if order.status == ORDER_PAID:
                    raise HTTPException(409, detail="Order already paid")
                amount = int((order.meta or {}).get("total_price") or 0)
                intent = StoreOrder(order_id=order.id)
                reference = f"Order {order.id}"
            elif purpose == "event_id":
                event = await db.get(Event, _positive_int(
                    payload["event_id"], "event_id"))
                if event is None:
                    raise HTTPException(404, detail="Event not found")
                qty = _positive_int(payload.get("quantity", 1),
                                    "quantity")
                amount = event.unit_price * qty
                intent = EventTicket(event_id=event.id, quantity=qty,
                                     user_id=user_id)
                reference = f"Event {event.id}"
            else:
                await subscriptions.create_pending(
                    db, user_id, price=s.vip_price,
                    interval_days=s.vip_interval_days,
                )
                amount = s.vip_price
                intent = VipPlan(user_id=user_id)
                reference = "VIP Subscription"

            if amount <= 0:
                raise HTTPException(400, detail="Nothing to pay")
            payment = await ledger.create_pending(
                db, intent=intent, amount=amount, phone_number=phone,
            )
            payment_id = payment.id

    try:
        push = await gateway.initiate(
            amount=amount, phone_number=phone, account_reference=reference,
        )
    except GatewayError as e:
        log.error("stk push for payment %s failed: %s", payment_id, e)
        async with st.gated():
            async with db.begin():
                await ledger.settle(db, payment_id, PAYMENT_FAILED,
                                    desc=str(e))
        raise HTTPException(502, detail=str(e))

    crid = push["checkout_request_id"]
    async with st.gated():
        async with db.begin():
            await ledger.attach_checkout(db, payment_id, crid,
                                         push["response"])

    if not gateway.simulated:
        log.info("stk push sent for payment %s (%s)", payment_id, crid)
        return {
            "status": "initiated",
            "payment_id": payment_id,
            "checkout_request_id": crid,
            "amount": amount,
            "message": push["response"].get("CustomerMessage")
            or "STK push sent",
        }

    log.info("simulating M-Pesa success for payment %s", payment_id)
    body = simulated_callback(crid, amount, phone,
                              push["merchant_request_id"])
    outcome = await process_callback(db, st.gated, parse_callback(body),
                                     body, s)
    await _follow_up(runner, outcome.tasks)
    return {
        "status": "initiated",
        "payment_id": payment_id,
        "checkout_request_id": crid,
        "amount": amount,
        "simulation": True,
        "message": "M-Pesa Simulation: Success",
    }


# ----------------------------
# Checkout orders / status polling
# ----------------------------
@router.post("/api/orders")
async def create_order(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    st = request.app.state
    s: Settings = st.settings

    user_id = str(payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(400, detail="user_id is required")
    items = payload.get("items") or []
    if not isinstance(items, list) or not items:
        raise HTTPException(400, detail="items must be a non-empty list")
    meta_in = payload.get("metadata") or {}
    if not isinstance(meta_in, dict):
        raise HTTPException(400, detail="metadata must be an object")

    async with st.gated():
        async with db.begin():
            lines = []
            subtotal = 0
            for it in items:
                if not isinstance(it, dict):
                    raise HTTPException(400, detail="invalid item")
                pid = _positive_int(it.get("product_id"), "product_id")
                qty = _positive_int(it.get("quantity") or 1, "quantity")
                product = await db.get(Product, pid)
                if product is None:
                    raise HTTPException(404,
                                        detail=f"Product {pid} not found")
                lines.append((product, qty))
                subtotal += int(product.price) * qty

            shipping_method = meta_in.get("shipping_method") or "pickup"
            fee = s.shipping_fee if shipping_method == "ship" else 0
            meta = {
                "shipping_method": shipping_method,
                "shipping_address": meta_in.get("shipping_address"),
                "order_type": meta_in.get("order_type") or "store",
                "subtotal": subtotal,
                "shipping_fee": fee,
                "total_price": subtotal + fee,
            }
            order = Order(
                user_id=user_id,
                status=ORDER_PENDING,
                meta=meta,
                source=str(payload.get("source") or "web"),
                created_at=now_ts(),
            )
            db.add(order)
            await db.flush()
            db.add_all([
                OrderItem(order_id=order.id, product_id=p.id, quantity=q,
                          unit_price=int(p.price))
                for p, q in lines
            ])
            order_id = order.id

    log.info("order %s created for user %s (%d KSh)", order_id, user_id,
             meta["total_price"])
    return ORJSONResponse(
        {"order_id": order_id, "total_price": meta["total_price"]},
        status_code=201,
    )


@router.get("/api/payments/{payment_id}")
async def get_payment(payment_id: str, request: Request,
                      db: AsyncSession = Depends(get_db)):
    async with request.app.state.gated():
        async with db.begin():
            payment = await ledger.get(db, payment_id)
    if payment is None:
        raise HTTPException(404, detail="Payment not found")
    return ledger.as_dict(payment)


@router.get("/api/orders/{order_id}")
async def get_order(order_id: int, request: Request,
                    db: AsyncSession = Depends(get_db)):
    async with request.app.state.gated():
        async with db.begin():
            order = await db.get(Order, order_id)
            if order is None:
                raise HTTPException(404, detail="Order not found")
            items = (await db.execute(
                select(OrderItem).where(OrderItem.order_id == order_id)
            )).scalars().all()
    meta = order.meta or {}
    return {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "total_price": meta.get("total_price"),
        "shipping_fee": meta.get("shipping_fee"),
        "qr_image_url": order.qr_image_url,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "items": [
            {"product_id": i.product_id, "quantity": i.quantity,
             "unit_price": i.unit_price}
            for i in items
        ],
    }


@router.get("/api/users/{user_id}/vip")
async def get_vip_status(user_id: str, request: Request,
                         db: AsyncSession = Depends(get_db)):
    async with request.app.state.gated():
        async with db.begin():
            user = await db.get(User, user_id)
    return {
        "user_id": user_id,
        "is_vip": subscriptions.is_vip(user),
        "expires_at": to_iso(user.vip_expires) if user else None,
    }


@router.get("/api/users/{user_id}/tickets")
async def get_user_tickets(user_id: str, request: Request,
                           db: AsyncSession = Depends(get_db)):
    s: Settings = request.app.state.settings
    async with request.app.state.gated():
        async with db.begin():
            rows = (await db.execute(
                select(Ticket)
                .where(Ticket.user_id == user_id)
                .order_by(Ticket.purchased_at.desc(), Ticket.id.desc())
            )).scalars().all()
    return {"items": [
        {
            "ticket_uid": t.ticket_uid,
            "event_id": t.event_id,
            "price": t.price,
            "status": t.status,
            "is_used": t.is_used,
            "purchased_at": to_iso(t.purchased_at),
            "qr_url": (s.friendly_url(ticket_qr_path(t.event_id,
                                                     t.ticket_uid))
                       if t.qr_object_path else None),
        }
        for t in rows
    ]}


# ----------------------------
# Image proxy
# ----------------------------
async def _serve_image(
    request: Request,
    ref: Optional[ImageRef],
    *,
    default_content_type: str = "application/octet-stream",
    not_found: str = "Image not found",
):
    proxy: ImageProxy = request.app.state.proxy
    try:
        img = await proxy.open(ref, default_content_type=default_content_type,
                               not_found=not_found)
    except ImageNotFound as e:
        return _error(404, str(e))
    except UpstreamError:
        return _error(502, "Upstream error")

    headers = {"Cache-Control": img.cache_control}
    if img.content is not None:
        return Response(img.content, media_type=img.content_type,
                        headers=headers)
    return StreamingResponse(
        img.upstream.aiter_bytes(),
        media_type=img.content_type,
        headers=headers,
        background=BackgroundTask(img.upstream.aclose),
    )


def order_qr_reference(order: Order, qr_bucket: str) -> Optional[str]:
    path = (order.meta or {}).get("qr_object_path")
    if path:
        return path
    # rows written before metadata carried the path
    url = order.qr_image_url or ""
    if f"{qr_bucket}/" in url:
        return url[url.index(f"{qr_bucket}/"):]
    if "orders/" in url:
        return f"{qr_bucket}/{url[url.index('orders/'):]}"
    return None


@router.get("/images/product/{product_id}")
async def product_image(product_id: int, request: Request,
                        db: AsyncSession = Depends(get_db)):
    try:
        async with request.app.state.gated():
            async with db.begin():
                product = await db.get(Product, product_id)
        if product is None or not product.image_url:
            log.info("no image for product %s", product_id)
            return _error(404, "Image not found")
        return await _serve_image(request, resolve_reference(
            product.image_url, default_bucket=DEFAULT_BUCKET))
    except Exception:
        log.exception("product image proxy failed")
        return _error(500, "Internal Server Error")


@router.get("/images/event/{event_id}")
async def event_image(event_id: int, request: Request,
                      db: AsyncSession = Depends(get_db)):
    try:
        async with request.app.state.gated():
            async with db.begin():
                event = await db.get(Event, event_id)
        if event is None or not event.image_url:
            log.info("no image for event %s", event_id)
            return _error(404, "Image not found")
        return await _serve_image(request, resolve_reference(
            event.image_url, default_bucket=DEFAULT_BUCKET))
    except Exception:
        log.exception("event image proxy failed")
        return _error(500, "Internal Server Error")


@router.get("/images/order/{order_id}")
async def order_qr_image(order_id: int, request: Request,
                         db: AsyncSession = Depends(get_db)):
    s: Settings = request.app.state.settings
    try:
        async with request.app.state.gated():
            async with db.begin():
                order = await db.get(Order, order_id)
        if order is None:
            return _error(404, "Order not found")
        path = order_qr_reference(order, s.qr_bucket)
        if path is None:
            return _error(404, "QR path not found")
        return await _serve_image(
            request,
            resolve_reference(path, default_bucket=s.qr_bucket,
                              allow_direct=False),
            default_content_type="image/png",
            not_found="QR Code not found",
        )
    except Exception:
        log.exception("order QR proxy failed")
        return _error(500, "Internal Server Error")


@router.get("/images/ticket/{event_id}/{ticket_uid}")
async def ticket_qr_image(event_id: int, ticket_uid: str, request: Request,
                          db: AsyncSession = Depends(get_db)):
    s: Settings = request.app.state.settings
    try:
        async with request.app.state.gated():
            async with db.begin():
                ticket = (await db.execute(
                    select(Ticket).where(Ticket.ticket_uid == ticket_uid)
                )).scalars().first()
        if ticket is None:
            return _error(404, "Ticket not found")
        if ticket.event_id != event_id:
            return _error(404, "Ticket does not belong to this event")
        if ticket.qr_object_path:
            ref = resolve_reference(ticket.qr_object_path,
                                    default_bucket=s.qr_bucket,
                                    allow_direct=False)
        else:
            ref = ObjectRef(s.qr_bucket,
                            f"tickets/{event_id}/{ticket_uid}.png")
        return await _serve_image(request, ref,
                                  default_content_type="image/png",
                                  not_found="QR Code not found")
    except Exception:
        log.exception("ticket QR proxy failed")
        return _error(500, "Internal Server Error")


@router.get("/images/{path:path}")
async def raw_image(path: str, request: Request):
    try:
        ref = resolve_reference(path, allow_direct=False)
        if ref is None:
            return _error(404, "Image not found")
        return await _serve_image(request, ref)
    except Exception:
        log.exception("image proxy failed")
        return _error(500, "Internal Server Error")


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    s: Settings = request.app.state.settings
    ok_user = ct_equal(username.strip(), s.admin_username)
    ok_pass = ct_equal(password, s.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    log.warning("failed admin login for %r", username.strip())
    return _error(401, "Invalid credentials.")


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@router.get("/api/admin/tasks", dependencies=[Depends(require_admin)])
async def api_admin_tasks(status: Optional[str] = None, limit: int = 100,
                          store=Depends(tasks)):
    limit = max(1, min(limit, 500))
    return {
        "summary": await store.summary(),
        "items": await store.recent(status, limit),
        "limit": limit,
    }


@router.get("/api/admin/payments/pending",
            dependencies=[Depends(require_admin)])
async def api_admin_pending(request: Request, limit: int = 100,
                            db: AsyncSession = Depends(get_db)):
    limit = max(1, min(limit, 500))
    async with request.app.state.gated():
        async with db.begin():
            rows = await ledger.recent_pending(db, limit)
    return {"items": [ledger.as_dict(p) for p in rows], "limit": limit}


@router.post("/api/admin/reconcile", dependencies=[Depends(require_admin)])
async def api_admin_reconcile(
    request: Request,
    db: AsyncSession = Depends(get_db),
    runner: TaskRunner = Depends(task_runner),
):
    st = request.app.state
    return await reconcile(db, st.gated, runner, st.settings)

