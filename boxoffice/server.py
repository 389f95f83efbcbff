from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger

from . import __version__, gateway, reconciliation, reservation, sweeper
from .config import Settings
from .errors import BoxOfficeError
from .gateway import RawCallback, Rejection
from .helpers import now_ts, to_iso
from .infra.logs import configure_logging
from .infra.sql import GatedStore, make_async_engine
from .infra.timings import aggregates, timeit
from .mockpay import MOCK_RESULTS, build_stk_callback, emit_callback
from .model import inventory, ledger
from .model.db import O_PAID, O_RESERVED, TERMINAL_STATUSES, create_schema

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> GatedStore:
    return request.app.state.store


def require_mock_provider(
    settings: Settings = Depends(get_settings),
) -> Settings:
    if settings.production:
        raise HTTPException(404, detail="not found")
    return settings


# ----------------------------
# Request helpers
# ----------------------------
def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(400, detail=f"{key} is required")
    return value.strip()


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(400, detail=f"{key} must be an integer")
    return value


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    if payload.get(key) is None:
        return None
    return _require_int(payload, key)


# ----------------------------
# API: Reservations
# ----------------------------
@router.post("/api/reservations", status_code=201)
async def create_reservation(
    payload: dict,
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    buyer_id = _require_str(payload, "buyerId")
    category_id = _require_str(payload, "categoryId")
    quantity = _require_int(payload, "quantity")

    order = await reservation.reserve_for_category(
        store,
        buyer_id=buyer_id,
        category_id=category_id,
        quantity=quantity,
        default_max_per_order=settings.default_max_per_order,
    )
    # the caller starts the STK push with this token, out of band
    return {
        "orderId": order.id,
        "correlationToken": order.correlation_token,
        "status": order.status,
        "final": order.status in TERMINAL_STATUSES,
        "amount": order.amount,
        "currency": order.currency,
        "expiresAt": to_iso(
            order.created_at + settings.reservation_ttl_seconds
        ),
    }


# ----------------------------
# API: Order status (polled by the UI)
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    async with timeit("ledger.get_order"):
        async with store.transaction() as db:
            order = await ledger.get_order(db, order_id)

    out: Dict[str, Any] = {
        "orderId": order.id,
        "status": order.status,
        "final": order.status in TERMINAL_STATUSES,
        "categoryId": order.category_id,
        "quantity": order.quantity,
        "amount": order.amount,
        "currency": order.currency,
        "createdAt": to_iso(order.created_at),
        "updatedAt": to_iso(order.updated_at),
        "expiresAt": None,
        "receiptId": order.receipt_id,
        "tickets": [],
    }
    if order.status == O_RESERVED:
        out["expiresAt"] = to_iso(
            order.created_at + settings.reservation_ttl_seconds
        )
    if order.status == O_PAID:
        out["tickets"] = [
            {
                "id": t,
                "code": inventory.ticket_code(t, order.id,
                                              settings.ticket_secret),
            }
            for t in order.ticket_ids
        ]
    return out


# ----------------------------
# Webhook: M-Pesa STK callback
# ----------------------------
@router.get("/payments/mpesa-callback")
async def mpesa_callback_alive():
    return {
        "message": "M-PESA callback endpoint is active",
        "timestamp": to_iso(now_ts()),
    }


@router.post("/payments/mpesa-callback")
async def mpesa_callback_no_secret(
    request: Request,
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    # misconfigured callback URL: still acked, rejected as a bad secret
    return await _handle_callback(request, "", store, settings)


@router.post("/payments/mpesa-callback/{secret:path}")
async def mpesa_callback(
    secret: str,
    request: Request,
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    return await _handle_callback(request, secret, store, settings)


async def _handle_callback(
    request: Request, secret: str, store: GatedStore, settings: Settings
) -> Dict[str, Any]:
    body = await request.body()
    raw = RawCallback(
        body=body,
        path_secret=secret,
        headers=dict(request.headers),
        peer_ip=request.client.host if request.client else None,
    )

    verdict = gateway.validate(
        raw,
        production=settings.production,
        allowed_ips=settings.allowed_ips,
        secret=settings.callback_secret,
    )
    # From here on the provider gets a 200 ack no matter what: anything
    # else makes it redeliver the same callback indefinitely.
    if isinstance(verdict, Rejection):
        logger.bind(reason=verdict.reason.value,
                    source_ip=gateway.source_ip(raw)).warning(
            "callback rejected: {}", verdict.detail
        )
        return gateway.acknowledgement("Accepted")

    try:
        result = await reconciliation.apply(store, verdict)
    except BoxOfficeError as e:
        logger.bind(correlation_token=verdict.correlation_token,
                    receipt_id=verdict.receipt_id,
                    error=e.code).error(
            "callback not applied: {} (digest {}, body {!r})",
            e, verdict.raw_digest, body,
        )
        return gateway.acknowledgement("Accepted")
    except Exception:
        logger.bind(correlation_token=verdict.correlation_token).exception(
            "callback processing crashed (digest {}, body {!r})",
            verdict.raw_digest, body,
        )
        return gateway.acknowledgement("Accepted")

    if result.replayed:
        return gateway.acknowledgement("Duplicate callback ignored")
    return gateway.acknowledgement("Callback processed successfully")


# ----------------------------
# Admin: categories, inventory, conflicts
# ----------------------------
@router.post("/api/admin/categories", status_code=201)
async def create_category(
    payload: dict,
    store: GatedStore = Depends(get_store),
):
    category_id = _require_str(payload, "id")
    name = _require_str(payload, "name")
    price = _require_int(payload, "price")
    capacity = _require_int(payload, "capacity")
    max_per_order = _optional_int(payload, "maxPerOrder")
    if price < 0 or capacity < 0:
        raise HTTPException(400, detail="price and capacity must be >= 0")
    if max_per_order is not None and max_per_order < 1:
        raise HTTPException(400, detail="maxPerOrder must be >= 1")

    async with timeit("inventory.create_category"):
        async with store.transaction() as db:
            category = await inventory.create_category(
                db,
                category_id=category_id,
                name=name,
                price=price,
                capacity=capacity,
                max_per_order=max_per_order,
                now=now_ts(),
            )
    logger.info("category {} created with {} tickets",
                category.id, category.capacity)
    return {
        "id": category.id,
        "name": category.name,
        "price": category.price,
        "capacity": category.capacity,
        "maxPerOrder": category.max_per_order,
    }


@router.get("/api/inventory/{category_id}")
async def get_inventory(
    category_id: str,
    store: GatedStore = Depends(get_store),
):
    async with store.transaction() as db:
        stats = await inventory.inventory_stats(db, category_id)
    return {"categoryId": category_id, **stats,
            "timestamp": to_iso(now_ts())}


@router.get("/api/admin/conflicts")
async def api_admin_conflicts(
    unresolved: bool = True,
    limit: int = 200,
    store: GatedStore = Depends(get_store),
):
    async with store.transaction() as db:
        items = await ledger.list_conflicts(
            db, unresolved_only=unresolved, limit=limit
        )
    for item in items:
        item["created_at"] = to_iso(item["created_at"])
        item["resolved_at"] = to_iso(item["resolved_at"])
    return {"items": items, "limit": limit}


@router.post("/api/admin/conflicts/{conflict_id}/resolve")
async def api_admin_resolve_conflict(
    conflict_id: int,
    store: GatedStore = Depends(get_store),
):
    async with store.transaction() as db:
        ok = await ledger.resolve_conflict(db, conflict_id, now=now_ts())
    if not ok:
        raise HTTPException(404, detail="conflict not found or resolved")
    logger.info("conflict {} resolved", conflict_id)
    return {"id": conflict_id, "resolved": True}


@router.post("/api/admin/sweep")
async def api_admin_sweep(
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    report = await sweeper.sweep(
        store,
        timeout=settings.reservation_ttl_seconds,
        batch_size=settings.sweep_batch_size,
    )
    return {
        "candidates": report.candidates,
        "expired": report.expired,
        "releasedTickets": report.released_tickets,
        "lostRaces": report.lost_races,
    }


@router.get("/api/admin/timings")
async def api_admin_timings():
    return {"items": aggregates()}


# ----------------------------
# MockPay: emit an STK callback for a reservation (dev only)
# ----------------------------
@router.post("/mockpay/{correlation_token}/emit")
async def mockpay_emit(
    correlation_token: str,
    request: Request,
    t: str = Form(...),
    store: GatedStore = Depends(get_store),
    settings: Settings = Depends(require_mock_provider),
):
    if t not in MOCK_RESULTS:
        raise HTTPException(400, detail="invalid kind")

    async with store.transaction() as db:
        order = await ledger.find_order_by_token(db, correlation_token)
    if order is None:
        raise HTTPException(404, detail="payment session not found")

    event = build_stk_callback(correlation_token, t, amount=order.amount)
    http: httpx.AsyncClient = request.app.state.http
    try:
        resp = await emit_callback(http, settings.mock_webhook_url, event)
    except httpx.HTTPError as e:
        # the buyer can simply emit again
        logger.warning("mock webhook delivery failed: {}", e)
        return {"ok": False, "orderId": order.id, "error": str(e)}

    return {
        "ok": resp.status_code == 200,
        "orderId": order.id,
        "ack": resp.json(),
    }


# ----------------------------
# App factory / startup / shutdown
# ----------------------------
async def boxoffice_error_handler(request: Request, exc: BoxOfficeError):
    # capacity errors go back to the buyer as-is; 503s are worth a retry
    return ORJSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "detail": exc.message,
            "retryable": exc.retryable,
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )

    app = FastAPI(
        title="BoxOffice",
        version=__version__,
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = GatedStore(sessions=SessionAsync, gated=gated)
    app.state.http = None
    app.state.sweeper_task = None

    app.add_exception_handler(BoxOfficeError, boxoffice_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    async def _say_hello():
        logger.info("BoxOffice {} starting ({}), reservation ttl {}s",
                    __version__, settings.app_env,
                    settings.reservation_ttl_seconds)

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("startup")
    async def _http_client_start():
        if app.state.http is None:
            app.state.http = httpx.AsyncClient(
                timeout=5.0,
                limits=httpx.Limits(
                    max_connections=64, max_keepalive_connections=64
                ),
            )

    @app.on_event("startup")
    async def _sweeper_start():
        if settings.sweep_interval_seconds > 0:
            app.state.sweeper_task = asyncio.create_task(
                sweeper.run_sweeper(
                    app.state.store,
                    interval=settings.sweep_interval_seconds,
                    timeout=settings.reservation_ttl_seconds,
                    batch_size=settings.sweep_batch_size,
                )
            )

    @app.on_event("shutdown")
    async def _sweeper_stop():
        task = app.state.sweeper_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.sweeper_task = None

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = app.state.http
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await engine.dispose()

    return app


def main() -> None:
    import uvicorn
    uvicorn.run("boxoffice.server:create_app", factory=True,
                host="0.0.0.0", port=8000)
