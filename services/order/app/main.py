"""
Order Service — FastAPI エントリーポイント

注文 Saga をホストする。注文の作成・参照・キャンセルはここで行い、
決済の確定と返金は Billing がイベントエンドポイント経由で報告してくる。

  ┌──────────┐   validate   ┌──────┐
  │          │ ───────────▶ │ Menu │
  │  Order   │   reserve    ┌───────────┐
  │ Service  │ ───────────▶ │ Inventory │
  │ (saga)   │   pay        ┌─────────┐
  │          │ ───────────▶ │ Billing │
  └──────────┘ ◀─────────── └─────────┘
                webhooks
"""

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Body, FastAPI, Query, Request, Response
from pydantic import Field

from services.common.app import create_service_app
from services.common.errors import NotFound, with_trace
from services.common.money import Money
from services.common.schemas import CamelModel

from . import event_store, queries
from .aggregate import STATUSES
from .clients import HttpBillingClient, HttpInventoryClient, HttpMenuClient
from .config import OrdersSettings
from .orchestrator import OrderSagaOrchestrator
from .schema import metadata

router = APIRouter(prefix="/v1/orders")


# ── Request Models ───────────────────────────────


class Customer(CamelModel):
    id: str = "anonymous"
    name: str | None = None


class OrderLine(CamelModel):
    item_id: str = Field(min_length=1)
    qty: int = Field(ge=1)
    unit_price: Money = Field(ge=0)
    name: str | None = None


class CreateOrderRequest(CamelModel):
    idempotency_key: str | None = None
    customer: Customer = Field(default_factory=Customer)
    items: list[OrderLine] = Field(min_length=1)


def build_orchestrator(request: Request) -> OrderSagaOrchestrator:
    """リクエストごとにアプリの共有リソースからオーケストレーターを組み立てる"""
    state = request.app.state
    settings: OrdersSettings = state.settings
    client = state.http_client
    return OrderSagaOrchestrator(
        state.async_session,
        state.redis,
        HttpMenuClient(client, settings.menu_service_url),
        HttpInventoryClient(client, settings.inventory_service_url),
        HttpBillingClient(client, settings.billing_service_url),
        currency=settings.currency,
    )


@router.get("/health")
async def health():
    return {"status": "ok", "service": "orders"}


# ── Command Endpoints (Write 側) ─────────────────


@router.post("", status_code=201)
async def cmd_create_order(req: CreateOrderRequest, request: Request, response: Response):
    """注文 Saga を実行する（冪等キーの再送は 200）"""
    order, created = await build_orchestrator(request).create_order(
        [line.to_wire() for line in req.items],
        customer_id=req.customer.id,
        customer_name=req.customer.name,
        idempotency_key=req.idempotency_key,
    )
    if not created:
        response.status_code = 200
    return with_trace(order)


@router.post("/{order_id}/cancel")
async def cmd_cancel_order(order_id: str, request: Request):
    order = await build_orchestrator(request).cancel_order(order_id)
    return with_trace(order)


@router.post("/{order_id}/events/{event_type}")
async def cmd_handle_event(
    order_id: str,
    event_type: str,
    request: Request,
    payload: dict | None = Body(default=None),
):
    """Billing からの Webhook (payment-captured, refunded)"""
    order = await build_orchestrator(request).handle_event(
        order_id, event_type, payload or {}
    )
    return with_trace(order)


# ── Query Endpoints (Read 側) ────────────────────


@router.get("")
async def query_list_orders(
    request: Request,
    status: str | None = Query(default=None, pattern=f"^({'|'.join(STATUSES)})$"),
    limit: int = Query(default=50, ge=1, le=200),
):
    async with request.app.state.async_session() as session:
        records = await queries.list_orders(session, status, limit)
    orders = [
        {k: v for k, v in record.items() if k not in ("idempotencyKey", "version")}
        for record in records
    ]
    return with_trace({"orders": orders})


@router.get("/{order_id}")
async def query_get_order(order_id: str, request: Request):
    order = await build_orchestrator(request).get_order(order_id)
    return with_trace(order)


@router.get("/{order_id}/events")
async def query_order_events(order_id: str, request: Request):
    async with request.app.state.async_session() as session:
        if await queries.get_order(session, order_id) is None:
            raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        events = await event_store.load_events(session, order_id)
    return with_trace(
        {
            "orderId": order_id,
            "events": [
                {
                    "eventType": e["event_type"],
                    "eventData": e["event_data"],
                    "version": e["version"],
                    "createdAt": e["created_at"],
                }
                for e in events
            ],
        }
    )


def create_app(
    settings: OrdersSettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = create_service_app(
        settings or OrdersSettings.from_env(),
        metadata,
        title="Order Service",
        redis=redis,
        http_client=http_client,
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
