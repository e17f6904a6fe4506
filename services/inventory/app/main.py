"""
Inventory Service — FastAPI エントリーポイント

注文 Saga 向けの在庫・引き当てストア。引き当ての作成・確定・解放は
注文サービスが行う。期限切れスイープのエンドポイントは外部スケジューラ用で、
15 分を過ぎた引き当てを回収する。
"""

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request, Response
from pydantic import Field

from services.common.app import create_service_app
from services.common.errors import NotFound, with_trace
from services.common.schemas import CamelModel

from . import commands, notifications, queries
from .config import InventorySettings
from .schema import metadata

router = APIRouter(prefix="/v1/inventory")


# ── Request Models ───────────────────────────────


class ReservationItem(CamelModel):
    item_id: str = Field(min_length=1)
    qty: int = Field(ge=1)
    name: str | None = None


class ReserveRequest(CamelModel):
    order_id: str = Field(min_length=1)
    items: list[ReservationItem] = Field(min_length=1)
    idempotency_key: str | None = None


class StockUpdateRequest(CamelModel):
    quantity: int | None = Field(default=None, ge=0)
    item_name: str | None = None


class ReconcileRequest(CamelModel):
    item_id: str = Field(min_length=1)
    available: bool = True
    ingredients: list[str] | None = None


# ── Reservation Commands ─────────────────────────


@router.post("/reservations", status_code=201)
async def cmd_reserve(req: ReserveRequest, request: Request, response: Response):
    """注文の在庫を引き当てる（冪等キーの再送は 200）"""
    state = request.app.state
    settings: InventorySettings = state.settings
    async with state.async_session() as session:
        reservation, created = await commands.reserve_inventory(
            session,
            state.redis,
            req.order_id,
            [item.to_wire() for item in req.items],
            req.idempotency_key,
            ttl_minutes=settings.reservation_ttl_minutes,
            default_quantity=settings.default_stock_quantity,
        )
    if not created:
        response.status_code = 200
    return with_trace(reservation)


@router.post("/reservations/expire")
async def cmd_expire(request: Request):
    """期限切れの引き当てを回収して有効在庫に戻す"""
    state = request.app.state
    async with state.async_session() as session:
        expired = await commands.expire_reservations(session, state.redis)
    return with_trace({"expired": expired})


@router.post("/reservations/{reservation_id}/commit")
async def cmd_commit(reservation_id: str, request: Request):
    state = request.app.state
    async with state.async_session() as session:
        reservation = await commands.commit_reservation(
            session, state.redis, reservation_id
        )
    return with_trace(reservation)


@router.post("/reservations/{reservation_id}/release")
async def cmd_release(reservation_id: str, request: Request):
    state = request.app.state
    async with state.async_session() as session:
        reservation = await commands.release_reservation(
            session, state.redis, reservation_id
        )
    return with_trace(reservation)


@router.get("/reservations/{reservation_id}")
async def query_reservation(reservation_id: str, request: Request):
    async with request.app.state.async_session() as session:
        reservation = await queries.get_reservation(session, reservation_id)
    if reservation is None:
        raise NotFound(
            f"Reservation {reservation_id} not found", code="RESERVATION_NOT_FOUND"
        )
    return with_trace(reservation)


# ── Stock ────────────────────────────────────────


@router.get("/stock")
async def query_list_stock(request: Request):
    async with request.app.state.async_session() as session:
        items = await queries.list_stock(session)
    return with_trace({"items": items})


@router.put("/stock/{item_id}")
async def cmd_update_stock(item_id: str, req: StockUpdateRequest, request: Request):
    """在庫数を設定し、販売可否をメニューに通知する"""
    state = request.app.state
    async with state.async_session() as session:
        stock = await commands.update_stock(
            session, state.redis, item_id, req.quantity, req.item_name
        )
    await notifications.notify_menu_availability(
        state.http_client,
        state.settings.menu_service_url,
        item_id,
        stock["availableQuantity"] > 0,
    )
    return with_trace(stock)


@router.post("/reconcile")
async def cmd_reconcile(req: ReconcileRequest, request: Request):
    """商品の販売可否が変わったときにメニューサービスから呼ばれる"""
    state = request.app.state
    async with state.async_session() as session:
        stock = await commands.reconcile_item(
            session,
            state.redis,
            req.item_id,
            req.available,
            state.settings.default_stock_quantity,
        )
    return with_trace({"reconciled": True, "itemId": req.item_id, "stock": stock})


@router.get("/health")
async def health():
    return {"status": "ok", "service": "inventory"}


def create_app(
    settings: InventorySettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = create_service_app(
        settings or InventorySettings.from_env(),
        metadata,
        title="Inventory Service",
        redis=redis,
        http_client=http_client,
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
