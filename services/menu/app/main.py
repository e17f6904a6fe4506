"""
Menu Service — FastAPI エントリーポイント

販売可能な商品のカタログ。注文サービスは注文を保存する前に /validation を呼ぶ。
商品の販売可否の切り替えは在庫サービスへ転送する。
"""

from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request
from pydantic import Field

from services.common.app import create_service_app
from services.common.errors import NotFound, with_trace
from services.common.money import Money
from services.common.schemas import CamelModel

from . import commands, notifications, queries
from .config import MenuSettings
from .schema import metadata

router = APIRouter(prefix="/v1/menu")


# ── Request Models ───────────────────────────────


class CreateItemRequest(CamelModel):
    id: str | None = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    price: Money = Field(ge=0)
    category: str = "main"
    available: bool = True
    ingredients: list[str] | None = None


NULLABLE_FIELDS = ("description", "ingredients")


class UpdateItemRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: Money | None = Field(default=None, ge=0)
    category: str | None = None
    available: bool | None = None
    ingredients: list[str] | None = None


class AvailabilityRequest(CamelModel):
    available: bool


class ValidationLine(CamelModel):
    item_id: str = Field(min_length=1)
    qty: int = Field(default=1, ge=1)
    unit_price: Money = Field(default=Decimal("0.00"), ge=0)


class ValidationRequest(CamelModel):
    items: list[ValidationLine]
    idempotency_key: str | None = None


# ── Items ────────────────────────────────────────


@router.get("/items")
async def query_list_items(request: Request):
    async with request.app.state.async_session() as session:
        items = await queries.list_available_items(session)
    return with_trace({"items": items})


@router.get("/items/{item_id}")
async def query_item(item_id: str, request: Request):
    async with request.app.state.async_session() as session:
        item = await queries.get_item(session, item_id)
    if item is None:
        raise NotFound(f"Menu item {item_id} not found", code=commands.ITEM_NOT_FOUND)
    return with_trace(item)


@router.post("/items", status_code=201)
async def cmd_create_item(req: CreateItemRequest, request: Request):
    state = request.app.state
    async with state.async_session() as session:
        item = await commands.create_item(
            session,
            state.redis,
            item_id=req.id,
            name=req.name,
            description=req.description,
            price=req.price,
            category=req.category,
            available=req.available,
            ingredients=req.ingredients,
        )
    return with_trace(item)


@router.patch("/items/{item_id}")
async def cmd_update_item(item_id: str, req: UpdateItemRequest, request: Request):
    state = request.app.state
    changes = {
        field: getattr(req, field)
        for field in req.model_fields_set
        if getattr(req, field) is not None or field in NULLABLE_FIELDS
    }
    async with state.async_session() as session:
        item = await commands.update_item(session, state.redis, item_id, changes)
    return with_trace(item)


@router.post("/items/{item_id}/availability")
async def cmd_set_availability(item_id: str, req: AvailabilityRequest, request: Request):
    state = request.app.state
    async with state.async_session() as session:
        item = await commands.set_availability(
            session, state.redis, item_id, req.available
        )
    await notifications.notify_inventory_reconcile(
        state.http_client,
        state.settings.inventory_service_url,
        item_id,
        req.available,
        item["ingredients"],
    )
    return with_trace({"itemId": item_id, "available": req.available})


# ── Validation ───────────────────────────────────


@router.post("/validation")
async def cmd_validate(req: ValidationRequest, request: Request):
    """カゴの販売可否と価格を検証する"""
    async with request.app.state.async_session() as session:
        result = await commands.validate_items(
            session, [line.to_wire() for line in req.items]
        )
    return with_trace(result)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "menu"}


def create_app(
    settings: MenuSettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = create_service_app(
        settings or MenuSettings.from_env(),
        metadata,
        title="Menu Service",
        redis=redis,
        http_client=http_client,
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
